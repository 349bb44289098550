"""Shared fixtures: adapter config in a temp dir, model sources, mock backend."""

from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from libs.common.config import RuntimeAdapterConfig
from libs.common.metrics import MetricsCollector
from app.runtime.adapter_service import RuntimeAdapterService

from tests.mock_backend import MockBackend

GIB = 1024 * 1024 * 1024
TEST_MEMORY_BYTES = 6 * GIB
TEST_MULTIPLIER = 1.35


def write_files(directory: Path, files: dict) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for name, content in files.items():
        path = directory / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)
    return directory


@pytest.fixture
def adapter_config(tmp_path):
    return RuntimeAdapterConfig(
        container_mem_req_bytes=TEST_MEMORY_BYTES,
        model_size_multiplier=TEST_MULTIPLIER,
        model_config_file=str(tmp_path / "generated" / "model_config_list.json"),
        root_model_dir=str(tmp_path / "generated"),
        reload_verify_delay_seconds=0.0,
    )


@pytest.fixture
def mock_backend(adapter_config):
    return MockBackend(Path(adapter_config.model_config_file))


@pytest.fixture
def metrics():
    return MetricsCollector("runtime-adapter-test", registry=CollectorRegistry())


@pytest.fixture
def service(adapter_config, mock_backend, metrics):
    return RuntimeAdapterService(adapter_config, backend_client=mock_backend.client(), metrics=metrics)


@pytest.fixture
def sources(tmp_path):
    return tmp_path / "sources"


@pytest.fixture
def openvino_model(sources):
    return write_files(sources / "openvino-ir", {
        "ir_model.xml": "<net name='ir'/>",
        "ir_model.bin": b"\x00" * 2048,
    })


@pytest.fixture
def defined_size_model(sources):
    return write_files(sources / "modelWithDefinedSize", {
        "ir_model.xml": "<net name='sized'/>",
        "ir_model.bin": b"\x01" * 512,
        "model_size.txt": "123000000\n",
    })


@pytest.fixture
def mediapipe_model(sources):
    return write_files(sources / "mediapipeWithDefinedSize", {
        "graph.pbtxt": 'input_stream: "in"\noutput_stream: "out"\n',
        "subconfig.json": "{}",
        "model_size.txt": "66613000",
    })


@pytest.fixture
def onnx_model_file(sources):
    path = sources / "onnx-mnist" / "mnist.onnx"
    write_files(path.parent, {path.name: b"onnx" * 100})
    return path
