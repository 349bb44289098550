"""Tests for the runtime adapter service."""

import asyncio
import json
import math
from pathlib import Path

import httpx
import pytest

from libs.common.config import RuntimeAdapterConfig
from app.adapters.backend_client import BackendClient
from app.runtime.adapter_service import RuntimeAdapterService, RuntimeState
from app.runtime.config_store import entry_name
from app.runtime.descriptor import ModelDescriptor
from app.runtime.errors import (
    InvalidRequestError,
    PlacementError,
    ReloadTransportError,
    ReloadVerificationError,
    SizeEstimationError,
)
from app.runtime.formats import ConfigList

from tests.conftest import TEST_MEMORY_BYTES, TEST_MULTIPLIER, write_files
from tests.mock_backend import status_body


def descriptor(model_id, path, model_type="", key=None):
    return ModelDescriptor.from_request(model_id, model_type, str(path), key, Path(path).parent)


def on_disk(config):
    return json.loads(Path(config.model_config_file).read_text())


def model_names(document):
    return [entry_name(ConfigList.MODEL, e) for e in document["model_config_list"]]


def unreachable_client():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    return BackendClient("http://backend.test", transport=httpx.MockTransport(handler))


def test_capacity_must_be_positive(tmp_path):
    config = RuntimeAdapterConfig(model_config_file=str(tmp_path / "c.json"), root_model_dir=str(tmp_path))
    with pytest.raises(ValueError):
        RuntimeAdapterService(config, backend_client=unreachable_client())


@pytest.mark.asyncio
async def test_first_status_resets_backend(service, adapter_config, mock_backend):
    status = await service.runtime_status()

    assert status.status is RuntimeState.READY
    assert status.capacity_in_bytes == TEST_MEMORY_BYTES - 256 * 1024 * 1024
    assert status.default_model_size_in_bytes == adapter_config.default_model_size_bytes
    assert status.model_loading_timeout_ms == adapter_config.loadtime_timeout_ms
    assert on_disk(adapter_config) == {"model_config_list": [], "mediapipe_config_list": []}
    assert mock_backend.reload_calls == 1

    await service.runtime_status()
    assert mock_backend.reload_calls == 1


@pytest.mark.asyncio
async def test_reset_purges_stale_placements(service, adapter_config):
    stale = write_files(adapter_config.managed_model_root / "leftover" / "1", {"model.onnx": b"x"})
    await service.runtime_status()
    assert not stale.exists()


@pytest.mark.asyncio
async def test_status_stays_starting_while_backend_unreachable(adapter_config, metrics):
    service = RuntimeAdapterService(adapter_config, backend_client=unreachable_client(), metrics=metrics)

    status = await service.runtime_status()
    assert status.status is RuntimeState.STARTING
    assert status.capacity_in_bytes == TEST_MEMORY_BYTES - 256 * 1024 * 1024
    assert not service.ready


@pytest.mark.asyncio
async def test_load_places_configures_and_verifies(service, adapter_config, mock_backend, openvino_model, metrics):
    result = await service.load_model(descriptor("openvino-ir", openvino_model, "openvino"))

    measured = sum(p.stat().st_size for p in openvino_model.iterdir())
    assert result.size_in_bytes == math.floor(measured * TEST_MULTIPLIER)
    assert result.base_path == str(adapter_config.managed_model_root / "openvino-ir")
    assert on_disk(adapter_config)["model_config_list"] == [
        {"config": {"name": "openvino-ir", "base_path": result.base_path}},
    ]
    assert model_names(mock_backend.documents_seen[-1]) == ["openvino-ir"]
    assert metrics.registry.get_sample_value(
        "runtime_adapter_model_requests_total",
        {"operation": "load", "outcome": "success", "stage": "available"},
    ) == 1.0
    assert metrics.registry.get_sample_value("runtime_adapter_models_configured") == 1.0


@pytest.mark.asyncio
async def test_defined_size_marker_reported_verbatim(service, defined_size_model):
    result = await service.load_model(descriptor("sized", defined_size_model, "openvino"))
    assert result.size_in_bytes == 123000000


@pytest.mark.asyncio
async def test_mediapipe_graph_goes_to_mediapipe_list(service, adapter_config, mediapipe_model):
    result = await service.load_model(
        descriptor("graph", mediapipe_model, "rt:mediapipe_graph")
    )

    assert result.size_in_bytes == 66613000
    document = on_disk(adapter_config)
    assert document["model_config_list"] == []
    assert document["mediapipe_config_list"] == [{
        "name": "graph",
        "base_path": result.base_path,
        "graph_path": str(Path(result.base_path) / "1" / "graph.pbtxt"),
    }]


@pytest.mark.asyncio
async def test_key_format_overrides_hint(service, adapter_config, onnx_model_file):
    key = json.dumps({"model_type": {"name": "onnx"}, "disk_size_bytes": 54321})
    result = await service.load_model(descriptor("onnx-mnist", onnx_model_file, "invalid", key))

    assert result.size_in_bytes == math.floor(54321 * TEST_MULTIPLIER)
    placed = adapter_config.managed_model_root / "onnx-mnist" / "1" / "mnist.onnx"
    assert placed.read_bytes() == onnx_model_file.read_bytes()


@pytest.mark.asyncio
async def test_reload_replaces_entry(service, adapter_config, openvino_model, defined_size_model):
    await service.load_model(descriptor("m", openvino_model, "openvino"))
    result = await service.load_model(descriptor("m", defined_size_model, "openvino"))

    assert result.size_in_bytes == 123000000
    assert model_names(on_disk(adapter_config)) == ["m"]


@pytest.mark.asyncio
async def test_unload_keeps_siblings(service, adapter_config, mock_backend, openvino_model, onnx_model_file):
    await service.load_model(descriptor("a", openvino_model, "openvino"))
    await service.load_model(descriptor("b", onnx_model_file, "onnx"))

    await service.unload_model("a")

    assert model_names(on_disk(adapter_config)) == ["b"]
    assert model_names(mock_backend.documents_seen[-1]) == ["b"]
    assert not (adapter_config.managed_model_root / "a").exists()
    assert (adapter_config.managed_model_root / "b").exists()


@pytest.mark.asyncio
async def test_unload_leaves_placement_when_cleanup_disabled(tmp_path, mock_backend, metrics, openvino_model):
    config = RuntimeAdapterConfig(
        container_mem_req_bytes=TEST_MEMORY_BYTES,
        model_config_file=str(Path(mock_backend.config_file)),
        root_model_dir=str(tmp_path / "generated"),
        cleanup_on_unload=False,
    )
    service = RuntimeAdapterService(config, backend_client=mock_backend.client(), metrics=metrics)

    await service.load_model(descriptor("a", openvino_model, "openvino"))
    await service.unload_model("a")
    assert (config.managed_model_root / "a").exists()


@pytest.mark.asyncio
async def test_unload_unknown_model_succeeds(service, mock_backend):
    await service.unload_model("never-loaded")
    assert mock_backend.reload_calls == 1


@pytest.mark.asyncio
async def test_unload_rejects_invalid_id(service, mock_backend):
    with pytest.raises(InvalidRequestError):
        await service.unload_model("../etc")
    assert mock_backend.reload_calls == 0


@pytest.mark.asyncio
async def test_unload_fails_while_backend_still_serves(service, mock_backend, openvino_model):
    await service.load_model(descriptor("a", openvino_model, "openvino"))
    mock_backend.set_reload_response(status_body(a="AVAILABLE"))

    with pytest.raises(ReloadVerificationError) as excinfo:
        await service.unload_model("a")
    assert excinfo.value.model_id == "a"


@pytest.mark.asyncio
async def test_missing_source_fails_before_config_change(service, adapter_config, mock_backend, tmp_path):
    with pytest.raises(PlacementError):
        await service.load_model(descriptor("ghost", tmp_path / "nowhere", "openvino"))
    assert mock_backend.reload_calls == 0
    assert not Path(adapter_config.model_config_file).exists()


@pytest.mark.asyncio
async def test_bad_size_marker_fails_before_config_change(service, mock_backend, sources, metrics):
    model = write_files(sources / "bad-marker", {
        "model.xml": "<net/>",
        "model.bin": b"\x00",
        "model_size.txt": "lots",
    })
    with pytest.raises(SizeEstimationError):
        await service.load_model(descriptor("bad", model, "openvino"))
    assert mock_backend.reload_calls == 0
    assert metrics.registry.get_sample_value(
        "runtime_adapter_model_requests_total",
        {"operation": "load", "outcome": "SizeEstimationError", "stage": "placed"},
    ) == 1.0


@pytest.mark.asyncio
async def test_unreachable_backend_keeps_config_change(adapter_config, metrics, openvino_model):
    service = RuntimeAdapterService(adapter_config, backend_client=unreachable_client(), metrics=metrics)

    with pytest.raises(ReloadTransportError) as excinfo:
        await service.load_model(descriptor("a", openvino_model, "openvino"))

    assert excinfo.value.model_id == "a"
    assert model_names(on_disk(adapter_config)) == ["a"]
    assert service.config_store.find("a") is not None


@pytest.mark.asyncio
async def test_verification_failure(service, adapter_config, mock_backend, openvino_model):
    mock_backend.set_reload_response({"a": {"model_version_status": [{
        "version": 1, "state": "LOADING",
        "status": {"error_code": "UNKNOWN", "error_message": "Invalid model"},
    }]}})

    with pytest.raises(ReloadVerificationError) as excinfo:
        await service.load_model(descriptor("a", openvino_model, "openvino"))

    assert "Invalid model" in str(excinfo.value)
    assert model_names(on_disk(adapter_config)) == ["a"]


@pytest.mark.asyncio
async def test_slow_reload_times_out(service, mock_backend, openvino_model):
    mock_backend.reload_delay = 2.0

    with pytest.raises(ReloadVerificationError) as excinfo:
        await service.load_model(descriptor("a", openvino_model, "openvino"), timeout=0.3)
    assert excinfo.value.model_id == "a"


@pytest.mark.asyncio
async def test_concurrent_loads_all_land(service, adapter_config, openvino_model, onnx_model_file, defined_size_model):
    await asyncio.gather(
        service.load_model(descriptor("a", openvino_model, "openvino")),
        service.load_model(descriptor("b", onnx_model_file, "onnx")),
        service.load_model(descriptor("c", defined_size_model, "openvino")),
    )
    assert sorted(model_names(on_disk(adapter_config))) == ["a", "b", "c"]
    assert service._model_locks == {}


@pytest.mark.asyncio
async def test_concurrent_loads_of_one_id_leave_one_entry(service, adapter_config, openvino_model):
    await asyncio.gather(*(
        service.load_model(descriptor("same", openvino_model, "openvino")) for _ in range(3)
    ))
    assert model_names(on_disk(adapter_config)) == ["same"]


@pytest.mark.asyncio
async def test_reconcile_reports_drift_and_purges_orphans(service, adapter_config, mock_backend, openvino_model):
    await service.load_model(descriptor("a", openvino_model, "openvino"))
    orphan = write_files(adapter_config.managed_model_root / "orphan" / "1", {"model.onnx": b"x"}).parent

    mock_backend.set_reload_response(status_body(stray="AVAILABLE"))
    report = await service.reconcile()

    assert not report.in_sync
    assert report.configured == ["a"]
    assert report.missing == ["a"]
    assert report.unexpected == ["stray"]
    assert report.removed_placements == ["orphan"]
    assert not orphan.exists()
    assert (adapter_config.managed_model_root / "a").exists()


@pytest.mark.asyncio
async def test_reconcile_in_sync(service, openvino_model):
    await service.load_model(descriptor("a", openvino_model, "openvino"))
    report = await service.reconcile()
    assert report.in_sync
    assert report.available == ["a"]


@pytest.mark.asyncio
@pytest.mark.parametrize("load_first", [False, True])
async def test_load_during_bootstrap_reset_survives(service, adapter_config, mock_backend, openvino_model, load_first):
    mock_backend.reload_delay = 0.3
    status = service.runtime_status()
    load = service.load_model(descriptor("a", openvino_model, "openvino"))

    if load_first:
        result, status = await asyncio.gather(load, status)
    else:
        status, result = await asyncio.gather(status, load)

    assert status.status is RuntimeState.READY
    assert model_names(on_disk(adapter_config)) == ["a"]
    assert (Path(result.base_path) / "1" / "ir_model.xml").exists()
    assert [p.name for p in adapter_config.managed_model_root.iterdir()] == ["a"]
