"""Tests for the model format strategy table."""

import pytest

from app.runtime.formats import ConfigList, FORMATS, detect_format, get_format, normalize_format_name


@pytest.mark.parametrize("raw,expected", [
    ("openvino", "openvino"),
    ("rt:openvino", "openvino"),
    ("IR", "openvino"),
    ("mediapipe", "mediapipe_graph"),
    ("mediapipe_graph", "mediapipe_graph"),
    (" ONNX ", "onnx"),
    ("saved_model", "tensorflow"),
    ("invalid", None),
    ("", None),
    (None, None),
])
def test_normalize_format_name(raw, expected):
    assert normalize_format_name(raw) == expected


def test_config_list_follows_format():
    assert get_format("mediapipe").config_list is ConfigList.MEDIAPIPE
    assert get_format("openvino").config_list is ConfigList.MODEL
    assert get_format("onnx").config_list is ConfigList.MODEL


def test_match_selects_required_and_optional_entries():
    openvino = FORMATS["openvino"]
    assert openvino.match(["a.xml", "a.bin", "readme.md"]) == ["a.xml", "a.bin"]
    assert openvino.match(["a.xml"]) is None
    assert openvino.missing(["a.xml"]) == ["*.bin"]

    tensorflow = FORMATS["tensorflow"]
    assert tensorflow.match(["saved_model.pb", "variables", "notes.txt"]) == ["saved_model.pb", "variables"]


def test_detect_format(tmp_path):
    (tmp_path / "graph.pbtxt").write_text("")
    assert detect_format(tmp_path).name == "mediapipe_graph"


def test_detect_format_unknown(tmp_path):
    (tmp_path / "weights.dat").write_text("")
    assert detect_format(tmp_path) is None
