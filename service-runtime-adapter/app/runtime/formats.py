"""Model format strategies.

One table answers "which files does this format need, where do they go, and
which config list serves it". Placement and config entry construction both
read from here.
"""

import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class ConfigList(str, Enum):
    """Backend config document lists."""
    MODEL = "model_config_list"
    MEDIAPIPE = "mediapipe_config_list"


@dataclass(frozen=True)
class ModelFormat:
    """Artifact requirements of a backend-native model format.

    ``required`` and ``optional`` are glob patterns matched against the
    top-level entries of a source directory; every required pattern must
    match at least one entry.
    """

    name: str
    config_list: ConfigList
    required: Tuple[str, ...]
    optional: Tuple[str, ...] = ()
    single_file_suffix: Optional[str] = None
    graph_file: Optional[str] = None
    aliases: Tuple[str, ...] = field(default=())

    def match(self, names: List[str]) -> Optional[List[str]]:
        """Return the entries to place, or None if a required pattern is unmatched."""
        selected: List[str] = []
        for pattern in self.required:
            hits = sorted(fnmatch.filter(names, pattern))
            if not hits:
                return None
            selected.extend(h for h in hits if h not in selected)
        for pattern in self.optional:
            selected.extend(h for h in sorted(fnmatch.filter(names, pattern)) if h not in selected)
        return selected

    def missing(self, names: List[str]) -> List[str]:
        return [p for p in self.required if not fnmatch.filter(names, p)]


FORMATS: Dict[str, ModelFormat] = {
    fmt.name: fmt
    for fmt in (
        ModelFormat(
            name="openvino",
            config_list=ConfigList.MODEL,
            required=("*.xml", "*.bin"),
            aliases=("ir", "openvino_ir"),
        ),
        ModelFormat(
            name="onnx",
            config_list=ConfigList.MODEL,
            required=("*.onnx",),
            single_file_suffix=".onnx",
        ),
        ModelFormat(
            name="tensorflow",
            config_list=ConfigList.MODEL,
            required=("saved_model.pb",),
            optional=("variables", "assets"),
            aliases=("tf", "saved_model"),
        ),
        ModelFormat(
            name="paddle",
            config_list=ConfigList.MODEL,
            required=("*.pdmodel", "*.pdiparams"),
            aliases=("paddlepaddle",),
        ),
        ModelFormat(
            name="mediapipe_graph",
            config_list=ConfigList.MEDIAPIPE,
            required=("graph.pbtxt",),
            optional=("subconfig.json",),
            graph_file="graph.pbtxt",
            aliases=("mediapipe",),
        ),
    )
}

_ALIASES: Dict[str, str] = {
    alias: fmt.name for fmt in FORMATS.values() for alias in (fmt.name, *fmt.aliases)
}


def normalize_format_name(raw: Optional[str]) -> Optional[str]:
    """Map a caller-supplied format name onto a known format, or None."""
    if not raw:
        return None
    name = raw.strip().lower()
    if name.startswith("rt:"):
        name = name[3:]
    return _ALIASES.get(name)


def get_format(name: Optional[str]) -> Optional[ModelFormat]:
    canonical = normalize_format_name(name)
    return FORMATS.get(canonical) if canonical else None


def detect_format(source_dir: Path) -> Optional[ModelFormat]:
    """Pick the first format whose required artifacts all exist in ``source_dir``."""
    names = [p.name for p in source_dir.iterdir()]
    for fmt in FORMATS.values():
        if fmt.match(names) is not None:
            return fmt
    return None
