"""Memory footprint estimation for placed models."""

import math
import os
import re
from pathlib import Path

import structlog

from .descriptor import ModelDescriptor
from .errors import SizeEstimationError
from .placement import PlacementRecord

logger = structlog.get_logger("runtime_adapter.sizing")

DEFINED_SIZE_FILENAME = "model_size.txt"


class SizeEstimator:
    """Computes the size reported to the mesh for a loaded model.

    Rules, first match wins:

    1. ``disk_size_bytes`` from the model key, scaled by the multiplier.
    2. A defined-size marker in the source directory, used verbatim.
    3. The measured bytes of the placed artifacts, scaled by the multiplier.
    """

    def __init__(self, multiplier: float, default_size_bytes: int):
        if multiplier <= 1.0:
            raise ValueError("model size multiplier must be > 1.0")
        self.multiplier = multiplier
        self.default_size_bytes = default_size_bytes

    def estimate(self, descriptor: ModelDescriptor, record: PlacementRecord) -> int:
        if descriptor.key.disk_size_bytes is not None:
            size = self._scale(descriptor.key.disk_size_bytes)
            logger.debug("Size from declared disk size", model_id=descriptor.model_id, size_bytes=size)
            return size

        defined = self.read_defined_size(record)
        if defined is not None:
            logger.debug("Size from defined-size marker", model_id=descriptor.model_id, size_bytes=defined)
            return defined

        try:
            measured = self.measure(record.version_dir)
        except OSError as e:
            raise SizeEstimationError(
                f"cannot measure artifacts under {record.version_dir}: {e}",
                model_id=record.model_id,
                stage="sizing",
            )
        size = self._scale(measured)
        if size == 0:
            size = self.default_size_bytes
        logger.debug(
            "Size from measured artifacts",
            model_id=descriptor.model_id,
            measured_bytes=measured,
            size_bytes=size,
        )
        return size

    def read_defined_size(self, record: PlacementRecord):
        """Byte count from the marker file, or None when there is no marker."""
        if record.source_dir is None:
            return None
        marker = record.source_dir / DEFINED_SIZE_FILENAME
        if not marker.is_file():
            return None
        try:
            content = marker.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            raise SizeEstimationError(f"cannot read {marker}: {e}", model_id=record.model_id, stage="sizing")
        if not re.fullmatch(r"[0-9]+", content):
            raise SizeEstimationError(
                f"{marker} does not contain a decimal byte count: {content[:40]!r}",
                model_id=record.model_id,
                stage="sizing",
            )
        return int(content)

    @staticmethod
    def measure(root: Path) -> int:
        """Sum of file sizes under ``root``, following artifact symlinks."""
        total = 0
        for dirpath, _, filenames in os.walk(root, followlinks=True):
            for name in filenames:
                total += os.stat(os.path.join(dirpath, name)).st_size
        return total

    def _scale(self, size: int) -> int:
        return math.floor(size * self.multiplier)
