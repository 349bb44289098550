"""Model placement planner.

Materializes a model's artifacts under the managed root in the layout the
backend expects::

    <managed_root>/<model_id>/1/<artifact files>

Placement is built in a hidden staging directory and swapped into place once
every file has been copied, so the config store never sees a half-populated
tree. Source artifacts are only ever read.
"""

import os
import shutil
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import structlog

from .descriptor import ModelDescriptor
from .errors import PlacementError
from .formats import ModelFormat, detect_format

logger = structlog.get_logger("runtime_adapter.placement")

MODEL_VERSION_DIR = "1"
STAGING_PREFIX = ".staging-"
TRASH_PREFIX = ".trash-"


def _work_dir_owner(name: str) -> Optional[str]:
    """Model id a staging or trash directory belongs to, None for placements."""
    for prefix in (STAGING_PREFIX, TRASH_PREFIX):
        if name.startswith(prefix):
            return name[len(prefix):].rsplit("-", 1)[0]
    return None


@dataclass
class PlacementRecord:
    """Where a model's backend-ready files live."""

    model_id: str
    base_path: Path
    model_format: Optional[ModelFormat]
    source_path: Path
    files: List[Path] = field(default_factory=list)
    single_file: bool = False

    @property
    def version_dir(self) -> Path:
        return self.base_path / MODEL_VERSION_DIR

    @property
    def source_dir(self) -> Optional[Path]:
        """Top-level source directory, None for direct-to-file models."""
        return None if self.single_file else self.source_path

    @property
    def graph_path(self) -> Optional[Path]:
        if self.model_format is None or self.model_format.graph_file is None:
            return None
        if self.single_file and self.files:
            return self.files[0]
        return self.version_dir / self.model_format.graph_file


class ModelPlacementPlanner:
    """Resolves source artifacts and places them under the managed root."""

    def __init__(self, managed_root: Path, link_artifacts: bool = False):
        self.managed_root = Path(managed_root)
        self.link_artifacts = link_artifacts

    def target_dir(self, model_id: str) -> Path:
        return self.managed_root / model_id

    def place(self, descriptor: ModelDescriptor, deadline: Optional[float] = None) -> PlacementRecord:
        """Place ``descriptor``'s artifacts, replacing any earlier placement.

        ``deadline`` is a ``time.monotonic()`` value; it is checked between
        files and expiry aborts the placement.
        """
        source = descriptor.model_path
        model_id = descriptor.model_id
        if not source.exists():
            raise PlacementError(f"source path {source} does not exist", model_id=model_id, stage="placing")

        model_format = descriptor.resolve_format()
        if source.is_file():
            single_file = True
            entries = [(source, self._single_file_name(source, model_format))]
        else:
            single_file = False
            model_format, entries = self._resolve_directory(descriptor, source, model_format)

        target = self.target_dir(model_id)
        try:
            self.managed_root.mkdir(parents=True, exist_ok=True)
            staging = self.managed_root / f"{STAGING_PREFIX}{model_id}-{uuid.uuid4().hex[:8]}"
            (staging / MODEL_VERSION_DIR).mkdir(parents=True)
        except OSError as e:
            raise PlacementError(f"cannot create target directory under {self.managed_root}: {e}",
                                 model_id=model_id, stage="placing")

        try:
            placed = []
            for src, name in entries:
                if deadline is not None and time.monotonic() > deadline:
                    raise PlacementError("timed out while placing model files", model_id=model_id, stage="placing")
                self._place_entry(src, staging / MODEL_VERSION_DIR / name)
                placed.append(target / MODEL_VERSION_DIR / name)
            self._swap_into_place(staging, target)
        except PlacementError:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise PlacementError(f"failed to place model files: {e}", model_id=model_id, stage="placing")

        logger.info(
            "Model files placed",
            model_id=model_id,
            target=str(target),
            format=model_format.name if model_format else descriptor.declared_format,
            files=len(placed),
            linked=self.link_artifacts,
        )
        return PlacementRecord(
            model_id=model_id,
            base_path=target,
            model_format=model_format,
            source_path=source,
            files=placed,
            single_file=single_file,
        )

    def remove(self, model_id: str) -> bool:
        """Delete a model's placement; returns False if there was none."""
        target = self.target_dir(model_id)
        if not target.exists() and not target.is_symlink():
            return False
        shutil.rmtree(target)
        logger.info("Model placement removed", model_id=model_id, target=str(target))
        return True

    def purge_orphans(self, keep: Iterable[str], include_staging: bool = False) -> List[str]:
        """Remove every placement not named in ``keep``.

        Staging and trash directories belong to in-flight placements. They are
        only swept when ``include_staging`` is set, and never for an id in
        ``keep``.
        """
        if not self.managed_root.is_dir():
            return []
        keep = set(keep)
        removed = []
        for entry in sorted(self.managed_root.iterdir()):
            if entry.name in keep or not entry.is_dir():
                continue
            owner = _work_dir_owner(entry.name)
            if owner is not None and (owner in keep or not include_staging):
                continue
            shutil.rmtree(entry, ignore_errors=True)
            removed.append(entry.name)
        if removed:
            logger.info("Purged orphaned placements", removed=removed)
        return removed

    def _resolve_directory(
        self,
        descriptor: ModelDescriptor,
        source: Path,
        model_format: Optional[ModelFormat],
    ) -> Tuple[ModelFormat, List[Tuple[Path, str]]]:
        model_id = descriptor.model_id
        try:
            search_dirs = [source] + self._version_subdirs(source)
        except OSError as e:
            raise PlacementError(f"cannot read source directory {source}: {e}", model_id=model_id, stage="placing")

        if model_format is None:
            for directory in search_dirs:
                model_format = detect_format(directory)
                if model_format is not None:
                    break
            if model_format is None:
                raise PlacementError(
                    f"cannot determine model format of {source} (declared {descriptor.declared_format!r})",
                    model_id=model_id,
                    stage="placing",
                )

        for directory in search_dirs:
            selected = model_format.match([p.name for p in directory.iterdir()])
            if selected is not None:
                return model_format, [(directory / name, name) for name in selected]

        missing = model_format.missing([p.name for p in source.iterdir()])
        raise PlacementError(
            f"{model_format.name} model at {source} is missing required files {missing}",
            model_id=model_id,
            stage="placing",
        )

    @staticmethod
    def _version_subdirs(source: Path) -> List[Path]:
        # Only an unambiguous single version directory is looked into.
        subdirs = [p for p in source.iterdir() if p.is_dir() and p.name.isdigit()]
        return subdirs if len(subdirs) == 1 else []

    @staticmethod
    def _single_file_name(source: Path, model_format: Optional[ModelFormat]) -> str:
        suffix = model_format.single_file_suffix if model_format else None
        if suffix and not source.name.endswith(suffix):
            return f"model{suffix}"
        return source.name

    def _place_entry(self, src: Path, dest: Path) -> None:
        if self.link_artifacts:
            os.symlink(src.resolve(), dest, target_is_directory=src.is_dir())
        elif src.is_dir():
            shutil.copytree(src, dest)
        else:
            shutil.copy2(src, dest)

    def _swap_into_place(self, staging: Path, target: Path) -> None:
        if target.exists():
            trash = self.managed_root / f"{TRASH_PREFIX}{target.name}-{uuid.uuid4().hex[:8]}"
            os.replace(target, trash)
            os.replace(staging, target)
            shutil.rmtree(trash, ignore_errors=True)
        else:
            os.replace(staging, target)
