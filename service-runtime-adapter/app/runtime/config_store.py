"""Backend config document store.

The document is the single source of truth for which models the backend
should serve. This store keeps an in-memory mirror, rewrites the whole
document on every mutation and persists it with write-then-rename so the
backend's config watcher never reads a partial file.

Mutations must happen while holding ``lock``; the service keeps it held
across mutate, persist and the reload that follows.
"""

import asyncio
import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .errors import PersistenceError
from .formats import ConfigList

logger = structlog.get_logger("runtime_adapter.config_store")


def entry_name(config_list: ConfigList, entry: Dict[str, Any]) -> Optional[str]:
    if config_list is ConfigList.MODEL:
        return entry.get("config", {}).get("name")
    return entry.get("name")


def entry_base_path(config_list: ConfigList, entry: Dict[str, Any]) -> Optional[str]:
    if config_list is ConfigList.MODEL:
        return entry.get("config", {}).get("base_path")
    return entry.get("base_path")


def build_entry(config_list: ConfigList, name: str, base_path: str, **extra: Any) -> Dict[str, Any]:
    """Build a list entry in the shape the backend expects for ``config_list``."""
    body = {"name": name, "base_path": base_path, **{k: v for k, v in extra.items() if v is not None}}
    if config_list is ConfigList.MODEL:
        return {"config": body}
    return body


class BackendConfigStore:
    """Owns the backend's multi-model config document."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock = asyncio.Lock()
        self._document = self._read_existing()

    @property
    def document(self) -> Dict[str, Any]:
        """A copy of the in-memory document."""
        return copy.deepcopy(self._document)

    def names(self) -> List[str]:
        return [
            name
            for config_list in ConfigList
            for name in (entry_name(config_list, e) for e in self._document[config_list.value])
            if name
        ]

    def find(self, name: str) -> Optional[Dict[str, Any]]:
        for config_list in ConfigList:
            for entry in self._document[config_list.value]:
                if entry_name(config_list, entry) == name:
                    return copy.deepcopy(entry)
        return None

    def upsert(self, config_list: ConfigList, entry: Dict[str, Any]) -> None:
        """Insert or replace the entry named like ``entry`` in ``config_list``.

        A same-named entry in the other list is dropped so each name appears
        at most once across the document. Other entries keep their position.
        """
        name = entry_name(config_list, entry)
        if not name:
            raise ValueError("config entry has no name")
        document = copy.deepcopy(self._document)
        for other in ConfigList:
            if other is not config_list:
                document[other.value] = [e for e in document[other.value] if entry_name(other, e) != name]

        entries = document[config_list.value]
        for i, existing in enumerate(entries):
            if entry_name(config_list, existing) == name:
                entries[i] = copy.deepcopy(entry)
                break
        else:
            entries.append(copy.deepcopy(entry))

        self._commit(document)
        logger.info("Config entry upserted", model_id=name, config_list=config_list.value)

    def remove(self, name: str) -> bool:
        """Remove the first entry named ``name``; unknown names are a no-op."""
        document = copy.deepcopy(self._document)
        for config_list in ConfigList:
            entries = document[config_list.value]
            for i, entry in enumerate(entries):
                if entry_name(config_list, entry) == name:
                    del entries[i]
                    self._commit(document)
                    logger.info("Config entry removed", model_id=name, config_list=config_list.value)
                    return True
        # Persist anyway so the backend reload that follows reads what we hold.
        self._commit(document)
        logger.info("No config entry to remove", model_id=name)
        return False

    def clear(self) -> None:
        """Empty both lists, keeping any other top-level settings."""
        document = copy.deepcopy(self._document)
        for config_list in ConfigList:
            document[config_list.value] = []
        self._commit(document)
        logger.info("Config document cleared", path=str(self.path))

    def persist(self) -> None:
        """Write the in-memory document to disk atomically."""
        self._write(self._document)

    def _commit(self, document: Dict[str, Any]) -> None:
        # The mirror only changes once the new document is on disk.
        self._write(document)
        self._document = document

    def _write(self, document: Dict[str, Any]) -> None:
        directory = self.path.parent
        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "w") as f:
                os.fchmod(f.fileno(), 0o644)
                json.dump(document, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"failed to write backend config {self.path}: {e}", stage="config_update")

    def _read_existing(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {}
        if self.path.is_file():
            try:
                with open(self.path, "r") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    document = loaded
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable backend config", path=str(self.path), error=str(e))
        for config_list in ConfigList:
            if not isinstance(document.get(config_list.value), list):
                document[config_list.value] = []
        return document
