"""Load request descriptors.

The mesh hands the adapter a model id, a format hint, a source path and an
opaque JSON "model key". This module parses the key and resolves the pieces
the rest of the pipeline needs.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidRequestError
from .formats import ModelFormat, get_format


class ModelTypeSpec(BaseModel):
    """Structured ``model_type`` entry of a model key."""
    model_config = ConfigDict(extra="ignore")

    name: str
    version: Optional[str] = None


class ModelKey(BaseModel):
    """Optional hints carried in the model key JSON blob."""
    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    model_type: Optional[Union[ModelTypeSpec, str]] = None
    storage_key: Optional[str] = None
    bucket: Optional[str] = None
    disk_size_bytes: Optional[int] = Field(default=None, ge=0)

    @property
    def format_name(self) -> Optional[str]:
        if isinstance(self.model_type, ModelTypeSpec):
            return self.model_type.name
        return self.model_type

    @property
    def format_version(self) -> Optional[str]:
        if isinstance(self.model_type, ModelTypeSpec):
            return self.model_type.version
        return None


def parse_model_key(raw: Optional[str], model_id: Optional[str] = None) -> ModelKey:
    """Parse the model key JSON; an empty key carries no hints."""
    if raw is None or not raw.strip():
        return ModelKey()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidRequestError(f"model key is not valid JSON: {e}", model_id=model_id, stage="requested")
    if not isinstance(data, dict):
        raise InvalidRequestError("model key must be a JSON object", model_id=model_id, stage="requested")
    try:
        return ModelKey.model_validate(data)
    except ValidationError as e:
        raise InvalidRequestError(f"invalid model key: {e}", model_id=model_id, stage="requested")


def validate_model_id(model_id: str) -> str:
    """Model ids name directories under the managed root."""
    if not model_id or not model_id.strip():
        raise InvalidRequestError("model id must not be empty", stage="requested")
    if model_id in (".", "..") or "/" in model_id or "\\" in model_id or "\x00" in model_id:
        raise InvalidRequestError(f"model id {model_id!r} is not a valid directory name",
                                  model_id=model_id, stage="requested")
    return model_id


@dataclass
class ModelDescriptor:
    """A caller-supplied load request after parsing."""

    model_id: str
    model_type: str
    model_path: Path
    key: ModelKey = field(default_factory=ModelKey)

    @classmethod
    def from_request(
        cls,
        model_id: str,
        model_type: str,
        model_path: str,
        model_key: Optional[str],
        root_model_dir: Union[str, Path],
    ) -> "ModelDescriptor":
        """Build a descriptor; relative paths resolve against ``root_model_dir``."""
        validate_model_id(model_id)
        if not model_path:
            raise InvalidRequestError("model path must not be empty", model_id=model_id, stage="requested")
        path = Path(model_path)
        if not path.is_absolute():
            path = Path(root_model_dir) / path
        return cls(
            model_id=model_id,
            model_type=model_type or "",
            model_path=path,
            key=parse_model_key(model_key, model_id),
        )

    @property
    def declared_format(self) -> Optional[str]:
        """The format name as declared, key first, hint second."""
        return self.key.format_name or self.model_type or None

    def resolve_format(self) -> Optional[ModelFormat]:
        """The key's format wins; an unrecognized hint is ignored."""
        return get_format(self.key.format_name) or get_format(self.model_type)
