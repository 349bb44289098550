"""Error taxonomy for the runtime adapter.

Every error carries the model id and the stage the request had reached so the
caller can log and alert without parsing messages. ``retryable`` tells the
mesh whether re-issuing the same request is expected to help.
"""

from typing import Any, Dict, Optional


class RuntimeAdapterError(Exception):
    """Base class for all adapter failures surfaced to the RPC caller."""

    retryable: bool = True

    def __init__(
        self,
        message: str,
        model_id: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.model_id = model_id
        self.stage = stage

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "model_id": self.model_id,
            "stage": self.stage,
            "retryable": self.retryable,
        }

    def __str__(self) -> str:
        prefix = f"[{self.model_id}] " if self.model_id else ""
        return f"{prefix}{self.message}"


class InvalidRequestError(RuntimeAdapterError):
    """Malformed model id or model key."""

    retryable = False


class PlacementError(RuntimeAdapterError):
    """Source artifacts missing or unreadable, or the target is unwritable."""


class SizeEstimationError(RuntimeAdapterError):
    """A defined-size marker exists but does not hold a byte count."""


class PersistenceError(RuntimeAdapterError):
    """The backend config document could not be written.

    The previous on-disk document is left intact.
    """


class ReloadTransportError(RuntimeAdapterError):
    """The backend was unreachable or answered with a non-success status.

    The config document has already changed; the backend may not have seen it.
    """


class ReloadVerificationError(RuntimeAdapterError):
    """The backend answered but the model never reached the expected state."""
