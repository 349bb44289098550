"""HTTP client for the backend's config reload and status endpoints.

The backend answers both endpoints with a JSON object keyed by model name::

    {"<model>": {"model_version_status": [{"version": 1, "state": "AVAILABLE",
                                           "status": {"error_code": "OK",
                                                      "error_message": "OK"}}]}}
"""

from typing import Dict, List, Optional, Union

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
import structlog

from ..runtime.errors import ReloadTransportError, ReloadVerificationError

logger = structlog.get_logger("runtime_adapter.backend_client")

RELOAD_PATH = "/v1/config/reload"
STATUS_PATH = "/v1/config"
SUCCESS_STATUS_CODES = (200, 201)


class VersionStatusDetail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    error_code: Optional[str] = None
    error_message: Optional[str] = None


class ModelVersionStatus(BaseModel):
    """Lifecycle state of one model version in the backend."""
    model_config = ConfigDict(extra="ignore")

    version: Optional[Union[int, str]] = None
    state: str
    status: Optional[VersionStatusDetail] = None


class ModelStatus(BaseModel):
    """Per-model entry of a backend status report."""
    model_config = ConfigDict(extra="ignore", protected_namespaces=(), populate_by_name=True)

    model_version_status: List[ModelVersionStatus] = Field(
        default_factory=list,
        validation_alias=AliasChoices("model_version_status", "modelVersionStatus"),
    )

    @property
    def states(self) -> List[str]:
        return [v.state.upper() for v in self.model_version_status]

    def error_messages(self) -> List[str]:
        return [
            v.status.error_message
            for v in self.model_version_status
            if v.status is not None and v.status.error_message and v.status.error_code != "OK"
        ]


BackendStatusReport = Dict[str, ModelStatus]


class BackendClient:
    """Talks to the backend's REST config API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Create a client.

        Parameters
        - base_url: Backend REST root, e.g. ``http://localhost:8888``
        - timeout: Per-request timeout in seconds
        - transport: Optional transport override (tests mount an ASGI app)
        """
        self.base_url = base_url
        self.http_client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def reload(self) -> BackendStatusReport:
        """Ask the backend to re-read its config document."""
        return await self._request("POST", RELOAD_PATH)

    async def get_status(self) -> BackendStatusReport:
        """Read current per-model status without triggering a reload."""
        return await self._request("GET", STATUS_PATH)

    async def close(self) -> None:
        await self.http_client.aclose()

    async def _request(self, method: str, path: str) -> BackendStatusReport:
        try:
            response = await self.http_client.request(method, path)
        except httpx.ConnectTimeout as e:
            raise ReloadTransportError(f"backend at {self.base_url} unreachable: {e!r}", stage="reloading")
        except httpx.TimeoutException as e:
            raise ReloadVerificationError(f"timed out waiting for backend {method} {path}: {e!r}", stage="reloading")
        except httpx.TransportError as e:
            raise ReloadTransportError(f"backend at {self.base_url} unreachable: {e!r}", stage="reloading")

        if response.status_code not in SUCCESS_STATUS_CODES:
            raise ReloadTransportError(
                f"backend {method} {path} returned {response.status_code}: {self._error_detail(response)}",
                stage="reloading",
            )

        try:
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError(f"expected a JSON object, got {type(body).__name__}")
            return {name: ModelStatus.model_validate(status) for name, status in body.items()}
        except (ValueError, ValidationError) as e:
            raise ReloadTransportError(f"unparsable backend response to {method} {path}: {e}", stage="reloading")

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict) and "error" in body:
            return str(body["error"])
        return str(body)[:200]
