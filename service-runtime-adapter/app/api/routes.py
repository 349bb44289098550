"""API routes for the runtime adapter."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
import structlog

from ..runtime.adapter_service import RuntimeAdapterService
from ..runtime.descriptor import ModelDescriptor
from ..runtime.errors import (
    InvalidRequestError,
    PersistenceError,
    PlacementError,
    ReloadTransportError,
    ReloadVerificationError,
    RuntimeAdapterError,
    SizeEstimationError,
)

logger = structlog.get_logger("runtime_adapter.api")

router = APIRouter()

ERROR_STATUS_CODES = {
    InvalidRequestError: 400,
    PlacementError: 422,
    SizeEstimationError: 422,
    PersistenceError: 500,
    ReloadTransportError: 502,
    ReloadVerificationError: 504,
}


class RuntimeStatusResponse(BaseModel):
    """Response model for the runtime status endpoint."""
    status: str = Field(..., description="STARTING until the backend reset succeeded, then READY")
    capacity_in_bytes: int = Field(..., description="Memory available for models")
    max_loading_concurrency: int = Field(..., description="Concurrent loads the adapter accepts")
    model_loading_timeout_ms: int = Field(..., description="Default load timeout")
    default_model_size_in_bytes: int = Field(..., description="Size assumed before a load reports one")
    runtime_version: str = Field(..., description="Backend version")
    limit_model_concurrency: bool = Field(False, description="Whether per-model concurrency is limited")


class LoadModelRequest(BaseModel):
    """Request model for loading a model."""
    model_config = ConfigDict(protected_namespaces=())

    model_id: str = Field(..., description="Caller-assigned model identity")
    model_type: str = Field("", description="Format hint, ignored when the model key declares one")
    model_path: str = Field(..., description="Source directory or file, absolute or relative to the model root")
    model_key: Optional[str] = Field(None, description="JSON blob with format, storage and size hints")
    timeout_ms: Optional[int] = Field(None, description="Override of the configured load timeout")


class LoadModelResponse(BaseModel):
    """Response model for a successful load."""
    model_config = ConfigDict(protected_namespaces=())

    model_id: str = Field(..., description="Loaded model identity")
    size_in_bytes: int = Field(..., description="Estimated memory footprint")


class UnloadModelRequest(BaseModel):
    """Request model for unloading a model."""
    model_config = ConfigDict(protected_namespaces=())

    model_id: str = Field(..., description="Model identity to unload")
    timeout_ms: Optional[int] = Field(None, description="Override of the configured load timeout")


class UnloadModelResponse(BaseModel):
    """Response model for a successful unload."""
    model_config = ConfigDict(protected_namespaces=())

    model_id: str = Field(..., description="Unloaded model identity")
    status: str = Field("unloaded", description="Outcome")


class ReconcileResponse(BaseModel):
    """Response model for a reconciliation pass."""
    in_sync: bool = Field(..., description="Whether the backend matches the config document")
    configured: List[str] = Field(..., description="Names in the config document")
    available: List[str] = Field(..., description="Names the backend reports as available")
    missing: List[str] = Field(..., description="Configured but not available")
    unexpected: List[str] = Field(..., description="Available but not configured")
    removed_placements: List[str] = Field(..., description="Orphaned model directories removed")


def get_adapter_service(request: Request) -> RuntimeAdapterService:
    """Get the adapter service from application state."""
    return request.app.state.adapter_service


def error_response(error: RuntimeAdapterError) -> HTTPException:
    """Translate an adapter error into an HTTP error carrying its context."""
    status_code = next(
        (code for kind, code in ERROR_STATUS_CODES.items() if isinstance(error, kind)),
        500,
    )
    logger.warning("Request failed", status_code=status_code, **error.to_dict())
    return HTTPException(status_code=status_code, detail=error.to_dict())


def _timeout_seconds(timeout_ms: Optional[int]) -> Optional[float]:
    return timeout_ms / 1000.0 if timeout_ms else None


@router.get("/runtime-status", response_model=RuntimeStatusResponse)
async def runtime_status(service: RuntimeAdapterService = Depends(get_adapter_service)):
    """Report runtime capacity; the first call resets the backend to an empty config."""
    status = await service.runtime_status()
    return RuntimeStatusResponse(
        status=status.status.value,
        capacity_in_bytes=status.capacity_in_bytes,
        max_loading_concurrency=status.max_loading_concurrency,
        model_loading_timeout_ms=status.model_loading_timeout_ms,
        default_model_size_in_bytes=status.default_model_size_in_bytes,
        runtime_version=status.runtime_version,
        limit_model_concurrency=status.limit_model_concurrency,
    )


@router.post("/models/load", response_model=LoadModelResponse)
async def load_model(
    request: LoadModelRequest,
    service: RuntimeAdapterService = Depends(get_adapter_service),
):
    """Place, configure and load a model into the backend."""
    try:
        descriptor = ModelDescriptor.from_request(
            model_id=request.model_id,
            model_type=request.model_type,
            model_path=request.model_path,
            model_key=request.model_key,
            root_model_dir=service.config.root_model_dir,
        )
        result = await service.load_model(descriptor, timeout=_timeout_seconds(request.timeout_ms))
    except RuntimeAdapterError as e:
        raise error_response(e)

    return LoadModelResponse(model_id=result.model_id, size_in_bytes=result.size_in_bytes)


@router.post("/models/unload", response_model=UnloadModelResponse)
async def unload_model(
    request: UnloadModelRequest,
    service: RuntimeAdapterService = Depends(get_adapter_service),
):
    """Remove a model from the backend config and verify it is no longer served."""
    try:
        await service.unload_model(request.model_id, timeout=_timeout_seconds(request.timeout_ms))
    except RuntimeAdapterError as e:
        raise error_response(e)

    return UnloadModelResponse(model_id=request.model_id)


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(service: RuntimeAdapterService = Depends(get_adapter_service)):
    """Re-trigger a backend reload and report drift against the config document."""
    try:
        report = await service.reconcile()
    except RuntimeAdapterError as e:
        raise error_response(e)

    return ReconcileResponse(
        in_sync=report.in_sync,
        configured=report.configured,
        available=report.available,
        missing=report.missing,
        unexpected=report.unexpected,
        removed_placements=report.removed_placements,
    )
