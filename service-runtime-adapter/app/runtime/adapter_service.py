"""Runtime adapter service.

Implements the mesh-facing load/unload/status contract by sequencing the
placement planner, size estimator, config store and reload coordinator.

Design
- Requests for one model id are serialized; different ids place and size
  their files in parallel
- The config store lock is held across mutate, persist and reload, so the
  document and the backend observe mutations in one global order
- Once a mutation is persisted the rest of the request is shielded from
  caller cancellation; an abandoned request still runs to completion
- Completed steps are never rolled back. A failed load may leave the model
  placed and configured; a retried load or an unload repairs it
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from libs.common.config import RuntimeAdapterConfig
from libs.common.metrics import MetricsCollector, get_metrics_collector
from ..adapters.backend_client import BackendClient
from ..adapters.retry_handler import RetryConfig
from .config_store import BackendConfigStore, build_entry
from .descriptor import ModelDescriptor, validate_model_id
from .errors import ReloadVerificationError, RuntimeAdapterError
from .formats import ConfigList
from .placement import ModelPlacementPlanner, PlacementRecord
from .reload import ReloadCoordinator, is_loaded
from .sizing import SizeEstimator

logger = structlog.get_logger("runtime_adapter.service")


class RequestStage(str, Enum):
    """Per-request lifecycle states."""
    REQUESTED = "requested"
    PLACED = "placed"
    CONFIG_UPDATED = "config_updated"
    RELOADED = "reloaded"
    AVAILABLE = "available"
    REMOVED = "removed"
    FAILED = "failed"


# Failing step -> last stage the request completed before it.
_REACHED_BEFORE = {
    "requested": RequestStage.REQUESTED,
    "placing": RequestStage.REQUESTED,
    "sizing": RequestStage.PLACED,
    "config_update": RequestStage.PLACED,
    "reloading": RequestStage.CONFIG_UPDATED,
}


class RuntimeState(str, Enum):
    STARTING = "STARTING"
    READY = "READY"


@dataclass
class RuntimeStatus:
    status: RuntimeState
    capacity_in_bytes: int
    max_loading_concurrency: int
    model_loading_timeout_ms: int
    default_model_size_in_bytes: int
    runtime_version: str
    limit_model_concurrency: bool = False


@dataclass
class LoadResult:
    model_id: str
    size_in_bytes: int
    base_path: str


@dataclass
class ReconcileReport:
    """Drift between the config document and the backend's live state."""
    configured: List[str] = field(default_factory=list)
    available: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)
    removed_placements: List[str] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.missing and not self.unexpected


class RuntimeAdapterService:
    """Load/unload/status orchestration for a single backend."""

    def __init__(
        self,
        config: RuntimeAdapterConfig,
        backend_client: Optional[BackendClient] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Wire the pipeline components from ``config``.

        Parameters
        - config: ``RuntimeAdapterConfig`` with memory budget, paths and ports
        - backend_client: Optional pre-built client (tests inject a mock backend)
        - metrics: Optional collector; defaults to the process-wide one

        Raises ``ValueError`` when the memory budget leaves no capacity.
        """
        self.config = config
        self.capacity_bytes = config.capacity_bytes
        if self.capacity_bytes <= 0:
            raise ValueError(
                f"container memory {config.container_mem_req_bytes} does not exceed the "
                f"reserved {config.mem_buffer_bytes} bytes; set CONTAINER_MEM_REQ_BYTES"
            )

        self.metrics = metrics or get_metrics_collector("runtime-adapter")
        self.planner = ModelPlacementPlanner(config.managed_model_root, config.link_artifacts)
        self.estimator = SizeEstimator(config.model_size_multiplier, config.default_model_size_bytes)
        self.config_store = BackendConfigStore(Path(config.model_config_file))
        self.backend_client = backend_client or BackendClient(
            config.runtime_base_url, timeout=config.reload_timeout_seconds
        )
        self.coordinator = ReloadCoordinator(
            self.backend_client,
            RetryConfig(
                max_attempts=config.reload_verify_attempts,
                base_delay=config.reload_verify_delay_seconds,
            ),
            metrics=self.metrics,
        )

        self._state = RuntimeState.STARTING
        self._bootstrap_lock = asyncio.Lock()
        self._reset_idle = asyncio.Event()
        self._reset_idle.set()
        self._model_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @property
    def ready(self) -> bool:
        return self._state is RuntimeState.READY

    async def runtime_status(self) -> RuntimeStatus:
        """Report capacity; the first call resets the backend to an empty config."""
        if not self.ready:
            async with self._bootstrap_lock:
                if not self.ready:
                    try:
                        await self.reset()
                        self._state = RuntimeState.READY
                    except RuntimeAdapterError as e:
                        logger.warning("Backend reset failed, still starting", error=str(e), kind=e.kind)

        return RuntimeStatus(
            status=self._state,
            capacity_in_bytes=self.capacity_bytes,
            max_loading_concurrency=self.config.max_loading_concurrency,
            model_loading_timeout_ms=self.config.loadtime_timeout_ms,
            default_model_size_in_bytes=self.config.default_model_size_bytes,
            runtime_version=self.config.runtime_version,
        )

    async def reset(self) -> None:
        """Clear the config document, reload the backend and drop stale placements.

        Requests arriving during the reset wait for it to finish; placements of
        requests already in flight are kept.
        """
        self._reset_idle.clear()
        try:
            async with self.config_store.lock:
                self.config_store.clear()
                self.metrics.set_models_configured(0)
                report = await self.coordinator.reload()
                in_flight = set(self._model_locks)
                removed = await asyncio.to_thread(self.planner.purge_orphans, in_flight, True)
        finally:
            self._reset_idle.set()
        still_available = sorted(name for name in report if is_loaded(report, name))
        if still_available:
            logger.warning("Backend still serving models after reset", models=still_available)
        logger.info("Backend reset to empty config", removed_placements=len(removed))

    async def load_model(self, descriptor: ModelDescriptor, timeout: Optional[float] = None) -> LoadResult:
        """Place, size, configure and verify a model.

        ``timeout`` (seconds) bounds the file placement and, separately, the
        reload verification. Defaults to the configured load timeout.
        """
        model_id = descriptor.model_id
        timeout = self._timeout(timeout)
        log = logger.bind(model_id=model_id, operation="load")
        start_time = time.time()
        stage = RequestStage.REQUESTED
        log.info("Load requested", model_path=str(descriptor.model_path), format=descriptor.declared_format)

        try:
            async with self._serialized(model_id):
                deadline = time.monotonic() + timeout
                record = await asyncio.to_thread(self.planner.place, descriptor, deadline)
                stage = RequestStage.PLACED
                size = await asyncio.to_thread(self.estimator.estimate, descriptor, record)
                log.info("Model placed", stage=stage.value, size_bytes=size, base_path=str(record.base_path))

                config_list, entry = self._entry_for(record)
                await self._run_shielded(
                    self._apply(
                        model_id,
                        lambda: self.config_store.upsert(config_list, entry),
                        self.coordinator.reload_and_verify_loaded,
                        timeout,
                    )
                )
                stage = RequestStage.AVAILABLE
        except RuntimeAdapterError as e:
            self._fail(log, "load", e, start_time)
            raise

        log.info("Model available", stage=stage.value, size_bytes=size)
        self.metrics.record_model_request("load", "success", stage.value, time.time() - start_time)
        return LoadResult(model_id=model_id, size_in_bytes=size, base_path=str(record.base_path))

    async def unload_model(self, model_id: str, timeout: Optional[float] = None) -> None:
        """Remove a model's config entry and verify the backend dropped it.

        Unloading an unknown model succeeds as long as the backend does not
        report it as served.
        """
        validate_model_id(model_id)
        timeout = self._timeout(timeout)
        log = logger.bind(model_id=model_id, operation="unload")
        start_time = time.time()
        log.info("Unload requested")

        try:
            async with self._serialized(model_id):
                await self._run_shielded(
                    self._apply(
                        model_id,
                        lambda: self.config_store.remove(model_id),
                        self.coordinator.reload_and_verify_unloaded,
                        timeout,
                    )
                )
                if self.config.cleanup_on_unload:
                    await self._cleanup_placement(model_id)
        except RuntimeAdapterError as e:
            self._fail(log, "unload", e, start_time)
            raise

        log.info("Model removed", stage=RequestStage.REMOVED.value)
        self.metrics.record_model_request("unload", "success", RequestStage.REMOVED.value, time.time() - start_time)

    async def reconcile(self) -> ReconcileReport:
        """Re-assert the held document, reload, and report drift.

        Placements no config entry refers to (and no request is working on)
        are removed as part of the pass.
        """
        async with self.config_store.lock:
            self.config_store.persist()
            report = await self.coordinator.reload()
            configured = self.config_store.names()

        available = sorted(name for name in report if is_loaded(report, name))
        result = ReconcileReport(
            configured=configured,
            available=available,
            missing=[name for name in configured if name not in available],
            unexpected=[name for name in available if name not in configured],
        )
        keep = set(configured) | set(self._model_locks)
        result.removed_placements = await asyncio.to_thread(self.planner.purge_orphans, keep)

        if result.in_sync:
            logger.info("Backend in sync with config document", models=len(configured))
        else:
            logger.warning("Backend drift detected", missing=result.missing, unexpected=result.unexpected)
        return result

    async def close(self) -> None:
        await self.backend_client.close()

    async def _apply(
        self,
        model_id: str,
        mutate: Callable[[], Any],
        verify: Callable[[str], Awaitable[Any]],
        timeout: float,
    ) -> None:
        """Mutate and persist the document, then reload and verify, as one critical section."""
        try:
            async with self.config_store.lock:
                mutate()
                self.metrics.set_models_configured(len(self.config_store.names()))
                logger.info("Config document updated", model_id=model_id, stage=RequestStage.CONFIG_UPDATED.value)
                try:
                    await asyncio.wait_for(verify(model_id), timeout=timeout)
                except asyncio.TimeoutError:
                    raise ReloadVerificationError(
                        f"backend did not confirm the change within {timeout:.1f}s",
                        model_id=model_id,
                        stage="reloading",
                    )
        except RuntimeAdapterError as e:
            e.model_id = e.model_id or model_id
            raise

    async def _run_shielded(self, coro: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(coro)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(self._log_abandoned)
            raise

    @staticmethod
    def _log_abandoned(task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Abandoned request finished with error", error=str(error))
        else:
            logger.info("Abandoned request finished")

    @asynccontextmanager
    async def _serialized(self, model_id: str):
        await self._reset_idle.wait()
        lock, users = self._model_locks.get(model_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._model_locks[model_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._model_locks[model_id]
            if users <= 1:
                del self._model_locks[model_id]
            else:
                self._model_locks[model_id] = (lock, users - 1)

    async def _cleanup_placement(self, model_id: str) -> None:
        try:
            await asyncio.to_thread(self.planner.remove, model_id)
        except OSError as e:
            logger.warning("Placement cleanup failed", model_id=model_id, error=str(e))

    def _entry_for(self, record: PlacementRecord) -> Tuple[ConfigList, Dict[str, Any]]:
        config_list = record.model_format.config_list if record.model_format else ConfigList.MODEL
        graph_path = record.graph_path
        entry = build_entry(
            config_list,
            record.model_id,
            str(record.base_path),
            graph_path=str(graph_path) if graph_path is not None else None,
        )
        return config_list, entry

    def _timeout(self, timeout: Optional[float]) -> float:
        if timeout is None or timeout <= 0:
            return self.config.loadtime_timeout_ms / 1000.0
        return timeout

    def _fail(self, log: Any, operation: str, error: RuntimeAdapterError, start_time: float) -> None:
        reached = _REACHED_BEFORE.get(error.stage or "", RequestStage.REQUESTED)
        if isinstance(error, ReloadVerificationError):
            reached = RequestStage.RELOADED
        elif operation == "unload" and reached is RequestStage.PLACED:
            reached = RequestStage.REQUESTED
        log.error(
            f"{operation.capitalize()} failed",
            stage=RequestStage.FAILED.value,
            last_stage=reached.value,
            failed_step=error.stage,
            kind=error.kind,
            error=error.message,
        )
        self.metrics.record_model_request(operation, error.kind, reached.value, time.time() - start_time)
