"""Reload coordinator.

Triggers a backend config reload and reduces the returned per-model,
per-version status to a pass/fail verdict for the model a request targets.
By default the reload response is checked once; with more than one verify
attempt configured, transitional states are re-read from the status endpoint
with backoff.
"""

import time
from typing import Callable, Optional

import structlog

from libs.common.logging import log_performance
from libs.common.metrics import MetricsCollector
from ..adapters.backend_client import BackendClient, BackendStatusReport
from ..adapters.retry_handler import RetryConfig, RetryHandler
from .errors import ReloadTransportError, ReloadVerificationError

logger = structlog.get_logger("runtime_adapter.reload")

AVAILABLE_STATES = frozenset({"AVAILABLE"})
UNLOADED_STATES = frozenset({"END", "UNLOADING"})
TRANSITIONAL_LOAD_STATES = frozenset({"START", "LOADING"})


def is_loaded(report: BackendStatusReport, name: str) -> bool:
    status = report.get(name)
    return status is not None and any(s in AVAILABLE_STATES for s in status.states)


def is_unloaded(report: BackendStatusReport, name: str) -> bool:
    status = report.get(name)
    return status is None or all(s in UNLOADED_STATES for s in status.states)


def describe(report: BackendStatusReport, name: str) -> str:
    status = report.get(name)
    if status is None:
        return "absent from backend status"
    text = f"states {status.states}"
    errors = status.error_messages()
    if errors:
        text += f", errors {errors}"
    return text


class ReloadCoordinator:
    """Signals the backend to reload and verifies the outcome for one model."""

    def __init__(
        self,
        client: BackendClient,
        retry_config: Optional[RetryConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.client = client
        self.retry_handler = RetryHandler(retry_config or RetryConfig(max_attempts=1))
        self.metrics = metrics

    async def reload(self) -> BackendStatusReport:
        """Trigger a reload and return the backend's status report."""
        start_time = time.time()
        outcome = "success"
        try:
            return await self.client.reload()
        except ReloadTransportError:
            outcome = "transport_error"
            raise
        except ReloadVerificationError:
            outcome = "timeout"
            raise
        finally:
            duration = time.time() - start_time
            log_performance("backend_reload", duration * 1000, outcome=outcome)
            if self.metrics is not None:
                self.metrics.record_backend_reload(outcome, duration)

    async def reload_and_verify_loaded(self, name: str) -> BackendStatusReport:
        """Reload, then require at least one AVAILABLE version of ``name``."""
        report = await self._reload_and_settle(
            name,
            done=lambda r: is_loaded(r, name) or not self._loading(r, name),
            operation="verify_loaded",
        )
        if not is_loaded(report, name):
            raise ReloadVerificationError(
                f"model did not become available after reload: {describe(report, name)}",
                model_id=name,
                stage="reloading",
            )
        logger.info("Backend reports model available", model_id=name)
        return report

    async def reload_and_verify_unloaded(self, name: str) -> BackendStatusReport:
        """Reload, then require ``name`` to be absent or only in terminal states."""
        report = await self._reload_and_settle(
            name,
            done=lambda r: is_unloaded(r, name),
            operation="verify_unloaded",
        )
        if not is_unloaded(report, name):
            raise ReloadVerificationError(
                f"model still served after reload: {describe(report, name)}",
                model_id=name,
                stage="reloading",
            )
        logger.info("Backend reports model unloaded", model_id=name)
        return report

    async def _reload_and_settle(
        self,
        name: str,
        done: Callable[[BackendStatusReport], bool],
        operation: str,
    ) -> BackendStatusReport:
        try:
            report = await self.reload()
            return await self.retry_handler.poll_until(
                self.client.get_status,
                done,
                operation_name=f"{operation}:{name}",
                initial=report,
            )
        except (ReloadTransportError, ReloadVerificationError) as e:
            e.model_id = e.model_id or name
            raise

    @staticmethod
    def _loading(report: BackendStatusReport, name: str) -> bool:
        status = report.get(name)
        return status is not None and any(s in TRANSITIONAL_LOAD_STATES for s in status.states)
