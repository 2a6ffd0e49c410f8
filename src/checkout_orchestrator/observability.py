"""StructuredLoggingHook — one JSON log entry per instrumented operation."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from .correlation import get_correlation_id
from .instrumentation import HookRegistry, get_hook_registry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

_log = logging.getLogger("checkout_orchestrator.observability")

DEFAULT_LOGGED_OPERATIONS: list[str] = [
    "orchestrator.start.*",
    "orchestrator.resume.*",
    "orchestrator.resume_by_event",
    "orchestrator.step.*",
    "orchestrator.compensate.*",
    "lease.acquire",
    "lease.release",
    "worker.recovery.run_once",
]


class StructuredLoggingHook:
    """Emits JSON log entries with operation, outcome, duration and correlation_id."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or _log

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        start = time.monotonic()
        outcome = "success"
        error_type: str | None = None
        try:
            return await next_handler()
        except Exception as exc:
            outcome = "error"
            error_type = type(exc).__name__
            raise
        finally:
            try:
                entry = {
                    "operation": operation,
                    "outcome": outcome,
                    "duration_ms": round((time.monotonic() - start) * 1000, 2),
                    "correlation_id": get_correlation_id()
                    or attributes.get("correlation_id"),
                    "attributes": {k: str(v) for k, v in attributes.items()},
                }
                if error_type is not None:
                    entry["error_type"] = error_type
                self._log.info(json.dumps(entry))
            except Exception:  # noqa: BLE001
                _log.debug("Failed to emit structured log entry", exc_info=True)


def install_structured_logging(
    registry: HookRegistry | None = None,
    *,
    operations: list[str] | None = None,
    logger: logging.Logger | None = None,
) -> StructuredLoggingHook:
    """Register a :class:`StructuredLoggingHook` on *registry* (context default)."""
    hook = StructuredLoggingHook(logger)
    (registry or get_hook_registry()).register(
        hook,
        priority=100,
        operations=operations or DEFAULT_LOGGED_OPERATIONS,
    )
    return hook
