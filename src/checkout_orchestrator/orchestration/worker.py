"""RunRecoveryWorker — reactive worker for runs whose holder crashed."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from ..correlation import get_correlation_id
from ..instrumentation import get_hook_registry
from ..ports.background_worker import IBackgroundWorker
from ..primitives.exceptions import ConcurrencyError, RunRolledBackError

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

logger = logging.getLogger("checkout_orchestrator.worker")


class RunRecoveryWorker(IBackgroundWorker):
    """
    Reactive background worker for run recovery.

    A ``RUNNING`` context whose ``updated_at`` is older than ``stale_after``
    seconds lost its holder mid-sequence; the worker re-drives it with
    :meth:`Orchestrator.resume`, which skips every step already recorded as
    successful. Runs still leased elsewhere are skipped until the next cycle.

    Uses an event-driven trigger plus polling fallback. Call :meth:`trigger`
    to wake immediately; otherwise the worker runs every ``poll_interval``
    seconds.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        *,
        poll_interval: float | None = None,
        stale_after: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        settings = orchestrator.settings
        self.orchestrator = orchestrator
        self._poll_interval = poll_interval or settings.recovery_poll_interval
        self.stale_after = stale_after if stale_after is not None else settings.stale_after
        self.batch_size = batch_size or settings.recovery_batch_size
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._trigger = asyncio.Event()

    def trigger(self) -> None:
        """Wake the worker immediately (e.g. after a run stalls)."""
        self._trigger.set()

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("RunRecoveryWorker already running")
            return
        self._running = True
        self.orchestrator.set_recovery_trigger(self.trigger)
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "RunRecoveryWorker started (poll_interval=%.1fs, stale_after=%.1fs)",
            self._poll_interval,
            self.stale_after,
        )

    async def stop(self) -> None:
        """Stop the background loop gracefully."""
        if not self._running:
            return
        self._running = False
        self._trigger.set()
        self.orchestrator.set_recovery_trigger(None)
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.info("RunRecoveryWorker stopped")

    async def _run_loop(self) -> None:
        while self._running:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._trigger.wait(), timeout=self._poll_interval
                )
            self._trigger.clear()
            try:
                await self._process_cycle()
            except Exception as exc:  # noqa: BLE001
                logger.error("Error in RunRecoveryWorker cycle: %s", exc)

    async def _process_cycle(self) -> int:
        """Resume one batch of stale runs; returns how many were re-driven."""
        threshold = datetime.now(timezone.utc) - timedelta(seconds=self.stale_after)
        stale = await self.orchestrator.store.find_stale_running(
            threshold, limit=self.batch_size
        )
        recovered = 0
        for context in stale:
            try:
                result = await self.orchestrator.resume(context.id)
            except ConcurrencyError:
                logger.debug("Run %s is leased elsewhere; skipping", context.id)
                continue
            except RunRolledBackError as exc:
                logger.info("Recovered run %s rolled back: %s", context.id, exc)
                recovered += 1
                continue
            except Exception as exc:  # noqa: BLE001
                logger.error("Error recovering run %s: %s", context.id, exc)
                continue
            logger.info("Recovered run %s (%s)", context.id, result.status)
            recovered += 1
        return recovered

    async def run_once(self) -> int:
        """Execute a single cycle (tests or manual trigger)."""
        registry = get_hook_registry()
        return await registry.execute_all(
            "worker.recovery.run_once",
            {"correlation_id": get_correlation_id()},
            self._process_cycle,
        )
