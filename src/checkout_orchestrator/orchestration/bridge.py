"""CompletionBridge — routes external completion events into the orchestrator."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..envelope import MessageEnvelope
from ..primitives.exceptions import UnknownCorrelationError, ValidationError

if TYPE_CHECKING:
    from ..ports.messaging import IMessageConsumer
    from .orchestrator import Orchestrator, RunResult

logger = logging.getLogger("checkout_orchestrator.bridge")

EXTERNAL_SUCCESS = "external.success"
EXTERNAL_FAILURE = "external.failure"


def _as_dict(message: Any) -> dict[str, Any]:
    if isinstance(message, MessageEnvelope):
        data = dict(message.payload)
        if message.correlation_id and "correlation_id" not in data:
            data["correlation_id"] = message.correlation_id
        return data
    if isinstance(message, dict):
        return dict(message)
    raise ValidationError(
        {"message": [f"unsupported completion message {type(message).__name__}"]}
    )


def _correlation_id(data: dict[str, Any]) -> str:
    correlation_id = data.get("correlation_id") or data.get("correlationId")
    if not correlation_id:
        raise ValidationError({"correlation_id": ["missing from completion event"]})
    return str(correlation_id)


class CompletionBridge:
    """
    Inbound adapter for ``external.success`` / ``external.failure``.

    Messages are dicts (or :class:`MessageEnvelope`) carrying
    ``correlation_id`` plus ``payload`` (success) or ``reason`` (failure).
    Unknown correlations are logged and dropped; lock contention propagates
    so an at-least-once transport redelivers the event later.

    Example:
        ```python
        bridge = CompletionBridge(orchestrator)
        await bridge.bind(consumer)
        ```
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        *,
        success_topic: str | None = None,
        failure_topic: str | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        settings = orchestrator.settings
        self.success_topic = success_topic or settings.success_topic
        self.failure_topic = failure_topic or settings.failure_topic

    async def bind(
        self, consumer: IMessageConsumer, queue_name: str | None = None
    ) -> None:
        """Subscribe both handlers on *consumer*."""
        await consumer.subscribe(self.success_topic, self.on_success, queue_name)
        await consumer.subscribe(self.failure_topic, self.on_failure, queue_name)
        logger.info(
            "Completion bridge bound to %s / %s", self.success_topic, self.failure_topic
        )

    async def on_success(self, message: Any, **_: Any) -> RunResult | None:
        data = _as_dict(message)
        payload = data.get("payload")
        return await self._dispatch(
            _correlation_id(data),
            payload if isinstance(payload, dict) else {},
            succeeded=True,
        )

    async def on_failure(self, message: Any, **_: Any) -> RunResult | None:
        data = _as_dict(message)
        payload = data.get("payload")
        body = dict(payload) if isinstance(payload, dict) else {}
        body.setdefault("reason", data.get("reason") or "external failure")
        return await self._dispatch(_correlation_id(data), body, succeeded=False)

    async def _dispatch(
        self, correlation_id: str, payload: dict[str, Any], *, succeeded: bool
    ) -> RunResult | None:
        try:
            result = await self._orchestrator.resume_by_event(
                correlation_id, payload, succeeded=succeeded
            )
        except UnknownCorrelationError:
            logger.warning(
                "Dropping %s event: unknown correlation_id %s",
                "success" if succeeded else "failure",
                correlation_id,
            )
            return None
        logger.info(
            "Run %s is %s after %s event",
            result.execution_context_id,
            result.status,
            "success" if succeeded else "failure",
        )
        return result
