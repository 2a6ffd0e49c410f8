"""Run notifications — ``run.updated`` and ``run.confirmed``."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..correlation import get_correlation_id
from ..envelope import MessageEnvelope

if TYPE_CHECKING:
    from ..ports.messaging import IMessagePublisher
    from .state import ExecutionContext

logger = logging.getLogger("checkout_orchestrator.notifications")

RUN_UPDATED = "run.updated"
RUN_CONFIRMED = "run.confirmed"


class RunNotifier:
    """
    Publishes run lifecycle notifications as :class:`MessageEnvelope`.

    The payload is ``{run_id, correlation_id, entity_ids, payload}``.
    Delivery is at-least-once: consumers must tolerate duplicates keyed by
    ``run_id``. With no publisher configured notifications are only logged.
    """

    def __init__(
        self,
        publisher: IMessagePublisher | None = None,
        *,
        updated_topic: str = RUN_UPDATED,
        confirmed_topic: str = RUN_CONFIRMED,
    ) -> None:
        self._publisher = publisher
        self._updated_topic = updated_topic
        self._confirmed_topic = confirmed_topic

    @staticmethod
    def build(
        event_type: str, context: ExecutionContext, payload: dict[str, Any]
    ) -> MessageEnvelope:
        return MessageEnvelope(
            event_type=event_type,
            payload={
                "run_id": context.id,
                "correlation_id": context.correlation_id,
                "entity_ids": list(context.entity_ids),
                "payload": payload,
            },
            correlation_id=get_correlation_id() or context.correlation_id,
        )

    async def _publish(
        self, topic: str, context: ExecutionContext, payload: dict[str, Any]
    ) -> None:
        envelope = self.build(topic, context, payload)
        if self._publisher is None:
            logger.info("%s for run %s (no publisher configured)", topic, context.id)
            return
        await self._publisher.publish(
            topic, envelope, correlation_id=envelope.correlation_id
        )
        logger.debug("Published %s for run %s", topic, context.id)

    async def run_updated(
        self, context: ExecutionContext, payload: dict[str, Any]
    ) -> None:
        await self._publish(self._updated_topic, context, payload)

    async def run_confirmed(
        self, context: ExecutionContext, payload: dict[str, Any]
    ) -> None:
        await self._publish(self._confirmed_topic, context, payload)
