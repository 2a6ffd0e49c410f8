from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine


@runtime_checkable
class IMessagePublisher(Protocol):
    """
    Port for publishing run notifications to a transport.

    Infrastructure packages provide concrete adapters.
    """

    async def publish(self, topic: str, message: Any, **kwargs: Any) -> None:
        """
        Publish *message* to *topic*.

        Args:
            topic: Routing key, topic name, or exchange.
            message: Payload, usually a :class:`MessageEnvelope`.
            **kwargs: Transport-specific metadata (``correlation_id``, headers, …).
        """
        ...


@runtime_checkable
class IMessageConsumer(Protocol):
    """
    Port for subscribing to inbound events (``external.success`` / ``external.failure``).
    """

    async def subscribe(
        self,
        topic: str,
        handler: Callable[..., Coroutine[Any, Any, None]],
        queue_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        """
        Subscribe *handler* to *topic*.

        Args:
            topic: Routing key or queue to bind.
            handler: Async callable invoked with each message payload.
            queue_name: Optional consumer-group / queue name.
            **kwargs: Transport-specific options.
        """
        ...
