"""In-memory messaging adapters — publisher and consumer sharing one bus."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ...envelope import MessageEnvelope
from ...ports.messaging import IMessageConsumer, IMessagePublisher

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine


class InMemoryMessageBus:
    """Shared bus: publish appends messages and
    synchronously invokes registered handlers."""

    def __init__(self) -> None:
        self._messages: list[tuple[str, Any, dict[str, Any]]] = []
        self._handlers: dict[str, list[Callable[..., Coroutine[Any, Any, None]]]] = {}

    def register(
        self,
        topic: str,
        handler: Callable[..., Coroutine[Any, Any, None]],
    ) -> None:
        """Register a handler for the topic."""
        self._handlers.setdefault(topic, []).append(handler)

    async def publish(self, topic: str, message: Any, **kwargs: Any) -> None:
        """Append message and invoke all handlers for the topic."""
        self._messages.append((topic, message, kwargs))
        payload = message.payload if isinstance(message, MessageEnvelope) else message
        for h in self._handlers.get(topic, []):
            await h(payload, **kwargs)

    def get_published(self) -> list[tuple[str, Any, dict[str, Any]]]:
        """Return all published (topic, message, kwargs) in order."""
        return list(self._messages)

    def clear(self) -> None:
        """Clear published messages and handlers (for test teardown)."""
        self._messages.clear()
        self._handlers.clear()


class InMemoryPublisher(IMessagePublisher):
    """In-memory publisher that buffers messages for assertions.

    Pass a shared :class:`InMemoryMessageBus` to connect it with an
    :class:`InMemoryConsumer` so ``publish()`` triggers subscribed handlers.
    """

    def __init__(self, bus: InMemoryMessageBus | None = None) -> None:
        self._bus = bus or InMemoryMessageBus()

    async def publish(self, topic: str, message: Any, **kwargs: Any) -> None:
        await self._bus.publish(topic, message, **kwargs)

    def get_published(self) -> list[tuple[str, Any, dict[str, Any]]]:
        return self._bus.get_published()

    def published_on(self, topic: str) -> list[Any]:
        """Return the messages published on *topic*, in order."""
        return [m for t, m, _ in self.get_published() if t == topic]

    def assert_published(self, topic: str, count: int = 1) -> None:
        """Assert that exactly *count* messages were published on *topic*."""
        matching = self.published_on(topic)
        assert len(matching) == count, (
            f"Expected {count} message(s) on {topic!r}, got {len(matching)}. "
            f"Published topics: {[t for t, _, _ in self.get_published()]}"
        )

    @property
    def bus(self) -> InMemoryMessageBus:
        """Return the bus (e.g. to pass to InMemoryConsumer)."""
        return self._bus


class InMemoryConsumer(IMessageConsumer):
    """In-memory consumer that registers handlers on a shared bus."""

    def __init__(self, bus: InMemoryMessageBus) -> None:
        self._bus = bus

    async def subscribe(
        self,
        topic: str,
        handler: Callable[..., Coroutine[Any, Any, None]],
        queue_name: str | None = None,  # noqa: ARG002
        **kwargs: Any,  # noqa: ARG002
    ) -> None:
        """Register handler for the topic. queue_name and kwargs are ignored."""
        self._bus.register(topic, handler)
