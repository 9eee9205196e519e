"""Publishing interface for engine events."""

from __future__ import annotations

import abc

from ..contracts import EngineEvent


class BaseTransport(abc.ABC):
    """Carries :class:`EngineEvent` envelopes to a broker topic.

    The engine only publishes; inventory and other downstream systems own
    their consumers and dedupe on ``idempotency_key``.
    """

    async def connect(self) -> None:
        """Open the broker connection; backends without one do nothing."""

    async def disconnect(self) -> None:
        """Release the broker connection."""

    @abc.abstractmethod
    async def publish(self, topic: str, event: EngineEvent) -> None:
        """Hand ``event`` to the broker; raise if it was not accepted."""
        raise NotImplementedError
