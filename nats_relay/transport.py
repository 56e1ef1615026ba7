# =============================================================================
# NATS Relay -- Bus Transport Contract
# =============================================================================
#
# What the relay needs from a message bus client. The NATS adapter in
# nats_transport.py implements it; tests use an in-memory fake.
# =============================================================================

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable, Protocol, runtime_checkable

from .types import BusStatusEvent


@runtime_checkable
class BusSubscription(Protocol):
    """A live subscription bound to one connection.

    Iterating yields raw message bodies until the subscription is
    released or the connection goes away.
    """

    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def unsubscribe(self) -> None: ...


@runtime_checkable
class BusConnection(Protocol):
    """An open connection to the message bus."""

    async def subscribe(self, subject: str) -> BusSubscription: ...

    async def publish(self, subject: str, data: bytes) -> None: ...

    def status(self) -> AsyncIterator[BusStatusEvent]:
        """Stream of status events; ends when the connection is closed."""
        ...

    async def close(self) -> None: ...


Connector = Callable[[list[str]], Awaitable[BusConnection]]
