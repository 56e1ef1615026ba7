# =============================================================================
# NATS Relay -- NATS Transport
# =============================================================================
#
# Adapts a nats-py client to the BusConnection contract. The client's own
# reconnect logic is switched off: the ConnectionSupervisor owns retries, so
# a dropped socket must surface as a status event and end the connection.
#
# ws:// and wss:// servers use nats-py's aiohttp websocket transport.
# =============================================================================

from __future__ import annotations

import asyncio

from typing import Any, AsyncIterator

import nats
from nats.aio.client import Client as NATSClient
from nats.aio.subscription import Subscription

from ._logging import logger
from .constants import (
    STATUS_CLOSE,
    STATUS_DISCONNECT,
    STATUS_ERROR,
    STATUS_RECONNECT,
)
from .types import BusStatusEvent

# nats.connect options the adapter sets itself
_RESERVED_OPTIONS = frozenset(
    {
        "allow_reconnect",
        "max_reconnect_attempts",
        "error_cb",
        "disconnected_cb",
        "reconnected_cb",
        "closed_cb",
    }
)


class NatsBusSubscription:
    """Live NATS subscription yielding raw message bodies."""

    def __init__(self, sub: Subscription) -> None:
        self._sub = sub

    @property
    def subject(self) -> str:
        return self._sub.subject

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for msg in self._sub.messages:
            yield msg.data

    async def unsubscribe(self) -> None:
        await self._sub.unsubscribe()


class NatsBusConnection:
    """A single nats-py connection with a status event stream."""

    def __init__(self) -> None:
        self._nc: NATSClient | None = None
        self._events: asyncio.Queue[BusStatusEvent | None] = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    @property
    def connected_url(self) -> str | None:
        if self._nc is None or self._nc.connected_url is None:
            return None
        return self._nc.connected_url.geturl()

    async def open(self, servers: list[str], **options: Any) -> None:
        for key in _RESERVED_OPTIONS.intersection(options):
            logger.warning("Ignoring NATS option %r: managed by the relay", key)
            del options[key]
        self._nc = await nats.connect(
            servers=servers,
            allow_reconnect=False,
            max_reconnect_attempts=0,
            error_cb=self._on_error,
            disconnected_cb=self._on_disconnected,
            reconnected_cb=self._on_reconnected,
            closed_cb=self._on_closed,
            **options,
        )

    # -- BusConnection --------------------------------------------------------

    async def subscribe(self, subject: str) -> NatsBusSubscription:
        sub = await self._client().subscribe(subject)
        return NatsBusSubscription(sub)

    async def publish(self, subject: str, data: bytes) -> None:
        await self._client().publish(subject, data)

    async def status(self) -> AsyncIterator[BusStatusEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        nc = self._nc
        if nc is None or nc.is_closed:
            return
        await nc.close()

    # -- nats-py callbacks ----------------------------------------------------

    async def _on_error(self, exc: Exception) -> None:
        logger.debug("NATS error: %s", exc)
        self._events.put_nowait(BusStatusEvent(STATUS_ERROR, str(exc)))

    async def _on_disconnected(self) -> None:
        self._events.put_nowait(BusStatusEvent(STATUS_DISCONNECT, self.connected_url))

    async def _on_reconnected(self) -> None:
        self._events.put_nowait(BusStatusEvent(STATUS_RECONNECT, self.connected_url))

    async def _on_closed(self) -> None:
        self._events.put_nowait(BusStatusEvent(STATUS_CLOSE))
        self._events.put_nowait(None)

    def _client(self) -> NATSClient:
        if self._nc is None:
            raise RuntimeError("NATS connection is not open")
        return self._nc


async def connect_nats(servers: list[str], **options: Any) -> NatsBusConnection:
    """Open a NATS connection. Usable as the relay's ``connector``.

    Keyword arguments are forwarded to ``nats.connect`` (``name``,
    ``user_credentials``, ``token``, ...). Reconnect options and status
    callbacks are set by the relay; passing them logs a warning and they
    are ignored.
    """
    conn = NatsBusConnection()
    await conn.open(servers, **options)
    return conn
