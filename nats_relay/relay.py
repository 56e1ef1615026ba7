# =============================================================================
# NATS Relay -- Relay Facade
# =============================================================================
#
# Primary public API: subscribe / unsubscribe / publish / status, plus the
# async context manager, pull-based subject streams and typed event helpers.
# =============================================================================

from __future__ import annotations

import asyncio
import time

from typing import Any, Callable

from ._logging import logger
from .dedup import FingerprintDeduplicator
from .errors import RelayProtocolError, RelayPublishError
from .events import EventKind, RelayEvent, parse_event
from .registry import MessageCallback, SubscriptionEntry, SubscriptionRegistry
from .serialization import encode_payload
from .supervisor import ConnectionSupervisor
from .transport import Connector
from .types import ConnectionState, RelayConfig, RelayStatus

StatusListener = Callable[[RelayStatus], Any]
EventHandler = Callable[[RelayEvent], Any]

_CLOSED = object()


class EventRelay:
    """Deduplicating real-time event relay over a message bus.

    Connectivity problems never raise out of the relay: they show up in
    :attr:`status`. Only invalid arguments raise.

    Args:
        config: Relay configuration (servers, backoff, dedup window).
        connector: Opens a bus connection; defaults to
            :func:`nats_relay.nats_transport.connect_nats`.
        servers: Overrides ``config.servers``.
        clock: Wall clock for the deduplicator (``time.time``).

    Example::

        async with EventRelay(RelayConfig(servers=["nats://localhost:4222"])) as relay:
            relay.subscribe("user.created", print)
            await relay.publish("user.created", {"id": "1", "name": "A"})
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        connector: Connector | None = None,
        servers: list[str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or RelayConfig()

        if connector is None:
            from .nats_transport import connect_nats

            connector = connect_nats

        self._dedup = FingerprintDeduplicator(
            self._config.dedup_window,
            self._config.dedup_clear_interval,
            clock=clock,
        )
        self._supervisor = ConnectionSupervisor(
            connector,
            servers=servers or self._config.servers,
            reconnect=self._config.reconnect,
            on_connected=self._on_connected,
            on_disconnected=self._on_disconnected,
            on_status=self._on_status,
        )
        self._registry = SubscriptionRegistry(
            lambda: self._supervisor.connection, self._dedup
        )
        self._status_listeners: list[StatusListener] = []

        # Stats
        self._published = 0
        self._publish_dropped = 0
        self._last_publish_error: RelayPublishError | None = None

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> EventRelay:
        if self._config.auto_connect:
            await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    # -- Connect / Shutdown ---------------------------------------------------

    async def connect(self, servers: list[str] | None = None) -> bool:
        """Connect to the bus. Failures are retried in the background.

        Returns:
            True if the first attempt succeeded.
        """
        self._dedup.start()
        return await self._supervisor.connect(servers)

    async def shutdown(self) -> None:
        """Close the connection and stop all background work.

        Registered subscriptions are kept and re-attached on the next
        :meth:`connect`.
        """
        await self._supervisor.shutdown()
        await self._dedup.stop()
        await self._registry.drain()

    async def close(self) -> None:
        """Alias for shutdown."""
        await self.shutdown()

    # -- Properties -----------------------------------------------------------

    @property
    def status(self) -> RelayStatus:
        return self._supervisor.status

    def get_status(self) -> RelayStatus:
        """Latest status snapshot. Never blocks."""
        return self._supervisor.status

    @property
    def state(self) -> ConnectionState:
        return self._supervisor.state

    @property
    def is_connected(self) -> bool:
        return self._supervisor.is_connected

    @property
    def subjects(self) -> list[str]:
        return self._registry.subjects

    @property
    def config(self) -> RelayConfig:
        return self._config

    # -- Subscribe / Unsubscribe / Publish ------------------------------------

    def subscribe(self, subject: str, callback: MessageCallback) -> None:
        """Deliver deduplicated messages on *subject* to *callback*.

        Replaces any previous callback for the subject. Subscriptions made
        while disconnected are queued and attached on connect; all of them
        are re-attached after every reconnect.

        Args:
            subject: Bus subject, e.g. ``"user.created"``.
            callback: Receives the decoded payload (parsed JSON, or the raw
                string). May be a coroutine function.
        """
        self._registry.register(subject, callback)

    def unsubscribe(self, subject: str) -> None:
        """Stop delivery on *subject*. No-op if not subscribed.

        Teardown is asynchronous: one message already in flight may still
        be delivered.
        """
        self._registry.unregister(subject)

    def on(self, subject: str) -> Callable[[MessageCallback], MessageCallback]:
        """Decorator form of :meth:`subscribe`.

        Example::

            @relay.on("user.created")
            async def handle(data):
                print(data)
        """

        def decorator(fn: MessageCallback) -> MessageCallback:
            self.subscribe(subject, fn)
            return fn

        return decorator

    async def publish(self, subject: str, payload: Any) -> bool:
        """Publish *payload* on *subject*.

        Strings are sent as-is, anything else as JSON. Nothing is queued
        while disconnected: the message is logged and dropped.

        Returns:
            True if sent, False if dropped or the send failed.

        Raises:
            ValueError: Empty subject.
            RelaySerializationError: Payload is not JSON-serializable.
        """
        if not subject:
            raise ValueError("subject must be a non-empty string")

        connection = self._supervisor.connection
        if connection is None:
            self._drop(RelayPublishError(f"Cannot publish, not connected: {subject}"))
            return False

        data = encode_payload(payload)
        try:
            await connection.publish(subject, data)
        except Exception as exc:
            self._drop(RelayPublishError(f"Publish failed for {subject}: {exc}"))
            return False

        self._published += 1
        logger.debug("Published: %s", subject)
        return True

    def _drop(self, error: RelayPublishError) -> None:
        self._publish_dropped += 1
        self._last_publish_error = error
        logger.warning("%s", error)

    # -- Typed events ---------------------------------------------------------

    def subscribe_event(self, kind: EventKind | str, handler: EventHandler) -> None:
        """Subscribe to a known event kind with payload validation.

        Invalid payloads are logged and dropped before reaching *handler*.
        """
        kind = EventKind(kind)

        def deliver(data: Any) -> Any:
            try:
                event = parse_event(kind.value, data)
            except RelayProtocolError as exc:
                logger.warning("Dropping invalid event: %s", exc)
                return None
            return handler(event)

        self.subscribe(kind.value, deliver)

    async def publish_event(self, event: RelayEvent) -> bool:
        return await self.publish(event.subject, event.to_dict())

    # -- Streams --------------------------------------------------------------

    def stream(self, subject: str, *, queue_size: int | None = None) -> RelayStream:
        """Pull-based iterator over *subject*.

        Takes over the subject like :meth:`subscribe`. Close it with
        ``aclose()`` or ``async with``.

        Example::

            async with relay.stream("user.created") as events:
                async for data in events:
                    print(data)
        """
        return RelayStream(
            self._registry,
            subject,
            queue_size=queue_size or self._config.stream_queue_size,
        )

    # -- Status listeners -----------------------------------------------------

    def on_status(self, fn: StatusListener) -> StatusListener:
        """Register a listener called with every new status snapshot."""
        self._status_listeners.append(fn)
        return fn

    def off_status(self, fn: StatusListener) -> None:
        if fn in self._status_listeners:
            self._status_listeners.remove(fn)

    def _on_status(self, status: RelayStatus) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as exc:
                logger.error("Status listener error: %s", exc)

    # -- Supervisor hooks -----------------------------------------------------

    def _on_connected(self) -> None:
        self._registry.reattach_all()

    def _on_disconnected(self) -> None:
        self._registry.detach_all()

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return relay statistics."""
        return {
            "status": self.status.to_dict(),
            "connection": self._supervisor.get_stats(),
            "subscriptions": self._registry.get_stats(),
            "dedup": self._dedup.get_stats(),
            "published": self._published,
            "publish_dropped": self._publish_dropped,
            "last_publish_error": (
                str(self._last_publish_error) if self._last_publish_error else None
            ),
        }


class RelayStream:
    """Async iterator over the messages of one subject.

    Buffers up to *queue_size* payloads; when full, the oldest is dropped.
    If another subscriber takes over the subject the stream simply stops
    receiving; closing it then leaves the new subscriber alone.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        subject: str,
        *,
        queue_size: int,
    ) -> None:
        self._registry = registry
        self._subject = subject
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._entry: SubscriptionEntry = registry.register(subject, self._push)

    @property
    def subject(self) -> str:
        return self._subject

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, payload: Any) -> None:
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            # Drop oldest to make room
            try:
                self._queue.get_nowait()
                self._queue.put_nowait(payload)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                pass

    def __aiter__(self) -> RelayStream:
        return self

    async def __anext__(self) -> Any:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._registry.get(self._subject) is self._entry:
            self._registry.unregister(self._subject)
        if self._queue.empty():
            self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> RelayStream:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()
