# =============================================================================
# NATS Relay -- Subscription Registry
# =============================================================================
#
# Durable subject -> callback map that survives reconnects. Entries outlive
# connections; each entry holds at most one attachment (live subscription +
# reader task) bound to the connection it was opened on.
# =============================================================================

from __future__ import annotations

import asyncio
import inspect

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from ._logging import logger
from .serialization import decode_payload

if TYPE_CHECKING:
    from .dedup import FingerprintDeduplicator
    from .transport import BusConnection, BusSubscription

# Plain function or coroutine function taking the decoded payload
MessageCallback = Callable[[Any], Any]


class _Attachment:
    """One live subscription of an entry on one connection.

    Released attachments never deliver again. If release happens while the
    subscribe call is still in flight, the handle is dropped as soon as it
    arrives.
    """

    __slots__ = ("connection", "handle", "task", "released")

    def __init__(self, connection: BusConnection) -> None:
        self.connection = connection
        self.handle: BusSubscription | None = None
        self.task: asyncio.Task[None] | None = None
        self.released = False


@dataclass
class SubscriptionEntry:
    """A registered subject and its callback."""

    subject: str
    callback: MessageCallback
    attachment: _Attachment | None = field(default=None, repr=False)

    @property
    def is_live(self) -> bool:
        att = self.attachment
        return att is not None and att.handle is not None and not att.released


class SubscriptionRegistry:
    """Subject -> callback registry with replay on reconnect.

    Args:
        get_connection: Returns the live bus connection, or ``None``. The
            registry only reads it.
        deduplicator: Filter applied to every inbound message.
    """

    def __init__(
        self,
        get_connection: Callable[[], BusConnection | None],
        deduplicator: FingerprintDeduplicator,
    ) -> None:
        self._get_connection = get_connection
        self._dedup = deduplicator
        self._entries: dict[str, SubscriptionEntry] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

        self._messages_received = 0
        self._messages_delivered = 0
        self._callback_errors = 0

    def __contains__(self, subject: object) -> bool:
        return subject in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def subjects(self) -> list[str]:
        return list(self._entries)

    def get(self, subject: str) -> SubscriptionEntry | None:
        return self._entries.get(subject)

    # -- Registration ---------------------------------------------------------

    def register(self, subject: str, callback: MessageCallback) -> SubscriptionEntry:
        """Register *callback* for *subject*, replacing any previous one.

        Attaches right away when a connection is live; otherwise the entry
        waits for :meth:`reattach_all`.
        """
        if not subject:
            raise ValueError("subject must be a non-empty string")
        if not callable(callback):
            raise TypeError("callback must be callable")

        previous = self._entries.pop(subject, None)
        if previous is not None:
            self._release(previous)

        entry = SubscriptionEntry(subject=subject, callback=callback)
        self._entries[subject] = entry

        connection = self._get_connection()
        if connection is not None:
            self._attach(entry, connection)
        else:
            logger.info("Queued subscription: %s", subject)
        return entry

    def unregister(self, subject: str) -> bool:
        """Remove *subject*. Returns False if it was not registered."""
        entry = self._entries.pop(subject, None)
        if entry is None:
            return False
        self._release(entry)
        return True

    def reattach_all(self) -> None:
        """Attach every entry to the current connection."""
        connection = self._get_connection()
        if connection is None:
            return
        if self._entries:
            logger.info("Re-attaching %d subscriptions", len(self._entries))
        for entry in list(self._entries.values()):
            self._release(entry)
            self._attach(entry, connection)

    def detach_all(self) -> None:
        """Drop every live handle, keeping the entries for the next connection."""
        for entry in self._entries.values():
            self._release(entry)

    async def drain(self) -> None:
        """Wait for reader and teardown tasks to finish.

        Live readers only end with their connection, so call this after
        :meth:`detach_all`.
        """
        # The caller may itself be a reader task (shutdown from a callback)
        current = asyncio.current_task()
        while True:
            pending = [t for t in self._background_tasks if t is not current]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # -- Attachment -----------------------------------------------------------

    def _attach(self, entry: SubscriptionEntry, connection: BusConnection) -> None:
        att = _Attachment(connection)
        entry.attachment = att
        att.task = asyncio.get_running_loop().create_task(
            self._run(entry, att), name=f"nats-relay:{entry.subject}"
        )
        self._background_tasks.add(att.task)
        att.task.add_done_callback(self._background_tasks.discard)

    def _release(self, entry: SubscriptionEntry) -> None:
        att = entry.attachment
        entry.attachment = None
        if att is None or att.released:
            return
        att.released = True
        if att.handle is None:
            # Still subscribing: _run drops the handle when it arrives
            return
        if att.task is not None and att.task is not asyncio.current_task():
            att.task.cancel()
        self._fire_task(self._unsubscribe_quietly(entry.subject, att.handle))

    async def _run(self, entry: SubscriptionEntry, att: _Attachment) -> None:
        try:
            handle = await att.connection.subscribe(entry.subject)
        except Exception as exc:
            logger.warning("Subscription error for %s: %s", entry.subject, exc)
            if entry.attachment is att:
                entry.attachment = None
            return

        if att.released:
            await self._unsubscribe_quietly(entry.subject, handle)
            return
        att.handle = handle

        try:
            async for data in handle:
                if att.released:
                    break
                await self._deliver(entry, data)
        except Exception as exc:
            logger.warning("Subscription error for %s: %s", entry.subject, exc)

    async def _deliver(self, entry: SubscriptionEntry, data: bytes) -> None:
        self._messages_received += 1
        try:
            payload = decode_payload(data)
            if self._dedup.is_duplicate(entry.subject, payload):
                return
            result = entry.callback(payload)
            if inspect.isawaitable(result):
                await result
            self._messages_delivered += 1
        except Exception as exc:
            self._callback_errors += 1
            logger.error("Error processing message on '%s': %s", entry.subject, exc)

    async def _unsubscribe_quietly(self, subject: str, handle: BusSubscription) -> None:
        try:
            await handle.unsubscribe()
        except Exception as exc:
            # Stale handle from a dead connection
            logger.debug("Ignoring unsubscribe error for %s: %s", subject, exc)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def get_stats(self) -> dict[str, Any]:
        return {
            "subjects": list(self._entries),
            "live": sum(1 for e in self._entries.values() if e.is_live),
            "messages_received": self._messages_received,
            "messages_delivered": self._messages_delivered,
            "callback_errors": self._callback_errors,
        }
