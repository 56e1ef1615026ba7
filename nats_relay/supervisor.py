# =============================================================================
# NATS Relay -- Connection Supervisor
# =============================================================================
#
# Owns the one logical bus connection: connect, watch its status stream,
# back off and retry when it drops, give up after the retry budget.
# =============================================================================

from __future__ import annotations

import asyncio
import random

from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ._logging import logger
from .constants import (
    CONNECTION_LOST_EVENTS,
    CONNECTION_TIMEOUT,
    DEFAULT_SERVERS,
    RECONNECT_JITTER,
    STATUS_CLOSE,
    STATUS_ERROR,
)
from .errors import RelayConnectionError, RelayError, RelayRetryExhaustedError
from .types import BusStatusEvent, ConnectionState, ReconnectConfig, RelayStatus

if TYPE_CHECKING:
    from .transport import BusConnection, Connector


def compute_backoff(attempt: int, cfg: ReconnectConfig) -> float:
    """Delay before retry *attempt* (0-indexed): ``min(base * factor**n, max)``."""
    delay = min(cfg.base_delay * (cfg.factor**attempt), cfg.max_delay)
    if cfg.jitter:
        jitter_amount = delay * RECONNECT_JITTER * (random.random() - 0.5)
        delay = max(0.0, delay + jitter_amount)
    return delay


class ConnectionSupervisor:
    """Maintains exactly one logical connection to the message bus.

    Connection failures never raise out of the supervisor; they feed the
    backoff policy, and only running out of retries is terminal (FAILED).

    Args:
        connector: Opens a connection to a list of servers.
        servers: Default server list for :meth:`connect`.
        reconnect: Backoff policy.
        connect_timeout: Seconds allowed per connection attempt, ``None``
            to rely on the connector's own timeout.
        on_connected: Called after every successful (re)connect.
        on_disconnected: Called when the live connection goes away.
        on_status: Called with each new :class:`RelayStatus`.
        sleep: Awaitable used for retry delays (``asyncio.sleep``).
    """

    def __init__(
        self,
        connector: Connector,
        *,
        servers: list[str] | None = None,
        reconnect: ReconnectConfig | None = None,
        connect_timeout: float | None = CONNECTION_TIMEOUT,
        on_connected: Callable[[], Any] | None = None,
        on_disconnected: Callable[[], Any] | None = None,
        on_status: Callable[[RelayStatus], Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._connector = connector
        self._servers = list(servers) if servers else list(DEFAULT_SERVERS)
        self._reconnect_cfg = reconnect or ReconnectConfig()
        self._connect_timeout = connect_timeout
        self._sleep = sleep

        # Callbacks
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._on_status = on_status

        # State
        self._connection: BusConnection | None = None
        self._state = ConnectionState.DISCONNECTED
        self._status = RelayStatus()
        self._retries = 0  # retries made in the current cycle
        self._epoch = 0  # bumped by connect()/shutdown(); stale attempts check it
        self._last_error: RelayError | None = None
        self._connect_count = 0

        # Tasks
        self._monitor_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._attempt_task: asyncio.Task[None] | None = None  # retry in flight
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # -- Properties -----------------------------------------------------------

    @property
    def connection(self) -> BusConnection | None:
        return self._connection

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> RelayStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._state == ConnectionState.CONNECTED

    @property
    def servers(self) -> list[str]:
        return list(self._servers)

    @property
    def last_error(self) -> RelayError | None:
        return self._last_error

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # -- Connect / Shutdown ---------------------------------------------------

    async def connect(self, servers: list[str] | None = None) -> bool:
        """Start a connection cycle and make the first attempt.

        A no-op while connected or connecting. From FAILED, DISCONNECTED
        or RECONNECTING it starts over with a fresh retry budget.

        Returns:
            True if connected when the first attempt completes. A False
            return means retries are scheduled, or the budget is spent.
        """
        if servers:
            self._servers = list(servers)
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return self.is_connected

        self._cancel_reconnect()
        self._epoch += 1
        self._retries = 0
        self._last_error = None
        self._set_state(ConnectionState.CONNECTING)
        await self._attempt(self._epoch)
        return self.is_connected

    async def shutdown(self) -> None:
        """Cancel retries, stop monitoring and close the connection.

        Idempotent; safe from any state.
        """
        self._epoch += 1
        self._cancel_reconnect()
        current = asyncio.current_task()

        tasks_to_await: list[asyncio.Task[Any]] = []
        for task in (self._monitor_task, self._attempt_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                tasks_to_await.append(task)
        self._monitor_task = None
        self._attempt_task = None

        connection = self._connection
        self._connection = None
        if connection is not None and self._on_disconnected:
            self._on_disconnected()

        if tasks_to_await:
            await asyncio.gather(*tasks_to_await, return_exceptions=True)
        if connection is not None:
            await self._close_quietly(connection)
        pending = [t for t in self._background_tasks if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._retries = 0
        self._set_state(ConnectionState.DISCONNECTED)

    # -- Internal: connection attempts ----------------------------------------

    async def _attempt(self, epoch: int) -> None:
        try:
            if self._connect_timeout is None:
                connection = await self._connector(list(self._servers))
            else:
                connection = await asyncio.wait_for(
                    self._connector(list(self._servers)),
                    timeout=self._connect_timeout,
                )
        except asyncio.TimeoutError:
            if epoch != self._epoch:
                return
            self._handle_failure(
                RelayConnectionError(
                    f"Connection timed out after {self._connect_timeout}s"
                )
            )
            return
        except Exception as exc:
            if epoch != self._epoch:
                return
            self._handle_failure(RelayConnectionError(str(exc) or type(exc).__name__))
            return

        if epoch != self._epoch:
            # shutdown() or a newer connect() won the race
            self._fire_task(self._close_quietly(connection))
            return

        self._connection = connection
        self._retries = 0
        self._last_error = None
        self._connect_count += 1
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to %s", ",".join(self._servers))

        self._monitor_task = asyncio.ensure_future(self._monitor(connection))
        if self._on_connected:
            self._on_connected()

    def _handle_failure(self, error: RelayConnectionError) -> None:
        self._last_error = error
        logger.warning("Connection attempt %d failed: %s", self._retries + 1, error)

        cfg = self._reconnect_cfg
        if cfg.max_attempts >= 0 and self._retries >= cfg.max_attempts:
            exhausted = RelayRetryExhaustedError(cfg.max_attempts)
            self._last_error = exhausted
            logger.error("Max reconnect attempts (%d) reached", cfg.max_attempts)
            self._set_state(ConnectionState.FAILED, error=str(exhausted))
            return

        self._schedule_reconnect()

    # -- Internal: monitoring -------------------------------------------------

    async def _monitor(self, connection: BusConnection) -> None:
        """Watch the status stream until the connection is lost."""
        try:
            async for event in connection.status():
                logger.debug("Bus status: %s", event.type)
                if event.type in CONNECTION_LOST_EVENTS:
                    self._handle_lost(connection, event)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._handle_lost(connection, BusStatusEvent(STATUS_ERROR, str(exc)))
            return

        # Stream ended without a disconnect event: closed underneath us
        self._handle_lost(connection, BusStatusEvent(STATUS_CLOSE))

    def _handle_lost(self, connection: BusConnection, event: BusStatusEvent) -> None:
        if connection is not self._connection:
            return

        self._connection = None
        self._monitor_task = None
        self._last_error = RelayConnectionError(
            f"Connection lost ({event.type}: {event.data})"
            if event.data
            else f"Connection lost ({event.type})"
        )
        logger.warning("%s", self._last_error)

        if self._on_disconnected:
            self._on_disconnected()
        self._fire_task(self._close_quietly(connection))

        self._retries = 0
        self._schedule_reconnect()

    # -- Internal: reconnection -----------------------------------------------

    def _schedule_reconnect(self) -> None:
        """Schedule the next retry. At most one retry is ever pending."""
        self._cancel_reconnect()

        cfg = self._reconnect_cfg
        delay = compute_backoff(self._retries, cfg)
        self._set_state(
            ConnectionState.RECONNECTING, error=f"Retry in {round(delay)}s..."
        )
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%s)",
            delay,
            self._retries + 1,
            cfg.max_attempts if cfg.max_attempts >= 0 else "inf",
        )
        self._reconnect_task = asyncio.ensure_future(
            self._reconnect_after(delay, self._epoch)
        )

    async def _reconnect_after(self, delay: float, epoch: int) -> None:
        """Wait, then try to reconnect."""
        try:
            await self._sleep(delay)
        except asyncio.CancelledError:
            return
        if epoch != self._epoch:
            return

        # This task is no longer a pending timer; scheduling the next retry
        # must not cancel it. shutdown() cancels it through _attempt_task.
        task = asyncio.current_task()
        self._reconnect_task = None
        self._attempt_task = task
        self._retries += 1
        try:
            await self._attempt(epoch)
        finally:
            if self._attempt_task is task:
                self._attempt_task = None

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    async def _close_quietly(self, connection: BusConnection) -> None:
        try:
            await connection.close()
        except Exception as exc:
            logger.debug("Ignoring close error: %s", exc)

    # -- State management -----------------------------------------------------

    def _set_state(self, new_state: ConnectionState, *, error: str | None = None) -> None:
        if new_state == ConnectionState.RECONNECTING:
            attempt = self._retries + 1
        elif new_state == ConnectionState.FAILED:
            attempt = self._retries
        else:
            attempt = 0

        status = RelayStatus(
            connected=new_state == ConnectionState.CONNECTED,
            reconnecting=new_state == ConnectionState.RECONNECTING,
            reconnect_attempt=attempt,
            error=error,
            state=new_state,
        )
        old = self._state
        self._state = new_state
        if status == self._status:
            return
        self._status = status

        if old != new_state:
            logger.debug("State: %s -> %s", old.value, new_state.value)
        if self._on_status:
            self._on_status(status)

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "servers": list(self._servers),
            "retries": self._retries,
            "connect_count": self._connect_count,
            "reconnect_pending": self.reconnect_pending,
            "last_error": str(self._last_error) if self._last_error else None,
        }
