# =============================================================================
# NATS Relay -- Type Definitions
# =============================================================================

from __future__ import annotations

import os

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Mapping

from .constants import (
    DEDUP_CLEAR_INTERVAL,
    DEDUP_WINDOW,
    DEFAULT_SERVERS,
    ENV_PREFIX,
    RECONNECT_BASE_DELAY,
    RECONNECT_FACTOR,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY,
    STREAM_QUEUE_SIZE,
)


class ConnectionState(str, Enum):
    """Relay connection lifecycle state.

    Typical flow: DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING
    -> CONNECTED. FAILED is terminal until ``connect()`` is called again.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class RelayStatus:
    """Read-only projection of the connection state and retry counters.

    Attributes:
        connected: A live bus connection exists.
        reconnecting: A retry is pending or in progress.
        reconnect_attempt: 1-based number of the pending retry, 0 when
            connected. In FAILED it holds the number of retries made.
        error: Human-readable reason for the last failure, if any.
        state: The state this snapshot was projected from.
    """

    connected: bool = False
    reconnecting: bool = False
    reconnect_attempt: int = 0
    error: str | None = None
    state: ConnectionState = ConnectionState.DISCONNECTED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass(frozen=True, slots=True)
class BusStatusEvent:
    """A status notification from a bus connection.

    Attributes:
        type: ``"disconnect"``, ``"reconnect"``, ``"error"`` or ``"close"``.
        data: Optional detail (error message, server URL).
    """

    type: str
    data: str | None = None


@dataclass
class ReconnectConfig:
    """Configuration for automatic reconnection.

    Attributes:
        base_delay: Delay in seconds before the first retry.
        max_delay: Maximum delay cap in seconds.
        max_attempts: Retries per connection cycle, ``-1`` for infinite.
        factor: Multiplier per attempt for exponential backoff.
        jitter: Randomize delays to avoid thundering herd.
    """

    base_delay: float = RECONNECT_BASE_DELAY
    max_delay: float = RECONNECT_MAX_DELAY
    max_attempts: int = RECONNECT_MAX_ATTEMPTS
    factor: float = RECONNECT_FACTOR
    jitter: bool = False


@dataclass
class RelayConfig:
    """Relay configuration.

    Attributes:
        servers: Bus server URLs, tried by the connector in order.
        reconnect: Backoff policy.
        dedup_window: Width of the fingerprint time bucket in seconds.
        dedup_clear_interval: Seconds between full clears of the
            fingerprint set.
        auto_connect: Connect when entering ``async with``.
        stream_queue_size: Buffer size of pull-based subject streams.
    """

    servers: list[str] = field(default_factory=lambda: list(DEFAULT_SERVERS))
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    dedup_window: float = DEDUP_WINDOW
    dedup_clear_interval: float = DEDUP_CLEAR_INTERVAL
    auto_connect: bool = True
    stream_queue_size: int = STREAM_QUEUE_SIZE

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        prefix: str = ENV_PREFIX,
    ) -> RelayConfig:
        """Build a config from ``NATS_RELAY_*`` environment variables.

        Recognised keys: ``SERVERS`` (comma separated),
        ``MAX_RECONNECT_ATTEMPTS``, ``RECONNECT_DELAY`` (seconds),
        ``DEDUP_WINDOW`` (seconds), ``AUTO_CONNECT``. Unset keys keep
        their defaults; malformed values raise ``ValueError``.
        """
        env = os.environ if environ is None else environ
        cfg = cls()

        servers = env.get(f"{prefix}SERVERS", "").strip()
        if servers:
            cfg.servers = [s.strip() for s in servers.split(",") if s.strip()]

        attempts = env.get(f"{prefix}MAX_RECONNECT_ATTEMPTS")
        if attempts:
            cfg.reconnect.max_attempts = int(attempts)

        delay = env.get(f"{prefix}RECONNECT_DELAY")
        if delay:
            cfg.reconnect.base_delay = float(delay)

        window = env.get(f"{prefix}DEDUP_WINDOW")
        if window:
            cfg.dedup_window = float(window)

        auto = env.get(f"{prefix}AUTO_CONNECT")
        if auto:
            cfg.auto_connect = _parse_bool(auto)

        return cfg


def _parse_bool(value: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")
