"""Deduplicating real-time event relay over NATS.

Usage::

    from nats_relay import connect

    async with connect(["ws://localhost:8080"]) as relay:
        relay.subscribe("user.created", lambda data: print(data))
        await relay.publish("user.created", {"id": "1", "name": "A"})

Pull-based::

    async with connect() as relay:
        async with relay.stream("notification.show") as events:
            async for data in events:
                print(data)

Optional extras::

    pip install nats-relay[fast]   # orjson serialization
"""

from ._version import __version__
from .dedup import FingerprintDeduplicator
from .errors import (
    RelayConnectionError,
    RelayError,
    RelayProtocolError,
    RelayPublishError,
    RelayRetryExhaustedError,
    RelaySerializationError,
)
from .events import (
    AuthUserPayload,
    EventKind,
    NotificationPayload,
    NotificationType,
    RelayEvent,
    Theme,
    ThemePayload,
    UserDeletedPayload,
    UserPayload,
    parse_event,
)
from .registry import SubscriptionRegistry
from .relay import EventRelay, RelayStream
from .supervisor import ConnectionSupervisor, compute_backoff
from .transport import BusConnection, BusSubscription, Connector
from .types import (
    BusStatusEvent,
    ConnectionState,
    ReconnectConfig,
    RelayConfig,
    RelayStatus,
)


def connect(
    servers: list[str] | None = None,
    **kwargs,
) -> EventRelay:
    """Create a relay.

    Use as an async context manager; it connects on entry unless
    ``config.auto_connect`` is off. Keyword arguments are forwarded to
    :class:`EventRelay` (``config``, ``connector``, ``clock``).

    Args:
        servers: Bus server URLs, e.g. ``["nats://localhost:4222"]``.
            Defaults to ``config.servers``.
        **kwargs: Passed to :class:`EventRelay`.

    Returns:
        An :class:`EventRelay` instance.
    """
    return EventRelay(servers=servers, **kwargs)


__all__ = [
    "__version__",
    "connect",
    "EventRelay",
    "RelayStream",
    "ConnectionSupervisor",
    "SubscriptionRegistry",
    "FingerprintDeduplicator",
    "compute_backoff",
    "BusConnection",
    "BusSubscription",
    "BusStatusEvent",
    "Connector",
    "ConnectionState",
    "RelayStatus",
    "RelayConfig",
    "ReconnectConfig",
    "EventKind",
    "RelayEvent",
    "UserPayload",
    "UserDeletedPayload",
    "NotificationPayload",
    "NotificationType",
    "AuthUserPayload",
    "ThemePayload",
    "Theme",
    "parse_event",
    "RelayError",
    "RelayConnectionError",
    "RelayRetryExhaustedError",
    "RelayPublishError",
    "RelayProtocolError",
    "RelaySerializationError",
]
