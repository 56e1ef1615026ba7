# =============================================================================
# NATS Relay -- Typed Event Envelopes
# =============================================================================
#
# Known cross-frontend notifications. The subject is the event kind; the
# message body is the payload. Payloads are validated on the way in.
# =============================================================================

from __future__ import annotations

from dataclasses import MISSING, asdict, dataclass, fields
from enum import Enum
from typing import Any, Union

from .errors import RelayProtocolError


class EventKind(str, Enum):
    """Subjects with a known payload shape."""

    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    NOTIFICATION_SHOW = "notification.show"
    AUTH_USER_CHANGED = "auth.user-changed"
    AUTH_LOGOUT = "auth.logout"
    THEME_CHANGED = "theme.changed"


class NotificationType(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"
    WARNING = "warning"


class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"


@dataclass(frozen=True, slots=True)
class UserPayload:
    id: str
    name: str
    email: str | None = None
    role: str | None = None


@dataclass(frozen=True, slots=True)
class UserDeletedPayload:
    id: str


@dataclass(frozen=True, slots=True)
class NotificationPayload:
    message: str
    type: NotificationType = NotificationType.INFO


@dataclass(frozen=True, slots=True)
class AuthUserPayload:
    user_id: str
    name: str
    role: str


@dataclass(frozen=True, slots=True)
class ThemePayload:
    theme: Theme


EventPayload = Union[
    UserPayload,
    UserDeletedPayload,
    NotificationPayload,
    AuthUserPayload,
    ThemePayload,
    None,
]

# Wire keys that differ from the dataclass field names
_WIRE_ALIASES: dict[str, str] = {"user_id": "userId"}

_PAYLOAD_TYPES: dict[EventKind, type | None] = {
    EventKind.USER_CREATED: UserPayload,
    EventKind.USER_UPDATED: UserPayload,
    EventKind.USER_DELETED: UserDeletedPayload,
    EventKind.NOTIFICATION_SHOW: NotificationPayload,
    EventKind.AUTH_USER_CHANGED: AuthUserPayload,
    EventKind.AUTH_LOGOUT: None,
    EventKind.THEME_CHANGED: ThemePayload,
}

_ENUM_FIELDS: dict[tuple[type, str], type[Enum]] = {
    (NotificationPayload, "type"): NotificationType,
    (ThemePayload, "theme"): Theme,
}


@dataclass(frozen=True, slots=True)
class RelayEvent:
    """A typed envelope: the event kind plus its validated payload."""

    kind: EventKind
    payload: EventPayload = None

    @property
    def subject(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict[str, Any] | None:
        """Wire form of the payload (camelCase keys, enum values, no Nones)."""
        if self.payload is None:
            return None
        out: dict[str, Any] = {}
        for key, value in asdict(self.payload).items():
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            out[_WIRE_ALIASES.get(key, key)] = value
        return out


def parse_event(subject: str, data: Any) -> RelayEvent:
    """Validate an inbound message against the known event kinds.

    Raises:
        RelayProtocolError: Unknown subject or malformed payload.
    """
    try:
        kind = EventKind(subject)
    except ValueError:
        raise RelayProtocolError(f"Unknown event kind: {subject!r}") from None

    payload_type = _PAYLOAD_TYPES[kind]
    if payload_type is None:
        return RelayEvent(kind)

    if not isinstance(data, dict):
        raise RelayProtocolError(
            f"{kind.value}: expected an object payload, got {type(data).__name__}"
        )

    kwargs: dict[str, Any] = {}
    for f in fields(payload_type):
        key = _WIRE_ALIASES.get(f.name, f.name)
        if key not in data or data[key] is None:
            if f.default is MISSING and f.default_factory is MISSING:
                raise RelayProtocolError(f"{kind.value}: missing field {key!r}")
            continue
        kwargs[f.name] = _coerce(kind, payload_type, f.name, data[key])

    return RelayEvent(kind, payload_type(**kwargs))


def _coerce(kind: EventKind, payload_type: type, name: str, value: Any) -> Any:
    enum_type = _ENUM_FIELDS.get((payload_type, name))
    if enum_type is not None:
        try:
            return enum_type(value)
        except ValueError:
            raise RelayProtocolError(
                f"{kind.value}: invalid {name} {value!r}"
            ) from None

    # Ids arrive as numbers from some publishers (Date.now() ids)
    if name in ("id", "user_id") and isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise RelayProtocolError(
            f"{kind.value}: field {name!r} must be a string, got {type(value).__name__}"
        )
    return value
