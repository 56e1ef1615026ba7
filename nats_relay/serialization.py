# =============================================================================
# NATS Relay -- Payload Serialization
# =============================================================================
#
# Outgoing:  str payloads are sent as-is, everything else as compact JSON.
# Incoming:  UTF-8 text, parsed as JSON when possible, raw string otherwise.
# =============================================================================

from __future__ import annotations

import json

from typing import Any

from .constants import UNSERIALIZABLE_PAYLOAD
from .errors import RelaySerializationError

try:
    import orjson

    def _json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def _json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def _json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def _json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"), allow_nan=False)


def to_text(payload: Any) -> str:
    """Stringify a payload: passthrough for str, compact JSON otherwise.

    Raises:
        RelaySerializationError: If the payload is not JSON-serializable.
    """
    if isinstance(payload, str):
        return payload
    try:
        return _json_dumps(payload)
    except (TypeError, ValueError) as exc:
        raise RelaySerializationError(
            f"Cannot serialize {type(payload).__name__} payload: {exc}"
        ) from exc


def encode_payload(payload: Any) -> bytes:
    """Encode a payload for the wire."""
    return to_text(payload).encode("utf-8")


def decode_payload(data: bytes | str) -> Any:
    """Decode an inbound message body. Non-JSON text is returned verbatim."""
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    try:
        return _json_loads(text)
    except ValueError:
        return text


def fingerprint_text(payload: Any) -> str:
    """Best-effort deterministic stringification for deduplication.

    Unserializable payloads collapse to a fixed sentinel, so distinct
    unserializable payloads in one window look identical.
    """
    try:
        return to_text(payload)
    except RelaySerializationError:
        return UNSERIALIZABLE_PAYLOAD
