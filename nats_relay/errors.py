# =============================================================================
# NATS Relay -- Error Types
# =============================================================================


class RelayError(Exception):
    """Base exception for all relay errors."""


class RelayConnectionError(RelayError):
    """A connection attempt failed. Retryable, feeds the backoff policy."""


class RelayRetryExhaustedError(RelayError):
    """The retry budget ran out. Surfaces as the FAILED status."""

    def __init__(self, max_attempts: int) -> None:
        self.max_attempts = max_attempts
        super().__init__(f"Failed after {max_attempts} attempts")


class RelayPublishError(RelayError):
    """A publish could not be sent (no connection, or the send failed)."""


class RelayProtocolError(RelayError):
    """Malformed or unknown event envelope."""


class RelaySerializationError(RelayError):
    """Payload cannot be encoded for publishing."""
