# =============================================================================
# NATS Relay -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("nats_relay")
logger.addHandler(logging.NullHandler())
