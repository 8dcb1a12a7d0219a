"""Authentication and security utilities."""
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def verify_secret_key(provided: Optional[str], expected: Optional[str]) -> bool:
    """Check the caller's X-Secret-Key header against the configured secret.

    Args:
        provided: Header value sent by the caller
        expected: Configured shared secret (RPC_SECRET)

    Returns:
        True if the key matches, False otherwise (including when no secret is configured)
    """
    if not expected:
        logger.warning("RPC_SECRET is not configured; rejecting request")
        return False

    if not provided:
        return False

    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
