"""
Token revocation checks backed by Redis.

The identity service writes the flags; this backend only reads them so a
blocked team member loses access to billing actions immediately.
"""

import logging

from backend.app.core import redis_client as redis_module

logger = logging.getLogger(__name__)

# Redis key prefixes shared with the identity service
TOKEN_BLACKLIST_PREFIX = "blacklist:token:"
USER_TOKENS_PREFIX = "user:tokens:"


async def is_token_revoked(token: str) -> bool:
    """Check if this specific token has been revoked."""
    try:
        exists = await redis_module.redis_client.exists(f"{TOKEN_BLACKLIST_PREFIX}{token}")
        return exists > 0
    except Exception as e:
        # Fail open: Redis outage must not take billing down
        logger.warning("Token revocation check failed: %s", e)
        return False


async def are_user_tokens_revoked(user_id: int) -> bool:
    """Check if all tokens for a user have been revoked (user blocked)."""
    try:
        exists = await redis_module.redis_client.exists(f"{USER_TOKENS_PREFIX}{user_id}:revoked")
        return exists > 0
    except Exception as e:
        logger.warning("User revocation check failed for %s: %s", user_id, e)
        return False
