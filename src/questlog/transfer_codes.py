"""Short-lived device transfer codes held in Redis.

A code is a 6-digit number, generated server-side with a cryptographic
random source. It maps to the issuing user for ``transfer_code_ttl_seconds``
and can be redeemed once.
"""

from __future__ import annotations

import json
import logging
import secrets
import string
from typing import Any

from questlog.config import get_settings
from questlog.exceptions import InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)

TRANSFER_CODE_CHARSET = string.digits
TRANSFER_CODE_LENGTH = 6
KEY_PREFIX = "transfer_code:"


def generate_transfer_code() -> str:
    """Generate a cryptographically random 6-digit transfer code."""
    return "".join(secrets.choice(TRANSFER_CODE_CHARSET) for _ in range(TRANSFER_CODE_LENGTH))


def _key(code: str) -> str:
    return f"{KEY_PREFIX}{code}"


async def create_transfer_code(
    redis: Any,
    user_id: str,
    payload: dict[str, Any] | None = None,
    ttl_seconds: int | None = None,
) -> str:
    """Store a new code for ``user_id``; it expires after the TTL."""
    ttl = ttl_seconds or get_settings().transfer_code_ttl_seconds
    value = json.dumps({"user_id": user_id, **(payload or {})})
    for _ in range(10):
        code = generate_transfer_code()
        # NX so a live code is never overwritten by a collision
        if await redis.set(_key(code), value, ex=ttl, nx=True):
            logger.info("Issued transfer code for user %s (ttl=%ds)", user_id, ttl)
            return code
    raise RuntimeError("Failed to generate unique transfer code after 10 attempts")


async def redeem_transfer_code(redis: Any, code: str) -> dict[str, Any]:
    """Consume a code. Raises NotFoundError if it is unknown, expired or already used."""
    code = code.strip()
    if len(code) != TRANSFER_CODE_LENGTH or not code.isdigit():
        raise InvalidInputError("Transfer code must be 6 digits")
    raw = await redis.getdel(_key(code))
    if raw is None:
        raise NotFoundError("Transfer code expired or already used")
    return json.loads(raw)
