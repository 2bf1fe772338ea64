"""OAuth state encoding and single-use nonce tracking."""

import base64
import binascii
import json
import secrets
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError

from connector_service.core.exceptions import OAuthExchangeError
from connector_service.models.oauth import OAuthState
from connector_service.utils.clock import utcnow, epoch_millis


# Timestamps below this are taken to be epoch seconds rather than milliseconds.
_MILLIS_THRESHOLD = 10 ** 11


def encode_state(tenant_id: str, now: Optional[datetime] = None) -> str:
    """Build an opaque state value carrying tenant, timestamp and nonce."""
    state = OAuthState(
        tenant_id=tenant_id,
        timestamp=epoch_millis(now or utcnow()),
        nonce=secrets.token_urlsafe(16),
    )
    raw = json.dumps(state.model_dump(), separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _decode_json_state(value: str) -> Optional[OAuthState]:
    padded = value + "=" * (-len(value) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return OAuthState(**payload)
    except ValidationError:
        return None


def _decode_delimited_state(value: str) -> Optional[OAuthState]:
    parts = value.rsplit(":", 2)
    if len(parts) != 3 or not all(parts):
        return None
    tenant_id, timestamp, nonce = parts
    try:
        ts = int(timestamp)
    except ValueError:
        return None
    if ts < _MILLIS_THRESHOLD:
        ts *= 1000
    return OAuthState(tenant_id=tenant_id, timestamp=ts, nonce=nonce)


def decode_state(
    value: str,
    max_age_seconds: int = 0,
    now: Optional[datetime] = None,
) -> OAuthState:
    """Decode a state value and enforce its maximum age.

    Accepts the base64url JSON form produced by ``encode_state`` and the
    delimiter form ``tenant:timestamp:nonce``. ``max_age_seconds`` of 0
    disables the age check.
    """
    if not value:
        raise OAuthExchangeError("Missing state parameter")

    state = _decode_json_state(value) or _decode_delimited_state(value)
    if state is None:
        raise OAuthExchangeError("Malformed state parameter")

    if max_age_seconds > 0:
        age_ms = epoch_millis(now or utcnow()) - state.timestamp
        if age_ms > max_age_seconds * 1000:
            raise OAuthExchangeError("State expired")
        if age_ms < -60_000:
            raise OAuthExchangeError("State timestamp is in the future")

    return state


class NonceCache:
    """Records consumed state nonces in Redis so a callback can't be replayed."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "oauth_nonce"):
        self.redis_client = redis_client
        self.prefix = prefix

    async def claim(self, nonce: str, ttl_seconds: int) -> bool:
        """Mark a nonce used. Returns False if it was already claimed."""
        claimed = await self.redis_client.set(
            f"{self.prefix}:{nonce}", "1", nx=True, ex=max(ttl_seconds, 1)
        )
        return bool(claimed)
