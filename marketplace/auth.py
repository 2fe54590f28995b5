"""
Seller Authentication — bearer tokens for listing management.

Creating and toggling listings is restricted to the seller who owns them.
Identity comes from the platform's account system; this module only
checks the HMAC-signed session token the platform hands out:

  token = base64(json({"payload": {"sub", "iat", "exp"}, "sig": hmac_sha256(payload)}))

Buying does not need a token. The buyer proves themselves by paying.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("market.auth")


@dataclass
class AuthSession:
    """Authenticated seller session."""
    user_id: str
    issued_at: float
    expires_at: float


def _sign(payload: dict, secret: str) -> str:
    body = json.dumps(payload, sort_keys=True).encode()
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def create_token(user_id: str, secret: str, ttl_seconds: int = 3600) -> str:
    """Issue an HMAC-signed token for user_id (default lifetime 1 hour)."""
    now = int(time.time())
    payload = {"sub": user_id, "iat": now, "exp": now + ttl_seconds}
    token_data = json.dumps({"payload": payload, "sig": _sign(payload, secret)})
    return base64.urlsafe_b64encode(token_data.encode()).decode()


def verify_token(token: str, secret: str) -> Optional[AuthSession]:
    """
    Returns:
        AuthSession if valid, None if expired, tampered or malformed.
    """
    if not secret:
        logger.error("Token check with no auth secret configured — rejecting")
        return None

    try:
        token_data = json.loads(base64.urlsafe_b64decode(token.encode()))
        payload = token_data["payload"]
        sig = token_data["sig"]
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Malformed token: {type(e).__name__}")
        return None

    if not hmac.compare_digest(str(sig), _sign(payload, secret)):
        logger.warning("Token signature mismatch")
        return None

    if time.time() > payload.get("exp", 0):
        logger.info(f"Token expired for {payload.get('sub')}")
        return None

    return AuthSession(
        user_id=str(payload["sub"]),
        issued_at=payload["iat"],
        expires_at=payload["exp"],
    )
