"""Signed subscription tokens for the realtime endpoints.

A token names the session, the subscribing user and the sub-topics that
user may listen to, so the WebSocket / SSE endpoints can trust a query-string
credential without a round trip to the identity provider.
"""

from __future__ import annotations

import logging
import os
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from fastapi import HTTPException, status
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_ISSUER = os.getenv("RETRO_SUBSCRIPTION_ISSUER", "retroboard")
DEFAULT_TOKEN_TTL = timedelta(hours=12)


def _is_production_mode() -> bool:
    env = os.getenv("RETRO_ENV", "development").strip().lower()
    return env in {"production", "prod"}


def _resolve_secret() -> str:
    key = os.getenv("RETRO_SUBSCRIPTION_SECRET")
    if key and len(key) >= 32:
        return key
    if _is_production_mode():
        raise RuntimeError(
            "RETRO_SUBSCRIPTION_SECRET must be set (32+ characters) in production."
        )
    if key:
        logger.error("RETRO_SUBSCRIPTION_SECRET must be at least 32 characters long.")
    logger.warning(
        "DEVELOPMENT MODE: using a generated subscription secret; "
        "set RETRO_SUBSCRIPTION_SECRET for production."
    )
    return secrets.token_urlsafe(48)


SECRET_KEY = _resolve_secret()


def issue_subscription_token(
    session_id: str,
    user_id: str,
    topics: Iterable[str],
    *,
    display_name: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": user_id,
        "name": display_name or user_id,
        "session": session_id,
        "topics": sorted(set(topics)),
        "iat": now,
        "exp": now + (expires_delta or DEFAULT_TOKEN_TTL),
        "iss": TOKEN_ISSUER,
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_subscription_token(token: str, session_id: str) -> Dict[str, Any]:
    """Verify a token for the given session; raises 401 on any mismatch."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired subscription token.",
    )
    try:
        payload = jwt.decode(
            token,
            SECRET_KEY,
            algorithms=[ALGORITHM],
            issuer=TOKEN_ISSUER,
            options={"verify_aud": False},
        )
    except JWTError as exc:
        logger.info("Rejected subscription token: %s", exc)
        raise credentials_exception from exc
    if payload.get("session") != session_id or not payload.get("sub"):
        logger.info("Subscription token does not match session %s", session_id)
        raise credentials_exception
    return payload
