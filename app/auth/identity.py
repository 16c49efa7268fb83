"""Identity collaborator.

Authentication and role management live outside the session engine. The
engine only needs who is acting (id, display name, avatar, roles); here that
is read from headers set by the authenticating proxy in front of the service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    display_name: str
    avatar: Optional[str] = None
    roles: Tuple[str, ...] = field(default_factory=tuple)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "displayName": self.display_name,
            "avatar": self.avatar,
            "roles": list(self.roles),
        }


def build_identity(
    user_id: Optional[str],
    display_name: Optional[str] = None,
    avatar: Optional[str] = None,
    roles: Optional[str] = None,
) -> UserIdentity:
    """Normalise raw identity values; raises 401 when no user id is supplied."""
    cleaned_id = str(user_id or "").strip()
    if not cleaned_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity.",
        )
    name = str(display_name or "").strip() or cleaned_id
    role_values = tuple(
        role.strip() for role in str(roles or "").split(",") if role.strip()
    )
    return UserIdentity(
        user_id=cleaned_id,
        display_name=name,
        avatar=(str(avatar).strip() or None) if avatar else None,
        roles=role_values,
    )


async def get_current_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
    x_user_avatar: Optional[str] = Header(default=None),
    x_user_roles: Optional[str] = Header(default=None),
) -> UserIdentity:
    """FastAPI dependency resolving the acting user from proxy headers."""
    identity = build_identity(x_user_id, x_user_name, x_user_avatar, x_user_roles)
    logger.debug("Resolved identity %s", identity.user_id)
    return identity
