from .identity import UserIdentity, build_identity, get_current_identity
from .subscription_token import (
    decode_subscription_token,
    issue_subscription_token,
)

__all__ = [
    "UserIdentity",
    "build_identity",
    "get_current_identity",
    "decode_subscription_token",
    "issue_subscription_token",
]
