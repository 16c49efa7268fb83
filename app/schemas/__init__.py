from .retrospective import (
    ActionCreate,
    ActionUpdate,
    BoardElementRef,
    CompleteRequest,
    DiscussedRequest,
    GroupCreate,
    GroupItemAdd,
    ItemCreate,
    ItemUpdate,
    ReorderRequest,
    ReorderResponse,
    RetrospectiveCreate,
    StepRequest,
    SubscriptionTokenResponse,
    TimerLikeRequest,
    TimerStartRequest,
    VoteRequest,
)

__all__ = [
    "ActionCreate",
    "ActionUpdate",
    "BoardElementRef",
    "CompleteRequest",
    "DiscussedRequest",
    "GroupCreate",
    "GroupItemAdd",
    "ItemCreate",
    "ItemUpdate",
    "ReorderRequest",
    "ReorderResponse",
    "RetrospectiveCreate",
    "StepRequest",
    "SubscriptionTokenResponse",
    "TimerLikeRequest",
    "TimerStartRequest",
    "VoteRequest",
]
