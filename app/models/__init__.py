# Import models so they are registered with SQLAlchemy's Base metadata
from .retrospective import (
    ActionStatus,
    CATEGORY_ORDER,
    ItemCategory,
    Retrospective,
    RetrospectiveAction,
    RetrospectiveGroup,
    RetrospectiveItem,
    RetrospectivePhase,
    RetrospectiveStatus,
    TimerLike,
    Vote,
)

__all__ = [
    "ActionStatus",
    "CATEGORY_ORDER",
    "ItemCategory",
    "Retrospective",
    "RetrospectiveAction",
    "RetrospectiveGroup",
    "RetrospectiveItem",
    "RetrospectivePhase",
    "RetrospectiveStatus",
    "TimerLike",
    "Vote",
]
