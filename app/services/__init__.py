"""Service layer for the retrospective session engine."""

from .presence_tracker import (
    presence_tracker,
    PresenceTracker,
    PresenceRecord,
)  # noqa: F401
from .session_state import SessionStateMachine  # noqa: F401
from .board_store import BoardStore  # noqa: F401
from .grouping_engine import GroupingEngine  # noqa: F401
from .voting_allocator import VotingAllocator  # noqa: F401
from .action_items import ActionItemManager  # noqa: F401

__all__ = [
    "presence_tracker",
    "PresenceTracker",
    "PresenceRecord",
    "SessionStateMachine",
    "BoardStore",
    "GroupingEngine",
    "VotingAllocator",
    "ActionItemManager",
]
