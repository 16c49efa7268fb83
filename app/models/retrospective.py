from __future__ import annotations

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base


class RetrospectivePhase(str, enum.Enum):
    FEEDBACK = "feedback"
    REVIEW = "review"
    VOTING = "voting"
    ACTIONS = "actions"
    COMPLETED = "completed"


class RetrospectiveStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class ItemCategory(str, enum.Enum):
    WRONG = "wrong"
    GOOD = "good"
    IMPROVED = "improved"
    RANDOM = "random"


# Column order on the board.
CATEGORY_ORDER = [
    ItemCategory.WRONG.value,
    ItemCategory.GOOD.value,
    ItemCategory.IMPROVED.value,
    ItemCategory.RANDOM.value,
]


class Retrospective(Base):
    __tablename__ = "retrospectives"

    retrospective_id = Column(String(24), primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    owner_id = Column(String(64), nullable=False, index=True)
    current_step = Column(
        String(16), nullable=False, default=RetrospectivePhase.FEEDBACK.value
    )
    status = Column(String(16), nullable=False, default=RetrospectiveStatus.ACTIVE.value)
    vote_budget = Column(Integer, nullable=False, default=10)
    timer_duration = Column(Integer, nullable=True)
    timer_started_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def is_completed(self) -> bool:
        return self.status == RetrospectiveStatus.COMPLETED.value


class RetrospectiveGroup(Base):
    __tablename__ = "retrospective_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    retrospective_id = Column(
        String(24),
        ForeignKey("retrospectives.retrospective_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String(200), nullable=False)
    display_category = Column(String(16), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    is_discussed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship(
        "RetrospectiveItem",
        back_populates="group",
        order_by="(RetrospectiveItem.position, RetrospectiveItem.id)",
    )


class RetrospectiveItem(Base):
    __tablename__ = "retrospective_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    retrospective_id = Column(
        String(24),
        ForeignKey("retrospectives.retrospective_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    author_id = Column(String(64), nullable=False, index=True)
    author_name = Column(String(200), nullable=True)
    category = Column(String(16), nullable=False, index=True)
    content = Column(Text, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    group_id = Column(
        Integer,
        ForeignKey("retrospective_groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_discussed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    group = relationship("RetrospectiveGroup", back_populates="items")


class Vote(Base):
    __tablename__ = "retrospective_votes"
    __table_args__ = (
        UniqueConstraint("user_id", "item_id", name="uq_vote_user_item"),
        UniqueConstraint("user_id", "group_id", name="uq_vote_user_group"),
        CheckConstraint("vote_count > 0", name="ck_vote_count_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    retrospective_id = Column(
        String(24),
        ForeignKey("retrospectives.retrospective_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(64), nullable=False, index=True)
    item_id = Column(
        Integer,
        ForeignKey("retrospective_items.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    group_id = Column(
        Integer,
        ForeignKey("retrospective_groups.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    vote_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def target_type(self) -> str:
        return "item" if self.item_id is not None else "group"

    @property
    def target_id(self) -> int:
        return self.item_id if self.item_id is not None else self.group_id


class TimerLike(Base):
    __tablename__ = "retrospective_timer_likes"
    __table_args__ = (
        UniqueConstraint("retrospective_id", "user_id", name="uq_timer_like_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    retrospective_id = Column(
        String(24),
        ForeignKey("retrospectives.retrospective_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(64), nullable=False)
    user_name = Column(String(200), nullable=True)
    is_liked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ActionStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class RetrospectiveAction(Base):
    __tablename__ = "retrospective_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    retrospective_id = Column(
        String(24),
        ForeignKey("retrospectives.retrospective_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    description = Column(Text, nullable=False)
    created_by = Column(String(64), nullable=False)
    assigned_to = Column(String(64), nullable=False, index=True)
    assigned_to_name = Column(String(200), nullable=True)
    context_type = Column(String(16), nullable=True)
    context_id = Column(Integer, nullable=True)
    status = Column(String(16), nullable=False, default=ActionStatus.OPEN.value)
    due_date = Column(Date, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
