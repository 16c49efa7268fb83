from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.auth.identity import UserIdentity
from app.config.loader import get_voting_settings
from app.models.retrospective import RetrospectiveGroup, RetrospectiveItem, Vote
from app.services.board_store import (
    GROUP_TYPE,
    ITEM_TYPE,
    BoardStore,
    validate_target_type,
)
from app.services.session_state import load_retrospective
from app.utils.broadcast_hub import REVIEW_TOPIC, BroadcastHub, broadcast_hub

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]


class VotingAllocator:
    """Per-user vote budget, per-target cap and display aggregation."""

    def __init__(
        self,
        db: Session,
        hub: Optional[BroadcastHub] = None,
        board: Optional[BoardStore] = None,
    ) -> None:
        self.db = db
        self.hub = hub or broadcast_hub
        self.board = board or BoardStore(db, self.hub)
        self.max_per_target = get_voting_settings()["max_votes_per_target"]

    def votes_used(self, session_id: str, user_id: str) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(Vote.vote_count), 0))
            .filter(Vote.retrospective_id == session_id, Vote.user_id == user_id)
            .scalar()
        )
        return int(total or 0)

    def remaining_budget(self, session_id: str, user_id: str) -> int:
        retrospective = load_retrospective(self.db, session_id)
        return retrospective.vote_budget - self.votes_used(session_id, user_id)

    def _find_vote(
        self, session_id: str, user_id: str, target_type: str, target_id: int
    ) -> Optional[Vote]:
        query = self.db.query(Vote).filter(
            Vote.retrospective_id == session_id, Vote.user_id == user_id
        )
        if target_type == ITEM_TYPE:
            query = query.filter(Vote.item_id == target_id)
        else:
            query = query.filter(Vote.group_id == target_id)
        return query.first()

    def vote(
        self,
        session_id: str,
        identity: UserIdentity,
        *,
        target_type: str,
        target_id: int,
        count: int,
    ) -> JSONCompatibleDict:
        """Set the user's vote count on one target; returns the remaining budget."""
        retrospective = load_retrospective(self.db, session_id)
        target_type = validate_target_type(target_type)
        try:
            count_value = int(count)
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail="Vote count must be a number.") from None
        if count_value < 0 or count_value > self.max_per_target:
            raise HTTPException(
                status_code=400,
                detail=f"Vote count must be between 0 and {self.max_per_target}.",
            )
        if target_type == ITEM_TYPE:
            self.board.get_item(session_id, target_id)
        else:
            self.board.get_group(session_id, target_id)

        user_id = identity.user_id
        existing = self._find_vote(session_id, user_id, target_type, target_id)
        existing_count = existing.vote_count if existing else 0
        used_elsewhere = self.votes_used(session_id, user_id) - existing_count
        if used_elsewhere + count_value > retrospective.vote_budget:
            logger.info(
                "Vote rejected for %s in %s: budget %s exhausted",
                user_id,
                session_id,
                retrospective.vote_budget,
            )
            raise HTTPException(
                status_code=400,
                detail=(
                    f"Vote budget exceeded: {retrospective.vote_budget - used_elsewhere} "
                    "vote(s) available."
                ),
            )

        if count_value == 0:
            if existing is not None:
                self.db.delete(existing)
        elif existing is not None:
            existing.vote_count = count_value
            self.db.add(existing)
        else:
            self.db.add(
                Vote(
                    retrospective_id=session_id,
                    user_id=user_id,
                    item_id=target_id if target_type == ITEM_TYPE else None,
                    group_id=target_id if target_type == GROUP_TYPE else None,
                    vote_count=count_value,
                )
            )
        self.db.commit()
        remaining = retrospective.vote_budget - (used_elsewhere + count_value)

        self.hub.publish(
            session_id,
            {
                "type": "vote_updated",
                "targetType": target_type,
                "targetId": target_id,
                "userId": user_id,
                "voteCount": count_value,
            },
            sub_topic=REVIEW_TOPIC,
        )
        return {
            "targetType": target_type,
            "targetId": target_id,
            "voteCount": count_value,
            "remaining": remaining,
        }

    def user_votes(self, session_id: str, user_id: str) -> JSONCompatibleDict:
        retrospective = load_retrospective(self.db, session_id)
        records = (
            self.db.query(Vote)
            .filter(Vote.retrospective_id == session_id, Vote.user_id == user_id)
            .order_by(Vote.id.asc())
            .all()
        )
        used = sum(record.vote_count for record in records)
        return {
            "votes": [
                {
                    "targetType": record.target_type,
                    "targetId": record.target_id,
                    "voteCount": record.vote_count,
                }
                for record in records
            ],
            "budget": retrospective.vote_budget,
            "remaining": retrospective.vote_budget - used,
        }

    def aggregate(self, session_id: str) -> List[JSONCompatibleDict]:
        """Standalone items and groups with vote totals, undiscussed first.

        A group's total is its members' item votes plus votes cast on the
        group itself. Each half is ordered by total, highest first.
        """
        load_retrospective(self.db, session_id)
        item_totals: Dict[int, int] = defaultdict(int)
        group_totals: Dict[int, int] = defaultdict(int)
        rows = (
            self.db.query(Vote.item_id, Vote.group_id, func.sum(Vote.vote_count))
            .filter(Vote.retrospective_id == session_id)
            .group_by(Vote.item_id, Vote.group_id)
            .all()
        )
        for item_id, group_id, total in rows:
            if item_id is not None:
                item_totals[item_id] += int(total or 0)
            elif group_id is not None:
                group_totals[group_id] += int(total or 0)

        entries: List[JSONCompatibleDict] = []
        items = (
            self.db.query(RetrospectiveItem)
            .filter(RetrospectiveItem.retrospective_id == session_id)
            .all()
        )
        for item in items:
            if item.group_id is not None:
                group_totals[item.group_id] += item_totals.get(item.id, 0)
                continue
            entries.append(
                {
                    "type": ITEM_TYPE,
                    "id": item.id,
                    "category": item.category,
                    "content": item.content,
                    "isDiscussed": bool(item.is_discussed),
                    "totalVotes": item_totals.get(item.id, 0),
                }
            )

        groups = (
            self.db.query(RetrospectiveGroup)
            .filter(RetrospectiveGroup.retrospective_id == session_id)
            .all()
        )
        for group in groups:
            entries.append(
                {
                    "type": GROUP_TYPE,
                    "id": group.id,
                    "category": group.display_category,
                    "title": group.title,
                    "itemIds": [member.id for member in group.items],
                    "isDiscussed": bool(group.is_discussed),
                    "totalVotes": group_totals.get(group.id, 0),
                }
            )

        entries.sort(key=lambda entry: (entry["isDiscussed"], -entry["totalVotes"], entry["type"], entry["id"]))
        return entries
