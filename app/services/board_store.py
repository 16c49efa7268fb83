from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.auth.identity import UserIdentity
from app.config.loader import get_board_settings
from app.models.retrospective import (
    CATEGORY_ORDER,
    RetrospectiveGroup,
    RetrospectiveItem,
    RetrospectivePhase,
    Vote,
)
from app.services.session_state import isoformat, load_retrospective
from app.utils.broadcast_hub import (
    DISCUSSION_TOPIC,
    ITEMS_TOPIC,
    BroadcastHub,
    broadcast_hub,
)

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]
BoardElement = Union[RetrospectiveItem, RetrospectiveGroup]

ITEM_TYPE = "item"
GROUP_TYPE = "group"
TARGET_TYPES = (ITEM_TYPE, GROUP_TYPE)


def validate_category(category: Any) -> str:
    value = str(category or "").strip().lower()
    if value not in CATEGORY_ORDER:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown category '{category}'. Expected one of: {', '.join(CATEGORY_ORDER)}.",
        )
    return value


def validate_target_type(target_type: Any) -> str:
    value = str(target_type or "").strip().lower()
    if value not in TARGET_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown target type '{target_type}'. Expected 'item' or 'group'.",
        )
    return value


def element_sort_key(element: BoardElement) -> Tuple[int, int, int]:
    # Items sort before groups on equal position so ties stay deterministic.
    kind = 0 if isinstance(element, RetrospectiveItem) else 1
    return (element.position or 0, kind, element.id)


def serialize_item(item: RetrospectiveItem) -> JSONCompatibleDict:
    return {
        "type": ITEM_TYPE,
        "id": item.id,
        "category": item.category,
        "content": item.content,
        "authorId": item.author_id,
        "authorName": item.author_name,
        "position": item.position,
        "groupId": item.group_id,
        "isDiscussed": bool(item.is_discussed),
        "createdAt": isoformat(item.created_at),
    }


def serialize_group(group: RetrospectiveGroup) -> JSONCompatibleDict:
    members = sorted(group.items, key=lambda member: (member.position or 0, member.id))
    return {
        "type": GROUP_TYPE,
        "id": group.id,
        "title": group.title,
        "category": group.display_category,
        "position": group.position,
        "isDiscussed": bool(group.is_discussed),
        "items": [serialize_item(member) for member in members],
    }


class BoardStore:
    """Canonical board state: items, groups and their column positions."""

    def __init__(self, db: Session, hub: Optional[BroadcastHub] = None) -> None:
        self.db = db
        self.hub = hub or broadcast_hub

    # ------------------------------------------------------------------ lookups

    def get_item(self, session_id: str, item_id: int) -> RetrospectiveItem:
        item = (
            self.db.query(RetrospectiveItem)
            .filter(
                RetrospectiveItem.id == item_id,
                RetrospectiveItem.retrospective_id == session_id,
            )
            .first()
        )
        if not item:
            raise HTTPException(
                status_code=404, detail=f"Item {item_id} not found in this retrospective."
            )
        return item

    def get_group(self, session_id: str, group_id: int) -> RetrospectiveGroup:
        group = (
            self.db.query(RetrospectiveGroup)
            .filter(
                RetrospectiveGroup.id == group_id,
                RetrospectiveGroup.retrospective_id == session_id,
            )
            .first()
        )
        if not group:
            raise HTTPException(
                status_code=404, detail=f"Group {group_id} not found in this retrospective."
            )
        return group

    def target_exists(self, session_id: str, target_type: str, target_id: int) -> bool:
        model = RetrospectiveItem if target_type == ITEM_TYPE else RetrospectiveGroup
        return (
            self.db.query(model.id)
            .filter(model.id == target_id, model.retrospective_id == session_id)
            .first()
            is not None
        )

    def column_elements(self, session_id: str, category: str) -> List[BoardElement]:
        """Standalone items and groups of one column, in display order."""
        items = (
            self.db.query(RetrospectiveItem)
            .filter(
                RetrospectiveItem.retrospective_id == session_id,
                RetrospectiveItem.category == category,
                RetrospectiveItem.group_id.is_(None),
            )
            .all()
        )
        groups = (
            self.db.query(RetrospectiveGroup)
            .filter(
                RetrospectiveGroup.retrospective_id == session_id,
                RetrospectiveGroup.display_category == category,
            )
            .all()
        )
        elements: List[BoardElement] = [*items, *groups]
        elements.sort(key=element_sort_key)
        return elements

    def next_position(self, session_id: str, category: str) -> int:
        item_max = (
            self.db.query(func.max(RetrospectiveItem.position))
            .filter(
                RetrospectiveItem.retrospective_id == session_id,
                RetrospectiveItem.category == category,
            )
            .scalar()
        )
        group_max = (
            self.db.query(func.max(RetrospectiveGroup.position))
            .filter(
                RetrospectiveGroup.retrospective_id == session_id,
                RetrospectiveGroup.display_category == category,
            )
            .scalar()
        )
        candidates = [value for value in (item_max, group_max) if value is not None]
        return max(candidates) + 1 if candidates else 0

    # ------------------------------------------------------------------- items

    def _validate_content(self, content: Any) -> str:
        value = str(content or "").strip()
        if not value:
            raise HTTPException(status_code=400, detail="Item content cannot be empty.")
        limit = get_board_settings()["item_character_limit"]
        if len(value) > limit:
            raise HTTPException(
                status_code=400,
                detail=f"Item content exceeds the {limit} character limit.",
            )
        return value

    def create_item(
        self,
        session_id: str,
        identity: UserIdentity,
        *,
        category: str,
        content: str,
    ) -> RetrospectiveItem:
        retrospective = load_retrospective(self.db, session_id)
        if retrospective.current_step != RetrospectivePhase.FEEDBACK.value:
            raise HTTPException(
                status_code=400,
                detail="Feedback items can only be added during the feedback phase.",
            )
        category_value = validate_category(category)
        content_value = self._validate_content(content)

        item = RetrospectiveItem(
            retrospective_id=session_id,
            author_id=identity.user_id,
            author_name=identity.display_name,
            category=category_value,
            content=content_value,
            position=self.next_position(session_id, category_value),
        )
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)
        logger.info(
            "Item %s added to %s/%s by %s",
            item.id,
            session_id,
            category_value,
            identity.user_id,
        )

        self.hub.publish(
            session_id,
            {"type": "item_added", "item": serialize_item(item)},
            sub_topic=ITEMS_TOPIC,
        )
        return item

    def _require_author(self, item: RetrospectiveItem, identity: UserIdentity) -> None:
        if item.author_id != identity.user_id:
            raise HTTPException(
                status_code=403, detail="Only the author can change this item."
            )

    def update_item(
        self,
        session_id: str,
        item_id: int,
        identity: UserIdentity,
        *,
        content: str,
    ) -> RetrospectiveItem:
        item = self.get_item(session_id, item_id)
        self._require_author(item, identity)
        item.content = self._validate_content(content)
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)

        self.hub.publish(
            session_id,
            {"type": "item_updated", "item": serialize_item(item)},
            sub_topic=ITEMS_TOPIC,
        )
        return item

    def delete_item(
        self, session_id: str, item_id: int, identity: UserIdentity
    ) -> JSONCompatibleDict:
        item = self.get_item(session_id, item_id)
        self._require_author(item, identity)
        group_id = item.group_id

        self.db.query(Vote).filter(Vote.item_id == item.id).delete(
            synchronize_session=False
        )
        item.group_id = None
        self.db.delete(item)
        self.db.flush()

        group_dissolved = False
        if group_id is not None:
            group = self.get_group(session_id, group_id)
            self.db.refresh(group)
            group_dissolved = self.dissolve_if_undersized(group)
        self.db.commit()
        logger.info("Item %s deleted from %s by %s", item_id, session_id, identity.user_id)

        result = {
            "type": "item_deleted",
            "itemId": item_id,
            "groupId": group_id,
            "groupDissolved": group_dissolved,
        }
        self.hub.publish(session_id, result, sub_topic=ITEMS_TOPIC)
        return result

    # ------------------------------------------------------------------- groups

    def dissolve_if_undersized(self, group: RetrospectiveGroup) -> bool:
        """Remove a group left with one member or none; the caller commits.

        A sole remaining member takes the group's slot when it belongs to the
        group's column, otherwise it goes to the end of its own column.
        """
        members = list(group.items)
        if len(members) > 1:
            return False

        for remaining in members:
            remaining.group_id = None
            if remaining.category == group.display_category:
                remaining.position = group.position
            else:
                remaining.position = self.next_position(
                    group.retrospective_id, remaining.category
                )
            self.db.add(remaining)

        self.db.query(Vote).filter(Vote.group_id == group.id).delete(
            synchronize_session=False
        )
        self.db.delete(group)
        self.db.flush()
        logger.info(
            "Group %s dissolved in %s (%s member(s) left)",
            group.id,
            group.retrospective_id,
            len(members),
        )
        return True

    # -------------------------------------------------------------- discussion

    def mark_discussed(
        self,
        session_id: str,
        target_id: int,
        target_type: str,
        identity: UserIdentity,
        *,
        discussed: bool = True,
    ) -> JSONCompatibleDict:
        target_type = validate_target_type(target_type)
        if target_type == ITEM_TYPE:
            target: BoardElement = self.get_item(session_id, target_id)
        else:
            target = self.get_group(session_id, target_id)
        target.is_discussed = bool(discussed)
        self.db.add(target)
        self.db.commit()

        event = {
            "type": "item_discussed",
            "itemId": target_id,
            "itemType": target_type,
            "isDiscussed": bool(discussed),
            "memberName": identity.display_name,
            "timestamp": int(datetime.now(timezone.utc).timestamp()),
        }
        self.hub.publish(session_id, event, sub_topic=DISCUSSION_TOPIC)
        return event

    # -------------------------------------------------------------- read model

    def board(self, session_id: str, viewer: UserIdentity) -> JSONCompatibleDict:
        retrospective = load_retrospective(self.db, session_id)
        private = retrospective.current_step == RetrospectivePhase.FEEDBACK.value

        columns: Dict[str, List[JSONCompatibleDict]] = {}
        for category in CATEGORY_ORDER:
            column: List[JSONCompatibleDict] = []
            for element in self.column_elements(session_id, category):
                if isinstance(element, RetrospectiveGroup):
                    if not private:
                        column.append(serialize_group(element))
                elif not private or element.author_id == viewer.user_id:
                    column.append(serialize_item(element))
            columns[category] = column

        return {
            "retrospectiveId": session_id,
            "currentStep": retrospective.current_step,
            "categories": columns,
        }
