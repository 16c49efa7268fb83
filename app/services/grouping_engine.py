from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.retrospective import RetrospectiveGroup, RetrospectiveItem, Vote
from app.services.board_store import (
    BoardStore,
    element_sort_key,
    serialize_group,
    validate_category,
)
from app.services.drag_intent import (
    AddToGroupDecision,
    CreateGroupDecision,
    DropDecision,
    ElementRef,
    NoOpDecision,
    ReorderDecision,
)
from app.services.session_state import load_retrospective
from app.utils.broadcast_hub import REVIEW_TOPIC, BroadcastHub, broadcast_hub

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]
ElementInput = Union[ElementRef, Dict[str, Any]]


def _coerce_ref(raw: ElementInput) -> ElementRef:
    if isinstance(raw, ElementRef):
        return raw
    try:
        return ElementRef(type=str(raw.get("type", "")).strip().lower(), id=int(raw.get("id")))
    except (AttributeError, TypeError, ValueError):
        raise HTTPException(
            status_code=400, detail=f"Invalid board element reference: {raw!r}"
        ) from None


class GroupingEngine:
    """Group membership and column ordering on top of the BoardStore."""

    def __init__(
        self,
        db: Session,
        hub: Optional[BroadcastHub] = None,
        board: Optional[BoardStore] = None,
    ) -> None:
        self.db = db
        self.hub = hub or broadcast_hub
        self.board = board or BoardStore(db, self.hub)

    def _discard_item_votes(self, item_ids: Iterable[int]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        return (
            self.db.query(Vote)
            .filter(Vote.item_id.in_(ids))
            .delete(synchronize_session=False)
        )

    def _shift_positions(self, session_id: str, category: str, from_position: int) -> None:
        self.db.query(RetrospectiveItem).filter(
            RetrospectiveItem.retrospective_id == session_id,
            RetrospectiveItem.category == category,
            RetrospectiveItem.group_id.is_(None),
            RetrospectiveItem.position >= from_position,
        ).update(
            {RetrospectiveItem.position: RetrospectiveItem.position + 1},
            synchronize_session="fetch",
        )
        self.db.query(RetrospectiveGroup).filter(
            RetrospectiveGroup.retrospective_id == session_id,
            RetrospectiveGroup.display_category == category,
            RetrospectiveGroup.position >= from_position,
        ).update(
            {RetrospectiveGroup.position: RetrospectiveGroup.position + 1},
            synchronize_session="fetch",
        )

    # ------------------------------------------------------------------ create

    def create_group(
        self,
        session_id: str,
        item_ids: Sequence[int],
        *,
        category: Optional[str] = None,
        target_position: Optional[int] = None,
        title: Optional[str] = None,
    ) -> RetrospectiveGroup:
        load_retrospective(self.db, session_id)
        unique_ids: List[int] = []
        for raw_id in item_ids:
            item_id = int(raw_id)
            if item_id not in unique_ids:
                unique_ids.append(item_id)
        if len(unique_ids) < 2:
            raise HTTPException(
                status_code=400, detail="A group needs at least two items."
            )

        items = [self.board.get_item(session_id, item_id) for item_id in unique_ids]
        grouped = [item.id for item in items if item.group_id is not None]
        if grouped:
            raise HTTPException(
                status_code=400,
                detail=f"Item(s) already grouped: {', '.join(str(i) for i in grouped)}.",
            )

        display_category = (
            validate_category(category) if category else items[0].category
        )
        if target_position is not None:
            position = max(0, int(target_position))
            self._shift_positions(session_id, display_category, position)
        else:
            position = self.board.next_position(session_id, display_category)

        group_count = (
            self.db.query(RetrospectiveGroup)
            .filter(RetrospectiveGroup.retrospective_id == session_id)
            .count()
        )
        group = RetrospectiveGroup(
            retrospective_id=session_id,
            title=(title or "").strip() or f"Group {group_count + 1}",
            display_category=display_category,
            position=position,
        )
        self.db.add(group)
        self.db.flush()

        for member_position, item in enumerate(items):
            item.group_id = group.id
            item.position = member_position
            self.db.add(item)
        discarded = self._discard_item_votes(unique_ids)
        self.db.commit()
        self.db.refresh(group)
        logger.info(
            "Group %s created in %s/%s from items %s (%s vote record(s) discarded)",
            group.id,
            session_id,
            display_category,
            unique_ids,
            discarded,
        )

        self.hub.publish(
            session_id,
            {
                "type": "group_created",
                "group": serialize_group(group),
                "item_ids": unique_ids,
            },
            sub_topic=REVIEW_TOPIC,
        )
        return group

    # -------------------------------------------------------------- membership

    def add_item_to_group(
        self, session_id: str, item_id: int, group_id: int
    ) -> RetrospectiveGroup:
        item = self.board.get_item(session_id, item_id)
        group = self.board.get_group(session_id, group_id)
        if item.group_id is not None:
            raise HTTPException(
                status_code=400, detail=f"Item {item_id} is already grouped."
            )

        positions = [member.position or 0 for member in group.items]
        item.group_id = group.id
        item.position = max(positions) + 1 if positions else 0
        self.db.add(item)
        self._discard_item_votes([item.id])
        self.db.commit()
        self.db.refresh(group)
        logger.info("Item %s added to group %s in %s", item_id, group_id, session_id)

        self.hub.publish(
            session_id,
            {"type": "item_added_to_group", "item_id": item_id, "group_id": group_id},
            sub_topic=REVIEW_TOPIC,
        )
        return group

    def separate_item(self, session_id: str, item_id: int) -> JSONCompatibleDict:
        item = self.board.get_item(session_id, item_id)
        if item.group_id is None:
            raise HTTPException(
                status_code=400, detail=f"Item {item_id} is not in a group."
            )
        group = self.board.get_group(session_id, item.group_id)
        group_id = group.id

        item.position = self.board.next_position(session_id, item.category)
        item.group_id = None
        self.db.add(item)
        self.db.flush()
        self.db.refresh(group)
        group_dissolved = self.board.dissolve_if_undersized(group)
        self.db.commit()
        logger.info(
            "Item %s separated from group %s in %s (dissolved=%s)",
            item_id,
            group_id,
            session_id,
            group_dissolved,
        )

        event = {
            "type": "item_separated",
            "item_id": item_id,
            "group_id": group_id,
            "group_dissolved": group_dissolved,
        }
        self.hub.publish(session_id, event, sub_topic=REVIEW_TOPIC)
        return event

    # ----------------------------------------------------------------- reorder

    def _resolve_column_element(
        self, session_id: str, category: str, ref: ElementRef
    ) -> Union[RetrospectiveItem, RetrospectiveGroup]:
        if ref.is_item:
            item = self.board.get_item(session_id, ref.id)
            if item.group_id is not None:
                raise HTTPException(
                    status_code=400,
                    detail=f"Item {ref.id} is grouped; reorder its group instead.",
                )
            if item.category != category:
                raise HTTPException(
                    status_code=400,
                    detail=f"Item {ref.id} does not belong to column '{category}'.",
                )
            return item
        group = self.board.get_group(session_id, ref.id)
        if group.display_category != category:
            raise HTTPException(
                status_code=400,
                detail=f"Group {ref.id} does not belong to column '{category}'.",
            )
        return group

    def reorder(
        self,
        session_id: str,
        category: str,
        ordered_elements: Sequence[ElementInput],
    ) -> JSONCompatibleDict:
        """Assign dense positions 0..n-1 to a column in the given order.

        Column elements missing from ``ordered_elements`` keep their relative
        order after the listed ones. An unchanged, already dense column is not
        written and not broadcast.
        """
        load_retrospective(self.db, session_id)
        category = validate_category(category)
        refs = [_coerce_ref(raw) for raw in ordered_elements]
        if len(set(refs)) != len(refs):
            raise HTTPException(
                status_code=400, detail="Duplicate elements in reorder request."
            )

        requested = [
            self._resolve_column_element(session_id, category, ref) for ref in refs
        ]
        current = self.board.column_elements(session_id, category)
        listed = set(refs)
        unlisted = [
            element
            for element in current
            if ElementRef(_element_type(element), element.id) not in listed
        ]
        final = requested + sorted(unlisted, key=element_sort_key)

        item_ids = [element.id for element in final if isinstance(element, RetrospectiveItem)]
        group_ids = [element.id for element in final if isinstance(element, RetrospectiveGroup)]
        unchanged = [_key(element) for element in final] == [_key(element) for element in current]
        dense = all(element.position == index for index, element in enumerate(final))
        if unchanged and dense:
            logger.debug("Reorder of %s/%s skipped; order unchanged", session_id, category)
            return {"changed": False, "category": category, "item_ids": item_ids, "group_ids": group_ids}

        for index, element in enumerate(final):
            element.position = index
            self.db.add(element)
        self.db.commit()
        logger.info("Column %s/%s reordered (%s element(s))", session_id, category, len(final))

        self.hub.publish(
            session_id,
            {
                "type": "items_reordered",
                "category": category,
                "item_ids": item_ids,
                "group_ids": group_ids,
                "order": [{"type": _element_type(element), "id": element.id} for element in final],
            },
            sub_topic=REVIEW_TOPIC,
        )
        return {"changed": True, "category": category, "item_ids": item_ids, "group_ids": group_ids}

    # ------------------------------------------------------------------- drops

    def apply_decision(self, session_id: str, decision: DropDecision) -> JSONCompatibleDict:
        """Execute the board command a resolved drag/drop decision stands for."""
        if isinstance(decision, CreateGroupDecision):
            if decision.target.is_item:
                target = self.board.get_item(session_id, decision.target.id)
                category = target.category
            else:
                target = self.board.get_group(session_id, decision.target.id)
                category = target.display_category
            group = self.create_group(
                session_id,
                decision.item_ids,
                category=category,
                target_position=target.position,
            )
            return {"action": "create_group", "group": serialize_group(group)}
        if isinstance(decision, AddToGroupDecision):
            group = self.add_item_to_group(session_id, decision.item_id, decision.group_id)
            return {"action": "add_to_group", "group": serialize_group(group)}
        if isinstance(decision, ReorderDecision):
            result = self.reorder(session_id, decision.category, decision.ordered)
            return {"action": "reorder", **result}
        reason = decision.reason if isinstance(decision, NoOpDecision) else "unsupported"
        return {"action": "none", "reason": reason}


def _element_type(element: Union[RetrospectiveItem, RetrospectiveGroup]) -> str:
    return "item" if isinstance(element, RetrospectiveItem) else "group"


def _key(element: Union[RetrospectiveItem, RetrospectiveGroup]):
    return (_element_type(element), element.id)
