from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.auth.identity import UserIdentity
from app.models.retrospective import ActionStatus, RetrospectiveAction
from app.services.board_store import BoardStore, validate_target_type
from app.services.session_state import isoformat, load_retrospective
from app.utils.broadcast_hub import ACTIONS_TOPIC, BroadcastHub, broadcast_hub

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]

_STATUSES = {status.value for status in ActionStatus}
_UNSET: Any = object()


def serialize_action(action: RetrospectiveAction) -> JSONCompatibleDict:
    return {
        "id": action.id,
        "retrospectiveId": action.retrospective_id,
        "description": action.description,
        "createdBy": action.created_by,
        "assignedTo": action.assigned_to,
        "assignedToName": action.assigned_to_name,
        "contextType": action.context_type,
        "contextId": action.context_id,
        "status": action.status,
        "dueDate": action.due_date.isoformat() if action.due_date else None,
        "completedAt": isoformat(action.completed_at),
    }


class ActionItemManager:
    """Follow-up actions recorded during the actions phase."""

    def __init__(
        self,
        db: Session,
        hub: Optional[BroadcastHub] = None,
        board: Optional[BoardStore] = None,
    ) -> None:
        self.db = db
        self.hub = hub or broadcast_hub
        self.board = board or BoardStore(db, self.hub)

    def _get_action(self, session_id: str, action_id: int) -> RetrospectiveAction:
        action = (
            self.db.query(RetrospectiveAction)
            .filter(
                RetrospectiveAction.id == action_id,
                RetrospectiveAction.retrospective_id == session_id,
            )
            .first()
        )
        if not action:
            raise HTTPException(status_code=404, detail="Action not found.")
        return action

    @staticmethod
    def _clean_description(description: Any) -> str:
        value = str(description or "").strip()
        if not value:
            raise HTTPException(status_code=400, detail="Action description is required.")
        return value

    def _publish(self, session_id: str, event: JSONCompatibleDict) -> None:
        self.hub.publish(session_id, event, sub_topic=ACTIONS_TOPIC)

    def add_action(
        self,
        session_id: str,
        identity: UserIdentity,
        *,
        description: str,
        assigned_to: Optional[str] = None,
        assigned_to_name: Optional[str] = None,
        due_date: Optional[date] = None,
        context_type: Optional[str] = None,
        context_id: Optional[int] = None,
    ) -> RetrospectiveAction:
        load_retrospective(self.db, session_id)
        description_value = self._clean_description(description)

        if context_type is not None or context_id is not None:
            if context_type is None or context_id is None:
                raise HTTPException(
                    status_code=400,
                    detail="Action context needs both a type and an id.",
                )
            context_type = validate_target_type(context_type)
            if not self.board.target_exists(session_id, context_type, context_id):
                raise HTTPException(
                    status_code=404,
                    detail=f"{context_type.capitalize()} {context_id} not found in this retrospective.",
                )

        assignee = (assigned_to or "").strip() or identity.user_id
        if assignee == identity.user_id and not assigned_to_name:
            assigned_to_name = identity.display_name
        action = RetrospectiveAction(
            retrospective_id=session_id,
            description=description_value,
            created_by=identity.user_id,
            assigned_to=assignee,
            assigned_to_name=assigned_to_name or assignee,
            context_type=context_type,
            context_id=context_id,
            status=ActionStatus.OPEN.value,
            due_date=due_date,
        )
        self.db.add(action)
        self.db.commit()
        self.db.refresh(action)
        logger.info("Action %s added to %s by %s", action.id, session_id, identity.user_id)

        self._publish(session_id, {"type": "action_added", "action": serialize_action(action)})
        return action

    def update_action(
        self,
        session_id: str,
        action_id: int,
        *,
        description: Optional[str] = None,
        assigned_to: Optional[str] = None,
        assigned_to_name: Optional[str] = None,
        due_date: Any = _UNSET,
        status: Optional[str] = None,
    ) -> RetrospectiveAction:
        action = self._get_action(session_id, action_id)
        if description is not None:
            action.description = self._clean_description(description)
        if assigned_to is not None:
            assignee = assigned_to.strip()
            if not assignee:
                raise HTTPException(status_code=400, detail="Assignee cannot be empty.")
            action.assigned_to = assignee
            action.assigned_to_name = assigned_to_name or assignee
        if due_date is not _UNSET:
            action.due_date = due_date
        if status is not None:
            status_value = status.strip().lower()
            if status_value not in _STATUSES:
                raise HTTPException(
                    status_code=400,
                    detail=f"Unknown action status '{status}'. Expected one of: {', '.join(sorted(_STATUSES))}.",
                )
            action.status = status_value
            if status_value == ActionStatus.DONE.value:
                action.completed_at = action.completed_at or datetime.now(timezone.utc)
            else:
                action.completed_at = None
        self.db.add(action)
        self.db.commit()
        self.db.refresh(action)

        self._publish(session_id, {"type": "action_updated", "action": serialize_action(action)})
        return action

    def delete_action(self, session_id: str, action_id: int) -> JSONCompatibleDict:
        action = self._get_action(session_id, action_id)
        self.db.delete(action)
        self.db.commit()
        logger.info("Action %s deleted from %s", action_id, session_id)

        event = {"type": "action_deleted", "actionId": action_id}
        self._publish(session_id, event)
        return event

    def list_actions(self, session_id: str) -> List[JSONCompatibleDict]:
        load_retrospective(self.db, session_id)
        actions = (
            self.db.query(RetrospectiveAction)
            .filter(RetrospectiveAction.retrospective_id == session_id)
            .order_by(RetrospectiveAction.created_at.asc(), RetrospectiveAction.id.asc())
            .all()
        )
        return [serialize_action(action) for action in actions]
