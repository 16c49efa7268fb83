import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.auth.identity import UserIdentity, get_current_identity
from app.auth.subscription_token import issue_subscription_token
from app.database import get_db
from app.schemas.retrospective import (
    ActionCreate,
    ActionUpdate,
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
from app.services.action_items import ActionItemManager, serialize_action
from app.services.board_store import BoardStore, serialize_group, serialize_item
from app.services.grouping_engine import GroupingEngine
from app.services.presence_tracker import PresenceTracker, get_presence_tracker
from app.services.session_state import SessionStateMachine, serialize_retrospective
from app.services.voting_allocator import VotingAllocator
from app.utils.broadcast_hub import normalize_sub_topics, topics_for_phase

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/retrospectives", tags=["retrospectives"])


def _presence_context(db: Session, retrospective_id: str) -> Dict[str, Any]:
    machine = SessionStateMachine(db)
    retrospective = machine.get_session(retrospective_id)
    return {
        "owner_id": retrospective.owner_id,
        "timer_like_states": machine.timer_like_states(retrospective_id),
    }


# --------------------------------------------------------------------- session


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_retrospective(
    payload: RetrospectiveCreate,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    machine = SessionStateMachine(db)
    retrospective = machine.create_session(
        title=payload.title, owner=identity, vote_budget=payload.vote_budget
    )
    return serialize_retrospective(retrospective)


@router.get("/{retrospective_id}")
async def get_retrospective(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    retrospective = SessionStateMachine(db).get_session(retrospective_id)
    summary = serialize_retrospective(retrospective)
    summary["isOwner"] = retrospective.owner_id == identity.user_id
    return summary


@router.post("/{retrospective_id}/next-step")
async def next_step(
    retrospective_id: str,
    payload: Optional[StepRequest] = None,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    payload = payload or StepRequest()
    machine = SessionStateMachine(db)
    current = machine.advance(
        retrospective_id,
        target_step=payload.target_step,
        timer_already_stopped=payload.timer_already_stopped,
    )
    logger.info("next-step on %s requested by %s -> %s", retrospective_id, identity.user_id, current)
    return {"currentStep": current}


@router.post("/{retrospective_id}/complete")
async def complete_retrospective(
    retrospective_id: str,
    payload: Optional[CompleteRequest] = None,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    payload = payload or CompleteRequest()
    machine = SessionStateMachine(db)
    machine.complete(
        retrospective_id, timer_already_stopped=payload.timer_already_stopped
    )
    return serialize_retrospective(machine.get_session(retrospective_id))


# ----------------------------------------------------------------------- timer


@router.post("/{retrospective_id}/timer/start")
async def start_timer(
    retrospective_id: str,
    payload: TimerStartRequest,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return SessionStateMachine(db).start_timer(retrospective_id, payload.duration)


@router.post("/{retrospective_id}/timer/stop")
async def stop_timer(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return SessionStateMachine(db).stop_timer(retrospective_id)


@router.get("/{retrospective_id}/timer")
async def timer_status(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return SessionStateMachine(db).timer_status(retrospective_id)


@router.post("/{retrospective_id}/timer/like")
async def timer_like(
    retrospective_id: str,
    payload: TimerLikeRequest,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return SessionStateMachine(db).timer_like_update(
        retrospective_id, identity, payload.liked
    )


@router.get("/{retrospective_id}/timer/likes")
async def timer_likes(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    machine = SessionStateMachine(db)
    machine.get_session(retrospective_id)
    return {"timerLikeStates": machine.timer_like_states(retrospective_id)}


# ----------------------------------------------------------------------- board


@router.get("/{retrospective_id}/board")
async def get_board(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return BoardStore(db).board(retrospective_id, identity)


@router.post("/{retrospective_id}/items", status_code=status.HTTP_201_CREATED)
async def add_item(
    retrospective_id: str,
    payload: ItemCreate,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    item = BoardStore(db).create_item(
        retrospective_id, identity, category=payload.category, content=payload.content
    )
    return serialize_item(item)


@router.patch("/{retrospective_id}/items/{item_id}")
async def update_item(
    retrospective_id: str,
    item_id: int,
    payload: ItemUpdate,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    item = BoardStore(db).update_item(
        retrospective_id, item_id, identity, content=payload.content
    )
    return serialize_item(item)


@router.delete("/{retrospective_id}/items/{item_id}")
async def delete_item(
    retrospective_id: str,
    item_id: int,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return BoardStore(db).delete_item(retrospective_id, item_id, identity)


@router.post("/{retrospective_id}/groups", status_code=status.HTTP_201_CREATED)
async def create_group(
    retrospective_id: str,
    payload: GroupCreate,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    group = GroupingEngine(db).create_group(
        retrospective_id,
        payload.item_ids,
        category=payload.category,
        target_position=payload.target_position,
        title=payload.title,
    )
    return serialize_group(group)


@router.post("/{retrospective_id}/groups/{group_id}/items")
async def add_item_to_group(
    retrospective_id: str,
    group_id: int,
    payload: GroupItemAdd,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    group = GroupingEngine(db).add_item_to_group(
        retrospective_id, payload.item_id, group_id
    )
    return serialize_group(group)


@router.post("/{retrospective_id}/items/{item_id}/separate")
async def separate_item(
    retrospective_id: str,
    item_id: int,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return GroupingEngine(db).separate_item(retrospective_id, item_id)


@router.post("/{retrospective_id}/reorder", response_model=ReorderResponse)
async def reorder_column(
    retrospective_id: str,
    payload: ReorderRequest,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    result = GroupingEngine(db).reorder(
        retrospective_id,
        payload.category,
        [element.model_dump() for element in payload.ordered_elements],
    )
    return ReorderResponse(**result)


@router.post("/{retrospective_id}/discussed")
async def mark_discussed(
    retrospective_id: str,
    payload: DiscussedRequest,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return BoardStore(db).mark_discussed(
        retrospective_id,
        payload.target_id,
        payload.target_type,
        identity,
        discussed=payload.discussed,
    )


# ---------------------------------------------------------------------- voting


@router.post("/{retrospective_id}/votes")
async def cast_vote(
    retrospective_id: str,
    payload: VoteRequest,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return VotingAllocator(db).vote(
        retrospective_id,
        identity,
        target_type=payload.target_type,
        target_id=payload.target_id,
        count=payload.count,
    )


@router.get("/{retrospective_id}/votes/mine")
async def my_votes(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return VotingAllocator(db).user_votes(retrospective_id, identity.user_id)


@router.get("/{retrospective_id}/votes/summary")
async def vote_summary(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return {"entries": VotingAllocator(db).aggregate(retrospective_id)}


# -------------------------------------------------------------------- presence


@router.post("/{retrospective_id}/presence/join")
async def join_presence(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    tracker: PresenceTracker = Depends(get_presence_tracker),
):
    users = tracker.join(retrospective_id, identity, **_presence_context(db, retrospective_id))
    return {"users": users}


@router.post("/{retrospective_id}/presence/heartbeat")
async def presence_heartbeat(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    tracker: PresenceTracker = Depends(get_presence_tracker),
):
    users = tracker.heartbeat(
        retrospective_id, identity, **_presence_context(db, retrospective_id)
    )
    return {"users": users}


@router.post("/{retrospective_id}/presence/leave")
async def leave_presence(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    tracker: PresenceTracker = Depends(get_presence_tracker),
):
    users = tracker.leave(
        retrospective_id, identity.user_id, **_presence_context(db, retrospective_id)
    )
    return {"users": users}


@router.get("/{retrospective_id}/connected-users")
async def connected_users(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    tracker: PresenceTracker = Depends(get_presence_tracker),
):
    context = _presence_context(db, retrospective_id)
    return {
        "users": tracker.list(retrospective_id, context["owner_id"]),
        "timerLikeStates": context["timer_like_states"],
    }


# --------------------------------------------------------------------- actions


@router.get("/{retrospective_id}/actions")
async def list_actions(
    retrospective_id: str,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return {"actions": ActionItemManager(db).list_actions(retrospective_id)}


@router.post("/{retrospective_id}/actions", status_code=status.HTTP_201_CREATED)
async def add_action(
    retrospective_id: str,
    payload: ActionCreate,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    action = ActionItemManager(db).add_action(
        retrospective_id,
        identity,
        description=payload.description,
        assigned_to=payload.assigned_to,
        assigned_to_name=payload.assigned_to_name,
        due_date=payload.due_date,
        context_type=payload.context_type,
        context_id=payload.context_id,
    )
    return serialize_action(action)


@router.patch("/{retrospective_id}/actions/{action_id}")
async def update_action(
    retrospective_id: str,
    action_id: int,
    payload: ActionUpdate,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    action = ActionItemManager(db).update_action(retrospective_id, action_id, **changes)
    return serialize_action(action)


@router.delete("/{retrospective_id}/actions/{action_id}")
async def delete_action(
    retrospective_id: str,
    action_id: int,
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    return ActionItemManager(db).delete_action(retrospective_id, action_id)


# ---------------------------------------------------------------- subscription


@router.get(
    "/{retrospective_id}/subscription-token",
    response_model=SubscriptionTokenResponse,
)
async def subscription_token(
    retrospective_id: str,
    topics: Optional[str] = Query(None, description="Comma separated sub-topics"),
    identity: UserIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    retrospective = SessionStateMachine(db).get_session(retrospective_id)
    if topics is None:
        requested = topics_for_phase(retrospective.current_step)
    else:
        requested = topics.split(",")
    try:
        names = sorted(normalize_sub_topics(requested))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    token = issue_subscription_token(
        retrospective_id,
        identity.user_id,
        names,
        display_name=identity.display_name,
    )
    return SubscriptionTokenResponse(
        token=token, topics=names, retrospective_id=retrospective_id
    )
