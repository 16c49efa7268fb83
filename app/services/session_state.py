from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.auth.identity import UserIdentity
from app.config.loader import get_voting_settings
from app.models.retrospective import (
    Retrospective,
    RetrospectivePhase,
    RetrospectiveStatus,
    TimerLike,
)
from app.utils.broadcast_hub import (
    STEP_TOPIC,
    TIMER_TOPIC,
    BroadcastHub,
    broadcast_hub,
)
from app.utils.identifiers import generate_retrospective_id

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]

STEP_PROGRESSION = {
    RetrospectivePhase.FEEDBACK.value: RetrospectivePhase.REVIEW.value,
    RetrospectivePhase.REVIEW.value: RetrospectivePhase.VOTING.value,
    RetrospectivePhase.VOTING.value: RetrospectivePhase.ACTIONS.value,
    RetrospectivePhase.ACTIONS.value: RetrospectivePhase.COMPLETED.value,
}
TERMINAL_STEP = RetrospectivePhase.COMPLETED.value


def _now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def load_retrospective(db: Session, session_id: str) -> Retrospective:
    retrospective = (
        db.query(Retrospective)
        .filter(Retrospective.retrospective_id == session_id)
        .first()
    )
    if not retrospective:
        raise HTTPException(status_code=404, detail="Retrospective not found.")
    return retrospective


def timer_remaining_seconds(
    retrospective: Retrospective, now: Optional[datetime] = None
) -> int:
    started_at = as_utc(retrospective.timer_started_at)
    if not started_at or not retrospective.timer_duration:
        return 0
    elapsed = ((now or _now()) - started_at).total_seconds()
    return max(0, int(retrospective.timer_duration * 60 - elapsed))


def is_timer_active(retrospective: Retrospective, now: Optional[datetime] = None) -> bool:
    return timer_remaining_seconds(retrospective, now) > 0


def serialize_retrospective(
    retrospective: Retrospective, now: Optional[datetime] = None
) -> JSONCompatibleDict:
    return {
        "id": retrospective.retrospective_id,
        "title": retrospective.title,
        "ownerId": retrospective.owner_id,
        "currentStep": retrospective.current_step,
        "status": retrospective.status,
        "voteBudget": retrospective.vote_budget,
        "timer": {
            "isActive": is_timer_active(retrospective, now),
            "remainingSeconds": timer_remaining_seconds(retrospective, now),
            "duration": retrospective.timer_duration,
            "startedAt": isoformat(retrospective.timer_started_at),
        },
        "startedAt": isoformat(retrospective.started_at),
        "completedAt": isoformat(retrospective.completed_at),
    }


class SessionStateMachine:
    """Owns the phase of a session and its countdown timer."""

    def __init__(
        self,
        db: Session,
        hub: Optional[BroadcastHub] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.hub = hub or broadcast_hub
        self._clock = clock or _now

    def now(self) -> datetime:
        return self._clock()

    # ----------------------------------------------------------------- sessions

    def create_session(
        self,
        *,
        title: str,
        owner: UserIdentity,
        vote_budget: Optional[int] = None,
    ) -> Retrospective:
        title_value = str(title or "").strip()
        if not title_value:
            raise HTTPException(status_code=400, detail="Retrospective title is required.")
        if vote_budget is None:
            vote_budget = get_voting_settings()["default_vote_budget"]
        if vote_budget < 1:
            raise HTTPException(status_code=400, detail="Vote budget must be at least 1.")

        now = self.now()
        retrospective = Retrospective(
            retrospective_id=generate_retrospective_id(self.db, now),
            title=title_value,
            owner_id=owner.user_id,
            current_step=RetrospectivePhase.FEEDBACK.value,
            status=RetrospectiveStatus.ACTIVE.value,
            vote_budget=vote_budget,
            started_at=now,
        )
        self.db.add(retrospective)
        self.db.commit()
        self.db.refresh(retrospective)
        logger.info(
            "Created retrospective %s owned by %s",
            retrospective.retrospective_id,
            owner.user_id,
        )
        return retrospective

    def get_session(self, session_id: str) -> Retrospective:
        return load_retrospective(self.db, session_id)

    # ------------------------------------------------------------------- phases

    def advance(
        self,
        session_id: str,
        *,
        target_step: Optional[str] = None,
        timer_already_stopped: bool = False,
    ) -> str:
        """Move one step forward; a completed session stays completed."""
        retrospective = load_retrospective(self.db, session_id)
        current = retrospective.current_step
        if current == TERMINAL_STEP:
            if target_step not in (None, TERMINAL_STEP):
                raise HTTPException(
                    status_code=400,
                    detail=f"Cannot move a completed retrospective to '{target_step}'.",
                )
            return current

        next_step = STEP_PROGRESSION.get(current)
        if next_step is None:
            raise HTTPException(
                status_code=400, detail=f"Unknown current step '{current}'."
            )
        if target_step is not None and target_step != next_step:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid phase target '{target_step}'; next step is '{next_step}'.",
            )
        return self._transition(
            retrospective, next_step, timer_already_stopped=timer_already_stopped
        )

    def complete(self, session_id: str, *, timer_already_stopped: bool = False) -> str:
        """Jump straight to the terminal step from any phase."""
        retrospective = load_retrospective(self.db, session_id)
        if retrospective.current_step == TERMINAL_STEP:
            return TERMINAL_STEP
        return self._transition(
            retrospective, TERMINAL_STEP, timer_already_stopped=timer_already_stopped
        )

    def _transition(
        self,
        retrospective: Retrospective,
        next_step: str,
        *,
        timer_already_stopped: bool,
    ) -> str:
        # The flag only suppresses a second timer_stopped; stored state is always cleared.
        if retrospective.timer_started_at is not None:
            if timer_already_stopped:
                self._clear_timer(retrospective)
            else:
                self.stop_timer(retrospective.retrospective_id)

        previous = retrospective.current_step
        retrospective.current_step = next_step
        if next_step == TERMINAL_STEP:
            retrospective.status = RetrospectiveStatus.COMPLETED.value
            retrospective.completed_at = self.now()
        self.db.add(retrospective)
        self.db.commit()
        self.db.refresh(retrospective)
        logger.info(
            "Retrospective %s moved from %s to %s",
            retrospective.retrospective_id,
            previous,
            next_step,
        )

        self.hub.publish(
            retrospective.retrospective_id,
            {
                "type": "step_changed",
                "nextStep": next_step,
                "previousStep": previous,
                "message": f"Moved to next step: {next_step.capitalize()}",
            },
            sub_topic=STEP_TOPIC,
        )
        return next_step

    # -------------------------------------------------------------------- timer

    def start_timer(self, session_id: str, duration: int) -> JSONCompatibleDict:
        try:
            duration_value = int(duration)
        except (TypeError, ValueError):
            raise HTTPException(
                status_code=400, detail="Timer duration must be a whole number of minutes."
            ) from None
        if duration_value < 1:
            raise HTTPException(
                status_code=400, detail="Timer duration must be at least 1 minute."
            )
        retrospective = load_retrospective(self.db, session_id)
        started_at = self.now()
        retrospective.timer_duration = duration_value
        retrospective.timer_started_at = started_at
        self.db.add(retrospective)
        self.db.commit()
        self.db.refresh(retrospective)
        logger.info(
            "Timer started for %s: %s minute(s)", session_id, duration_value
        )

        event = {
            "type": "timer_started",
            "duration": duration_value,
            "remainingSeconds": duration_value * 60,
            "startedAt": started_at.isoformat(),
        }
        self.hub.publish(session_id, event, sub_topic=TIMER_TOPIC)
        return event

    def stop_timer(self, session_id: str) -> JSONCompatibleDict:
        """Clear the countdown and every like toggle; stopping twice is harmless."""
        self._clear_timer(load_retrospective(self.db, session_id))

        event = {
            "type": "timer_stopped",
            "message": "Timer stopped by facilitator",
            "timerLikeStatesCleared": True,
        }
        self.hub.publish(session_id, event, sub_topic=TIMER_TOPIC)
        return event

    def _clear_timer(self, retrospective: Retrospective) -> None:
        session_id = retrospective.retrospective_id
        retrospective.timer_duration = None
        retrospective.timer_started_at = None
        self.db.add(retrospective)
        cleared = (
            self.db.query(TimerLike)
            .filter(TimerLike.retrospective_id == session_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Timer stopped for %s (%s like state(s) cleared)", session_id, cleared)

    def timer_status(self, session_id: str) -> JSONCompatibleDict:
        retrospective = load_retrospective(self.db, session_id)
        now = self.now()
        return {
            "isActive": is_timer_active(retrospective, now),
            "remainingSeconds": timer_remaining_seconds(retrospective, now),
            "duration": retrospective.timer_duration,
            "startedAt": isoformat(retrospective.timer_started_at),
            "currentStep": retrospective.current_step,
        }

    # --------------------------------------------------------------- timer likes

    def timer_like_update(
        self, session_id: str, identity: UserIdentity, liked: bool
    ) -> JSONCompatibleDict:
        retrospective = load_retrospective(self.db, session_id)
        if not is_timer_active(retrospective, self.now()):
            raise HTTPException(
                status_code=400, detail="Timer likes require a running timer."
            )
        timer_like = (
            self.db.query(TimerLike)
            .filter(
                TimerLike.retrospective_id == session_id,
                TimerLike.user_id == identity.user_id,
            )
            .first()
        )
        if timer_like is None:
            timer_like = TimerLike(
                retrospective_id=session_id,
                user_id=identity.user_id,
            )
        timer_like.user_name = identity.display_name
        timer_like.is_liked = bool(liked)
        timer_like.updated_at = self.now()
        self.db.add(timer_like)
        self.db.commit()

        event = {
            "type": "timer_like_update",
            "userId": identity.user_id,
            "userName": identity.display_name,
            "isLiked": bool(liked),
        }
        self.hub.publish(session_id, event, sub_topic=TIMER_TOPIC)
        return event

    def timer_like_states(self, session_id: str) -> JSONCompatibleDict:
        rows = (
            self.db.query(TimerLike)
            .filter(
                TimerLike.retrospective_id == session_id,
                TimerLike.is_liked.is_(True),
            )
            .order_by(TimerLike.id.asc())
            .all()
        )
        states: JSONCompatibleDict = {}
        for row in rows:
            updated_at = as_utc(row.updated_at)
            states[row.user_id] = {
                "userId": row.user_id,
                "userName": row.user_name or row.user_id,
                "isLiked": True,
                "timestamp": int(updated_at.timestamp()) if updated_at else None,
            }
        return states
