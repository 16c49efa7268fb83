from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.auth.identity import UserIdentity
from app.config.loader import get_presence_settings
from app.utils.broadcast_hub import (
    CONNECTED_USERS_TOPIC,
    BroadcastHub,
    broadcast_hub,
)

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]


@dataclass
class PresenceRecord:
    user_id: str
    display_name: str
    avatar: Optional[str] = None
    roles: Tuple[str, ...] = field(default_factory=tuple)
    last_seen: float = 0.0
    arrival: int = 0

    def to_payload(self, owner_id: Optional[str] = None) -> JSONCompatibleDict:
        return {
            "id": self.user_id,
            "displayName": self.display_name,
            "avatar": self.avatar,
            "roles": list(self.roles),
            "lastSeen": int(self.last_seen),
            "isOwner": owner_id is not None and self.user_id == owner_id,
        }


class PresenceTracker:
    """In-memory, TTL-indexed record of who is connected to each session.

    Records are keyed by (session_id, user_id). Every mutation publishes the
    complete re-sorted list rather than a delta.
    """

    def __init__(
        self,
        hub: Optional[BroadcastHub] = None,
        *,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.hub = hub or broadcast_hub
        self.ttl_seconds = (
            ttl_seconds
            if ttl_seconds is not None
            else get_presence_settings()["ttl_seconds"]
        )
        self._clock = clock
        self._lock = Lock()
        self._records: Dict[str, Dict[str, PresenceRecord]] = {}
        self._arrivals = itertools.count()

    def _is_live(self, record: PresenceRecord, now: float) -> bool:
        return now - record.last_seen < self.ttl_seconds

    def _evict_stale(self, session_id: str, now: float) -> None:
        session_records = self._records.get(session_id)
        if not session_records:
            return
        stale = [
            user_id
            for user_id, record in session_records.items()
            if not self._is_live(record, now)
        ]
        for user_id in stale:
            session_records.pop(user_id, None)
            logger.debug(
                "Evicted stale presence: session_id=%s user_id=%s", session_id, user_id
            )
        if not session_records:
            self._records.pop(session_id, None)

    def _upsert(self, session_id: str, identity: UserIdentity) -> None:
        with self._lock:
            now = self._clock()
            session_records = self._records.setdefault(session_id, {})
            record = session_records.get(identity.user_id)
            if record is None or not self._is_live(record, now):
                record = PresenceRecord(
                    user_id=identity.user_id,
                    display_name=identity.display_name,
                    arrival=next(self._arrivals),
                )
                session_records[identity.user_id] = record
            record.display_name = identity.display_name
            record.avatar = identity.avatar
            record.roles = tuple(identity.roles)
            record.last_seen = now

    def list(
        self, session_id: str, owner_id: Optional[str] = None
    ) -> List[JSONCompatibleDict]:
        """Live records, session owner first, everyone else in arrival order."""
        with self._lock:
            now = self._clock()
            self._evict_stale(session_id, now)
            records = list(self._records.get(session_id, {}).values())
        records.sort(
            key=lambda record: (
                0 if owner_id is not None and record.user_id == owner_id else 1,
                record.arrival,
            )
        )
        return [record.to_payload(owner_id) for record in records]

    def join(
        self,
        session_id: str,
        identity: UserIdentity,
        *,
        owner_id: Optional[str] = None,
        timer_like_states: Optional[JSONCompatibleDict] = None,
    ) -> List[JSONCompatibleDict]:
        self._upsert(session_id, identity)
        logger.info("User %s joined session %s", identity.user_id, session_id)
        return self.publish_snapshot(
            session_id, owner_id=owner_id, timer_like_states=timer_like_states
        )

    def heartbeat(
        self,
        session_id: str,
        identity: UserIdentity,
        *,
        owner_id: Optional[str] = None,
        timer_like_states: Optional[JSONCompatibleDict] = None,
    ) -> List[JSONCompatibleDict]:
        self._upsert(session_id, identity)
        return self.publish_snapshot(
            session_id, owner_id=owner_id, timer_like_states=timer_like_states
        )

    def leave(
        self,
        session_id: str,
        user_id: str,
        *,
        owner_id: Optional[str] = None,
        timer_like_states: Optional[JSONCompatibleDict] = None,
    ) -> List[JSONCompatibleDict]:
        with self._lock:
            session_records = self._records.get(session_id)
            if session_records is not None:
                session_records.pop(user_id, None)
                if not session_records:
                    self._records.pop(session_id, None)
        logger.info("User %s left session %s", user_id, session_id)
        return self.publish_snapshot(
            session_id, owner_id=owner_id, timer_like_states=timer_like_states
        )

    def publish_snapshot(
        self,
        session_id: str,
        *,
        owner_id: Optional[str] = None,
        timer_like_states: Optional[JSONCompatibleDict] = None,
    ) -> List[JSONCompatibleDict]:
        users = self.list(session_id, owner_id)
        self.hub.publish(
            session_id,
            {
                "type": "connected_users_updated",
                "users": users,
                "timerLikeStates": timer_like_states or {},
            },
            sub_topic=CONNECTED_USERS_TOPIC,
        )
        return users

    def is_connected(self, session_id: str, user_id: str) -> bool:
        with self._lock:
            record = self._records.get(session_id, {}).get(user_id)
            return record is not None and self._is_live(record, self._clock())

    def reset(self, session_id: Optional[str] = None) -> None:
        with self._lock:
            if session_id is None:
                self._records.clear()
            else:
                self._records.pop(session_id, None)


presence_tracker = PresenceTracker()


def get_presence_tracker() -> PresenceTracker:
    """Dependency provider for the process-wide PresenceTracker."""
    return presence_tracker
