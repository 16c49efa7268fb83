from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple
from uuid import uuid4

from app.config.loader import get_realtime_settings

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "retrospective"

TIMER_TOPIC = "timer"
REVIEW_TOPIC = "review"
CONNECTED_USERS_TOPIC = "connected-users"
STEP_TOPIC = "step"
DISCUSSION_TOPIC = "discussion"
ITEMS_TOPIC = "items"
ACTIONS_TOPIC = "actions"

SUB_TOPICS = frozenset(
    {
        TIMER_TOPIC,
        REVIEW_TOPIC,
        CONNECTED_USERS_TOPIC,
        STEP_TOPIC,
        DISCUSSION_TOPIC,
        ITEMS_TOPIC,
        ACTIONS_TOPIC,
    }
)

# Sub-topics a client needs while a session sits in each phase. Votes are
# published on the review topic and item edits on the items topic; review and
# voting need both.
PHASE_TOPICS: Dict[str, Tuple[str, ...]] = {
    "feedback": (TIMER_TOPIC, STEP_TOPIC, CONNECTED_USERS_TOPIC, ITEMS_TOPIC),
    "review": (TIMER_TOPIC, STEP_TOPIC, CONNECTED_USERS_TOPIC, REVIEW_TOPIC, ITEMS_TOPIC),
    "voting": (TIMER_TOPIC, STEP_TOPIC, CONNECTED_USERS_TOPIC, REVIEW_TOPIC, ITEMS_TOPIC),
    "actions": (
        TIMER_TOPIC,
        STEP_TOPIC,
        CONNECTED_USERS_TOPIC,
        DISCUSSION_TOPIC,
        ACTIONS_TOPIC,
    ),
    "completed": (STEP_TOPIC,),
}

JSONCompatibleDict = Dict[str, Any]


def topics_for_phase(phase: Optional[str]) -> Tuple[str, ...]:
    return PHASE_TOPICS.get(str(phase or ""), ())


def session_topic(session_id: str, sub_topic: Optional[str] = None) -> str:
    """Return the topic name for a session, or one of its narrower sub-topics."""
    if sub_topic:
        return f"{TOPIC_PREFIX}/{session_id}/{sub_topic}"
    return f"{TOPIC_PREFIX}/{session_id}"


def normalize_sub_topics(raw: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Validate requested sub-topic names; an empty request means the catch-all topic."""
    requested = {str(name).strip() for name in (raw or []) if str(name).strip()}
    unknown = requested - SUB_TOPICS
    if unknown:
        raise ValueError(f"Unknown topic(s): {', '.join(sorted(unknown))}")
    return frozenset(requested)


@dataclass(eq=False)
class Subscription:
    """A single subscriber listening to a set of topics of one session."""

    id: str
    session_id: str
    topics: FrozenSet[str]
    queue: "asyncio.Queue[JSONCompatibleDict]"
    user_id: Optional[str] = None
    dropped: int = field(default=0)

    def matches(self, topics: Iterable[str]) -> bool:
        return any(topic in self.topics for topic in topics)


class BroadcastHub:
    """Topic based fan-out of session events to in-process subscribers.

    Publishing is fire-and-forget: callers have already committed the state
    change, so a delivery problem is logged and never raised.
    """

    def __init__(self, queue_size: Optional[int] = None) -> None:
        if queue_size is None:
            queue_size = get_realtime_settings()["subscriber_queue_size"]
        self.queue_size = queue_size
        # Key: session_id, Value: {subscription_id: Subscription}
        self.subscriptions: Dict[str, Dict[str, Subscription]] = {}

    def subscribe(
        self,
        session_id: str,
        sub_topics: Optional[Iterable[str]] = None,
        *,
        user_id: Optional[str] = None,
    ) -> Subscription:
        names = normalize_sub_topics(sub_topics)
        if names:
            topics = frozenset(session_topic(session_id, name) for name in names)
        else:
            topics = frozenset({session_topic(session_id)})
        subscription = Subscription(
            id=str(uuid4()),
            session_id=session_id,
            topics=topics,
            queue=asyncio.Queue(maxsize=self.queue_size),
            user_id=user_id,
        )
        self.subscriptions.setdefault(session_id, {})[subscription.id] = subscription
        logger.debug(
            "Subscribed: session_id=%s subscription_id=%s topics=%s user_id=%s",
            session_id,
            subscription.id,
            sorted(topics),
            user_id,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        session_subscriptions = self.subscriptions.get(subscription.session_id)
        if not session_subscriptions:
            return
        if session_subscriptions.pop(subscription.id, None) is not None:
            logger.debug(
                "Unsubscribed: session_id=%s subscription_id=%s",
                subscription.session_id,
                subscription.id,
            )
        if not session_subscriptions:
            self.subscriptions.pop(subscription.session_id, None)

    def publish(
        self,
        session_id: str,
        event: JSONCompatibleDict,
        *,
        sub_topic: Optional[str] = None,
    ) -> int:
        """Deliver an event on the session topic (and a sub-topic, if given).

        Each subscription receives the event at most once. Returns the number
        of subscriptions the event was queued for.
        """
        event_type = event.get("type", "unknown")
        try:
            topics = {session_topic(session_id)}
            if sub_topic:
                topics.add(session_topic(session_id, sub_topic))
            delivered = 0
            # Iterate over a snapshot; subscribers may disconnect concurrently.
            for subscription in list(self.subscriptions.get(session_id, {}).values()):
                if not subscription.matches(topics):
                    continue
                try:
                    subscription.queue.put_nowait(dict(event))
                    delivered += 1
                except asyncio.QueueFull:
                    subscription.dropped += 1
                    logger.warning(
                        "Subscriber queue full; dropping %s for session_id=%s subscription_id=%s",
                        event_type,
                        session_id,
                        subscription.id,
                    )
            logger.debug(
                "Published %s to session_id=%s topics=%s delivered=%s",
                event_type,
                session_id,
                sorted(topics),
                delivered,
            )
            return delivered
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to publish %s for session_id=%s", event_type, session_id,
                exc_info=True,
            )
            return 0

    def subscriber_count(self, session_id: str) -> int:
        return len(self.subscriptions.get(session_id, {}))

    def reset(self) -> None:
        self.subscriptions.clear()


broadcast_hub = BroadcastHub()


def get_broadcast_hub() -> BroadcastHub:
    """Dependency provider for the process-wide BroadcastHub."""
    return broadcast_hub
