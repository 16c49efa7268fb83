import asyncio

import pytest

from app.utils.broadcast_hub import (
    BroadcastHub,
    PHASE_TOPICS,
    normalize_sub_topics,
    session_topic,
    topics_for_phase,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _drain(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


def test_topic_names():
    assert session_topic("RTR1") == "retrospective/RTR1"
    assert session_topic("RTR1", "timer") == "retrospective/RTR1/timer"


def test_catch_all_receives_every_event_and_sub_topics_filter():
    hub = BroadcastHub(queue_size=8)
    catch_all = hub.subscribe("RTR1")
    timer_only = hub.subscribe("RTR1", ["timer"])
    review_only = hub.subscribe("RTR1", ["review"])

    hub.publish("RTR1", {"type": "timer_started"}, sub_topic="timer")
    hub.publish("RTR1", {"type": "group_created"}, sub_topic="review")
    hub.publish("RTR1", {"type": "untopical"})

    assert [e["type"] for e in _drain(catch_all)] == [
        "timer_started",
        "group_created",
        "untopical",
    ]
    assert [e["type"] for e in _drain(timer_only)] == ["timer_started"]
    assert [e["type"] for e in _drain(review_only)] == ["group_created"]


def test_publish_is_scoped_to_session():
    hub = BroadcastHub(queue_size=8)
    other = hub.subscribe("RTR2")

    delivered = hub.publish("RTR1", {"type": "item_added"}, sub_topic="items")

    assert delivered == 0
    assert _drain(other) == []


def test_unknown_topic_is_rejected():
    with pytest.raises(ValueError):
        normalize_sub_topics(["timer", "bogus"])
    assert normalize_sub_topics([" timer ", ""]) == frozenset({"timer"})


def test_full_queue_drops_event_without_raising():
    hub = BroadcastHub(queue_size=1)
    subscription = hub.subscribe("RTR1", ["timer"])

    assert hub.publish("RTR1", {"type": "timer_started"}, sub_topic="timer") == 1
    assert hub.publish("RTR1", {"type": "timer_stopped"}, sub_topic="timer") == 0

    assert subscription.dropped == 1
    assert [e["type"] for e in _drain(subscription)] == ["timer_started"]


def test_publish_failure_is_swallowed():
    hub = BroadcastHub(queue_size=4)
    subscription = hub.subscribe("RTR1")

    class _BrokenQueue:
        def put_nowait(self, _event):
            raise RuntimeError("boom")

    subscription.queue = _BrokenQueue()

    assert hub.publish("RTR1", {"type": "step_changed"}, sub_topic="step") == 0


def test_unsubscribe_removes_subscription():
    hub = BroadcastHub(queue_size=4)
    subscription = hub.subscribe("RTR1")
    assert hub.subscriber_count("RTR1") == 1

    hub.unsubscribe(subscription)
    hub.unsubscribe(subscription)

    assert hub.subscriber_count("RTR1") == 0
    assert hub.publish("RTR1", {"type": "ping"}) == 0


def test_phase_topics():
    assert topics_for_phase("completed") == ("step",)
    assert "items" in topics_for_phase("feedback")
    assert "review" in topics_for_phase("review")
    assert {"review", "items"} <= set(topics_for_phase("voting"))
    assert "items" in topics_for_phase("review")
    assert "actions" in topics_for_phase("actions")
    assert topics_for_phase("unknown") == ()
    for topics in PHASE_TOPICS.values():
        assert normalize_sub_topics(topics)


@pytest.mark.anyio("asyncio")
async def test_subscriber_can_await_published_event():
    hub = BroadcastHub(queue_size=4)
    subscription = hub.subscribe("RTR1", ["step"])

    hub.publish("RTR1", {"type": "step_changed", "nextStep": "review"}, sub_topic="step")
    event = await asyncio.wait_for(subscription.queue.get(), timeout=1)

    assert event == {"type": "step_changed", "nextStep": "review"}
