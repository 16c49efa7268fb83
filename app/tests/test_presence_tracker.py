from app.auth.identity import UserIdentity
from app.services.presence_tracker import PresenceTracker
from app.utils.broadcast_hub import BroadcastHub

OWNER = UserIdentity(user_id="owner-1", display_name="Olivia Owner")
ALICE = UserIdentity(user_id="alice", display_name="Alice", roles=("member",))
BOB = UserIdentity(user_id="bob", display_name="Bob")


class _Clock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def _tracker(hub=None, clock=None):
    return PresenceTracker(hub or BroadcastHub(queue_size=32), ttl_seconds=10800, clock=clock or _Clock())


def _ids(users):
    return [user["id"] for user in users]


def test_owner_sorts_first_then_arrival_order():
    tracker = _tracker()
    tracker.join("RTR1", ALICE, owner_id=OWNER.user_id)
    tracker.join("RTR1", BOB, owner_id=OWNER.user_id)
    users = tracker.join("RTR1", OWNER, owner_id=OWNER.user_id)

    assert _ids(users) == ["owner-1", "alice", "bob"]
    assert users[0]["isOwner"] is True
    assert users[1]["roles"] == ["member"]


def test_heartbeat_keeps_arrival_order():
    clock = _Clock()
    tracker = _tracker(clock=clock)
    tracker.join("RTR1", ALICE)
    clock.now += 5
    tracker.join("RTR1", BOB)
    clock.now += 30
    users = tracker.heartbeat("RTR1", ALICE)

    assert _ids(users) == ["alice", "bob"]
    assert users[0]["lastSeen"] == int(clock.now)


def test_records_older_than_ttl_are_evicted():
    clock = _Clock()
    tracker = _tracker(clock=clock)
    tracker.join("RTR1", ALICE)
    clock.now += 10799
    tracker.heartbeat("RTR1", BOB)

    assert _ids(tracker.list("RTR1")) == ["alice", "bob"]

    clock.now += 2
    assert _ids(tracker.list("RTR1")) == ["bob"]
    assert tracker.is_connected("RTR1", "alice") is False


def test_stale_user_rejoining_goes_to_the_back():
    clock = _Clock()
    tracker = _tracker(clock=clock)
    tracker.join("RTR1", ALICE)
    tracker.join("RTR1", BOB)
    clock.now += 10000
    tracker.heartbeat("RTR1", BOB)
    clock.now += 1000
    users = tracker.join("RTR1", ALICE)

    assert _ids(users) == ["bob", "alice"]


def test_leave_removes_user_and_publishes_snapshot():
    hub = BroadcastHub(queue_size=32)
    subscription = hub.subscribe("RTR1", ["connected-users"])
    tracker = _tracker(hub=hub)
    tracker.join("RTR1", ALICE)
    tracker.join("RTR1", BOB)

    users = tracker.leave(
        "RTR1",
        "alice",
        timer_like_states={"bob": {"userId": "bob", "isLiked": True}},
    )

    assert _ids(users) == ["bob"]
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    assert [event["type"] for event in events] == ["connected_users_updated"] * 3
    assert _ids(events[-1]["users"]) == ["bob"]
    assert events[-1]["timerLikeStates"] == {"bob": {"userId": "bob", "isLiked": True}}


def test_sessions_are_isolated():
    tracker = _tracker()
    tracker.join("RTR1", ALICE)
    tracker.join("RTR2", BOB)

    assert _ids(tracker.list("RTR1")) == ["alice"]
    assert _ids(tracker.list("RTR2")) == ["bob"]

    tracker.reset("RTR1")
    assert tracker.list("RTR1") == []
    assert _ids(tracker.list("RTR2")) == ["bob"]
