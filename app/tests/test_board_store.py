import pytest
from fastapi import HTTPException

from app.models.retrospective import RetrospectiveGroup, Vote
from app.services.board_store import BoardStore
from app.services.grouping_engine import GroupingEngine
from app.services.session_state import SessionStateMachine
from app.services.voting_allocator import VotingAllocator
from app.tests.conftest import OWNER, PARTICIPANT, drain


@pytest.fixture
def store(db_session, hub):
    return BoardStore(db_session, hub)


@pytest.fixture
def session_id(retrospective):
    return retrospective.retrospective_id


def _advance(db_session, hub, session_id, times=1):
    machine = SessionStateMachine(db_session, hub)
    for _ in range(times):
        machine.advance(session_id)


def test_items_append_to_the_end_of_their_column(store, session_id):
    first = store.create_item(session_id, OWNER, category="good", content="Pairing")
    second = store.create_item(session_id, PARTICIPANT, category="good", content="CI fast")
    other = store.create_item(session_id, OWNER, category="wrong", content="Flaky tests")

    assert (first.position, second.position, other.position) == (0, 1, 0)
    assert second.author_name == PARTICIPANT.display_name


def test_create_item_publishes_item_added(store, session_id, hub):
    subscription = hub.subscribe(session_id, ["items"])
    item = store.create_item(session_id, OWNER, category="improved", content="Demos")

    events = drain(subscription)
    assert events[0]["type"] == "item_added"
    assert events[0]["item"]["id"] == item.id
    assert events[0]["item"]["category"] == "improved"


@pytest.mark.parametrize(
    "category, content",
    [("good", "   "), ("great", "Nice"), ("good", "x" * 1001)],
)
def test_create_item_validation(store, session_id, category, content):
    with pytest.raises(HTTPException) as excinfo:
        store.create_item(session_id, OWNER, category=category, content=content)
    assert excinfo.value.status_code == 400


def test_items_only_added_during_feedback(store, session_id, db_session, hub):
    _advance(db_session, hub, session_id)
    with pytest.raises(HTTPException) as excinfo:
        store.create_item(session_id, OWNER, category="good", content="Too late")
    assert excinfo.value.status_code == 400


def test_feedback_board_shows_only_own_items(store, session_id, db_session, hub):
    store.create_item(session_id, OWNER, category="good", content="Mine")
    store.create_item(session_id, PARTICIPANT, category="good", content="Theirs")

    own_view = store.board(session_id, OWNER)
    assert [e["content"] for e in own_view["categories"]["good"]] == ["Mine"]
    assert set(own_view["categories"]) == {"wrong", "good", "improved", "random"}

    _advance(db_session, hub, session_id)
    shared_view = store.board(session_id, OWNER)
    assert [e["content"] for e in shared_view["categories"]["good"]] == ["Mine", "Theirs"]


def test_board_renders_grouped_items_inside_their_group(store, session_id, db_session, hub):
    a = store.create_item(session_id, OWNER, category="good", content="A")
    b = store.create_item(session_id, OWNER, category="good", content="B")
    c = store.create_item(session_id, OWNER, category="good", content="C")
    _advance(db_session, hub, session_id)
    group = GroupingEngine(db_session, hub, store).create_group(session_id, [a.id, b.id])

    column = store.board(session_id, PARTICIPANT)["categories"]["good"]

    assert [(e["type"], e["id"]) for e in column] == [("item", c.id), ("group", group.id)]
    assert [member["id"] for member in column[1]["items"]] == [a.id, b.id]


def test_only_the_author_edits_or_deletes(store, session_id, hub):
    item = store.create_item(session_id, OWNER, category="good", content="Draft")

    with pytest.raises(HTTPException) as excinfo:
        store.update_item(session_id, item.id, PARTICIPANT, content="Hijack")
    assert excinfo.value.status_code == 403
    with pytest.raises(HTTPException) as excinfo:
        store.delete_item(session_id, item.id, PARTICIPANT)
    assert excinfo.value.status_code == 403

    subscription = hub.subscribe(session_id, ["items"])
    updated = store.update_item(session_id, item.id, OWNER, content="Final")
    assert updated.content == "Final"
    assert drain(subscription)[0]["type"] == "item_updated"


def test_deleting_a_member_dissolves_a_two_item_group(store, session_id, db_session, hub):
    a = store.create_item(session_id, OWNER, category="good", content="A")
    b = store.create_item(session_id, PARTICIPANT, category="good", content="B")
    _advance(db_session, hub, session_id)
    group = GroupingEngine(db_session, hub, store).create_group(session_id, [a.id, b.id])
    group_id = group.id
    VotingAllocator(db_session, hub, store).vote(
        session_id, PARTICIPANT, target_type="group", target_id=group_id, count=2
    )

    result = store.delete_item(session_id, a.id, OWNER)

    assert result["groupDissolved"] is True
    assert db_session.get(RetrospectiveGroup, group_id) is None
    survivor = store.get_item(session_id, b.id)
    assert survivor.group_id is None
    assert db_session.query(Vote).filter(Vote.group_id == group_id).count() == 0


def test_delete_item_removes_its_votes(store, session_id, db_session, hub):
    item = store.create_item(session_id, OWNER, category="random", content="Snacks")
    VotingAllocator(db_session, hub, store).vote(
        session_id, PARTICIPANT, target_type="item", target_id=item.id, count=1
    )

    store.delete_item(session_id, item.id, OWNER)

    assert db_session.query(Vote).filter(Vote.item_id == item.id).count() == 0
    with pytest.raises(HTTPException) as excinfo:
        store.get_item(session_id, item.id)
    assert excinfo.value.status_code == 404


def test_mark_discussed_publishes_on_discussion_topic(store, session_id, hub):
    item = store.create_item(session_id, OWNER, category="wrong", content="Outage")
    subscription = hub.subscribe(session_id, ["discussion"])

    event = store.mark_discussed(session_id, item.id, "item", PARTICIPANT)

    assert store.get_item(session_id, item.id).is_discussed is True
    published = drain(subscription)
    assert published == [event]
    assert event["itemType"] == "item"
    assert event["memberName"] == PARTICIPANT.display_name


def test_items_from_another_session_are_not_found(store, session_id, db_session, hub):
    other = SessionStateMachine(db_session, hub).create_session(title="Other", owner=OWNER)
    foreign = store.create_item(other.retrospective_id, OWNER, category="good", content="Elsewhere")

    with pytest.raises(HTTPException) as excinfo:
        store.get_item(session_id, foreign.id)
    assert excinfo.value.status_code == 404
