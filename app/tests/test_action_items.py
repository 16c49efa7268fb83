from datetime import date

import pytest
from fastapi import HTTPException

from app.services.action_items import ActionItemManager
from app.services.board_store import BoardStore
from app.tests.conftest import OWNER, PARTICIPANT, drain


@pytest.fixture
def session_id(retrospective):
    return retrospective.retrospective_id


@pytest.fixture
def store(db_session, hub):
    return BoardStore(db_session, hub)


@pytest.fixture
def manager(db_session, hub, store):
    return ActionItemManager(db_session, hub, store)


def test_add_action_defaults_assignee_to_creator(manager, session_id, hub):
    subscription = hub.subscribe(session_id, ["actions"])

    action = manager.add_action(session_id, PARTICIPANT, description="  Fix flaky suite ")

    assert action.description == "Fix flaky suite"
    assert action.assigned_to == PARTICIPANT.user_id
    assert action.assigned_to_name == PARTICIPANT.display_name
    assert action.status == "open"
    events = drain(subscription)
    assert events[0]["type"] == "action_added"
    assert events[0]["action"]["id"] == action.id


def test_add_action_with_context(manager, session_id, store):
    item = store.create_item(session_id, OWNER, category="wrong", content="Deploys hurt")

    action = manager.add_action(
        session_id,
        OWNER,
        description="Automate deploys",
        assigned_to="member-2",
        assigned_to_name="Nia Member",
        due_date=date(2026, 4, 1),
        context_type="item",
        context_id=item.id,
    )

    assert (action.context_type, action.context_id) == ("item", item.id)
    assert action.assigned_to_name == "Nia Member"
    assert manager.list_actions(session_id)[0]["dueDate"] == "2026-04-01"


def test_add_action_context_validation(manager, session_id):
    with pytest.raises(HTTPException) as excinfo:
        manager.add_action(session_id, OWNER, description="Half context", context_type="item")
    assert excinfo.value.status_code == 400

    with pytest.raises(HTTPException) as excinfo:
        manager.add_action(
            session_id, OWNER, description="Ghost", context_type="group", context_id=424242
        )
    assert excinfo.value.status_code == 404

    with pytest.raises(HTTPException) as excinfo:
        manager.add_action(session_id, OWNER, description="   ")
    assert excinfo.value.status_code == 400


def test_status_transitions_stamp_completion(manager, session_id):
    action = manager.add_action(session_id, OWNER, description="Write runbook")

    done = manager.update_action(session_id, action.id, status="done")
    assert done.completed_at is not None

    reopened = manager.update_action(session_id, action.id, status="in_progress")
    assert reopened.completed_at is None

    with pytest.raises(HTTPException) as excinfo:
        manager.update_action(session_id, action.id, status="abandoned")
    assert excinfo.value.status_code == 400


def test_update_only_touches_given_fields(manager, session_id):
    action = manager.add_action(
        session_id, OWNER, description="Book room", due_date=date(2026, 5, 5)
    )

    updated = manager.update_action(session_id, action.id, description="Book bigger room")

    assert updated.description == "Book bigger room"
    assert updated.due_date == date(2026, 5, 5)
    cleared = manager.update_action(session_id, action.id, due_date=None)
    assert cleared.due_date is None


def test_delete_action(manager, session_id, hub):
    action = manager.add_action(session_id, OWNER, description="Temporary")
    action_id = action.id
    subscription = hub.subscribe(session_id, ["actions"])

    event = manager.delete_action(session_id, action_id)

    assert event == {"type": "action_deleted", "actionId": action_id}
    assert drain(subscription) == [event]
    assert manager.list_actions(session_id) == []
    with pytest.raises(HTTPException) as excinfo:
        manager.delete_action(session_id, action_id)
    assert excinfo.value.status_code == 404
