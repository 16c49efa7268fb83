import pytest

from app.services.drag_intent import (
    AddToGroupDecision,
    CardBox,
    ColumnLayout,
    CreateGroupDecision,
    DragSession,
    ElementRef,
    NoOpDecision,
    ReorderDecision,
    build_placeholders,
    classify_pointer,
    reordered_sequence,
    resolve_drop,
)

ITEM_1 = ElementRef("item", 1)
ITEM_2 = ElementRef("item", 2)
GROUP_3 = ElementRef("group", 3)
ITEM_9 = ElementRef("item", 9)


def _column(category, left, refs):
    return ColumnLayout(
        category=category,
        left=left,
        width=100,
        cards=tuple(
            CardBox(ref, left=left, top=index * 50, width=100, height=40)
            for index, ref in enumerate(refs)
        ),
    )


GOOD = _column("good", 0, [ITEM_1, ITEM_2, GROUP_3])
WRONG = _column("wrong", 110, [ITEM_9])
COLUMNS = (GOOD, WRONG)


def test_center_zone_is_middle_half_of_card():
    card = GOOD.cards[0]
    assert card.in_center_zone(50, 20)
    assert card.in_center_zone(25, 10)
    assert card.in_center_zone(75, 30)
    assert not card.in_center_zone(24, 20)
    assert not card.in_center_zone(50, 31)


def test_unknown_element_type_is_rejected():
    with pytest.raises(ValueError):
        ElementRef("card", 1)


def test_placeholders_skip_start_when_dragging_first_card():
    slots = build_placeholders(GOOD, ITEM_1)
    assert [slot.index for slot in slots] == [1, 2]
    assert [slot.y for slot in slots] == [95, 140]


def test_placeholders_for_middle_card():
    slots = build_placeholders(GOOD, ITEM_2)
    assert [slot.index for slot in slots] == [0, 1, 2]
    assert [slot.id for slot in slots] == ["good:0", "good:1", "good:2"]


def test_placeholders_for_empty_column():
    empty = ColumnLayout(category="random", left=0, width=100)
    assert [slot.index for slot in build_placeholders(empty, ITEM_1)] == [0]


def test_pointer_in_center_of_item_means_grouping():
    hover = classify_pointer(COLUMNS, ITEM_1, "good", 50, 70)
    assert hover.mode == "group"
    assert hover.target == ITEM_2

    decision = resolve_drop(ITEM_1, "good", GOOD.order, hover)
    assert decision == CreateGroupDecision(item_ids=(2, 1), category="good", target=ITEM_2)


def test_item_dropped_on_group_joins_it():
    hover = classify_pointer(COLUMNS, ITEM_1, "good", 50, 120)
    assert resolve_drop(ITEM_1, "good", GOOD.order, hover) == AddToGroupDecision(
        item_id=1, group_id=3
    )


def test_group_dropped_on_item_absorbs_it():
    hover = classify_pointer(COLUMNS, GROUP_3, "good", 50, 20)
    assert resolve_drop(GROUP_3, "good", GOOD.order, hover) == AddToGroupDecision(
        item_id=1, group_id=3
    )


def test_group_on_group_is_not_a_grouping_gesture():
    other_group = ElementRef("group", 4)
    column = _column("good", 0, [other_group, GROUP_3])
    hover = classify_pointer((column,), other_group, "good", 50, 70)

    assert hover.mode == "none"
    assert isinstance(resolve_drop(other_group, "good", column.order, hover), NoOpDecision)


def test_pointer_between_cards_reorders():
    hover = classify_pointer(COLUMNS, ITEM_1, "good", 10, 145)
    assert hover.mode == "reorder"
    assert hover.placeholder.index == 2

    decision = resolve_drop(ITEM_1, "good", GOOD.order, hover)
    assert decision == ReorderDecision(category="good", ordered=(ITEM_2, GROUP_3, ITEM_1))
    assert decision.item_ids == [2, 1]
    assert decision.group_ids == [3]


def test_dropping_back_into_own_slot_is_noop():
    drag = DragSession(dragged=ITEM_2, source_category="good", columns=COLUMNS)
    decision = drag.drop("good:1")
    assert decision == NoOpDecision("unchanged")


def test_cross_column_never_reorders():
    hover = classify_pointer(COLUMNS, ITEM_1, "good", 112, 20)
    assert hover.mode == "none"
    assert hover.category == "wrong"

    grouping = classify_pointer(COLUMNS, ITEM_1, "good", 160, 20)
    decision = resolve_drop(ITEM_1, "good", GOOD.order, grouping)
    assert decision == CreateGroupDecision(item_ids=(9, 1), category="wrong", target=ITEM_9)


def test_pointer_outside_every_column():
    hover = classify_pointer(COLUMNS, ITEM_1, "good", 500, 20)
    assert hover.mode == "none"
    assert resolve_drop(ITEM_1, "good", GOOD.order, hover) == NoOpDecision("no_target")


def test_drag_session_tracks_last_hover_and_resets_after_drop():
    drag = DragSession(dragged=ITEM_1, source_category="good", columns=COLUMNS)
    drag.pointer_move(50, 70)
    drag.pointer_move(10, 145)

    decision = drag.drop()

    assert isinstance(decision, ReorderDecision)
    assert drag.hover.mode == "none"
    assert drag.drop("wrong:0") == NoOpDecision("unknown_placeholder")


def test_reordered_sequence_clamps_index():
    order = (ITEM_1, ITEM_2, GROUP_3)
    assert reordered_sequence(order, GROUP_3, 0) == (GROUP_3, ITEM_1, ITEM_2)
    assert reordered_sequence(order, ITEM_1, 99) == (ITEM_2, GROUP_3, ITEM_1)
