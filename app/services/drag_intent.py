"""Drag-to-group versus drag-to-reorder disambiguation.

Everything here is pure: callers describe the rendered columns as plain
geometry, feed pointer positions in, and get a decision back. Nothing touches
the database or the broadcast hub; ``GroupingEngine.apply_decision`` turns a
decision into a board command.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

ITEM = "item"
GROUP = "group"

MODE_GROUP = "group"
MODE_REORDER = "reorder"
MODE_NONE = "none"

# Fraction of a card's width / height that counts as its centre zone.
CENTER_ZONE_RATIO = 0.5


@dataclass(frozen=True)
class ElementRef:
    type: str
    id: int

    def __post_init__(self) -> None:
        if self.type not in (ITEM, GROUP):
            raise ValueError(f"Unknown element type '{self.type}'")

    @property
    def is_item(self) -> bool:
        return self.type == ITEM

    @property
    def is_group(self) -> bool:
        return self.type == GROUP

    def to_payload(self) -> dict:
        return {"type": self.type, "id": self.id}


@dataclass(frozen=True)
class CardBox:
    ref: ElementRef
    left: float
    top: float
    width: float
    height: float

    @property
    def bottom(self) -> float:
        return self.top + self.height

    def in_center_zone(self, x: float, y: float) -> bool:
        margin_x = self.width * (1 - CENTER_ZONE_RATIO) / 2
        margin_y = self.height * (1 - CENTER_ZONE_RATIO) / 2
        return (
            self.left + margin_x <= x <= self.left + self.width - margin_x
            and self.top + margin_y <= y <= self.bottom - margin_y
        )


@dataclass(frozen=True)
class ColumnLayout:
    category: str
    left: float
    width: float
    cards: Tuple[CardBox, ...] = ()

    def contains_x(self, x: float) -> bool:
        return self.left <= x <= self.left + self.width

    @property
    def order(self) -> Tuple[ElementRef, ...]:
        return tuple(card.ref for card in self.cards)


@dataclass(frozen=True)
class Placeholder:
    """An insertion slot; ``index`` counts positions without the dragged card."""

    category: str
    index: int
    y: float

    @property
    def id(self) -> str:
        return f"{self.category}:{self.index}"


@dataclass(frozen=True)
class DragHover:
    mode: str
    category: Optional[str] = None
    target: Optional[ElementRef] = None
    placeholder: Optional[Placeholder] = None


@dataclass(frozen=True)
class CreateGroupDecision:
    item_ids: Tuple[int, ...]
    category: str
    target: ElementRef


@dataclass(frozen=True)
class AddToGroupDecision:
    item_id: int
    group_id: int


@dataclass(frozen=True)
class ReorderDecision:
    category: str
    ordered: Tuple[ElementRef, ...]

    @property
    def item_ids(self) -> List[int]:
        return [ref.id for ref in self.ordered if ref.is_item]

    @property
    def group_ids(self) -> List[int]:
        return [ref.id for ref in self.ordered if ref.is_group]


@dataclass(frozen=True)
class NoOpDecision:
    reason: str


DropDecision = Union[
    CreateGroupDecision, AddToGroupDecision, ReorderDecision, NoOpDecision
]


def build_placeholders(
    column: ColumnLayout, dragged: Optional[ElementRef] = None
) -> List[Placeholder]:
    """Slots rendered while dragging over ``column``.

    One before the first card unless the dragged card already is first, then
    one after every card other than the dragged one.
    """
    cards = list(column.cards)
    if not cards:
        return [Placeholder(column.category, 0, column_top(column))]

    placeholders: List[Placeholder] = []
    if cards[0].ref != dragged:
        placeholders.append(Placeholder(column.category, 0, cards[0].top))

    inserted = 0
    for position, card in enumerate(cards):
        if card.ref == dragged:
            continue
        inserted += 1
        following = cards[position + 1] if position + 1 < len(cards) else None
        gap_y = (card.bottom + following.top) / 2 if following else card.bottom
        placeholders.append(Placeholder(column.category, inserted, gap_y))
    return placeholders


def column_top(column: ColumnLayout) -> float:
    return column.cards[0].top if column.cards else 0.0


def nearest_placeholder(placeholders: Sequence[Placeholder], y: float) -> Optional[Placeholder]:
    if not placeholders:
        return None
    return min(placeholders, key=lambda slot: (abs(slot.y - y), slot.index))


def _can_group(dragged: ElementRef, target: ElementRef) -> bool:
    return dragged != target and not (dragged.is_group and target.is_group)


def classify_pointer(
    columns: Sequence[ColumnLayout],
    dragged: ElementRef,
    source_category: str,
    x: float,
    y: float,
) -> DragHover:
    column = next((candidate for candidate in columns if candidate.contains_x(x)), None)
    if column is None:
        return DragHover(MODE_NONE)

    for card in column.cards:
        if card.ref == dragged or not card.in_center_zone(x, y):
            continue
        if _can_group(dragged, card.ref):
            return DragHover(MODE_GROUP, column.category, target=card.ref)
        return DragHover(MODE_NONE, column.category)

    if column.category != source_category:
        return DragHover(MODE_NONE, column.category)

    slot = nearest_placeholder(build_placeholders(column, dragged), y)
    if slot is None:
        return DragHover(MODE_NONE, column.category)
    return DragHover(MODE_REORDER, column.category, placeholder=slot)


def reordered_sequence(
    order: Sequence[ElementRef], dragged: ElementRef, index: int
) -> Tuple[ElementRef, ...]:
    remaining = [ref for ref in order if ref != dragged]
    index = max(0, min(index, len(remaining)))
    return tuple(remaining[:index] + [dragged] + remaining[index:])


def resolve_drop(
    dragged: ElementRef,
    source_category: str,
    source_order: Sequence[ElementRef],
    hover: DragHover,
) -> DropDecision:
    if hover.mode == MODE_GROUP and hover.target is not None:
        target = hover.target
        if dragged.is_item and target.is_item:
            return CreateGroupDecision(
                item_ids=(target.id, dragged.id),
                category=hover.category or source_category,
                target=target,
            )
        if dragged.is_item and target.is_group:
            return AddToGroupDecision(item_id=dragged.id, group_id=target.id)
        if dragged.is_group and target.is_item:
            return AddToGroupDecision(item_id=target.id, group_id=dragged.id)
        return NoOpDecision("group_on_group")

    if hover.mode == MODE_REORDER and hover.placeholder is not None:
        if hover.category != source_category:
            return NoOpDecision("cross_column")
        ordered = reordered_sequence(source_order, dragged, hover.placeholder.index)
        if ordered == tuple(source_order):
            return NoOpDecision("unchanged")
        return ReorderDecision(category=source_category, ordered=ordered)

    return NoOpDecision("no_target")


@dataclass
class DragSession:
    """Pointer-driven drag state for one dragged card."""

    dragged: ElementRef
    source_category: str
    columns: Tuple[ColumnLayout, ...]
    hover: DragHover = field(default_factory=lambda: DragHover(MODE_NONE))

    @property
    def source_order(self) -> Tuple[ElementRef, ...]:
        for column in self.columns:
            if column.category == self.source_category:
                return column.order
        return ()

    def placeholders(self) -> List[Placeholder]:
        for column in self.columns:
            if column.category == self.source_category:
                return build_placeholders(column, self.dragged)
        return []

    def pointer_move(self, x: float, y: float) -> DragHover:
        self.hover = classify_pointer(
            self.columns, self.dragged, self.source_category, x, y
        )
        return self.hover

    def drop(self, placeholder_id: Optional[str] = None) -> DropDecision:
        """Resolve the drop at the last hover, or at an explicit placeholder."""
        hover = self.hover
        if placeholder_id is not None:
            slot = next(
                (candidate for candidate in self.placeholders() if candidate.id == placeholder_id),
                None,
            )
            if slot is None:
                return NoOpDecision("unknown_placeholder")
            hover = DragHover(MODE_REORDER, slot.category, placeholder=slot)
        decision = resolve_drop(self.dragged, self.source_category, self.source_order, hover)
        self.hover = DragHover(MODE_NONE)
        return decision
