from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing, suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from app.auth.identity import UserIdentity
from app.client.timer_view import TimerView
from app.client.transport import CommandTransport, EventSource
from app.config.loader import get_presence_settings, get_realtime_settings
from app.services.drag_intent import (
    AddToGroupDecision,
    ColumnLayout,
    CreateGroupDecision,
    DragSession,
    DropDecision,
    ElementRef,
    ReorderDecision,
)
from app.utils.broadcast_hub import topics_for_phase

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]

STATUS_DISCONNECTED = "disconnected"
STATUS_CONNECTED = "connected"
STATUS_RECONNECTING = "reconnecting"

# Events after which the board is re-read instead of patched locally.
BOARD_REFRESH_EVENTS = frozenset(
    {
        "item_updated",
        "item_deleted",
        "group_created",
        "item_added_to_group",
        "item_separated",
        "items_reordered",
        "item_discussed",
    }
)
ACTION_EVENTS = frozenset({"action_added", "action_updated", "action_deleted"})


@dataclass(frozen=True)
class SessionContext:
    session_id: str
    user: UserIdentity

    @property
    def user_id(self) -> str:
        return self.user.user_id


@dataclass
class LocalView:
    phase: Optional[str] = None
    is_owner: bool = False
    board: JSONCompatibleDict = field(default_factory=dict)
    connected_users: List[JSONCompatibleDict] = field(default_factory=list)
    timer_like_states: JSONCompatibleDict = field(default_factory=dict)
    votes_remaining: Optional[int] = None
    my_votes: Dict[Tuple[str, int], int] = field(default_factory=dict)
    vote_counts: Dict[Tuple[str, int], Dict[str, int]] = field(default_factory=dict)
    actions: List[JSONCompatibleDict] = field(default_factory=list)
    discussed: List[JSONCompatibleDict] = field(default_factory=list)
    status: str = STATUS_DISCONNECTED


def column_orders_from_board(board: JSONCompatibleDict) -> Dict[str, Tuple[ElementRef, ...]]:
    orders: Dict[str, Tuple[ElementRef, ...]] = {}
    for category, elements in (board.get("categories") or {}).items():
        orders[category] = tuple(
            ElementRef(element["type"], element["id"]) for element in elements
        )
    return orders


class ClientSyncAgent:
    """Keeps one participant's view of a session converged with the server.

    Commands go through ``transport``; broadcasts arrive through ``events``.
    Every (re)connect and every phase change triggers a full re-fetch, since
    broadcast delivery is best effort.
    """

    def __init__(
        self,
        context: SessionContext,
        transport: CommandTransport,
        events: EventSource,
        *,
        reconnect_delay: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.context = context
        self.transport = transport
        self.events = events
        self.reconnect_delay = (
            reconnect_delay
            if reconnect_delay is not None
            else get_realtime_settings()["reconnect_delay_seconds"]
        )
        self.heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else get_presence_settings()["heartbeat_interval_seconds"]
        )
        self._sleep = sleep
        self.view = LocalView()
        self.timer = TimerView(clock=clock)
        self._column_orders: Dict[str, Tuple[ElementRef, ...]] = {}
        self._running = False
        self._reconnecting = False
        self._resubscribe = False
        self.connections = 0

    @property
    def _base(self) -> str:
        return f"/api/retrospectives/{self.context.session_id}"

    @property
    def topics(self) -> Tuple[str, ...]:
        return topics_for_phase(self.view.phase)

    def _is_self(self, event: JSONCompatibleDict) -> bool:
        return event.get("userId") == self.context.user_id

    # ------------------------------------------------------------------ fetch

    async def refresh(self) -> None:
        """Re-read everything the view shows; used on every (re)connect."""
        session = await self.transport.request("GET", self._base)
        self.view.phase = session.get("currentStep")
        self.view.is_owner = bool(session.get("isOwner"))
        await self.refresh_board()

        timer = await self.transport.request("GET", f"{self._base}/timer")
        if timer.get("isActive"):
            self.timer.sync(timer.get("remainingSeconds", 0), timer.get("duration"))
        elif timer.get("startedAt"):
            # Elapsed but not stopped: the display stays frozen at 0:00.
            self.timer.sync(0, timer.get("duration"))
        else:
            self.timer.stop(is_owner=True)

        users = await self.transport.request("GET", f"{self._base}/connected-users")
        self.view.connected_users = list(users.get("users") or [])
        self.view.timer_like_states = dict(users.get("timerLikeStates") or {})

        votes = await self.transport.request("GET", f"{self._base}/votes/mine")
        self.view.votes_remaining = votes.get("remaining")
        self.view.my_votes = {
            (vote["targetType"], vote["targetId"]): vote["voteCount"]
            for vote in votes.get("votes") or []
        }

        if self.view.phase in ("actions", "completed"):
            await self.refresh_actions()

    async def refresh_board(self) -> None:
        board = await self.transport.request("GET", f"{self._base}/board")
        self.view.board = board or {}
        self._column_orders = column_orders_from_board(self.view.board)

    async def refresh_actions(self) -> None:
        actions = await self.transport.request("GET", f"{self._base}/actions")
        self.view.actions = list(actions.get("actions") or [])

    # -------------------------------------------------------------- broadcasts

    async def handle_event(self, event: JSONCompatibleDict) -> None:
        event_type = event.get("type")

        if event_type == "connection_ack":
            self.view.status = STATUS_CONNECTED
        elif event_type == "timer_started":
            self.timer.sync(event.get("remainingSeconds", 0), event.get("duration"))
        elif event_type == "timer_stopped":
            self.timer.stop(is_owner=self.view.is_owner)
            self.view.timer_like_states = {}
        elif event_type == "timer_like_update":
            if self._is_self(event):
                return
            user_id = event.get("userId")
            if event.get("isLiked"):
                self.view.timer_like_states[user_id] = {
                    "userId": user_id,
                    "userName": event.get("userName"),
                    "isLiked": True,
                }
            else:
                self.view.timer_like_states.pop(user_id, None)
        elif event_type == "connected_users_updated":
            self.view.connected_users = list(event.get("users") or [])
            self.view.timer_like_states = dict(event.get("timerLikeStates") or {})
        elif event_type == "step_changed":
            previous = self.view.phase
            await self.refresh()
            self.view.phase = event.get("nextStep") or self.view.phase
            if topics_for_phase(previous) != self.topics:
                self._resubscribe = True
        elif event_type == "vote_updated":
            if self._is_self(event):
                return
            key = (event.get("targetType"), event.get("targetId"))
            counts = self.view.vote_counts.setdefault(key, {})
            if event.get("voteCount"):
                counts[event.get("userId")] = event["voteCount"]
            else:
                counts.pop(event.get("userId"), None)
        elif event_type == "item_added":
            self._apply_item_added(event.get("item") or {})
        elif event_type in BOARD_REFRESH_EVENTS:
            if event_type == "item_discussed":
                self.view.discussed.append(event)
            await self.refresh_board()
        elif event_type in ACTION_EVENTS:
            await self.refresh_actions()
        else:
            logger.debug("Ignoring unknown event type %r", event_type)

    def _apply_item_added(self, item: JSONCompatibleDict) -> None:
        if not item:
            return
        private = self.view.phase == "feedback"
        if private and item.get("authorId") != self.context.user_id:
            return
        categories = self.view.board.setdefault("categories", {})
        column = categories.setdefault(item.get("category"), [])
        if any(
            element.get("type") == "item" and element.get("id") == item.get("id")
            for element in column
        ):
            return
        column.append(item)
        self._column_orders = column_orders_from_board(self.view.board)

    # ------------------------------------------------------------ subscription

    async def _listen(self) -> bool:
        """Consume one subscription; True when a resubscribe was requested."""
        self._resubscribe = False
        self.connections += 1
        stream = self.events.events(self.context.session_id, self.topics)
        async with aclosing(stream):
            async for event in stream:
                await self.handle_event(event)
                if self._resubscribe or not self._running:
                    return True
        return False

    async def schedule_reconnect(self) -> bool:
        """Wait the fixed reconnect delay; a second caller in the meantime is a no-op."""
        if self._reconnecting:
            return False
        self._reconnecting = True
        self.view.status = STATUS_RECONNECTING
        try:
            await self._sleep(self.reconnect_delay)
        finally:
            self._reconnecting = False
        return True

    async def run(self, max_connections: Optional[int] = None) -> None:
        """Join the session, keep presence alive and follow broadcasts until stopped."""
        await self.join()
        self._running = True
        heartbeat = asyncio.create_task(self.heartbeat_loop())
        try:
            while self._running:
                if max_connections is not None and self.connections >= max_connections:
                    break
                try:
                    await self.refresh()
                    if await self._listen():
                        continue
                    logger.info("Subscription for %s ended; reconnecting", self.context.session_id)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "Subscription for %s failed: %s", self.context.session_id, exc
                    )
                if self._running:
                    await self.schedule_reconnect()
        finally:
            self._running = False
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            try:
                await self.leave()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Leaving %s failed: %s", self.context.session_id, exc)
            self.view.status = STATUS_DISCONNECTED

    def stop(self) -> None:
        self._running = False

    # --------------------------------------------------------------- presence

    async def join(self) -> None:
        result = await self.transport.request("POST", f"{self._base}/presence/join")
        self.view.connected_users = list((result or {}).get("users") or [])

    async def leave(self) -> None:
        await self.transport.request("POST", f"{self._base}/presence/leave")

    async def heartbeat_loop(self) -> None:
        while self._running:
            try:
                await self.transport.request("POST", f"{self._base}/presence/heartbeat")
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("Heartbeat for %s failed: %s", self.context.session_id, exc)
            await self._sleep(self.heartbeat_interval)

    # ---------------------------------------------------------------- commands

    async def add_item(self, category: str, content: str) -> JSONCompatibleDict:
        item = await self.transport.request(
            "POST", f"{self._base}/items", json={"category": category, "content": content}
        )
        self._apply_item_added(item)
        return item

    async def vote(self, target_type: str, target_id: int, count: int) -> JSONCompatibleDict:
        result = await self.transport.request(
            "POST",
            f"{self._base}/votes",
            json={"target_type": target_type, "target_id": target_id, "count": count},
        )
        key = (target_type, target_id)
        if count:
            self.view.my_votes[key] = count
        else:
            self.view.my_votes.pop(key, None)
        self.view.votes_remaining = result.get("remaining")
        return result

    async def like_timer(self, liked: bool) -> JSONCompatibleDict:
        result = await self.transport.request(
            "POST", f"{self._base}/timer/like", json={"liked": liked}
        )
        if liked:
            self.view.timer_like_states[self.context.user_id] = {
                "userId": self.context.user_id,
                "userName": self.context.user.display_name,
                "isLiked": True,
            }
        else:
            self.view.timer_like_states.pop(self.context.user_id, None)
        return result

    async def start_timer(self, duration: int) -> JSONCompatibleDict:
        result = await self.transport.request(
            "POST", f"{self._base}/timer/start", json={"duration": duration}
        )
        self.timer.sync(result.get("remainingSeconds", duration * 60), duration)
        return result

    async def stop_timer(self) -> JSONCompatibleDict:
        result = await self.transport.request("POST", f"{self._base}/timer/stop")
        self.timer.stop(is_owner=self.view.is_owner)
        return result

    async def next_step(self, target_step: Optional[str] = None) -> JSONCompatibleDict:
        timer_already_stopped = False
        if self.timer.state == "running" and self.view.is_owner:
            await self.stop_timer()
            timer_already_stopped = True
        return await self.transport.request(
            "POST",
            f"{self._base}/next-step",
            json={
                "target_step": target_step,
                "timer_already_stopped": timer_already_stopped,
            },
        )

    async def complete(self) -> JSONCompatibleDict:
        return await self.transport.request("POST", f"{self._base}/complete")

    async def mark_discussed(
        self, target_type: str, target_id: int, discussed: bool = True
    ) -> JSONCompatibleDict:
        return await self.transport.request(
            "POST",
            f"{self._base}/discussed",
            json={"target_type": target_type, "target_id": target_id, "discussed": discussed},
        )

    async def add_action(self, description: str, **fields: Any) -> JSONCompatibleDict:
        action = await self.transport.request(
            "POST", f"{self._base}/actions", json={"description": description, **fields}
        )
        self.view.actions.append(action)
        return action

    async def submit_reorder(
        self, category: str, ordered: Sequence[ElementRef]
    ) -> Optional[JSONCompatibleDict]:
        """Send a column order, or nothing at all when it matches the last known one."""
        proposed = tuple(ordered)
        if proposed == self._column_orders.get(category):
            logger.debug("Reorder of %s unchanged; not sent", category)
            return None
        result = await self.transport.request(
            "POST",
            f"{self._base}/reorder",
            json={
                "category": category,
                "ordered_elements": [ref.to_payload() for ref in proposed],
            },
        )
        self._column_orders[category] = proposed
        return result

    # ------------------------------------------------------------------- drag

    def begin_drag(
        self, dragged: ElementRef, category: str, columns: Sequence[ColumnLayout]
    ) -> DragSession:
        return DragSession(dragged=dragged, source_category=category, columns=tuple(columns))

    async def finish_drag(
        self, drag: DragSession, placeholder_id: Optional[str] = None
    ) -> Tuple[DropDecision, Optional[JSONCompatibleDict]]:
        """Resolve the drop and issue the matching command, if any."""
        decision = drag.drop(placeholder_id)
        result: Optional[JSONCompatibleDict] = None
        if isinstance(decision, CreateGroupDecision):
            result = await self.transport.request(
                "POST",
                f"{self._base}/groups",
                json={
                    "item_ids": list(decision.item_ids),
                    "category": decision.category,
                    "target_position": self._stored_position(decision.target),
                },
            )
        elif isinstance(decision, AddToGroupDecision):
            result = await self.transport.request(
                "POST",
                f"{self._base}/groups/{decision.group_id}/items",
                json={"item_id": decision.item_id},
            )
        elif isinstance(decision, ReorderDecision):
            result = await self.submit_reorder(decision.category, decision.ordered)
        return decision, result

    def _stored_position(self, ref: ElementRef) -> Optional[int]:
        for elements in (self.view.board.get("categories") or {}).values():
            for element in elements:
                if element.get("type") == ref.type and element.get("id") == ref.id:
                    return element.get("position")
        return None
