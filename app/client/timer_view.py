from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from app.config.loader import get_timer_settings

STATE_HIDDEN = "hidden"
STATE_RUNNING = "running"
STATE_STOPPED = "stopped"

SEVERITY_NORMAL = "normal"
SEVERITY_WARNING = "warning"
SEVERITY_DANGER = "danger"


def format_remaining(seconds: float) -> str:
    """Render seconds as ``M:SS``; negative values clamp to ``0:00``."""
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes}:{secs:02d}"


def severity_for(
    seconds: float,
    warning_seconds: Optional[int] = None,
    danger_seconds: Optional[int] = None,
) -> str:
    if warning_seconds is None or danger_seconds is None:
        settings = get_timer_settings()
        warning_seconds = settings["warning_seconds"] if warning_seconds is None else warning_seconds
        danger_seconds = settings["danger_seconds"] if danger_seconds is None else danger_seconds
    if seconds <= danger_seconds:
        return SEVERITY_DANGER
    if seconds <= warning_seconds:
        return SEVERITY_WARNING
    return SEVERITY_NORMAL


@dataclass
class TimerView:
    """Client-side countdown re-derived from the server's remaining seconds.

    Every timer broadcast resets ``end_time``, so local drift (for example a
    suspended tab) never accumulates. An expired timer stays on screen at
    ``0:00`` until the facilitator stops it.
    """

    clock: Callable[[], float] = time.monotonic
    end_time: Optional[float] = None
    state: str = STATE_HIDDEN
    duration: Optional[int] = None
    warning_seconds: int = field(default_factory=lambda: get_timer_settings()["warning_seconds"])
    danger_seconds: int = field(default_factory=lambda: get_timer_settings()["danger_seconds"])

    def sync(self, remaining_seconds: float, duration: Optional[int] = None) -> None:
        self.end_time = self.clock() + max(0.0, float(remaining_seconds))
        self.state = STATE_RUNNING
        if duration is not None:
            self.duration = duration

    def stop(self, *, is_owner: bool) -> None:
        # The facilitator's own timer disappears; everyone else sees "stopped".
        self.end_time = None
        self.duration = None
        self.state = STATE_HIDDEN if is_owner else STATE_STOPPED

    def remaining(self) -> int:
        if self.state != STATE_RUNNING or self.end_time is None:
            return 0
        return max(0, math.ceil(self.end_time - self.clock()))

    @property
    def is_expired(self) -> bool:
        return self.state == STATE_RUNNING and self.remaining() == 0

    def display(self) -> Optional[str]:
        if self.state == STATE_HIDDEN:
            return None
        if self.state == STATE_STOPPED:
            return "stopped"
        return format_remaining(self.remaining())

    def severity(self) -> str:
        return severity_for(self.remaining(), self.warning_seconds, self.danger_seconds)
