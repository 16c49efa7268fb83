"""Participant-side synchronisation for retrospective sessions."""

from .sync_agent import ClientSyncAgent, LocalView, SessionContext  # noqa: F401
from .timer_view import TimerView, format_remaining, severity_for  # noqa: F401
from .transport import (  # noqa: F401
    CommandError,
    CommandTransport,
    EventSource,
    HttpCommandTransport,
    SseEventSource,
)

__all__ = [
    "ClientSyncAgent",
    "LocalView",
    "SessionContext",
    "TimerView",
    "format_remaining",
    "severity_for",
    "CommandError",
    "CommandTransport",
    "EventSource",
    "HttpCommandTransport",
    "SseEventSource",
]
