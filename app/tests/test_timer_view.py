import pytest

from app.client.timer_view import TimerView, format_remaining, severity_for


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0:00"), (-4, "0:00"), (59, "0:59"), (61, "1:01"), (600, "10:00")],
)
def test_format_remaining(seconds, expected):
    assert format_remaining(seconds) == expected


@pytest.mark.parametrize(
    "seconds, expected",
    [(301, "normal"), (300, "warning"), (61, "warning"), (60, "danger"), (0, "danger")],
)
def test_severity_thresholds(seconds, expected):
    assert severity_for(seconds, 300, 60) == expected


def test_each_sync_resets_the_countdown():
    now = [0.0]
    view = TimerView(clock=lambda: now[0], warning_seconds=300, danger_seconds=60)

    view.sync(120, duration=2)
    now[0] = 30.2
    assert view.remaining() == 90

    view.sync(100)
    assert view.remaining() == 100
    assert view.duration == 2


def test_hidden_until_started():
    view = TimerView(clock=lambda: 0.0)
    assert view.display() is None
    assert view.remaining() == 0
    assert not view.is_expired
