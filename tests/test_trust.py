import pytest

from engine.trust import (
    EVENT_TEXT_LIMIT,
    format_trust_toast,
    record_trust_change,
    trust_direction,
    trust_intensity,
    trust_trend,
)


@pytest.mark.parametrize(
    ("delta", "direction", "intensity"),
    [
        (1, "positive", "subtle"),
        (2, "positive", "noticeable"),
        (5, "positive", "significant"),
        (-1, "negative", "subtle"),
        (-3, "negative", "significant"),
        (0, None, "subtle"),
    ],
)
def test_direction_and_intensity(delta: int, direction, intensity: str) -> None:
    assert trust_direction(delta) == direction
    assert trust_intensity(delta) == intensity


def test_toast_text() -> None:
    assert format_trust_toast("Maya", 3) == "Trust (Maya): +3"
    assert format_trust_toast("Samuel", -2) == "Trust (Samuel): -2"


def test_timeline_tracks_peak_trough_and_streak() -> None:
    timeline = record_trust_change(None, 3, 3, node_id="a", timestamp=1)
    timeline = record_trust_change(timeline, 5, 2, node_id="b", timestamp=2)
    assert timeline.streak == 2
    assert (timeline.peak, timeline.peak_timestamp) == (5, 2)

    timeline = record_trust_change(timeline, 2, -3, node_id="c", timestamp=3)
    assert timeline.streak == 0
    assert (timeline.lowest, timeline.lowest_timestamp) == (2, 3)
    assert [point.node_id for point in timeline.points] == ["a", "b", "c"]
    assert trust_trend(timeline) == "improving"


def test_event_text_is_truncated() -> None:
    timeline = record_trust_change(None, 1, 1, event="x" * 80)
    assert len(timeline.points[0].event) == EVENT_TEXT_LIMIT


def test_trend_needs_two_samples_and_a_clear_direction() -> None:
    assert trust_trend(None) == "stable"
    single = record_trust_change(None, 4, 4)
    assert trust_trend(single) == "stable"

    falling = record_trust_change(single, 2, -2)
    falling = record_trust_change(falling, 0, -2)
    assert trust_trend(falling) == "stable"
    assert trust_trend(falling, window=2) == "declining"
