"""Trust feedback helpers: intensity, toasts and the trust timeline."""

from __future__ import annotations

from dataclasses import replace
from typing import Optional

from engine.state import MAX_TRUST, TrustSample, TrustTimeline

EVENT_TEXT_LIMIT = 50


def trust_direction(delta: int) -> Optional[str]:
    if delta > 0:
        return "positive"
    if delta < 0:
        return "negative"
    return None


def trust_intensity(delta: int) -> str:
    magnitude = abs(delta)
    if magnitude >= 3:
        return "significant"
    if magnitude >= 2:
        return "noticeable"
    return "subtle"


def format_trust_toast(character_name: str, delta: int) -> str:
    sign = "+" if delta > 0 else ""
    return f"Trust ({character_name}): {sign}{delta}"


def new_timeline() -> TrustTimeline:
    return TrustTimeline(lowest=MAX_TRUST)


def record_trust_change(
    timeline: Optional[TrustTimeline],
    trust: int,
    delta: int,
    node_id: str = "",
    event: str = "",
    timestamp: int = 0,
) -> TrustTimeline:
    """Append a sample and refresh peak, trough and positive streak."""
    if timeline is None:
        timeline = new_timeline()

    sample = TrustSample(
        value=trust,
        timestamp=timestamp,
        delta=delta,
        node_id=node_id,
        event=event[:EVENT_TEXT_LIMIT],
    )
    if delta > 0:
        streak = timeline.streak + 1
    elif delta < 0:
        streak = 0
    else:
        streak = timeline.streak

    updated = replace(timeline, points=timeline.points + (sample,), streak=streak)
    if trust > timeline.peak:
        updated = replace(updated, peak=trust, peak_timestamp=timestamp)
    if trust < timeline.lowest:
        updated = replace(updated, lowest=trust, lowest_timestamp=timestamp)
    return updated


def trust_trend(timeline: Optional[TrustTimeline], window: int = 5) -> str:
    if timeline is None or len(timeline.points) < 2:
        return "stable"
    total = sum(point.delta for point in timeline.points[-window:])
    if total > 1:
        return "improving"
    if total < -1:
        return "declining"
    return "stable"
