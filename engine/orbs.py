"""Orb economy: earning, streak bonuses, tiers and milestone tracking."""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Mapping, Optional, Tuple

from engine.state import PATTERNS, OrbState, frozen_mapping

ORB_TIERS: Tuple[Tuple[str, int], ...] = (
    ("nascent", 0),
    ("emerging", 10),
    ("developing", 30),
    ("flourishing", 60),
    ("mastered", 100),
)

ORB_EARNINGS: Dict[str, int] = {
    "choice": 1,
    "arc_completion": 5,
    "streak3": 2,
    "streak5": 5,
    "streak10": 15,
}

STREAK_MILESTONES: Tuple[int, ...] = (3, 5, 10)

# Acknowledgement order when several milestones are pending at once.
MILESTONE_ORDER: Tuple[str, ...] = (
    "firstOrb",
    "tier_emerging",
    "tier_developing",
    "tier_flourishing",
    "tier_mastered",
    "streak3",
    "streak5",
    "streak10",
    "arcComplete",
)


def get_streak_bonus(streak: int) -> int:
    """Bonus orbs awarded when a streak reaches exactly 3, 5 or 10."""
    if streak in STREAK_MILESTONES:
        return ORB_EARNINGS[f"streak{streak}"]
    return 0


def get_orb_tier(total: int) -> str:
    tier = ORB_TIERS[0][0]
    for name, minimum in ORB_TIERS:
        if total >= minimum:
            tier = name
    return tier


def _capped(value: int, cap: Optional[int]) -> int:
    if cap is None:
        return value
    return min(cap, value)


def earn_orb(
    orbs: OrbState, pattern: str, amount: int = ORB_EARNINGS["choice"], *, cap: Optional[int] = None
) -> OrbState:
    """Earn ``amount`` orbs of ``pattern`` and advance the same-pattern streak."""
    if pattern not in PATTERNS:
        return orbs

    if orbs.current_streak_type == pattern:
        streak = orbs.current_streak + 1
    else:
        streak = 1
    bonus = get_streak_bonus(streak)

    balance = dict(orbs.balance)
    balance[pattern] = _capped(balance.get(pattern, 0) + amount + bonus, cap)
    return replace(
        orbs,
        balance=frozen_mapping(balance),
        total_earned=_capped(orbs.total_earned + amount + bonus, cap),
        current_streak=streak,
        current_streak_type=pattern,
        best_streak=max(orbs.best_streak, streak),
    )


def earn_bonus_orbs(orbs: OrbState, pattern: str, amount: int) -> OrbState:
    """Grant orbs without touching the streak."""
    if pattern not in PATTERNS or amount <= 0:
        return orbs
    balance = dict(orbs.balance)
    balance[pattern] = balance.get(pattern, 0) + amount
    return replace(orbs, balance=frozen_mapping(balance), total_earned=orbs.total_earned + amount)


def dominant_pattern(orbs: OrbState) -> Optional[str]:
    """Pattern with the largest balance; earlier patterns win ties, none when all are zero."""
    best: Optional[str] = None
    best_count = 0
    for pattern in PATTERNS:
        count = orbs.balance.get(pattern, 0)
        if count > best_count:
            best, best_count = pattern, count
    return best


def orb_distribution(orbs: OrbState) -> Dict[str, int]:
    total = sum(orbs.balance.get(pattern, 0) for pattern in PATTERNS)
    if total == 0:
        return {pattern: 0 for pattern in PATTERNS}
    return {pattern: round(orbs.balance.get(pattern, 0) / total * 100) for pattern in PATTERNS}


def reached_milestones(orbs: OrbState) -> List[str]:
    reached: List[str] = []
    if orbs.total_earned > 0:
        reached.append("firstOrb")
    for name, minimum in ORB_TIERS[1:]:
        if orbs.total_earned >= minimum:
            reached.append(f"tier_{name}")
    for length in STREAK_MILESTONES:
        if orbs.best_streak >= length:
            reached.append(f"streak{length}")
    if orbs.arc_completions > 0:
        reached.append("arcComplete")
    return [key for key in MILESTONE_ORDER if key in reached]


def unacknowledged_milestone(orbs: OrbState) -> Optional[str]:
    for key in reached_milestones(orbs):
        if key not in orbs.acknowledged:
            return key
    return None


def acknowledge_milestone(orbs: OrbState, key: str) -> OrbState:
    return replace(orbs, acknowledged=orbs.acknowledged | {key})


def new_since_last_view(orbs: OrbState) -> Dict[str, int]:
    """Per-pattern orbs earned since :func:`mark_viewed` was last applied."""
    diff: Dict[str, int] = {}
    for pattern in PATTERNS:
        delta = orbs.balance.get(pattern, 0) - orbs.last_viewed.get(pattern, 0)
        if delta > 0:
            diff[pattern] = delta
    return diff


def mark_viewed(orbs: OrbState) -> OrbState:
    return replace(
        orbs,
        last_viewed=frozen_mapping(orbs.balance),
        last_viewed_total=orbs.total_earned,
    )


def balance_summary(balance: Mapping[str, int]) -> str:
    return ",".join(str(balance.get(pattern, 0)) for pattern in PATTERNS)
