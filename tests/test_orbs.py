from dataclasses import replace

import pytest

from engine.orbs import (
    acknowledge_milestone,
    balance_summary,
    dominant_pattern,
    earn_bonus_orbs,
    earn_orb,
    get_orb_tier,
    get_streak_bonus,
    mark_viewed,
    new_since_last_view,
    orb_distribution,
    reached_milestones,
    unacknowledged_milestone,
)
from engine.state import OrbState


@pytest.mark.parametrize(("streak", "bonus"), [(1, 0), (2, 0), (3, 2), (4, 0), (5, 5), (10, 15), (11, 0)])
def test_streak_bonus(streak: int, bonus: int) -> None:
    assert get_streak_bonus(streak) == bonus


@pytest.mark.parametrize(
    ("total", "tier"), [(0, "nascent"), (9, "nascent"), (10, "emerging"), (45, "developing"), (100, "mastered")]
)
def test_orb_tier(total: int, tier: str) -> None:
    assert get_orb_tier(total) == tier


def test_same_pattern_builds_a_streak_with_bonuses() -> None:
    orbs = OrbState()
    for _ in range(3):
        orbs = earn_orb(orbs, "patience")
    assert orbs.current_streak == 3
    assert orbs.balance["patience"] == 5
    assert orbs.total_earned == 5


def test_switching_pattern_resets_the_streak_but_keeps_the_best() -> None:
    orbs = earn_orb(earn_orb(OrbState(), "helping"), "helping")
    orbs = earn_orb(orbs, "building")
    assert orbs.current_streak == 1
    assert orbs.current_streak_type == "building"
    assert orbs.best_streak == 2


def test_unknown_pattern_earns_nothing() -> None:
    orbs = OrbState()
    assert earn_orb(orbs, "chaos") is orbs


def test_bonus_orbs_leave_the_streak_alone() -> None:
    orbs = earn_orb(OrbState(), "analytical")
    bonus = earn_bonus_orbs(orbs, "analytical", 5)
    assert bonus.balance["analytical"] == 6
    assert bonus.current_streak == orbs.current_streak


def test_dominant_pattern_prefers_earlier_patterns_on_ties() -> None:
    assert dominant_pattern(OrbState()) is None
    orbs = earn_orb(earn_orb(OrbState(), "building"), "helping")
    assert dominant_pattern(orbs) == "helping"


def test_distribution_rounds_to_percentages() -> None:
    orbs = earn_orb(earn_orb(earn_orb(OrbState(), "helping"), "building"), "exploring")
    assert orb_distribution(orbs) == {"analytical": 0, "helping": 33, "building": 33, "patience": 0, "exploring": 33}
    assert balance_summary(orbs.balance) == "0,1,1,0,1"


def test_milestones_are_acknowledged_in_order() -> None:
    orbs = OrbState()
    for _ in range(3):
        orbs = earn_orb(orbs, "helping")
    orbs = replace(orbs, arc_completions=1)
    assert reached_milestones(orbs) == ["firstOrb", "streak3", "arcComplete"]

    seen = []
    key = unacknowledged_milestone(orbs)
    while key is not None:
        seen.append(key)
        orbs = acknowledge_milestone(orbs, key)
        key = unacknowledged_milestone(orbs)
    assert seen == ["firstOrb", "streak3", "arcComplete"]


def test_new_since_last_view() -> None:
    orbs = earn_orb(OrbState(), "helping")
    viewed = mark_viewed(orbs)
    assert new_since_last_view(orbs) == {"helping": 1}
    assert new_since_last_view(viewed) == {}
    later = earn_orb(viewed, "patience")
    assert new_since_last_view(later) == {"patience": 1}
    assert later.last_viewed_total == 1
