from dataclasses import replace

import pytest

from engine.consequences import ChoiceContext, first_crossed_pattern, resolve_consequences, stable_pick
from engine.narrative_rules import EchoLine, NarrativeRules
from engine.orbs import earn_orb
from engine.serialization import serialize_state
from engine.settings import Settings
from engine.state import frozen_mapping, new_game_state
from engine.state_change import StateChange, apply_state_change

RULES = NarrativeRules.from_dict(
    {
        "trust_echoes": {
            "samuel": {"positive": {"noticeable": ["Samuel nods."]}, "negative": ["Samuel looks away."]},
        },
        "pattern_echoes": {
            "*": {"helping": ["You keep showing up."]},
            "maya": {"helping": [{"text": "Maya notices you always help.", "emotion": "grateful"}]},
        },
        "transformations": [
            {
                "id": "samuel_opens_up",
                "character": "samuel",
                "trust_min": 6,
                "required_flags": ["knows_secret"],
                "trigger_dialogue": ["Samuel finally tells you about the train."],
                "emotion_arc": ["vulnerable", "relieved"],
                "global_flags_set": ["samuel_opened_up"],
                "new_relationship": "confidant",
            }
        ],
    }
)


def base_state():
    state = new_game_state("n", character_ids=["samuel", "maya", "devon"], start_character_id="samuel")
    return apply_state_change(
        state,
        StateChange(
            pattern_changes=frozen_mapping({"helping": 2}),
            character_id="samuel",
            trust_change=4,
            add_knowledge_flags=("knows_secret",),
        ),
    )


def context(character_id: str = "samuel", **kwargs) -> ChoiceContext:
    defaults = {
        "node_id": "n",
        "choice_id": "c",
        "choice_text": "Do it",
        "timestamp": 1,
        "character_name": character_id.title(),
    }
    defaults.update(kwargs)
    return ChoiceContext(character_id=character_id, **defaults)


def tier_one_case(eligible):
    previous = base_state()
    current = previous
    delta = 0
    if "trust" in eligible or "transformation" in eligible:
        delta = 2
        current = apply_state_change(current, StateChange(character_id="samuel", trust_change=delta))
    if "pattern" in eligible:
        current = apply_state_change(current, StateChange(pattern_changes=frozen_mapping({"helping": 1})))
    if "milestone" in eligible:
        current = replace(current, orbs=earn_orb(current.orbs, "analytical"))
    rules = RULES if "transformation" in eligible else replace(RULES, transformations=())
    return resolve_consequences(previous, current, context(trust_delta=delta), rules, Settings())


@pytest.mark.parametrize(
    ("eligible", "winner"),
    [
        (("trust",), "trust"),
        (("pattern",), "pattern"),
        (("milestone",), "milestone"),
        (("transformation",), "transformation"),
        (("trust", "pattern"), "trust"),
        (("trust", "milestone"), "milestone"),
        (("trust", "transformation"), "transformation"),
        (("pattern", "milestone"), "milestone"),
        (("pattern", "transformation"), "transformation"),
        (("milestone", "transformation"), "transformation"),
        (("trust", "pattern", "milestone", "transformation"), "transformation"),
    ],
)
def test_tier_one_winner(eligible, winner: str) -> None:
    result = tier_one_case(eligible)
    assert result.echo is not None
    assert result.echo.kind == winner
    assert result.events[0] is result.echo


def test_pattern_shift_notice_is_kept_when_another_echo_wins() -> None:
    result = tier_one_case(("trust", "pattern"))
    assert [notice.kind for notice in result.notices] == ["trust_change", "pattern_shift"]
    assert result.notices[0].text == "Trust (Samuel): +2"
    assert result.notices[1].text == "Worldview Shift: Helping (Level 3)"


def test_transformation_replaces_a_pattern_echo() -> None:
    rules = NarrativeRules.from_dict(
        {
            "transformations": [
                {"id": "maya_trusts", "character": "maya", "trust_min": 2, "trigger_dialogue": ["Maya lets you in."]}
            ]
        }
    )
    previous = base_state()
    current = apply_state_change(
        previous,
        StateChange(character_id="maya", trust_change=2, pattern_changes=frozen_mapping({"helping": 1})),
    )

    result = resolve_consequences(previous, current, context("maya", trust_delta=2), rules)

    assert result.echo.kind == "transformation"
    assert result.echo.text == "Maya lets you in."
    assert [notice.kind for notice in result.notices] == ["trust_change", "pattern_shift"]
    overwrites = [log for log in result.logs if log.type == "overwrote"]
    assert [(log.processor, log.data["replaced"]) for log in overwrites] == [("transformation", "pattern")]


def test_transformation_updates_relationship_flags_and_ledger() -> None:
    result = tier_one_case(("transformation",))
    samuel = result.state.characters["samuel"]
    assert samuel.relationship == "confidant"
    assert "samuel_opened_up" in result.state.global_flags
    assert result.state.ledger.witnessed_transformations == frozenset({"samuel_opens_up"})
    assert result.echo.emotion == "vulnerable"


def test_transformation_fires_once() -> None:
    first = tier_one_case(("transformation",))
    again = resolve_consequences(
        first.state,
        apply_state_change(first.state, StateChange(character_id="samuel", trust_change=1)),
        context(trust_delta=1),
        RULES,
    )
    assert again.echo is None or again.echo.kind != "transformation"


def test_milestone_is_only_for_the_hub_character() -> None:
    previous = base_state()
    current = replace(previous, orbs=earn_orb(previous.orbs, "analytical"))
    result = resolve_consequences(previous, current, context("maya"), RULES)
    assert result.echo is None
    hub = resolve_consequences(previous, current, context("samuel"), RULES)
    assert hub.echo.kind == "milestone"
    assert "firstOrb" in hub.state.orbs.acknowledged


def test_trust_feedback_records_the_timeline() -> None:
    result = tier_one_case(("trust",))
    timeline = result.state.characters["samuel"].trust_timeline
    assert timeline is not None
    assert [(point.value, point.delta, point.timestamp) for point in timeline.points] == [(6, 2, 1)]
    assert timeline.peak == 6


def test_repeated_helping_choice_echoes_on_the_third_step() -> None:
    change = StateChange.from_dict({"characterId": "maya", "trustChange": 3, "patternChanges": {"helping": 1}})
    state = new_game_state("n", character_ids=["maya"], start_character_id="maya")
    echoes = []
    for step in range(3):
        current = apply_state_change(state, change)
        result = resolve_consequences(state, current, context("maya", trust_delta=3, timestamp=step), RULES)
        echoes.append(result.echo)
        state = result.state

    assert state.characters["maya"].trust == 9
    assert state.patterns["helping"] == 3
    assert echoes[:2] == [None, None]
    assert echoes[2].kind == "pattern"
    assert echoes[2].text == "Maya notices you always help."


def test_pipeline_is_pure() -> None:
    previous = base_state()
    current = apply_state_change(previous, StateChange(character_id="samuel", trust_change=2))
    before = serialize_state(previous), serialize_state(current)

    first = resolve_consequences(previous, current, context(trust_delta=2), RULES)
    second = resolve_consequences(previous, current, context(trust_delta=2), RULES)

    assert (serialize_state(previous), serialize_state(current)) == before
    assert serialize_state(first.state) == serialize_state(second.state)
    assert first.echo == second.echo
    assert first.notices == second.notices


def test_stable_pick_is_deterministic() -> None:
    lines = tuple(EchoLine(f"line {index}") for index in range(5))
    assert stable_pick(lines, "maya", 3) == stable_pick(lines, "maya", 3)


def test_first_crossed_pattern_prefers_low_thresholds_then_pattern_order() -> None:
    old = {"analytical": 4, "helping": 2}
    new = {"analytical": 5, "helping": 3}
    assert first_crossed_pattern(old, new, (3, 5, 10)) == ("helping", 3)
    assert first_crossed_pattern(new, new, (3, 5, 10)) is None


# ---------- Tier 2 ----------
def test_story_arc_unlocks_once_and_never_replaces_the_echo() -> None:
    rules = replace(
        RULES,
        transformations=(),
        story_arcs=NarrativeRules.from_dict(
            {"story_arcs": [{"id": "platform", "condition": {"type": "has_flag", "flag": "asked"}, "text": "An arc opens."}]}
        ).story_arcs,
    )
    previous = base_state()
    current = apply_state_change(
        previous, StateChange(add_global_flags=("asked",), character_id="samuel", trust_change=2)
    )

    result = resolve_consequences(previous, current, context(trust_delta=2), rules)

    assert result.echo.kind == "trust"
    assert [event.kind for event in result.events] == ["trust", "story_arc"]
    assert "story_arc_platform_unlocked" in result.state.global_flags

    again = resolve_consequences(result.state, result.state, context(), rules)
    assert again.events == ()


def test_puzzle_hint_then_completion() -> None:
    rules = NarrativeRules.from_dict(
        {
            "synthesis_puzzles": [
                {
                    "id": "timetable",
                    "condition": [{"type": "has_flag", "flag": "a"}, {"type": "has_flag", "flag": "b"}],
                    "hint_condition": {"type": "has_flag", "flag": "a"},
                    "hint_text": "Something about the timetable.",
                    "text": "Solved.",
                }
            ]
        }
    )
    start = base_state()
    with_a = apply_state_change(start, StateChange(add_global_flags=("a",)))
    hint = resolve_consequences(start, with_a, context(), rules)
    assert [event.kind for event in hint.events] == ["puzzle_hint"]

    with_b = apply_state_change(hint.state, StateChange(add_global_flags=("b",)))
    done = resolve_consequences(hint.state, with_b, context(), rules)
    assert [event.kind for event in done.events] == ["puzzle_complete"]
    assert "puzzle_timetable_solved" in done.state.global_flags


def test_knowledge_discovery_is_announced_once() -> None:
    rules = NarrativeRules.from_dict(
        {"knowledge_discoveries": [{"id": "servo", "character": "maya", "knowledge_flag": "knows_servo", "text": "Relays!"}]}
    )
    previous = base_state()
    current = apply_state_change(previous, StateChange(character_id="maya", add_knowledge_flags=("knows_servo",)))
    first = resolve_consequences(previous, current, context("maya"), rules)
    assert [event.text for event in first.events] == ["Relays!"]
    second = resolve_consequences(first.state, first.state, context("maya"), rules)
    assert second.events == ()


def test_cross_character_echo_is_delivered_after_its_delay() -> None:
    rules = NarrativeRules.from_dict(
        {
            "cross_character_echoes": [
                {"id": "heard", "source_flag": "helped_samuel", "target_character": "maya", "text": "I heard.", "delay": 1}
            ]
        }
    )
    previous = base_state()
    current = apply_state_change(previous, StateChange(add_global_flags=("helped_samuel",)))
    queued = resolve_consequences(previous, current, context("samuel"), rules)
    assert queued.events == ()
    assert [entry.echo_id for entry in queued.state.ledger.echo_queue] == ["heard"]

    delivered = resolve_consequences(queued.state, queued.state, context("maya"), rules)
    assert [event.text for event in delivered.events] == ["I heard."]
    assert delivered.state.ledger.echo_queue == ()
    assert "heard" in delivered.state.ledger.delivered_echoes


def test_pattern_combo_sets_its_flag() -> None:
    rules = NarrativeRules.from_dict(
        {"pattern_combos": [{"id": "maker", "requirements": {"helping": 2, "building": 1}, "text": "Maker."}]}
    )
    previous = base_state()
    current = apply_state_change(previous, StateChange(pattern_changes=frozen_mapping({"building": 1})))
    result = resolve_consequences(previous, current, context(), rules)
    assert [event.kind for event in result.events] == ["combo"]
    assert "combo_maker_achieved" in result.state.global_flags


def test_iceberg_topic_becomes_investigable_at_threshold() -> None:
    rules = NarrativeRules.from_dict({"iceberg_topics": [{"id": "platform", "threshold": 2, "text": "Look into it."}]})
    tags = ("iceberg:platform", "mood")
    state = base_state()
    first = resolve_consequences(state, state, context(entered_tags=tags), rules)
    assert first.events == ()
    assert first.state.ledger.iceberg_mentions["platform"] == 1

    second = resolve_consequences(first.state, first.state, context(entered_tags=tags), rules)
    assert [event.kind for event in second.events] == ["iceberg"]
    assert "iceberg_platform_investigable" in second.state.global_flags


GIFT_RULES = NarrativeRules.from_dict(
    {
        "delayed_gifts": [
            {
                "id": "thanks",
                "choice_id": "offer_help",
                "source_character": "samuel",
                "target_character": "devon",
                "text": "Samuel sent this.",
                "delay": 2,
            }
        ]
    }
)


def test_delayed_gift_ticks_down_then_delivers_to_its_target() -> None:
    state = base_state()
    queued = resolve_consequences(
        state, state, context("samuel", choice_id="offer_help", choice_text="Offer to help"), GIFT_RULES
    )
    assert queued.state.ledger.pending_gifts[0].interactions_remaining == 2

    waiting = resolve_consequences(queued.state, queued.state, context("devon"), GIFT_RULES)
    assert waiting.events == ()
    assert waiting.state.ledger.pending_gifts[0].interactions_remaining == 1

    delivered = resolve_consequences(waiting.state, waiting.state, context("devon"), GIFT_RULES)
    assert [event.kind for event in delivered.events] == ["gift"]
    assert delivered.events[0].text == '"Samuel sent this."\n\n(Recall: "Offer to help")'
    assert delivered.state.ledger.pending_gifts == ()
    assert "gift:thanks" in delivered.state.ledger.delivered_echoes


def test_delayed_gift_waits_while_something_else_is_surfaced() -> None:
    state = base_state()
    queued = resolve_consequences(state, state, context("samuel", choice_id="offer_help"), GIFT_RULES)
    ticked = resolve_consequences(queued.state, queued.state, context("devon"), GIFT_RULES)
    shift = apply_state_change(ticked.state, StateChange(pattern_changes=frozen_mapping({"helping": 1})))

    busy = resolve_consequences(ticked.state, shift, context("devon"), GIFT_RULES)

    assert [event.kind for event in busy.events] == ["pattern"]
    assert len(busy.state.ledger.pending_gifts) == 1


def test_arc_completion_grants_bonus_orbs_to_the_dominant_pattern() -> None:
    rules = NarrativeRules.from_dict(
        {"arc_completions": [{"character": "samuel", "bonus_orbs": 5, "text": "Arc complete."}]}
    )
    previous = base_state()
    previous = replace(previous, orbs=earn_orb(earn_orb(previous.orbs, "patience"), "patience"))
    current = apply_state_change(previous, StateChange(add_global_flags=("samuel_arc_complete",)))

    result = resolve_consequences(previous, current, context("maya"), rules)

    assert [event.kind for event in result.events] == ["arc_complete"]
    assert result.state.orbs.balance["patience"] == 7
    assert result.state.orbs.arc_completions == 1
    assert result.state.ledger.completed_arcs == frozenset({"samuel"})


def test_processor_activity_is_logged() -> None:
    result = tier_one_case(("transformation",))
    assert ("transformation", "witnessed") in [(log.processor, log.type) for log in result.logs]
