from dataclasses import replace

import pytest

from engine.conditions import describe_unmet, evaluate, evaluate_choices, orb_fill, selectable_choices
from engine.graph import node_from_dict
from engine.state import OrbState, frozen_mapping, new_game_state
from engine.state_change import StateChange, apply_state_change


def maya_state(trust: int = 4):
    state = new_game_state("start", character_ids=["maya"], start_character_id="maya")
    return apply_state_change(
        state,
        StateChange(
            add_global_flags=("met_maya",),
            pattern_changes=frozen_mapping({"building": 2}),
            character_id="maya",
            trust_change=trust,
            set_relationship_status="acquaintance",
            add_knowledge_flags=("knows_robot",),
        ),
    )


def with_balance(state, **balance):
    orbs = replace(state.orbs, balance=frozen_mapping({**state.orbs.balance, **balance}))
    return replace(state, orbs=orbs)


@pytest.mark.parametrize(
    ("condition", "expected"),
    [
        (None, True),
        ({}, True),
        ({"type": "has_flag", "flag": "met_maya"}, True),
        ({"type": "lacks_flag", "flag": "met_maya"}, False),
        ({"type": "trust", "value": 4}, True),
        ({"type": "trust", "op": ">", "value": 4}, False),
        ({"type": "trust", "character": "samuel", "value": 0}, False),
        ({"type": "relationship", "value": ["acquaintance", "confidant"]}, True),
        ({"type": "has_knowledge", "flag": "knows_robot"}, True),
        ({"type": "lacks_knowledge", "flag": "knows_robot"}, False),
        ({"type": "pattern", "pattern": "building", "value": 2}, True),
        ({"type": "pattern", "pattern": "helping", "op": "==", "value": 0}, True),
        ({"type": "orb_fill", "pattern": "analytical", "value": 1}, False),
        ({"type": "skill", "skill": "engineering", "value": 3}, True),
        ({"type": "mystery"}, True),
    ],
)
def test_leaf_conditions(condition, expected: bool) -> None:
    assert evaluate(condition, maya_state(), "maya", {"engineering": 3}) is expected


@pytest.mark.parametrize(
    ("condition", "expected"),
    [
        ({"type": "has_flag", "flag": ["met_maya"]}, False),
        ({"type": "lacks_flag", "flag": {"name": "met_maya"}}, True),
        ({"type": "has_knowledge", "flag": ["knows_robot"]}, False),
        ({"type": "lacks_knowledge", "flag": {}}, True),
        ({"type": "pattern", "pattern": ["building"], "value": 2}, False),
        ({"type": "orb_fill", "pattern": {}, "value": 1}, False),
        ({"type": "skill", "skill": ["engineering"], "value": 3}, False),
    ],
)
def test_non_string_names_read_as_absent(condition, expected: bool) -> None:
    assert evaluate(condition, maya_state(), "maya", {"engineering": 3}) is expected
    unmet = describe_unmet(condition, maya_state(), "maya", {"engineering": 3})
    assert len(unmet) == (0 if expected else 1)


def test_compound_conditions_nest() -> None:
    state = maya_state()
    condition = {
        "type": "and",
        "conditions": [
            {"type": "has_flag", "flag": "met_maya"},
            {
                "type": "or",
                "conditions": [
                    {"type": "trust", "value": 9},
                    {"type": "not", "condition": {"type": "has_flag", "flag": "angered_maya"}},
                ],
            },
        ],
    }
    assert evaluate(condition, state, "maya")
    assert not evaluate({"type": "not", "condition": condition}, state, "maya")


def test_list_is_an_and_of_entries() -> None:
    state = maya_state()
    assert evaluate([{"type": "has_flag", "flag": "met_maya"}, {"type": "trust", "value": 1}], state, "maya")
    assert not evaluate([{"type": "has_flag", "flag": "met_maya"}, {"type": "trust", "value": 9}], state, "maya")


def test_legacy_required_state_block() -> None:
    state = maya_state(trust=5)
    block = {
        "trust": {"min": 3, "max": 8},
        "relationship": "acquaintance",
        "hasKnowledgeFlags": ["knows_robot"],
        "lacksGlobalFlags": ["angered_maya"],
        "patterns": {"building": {"min": 2}},
    }
    assert evaluate(block, state, "maya")
    assert not evaluate({"trust": {"max": 2}}, state, "maya")


def test_describe_unmet_lists_failing_parts() -> None:
    state = maya_state(trust=1)
    unmet = describe_unmet(
        [{"type": "trust", "value": 5}, {"type": "has_flag", "flag": "met_maya"}, {"type": "has_flag", "flag": "x"}],
        state,
        "maya",
    )
    assert unmet == ["trust >= 5", "has_flag 'x'"]


def test_orb_fill_scales_by_capacity() -> None:
    state = with_balance(maya_state(), patience=25)
    assert orb_fill(state, "patience") == 25
    assert orb_fill(state, "patience", capacity=50) == 50
    assert orb_fill(state, "patience", capacity=10) == 100


def test_orb_fill_rounds_halves_up() -> None:
    state = with_balance(new_game_state("gate"), analytical=1)
    assert orb_fill(state, "analytical", capacity=8) == 13
    assert orb_fill(with_balance(state, analytical=3), "analytical", capacity=8) == 38

    evaluated = evaluate_choices(orb_node([13, 14]), state, orb_fill_capacity=8)
    assert [choice.choice_id for choice in selectable_choices(evaluated)] == ["orb_13"]


def orb_node(thresholds, extra=()):
    choices = [
        {
            "id": f"orb_{threshold}",
            "text": f"Needs {threshold}",
            "target": "next",
            "required_orb_fill": {"pattern": "analytical", "threshold": threshold},
        }
        for threshold in thresholds
    ]
    return node_from_dict("gate", {"text": "Gate", "choices": choices + list(extra)})


def test_mercy_unlock_picks_the_lowest_threshold() -> None:
    node = orb_node([80, 50])
    evaluated = evaluate_choices(node, new_game_state("gate"))
    assert [choice.choice_id for choice in selectable_choices(evaluated)] == ["orb_50"]
    assert [entry.mercy_unlocked for entry in evaluated] == [False, True]


def test_mercy_unlock_breaks_ties_by_declaration_order() -> None:
    evaluated = evaluate_choices(orb_node([60, 60]), new_game_state("gate"))
    assert [entry.selectable for entry in evaluated] == [True, False]
    assert evaluated[0].mercy_unlocked and not evaluated[1].mercy_unlocked


def test_mercy_unlock_skips_when_an_ungated_choice_exists() -> None:
    node = orb_node([50, 80], extra=[{"id": "leave", "text": "Leave", "target": "next"}])
    evaluated = evaluate_choices(node, new_game_state("gate"))
    assert [choice.choice_id for choice in selectable_choices(evaluated)] == ["leave"]
    assert not any(entry.mercy_unlocked for entry in evaluated)


def test_orb_gate_opens_once_filled() -> None:
    state = with_balance(new_game_state("gate"), analytical=60)
    evaluated = evaluate_choices(orb_node([50, 80]), state)
    assert [choice.choice_id for choice in selectable_choices(evaluated)] == ["orb_50"]
    assert not any(entry.mercy_unlocked for entry in evaluated)


def test_hidden_choices_are_not_mercy_candidates() -> None:
    hidden = {
        "id": "secret",
        "text": "Secret",
        "target": "next",
        "visible_if": {"type": "has_flag", "flag": "never"},
        "required_orb_fill": {"pattern": "analytical", "threshold": 10},
    }
    evaluated = evaluate_choices(orb_node([70], extra=[hidden]), new_game_state("gate"))
    assert [choice.choice_id for choice in selectable_choices(evaluated)] == ["orb_70"]


def test_fresh_orb_state_is_zero() -> None:
    assert dict(OrbState().balance) == {
        "analytical": 0,
        "helping": 0,
        "building": 0,
        "patience": 0,
        "exploring": 0,
    }
