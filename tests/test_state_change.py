import logging

import pytest

from engine.serialization import serialize_state
from engine.state import MAX_TRUST, MIN_TRUST, new_game_state
from engine.state_change import StateChange, apply_state_change, apply_state_changes


def fresh_state():
    return new_game_state("start", character_ids=["maya", "samuel"], start_character_id="maya")


def test_apply_state_change_leaves_input_untouched() -> None:
    state = fresh_state()
    before = serialize_state(state)
    change = StateChange.from_dict(
        {
            "addGlobalFlags": ["met_maya"],
            "patternChanges": {"helping": 2},
            "characterId": "maya",
            "trustChange": 3,
            "addKnowledgeFlags": ["knows_robot"],
        }
    )

    updated = apply_state_change(state, change)

    assert serialize_state(state) == before
    assert updated is not state
    assert "met_maya" in updated.global_flags
    assert updated.patterns["helping"] == 2
    assert updated.characters["maya"].trust == 3
    assert updated.characters["maya"].knowledge_flags == frozenset({"knows_robot"})
    assert state.characters["maya"].trust == 0


def test_state_containers_are_read_only() -> None:
    state = fresh_state()
    with pytest.raises(TypeError):
        state.patterns["helping"] = 5  # type: ignore[index]
    with pytest.raises(TypeError):
        state.characters["maya"] = None  # type: ignore[index]


@pytest.mark.parametrize(("delta", "expected"), [(999, MAX_TRUST), (-999, MIN_TRUST), (4, 4), (0, 0)])
def test_trust_is_clamped(delta: int, expected: int) -> None:
    change = StateChange(character_id="maya", trust_change=delta)
    assert apply_state_change(fresh_state(), change).characters["maya"].trust == expected


def test_trust_stays_in_range_over_any_sequence() -> None:
    deltas = [7, 6, -3, -20, 2, 15, -1, 9, -4]
    state = fresh_state()
    for delta in deltas:
        state = apply_state_change(state, StateChange(character_id="maya", trust_change=delta))
        assert MIN_TRUST <= state.characters["maya"].trust <= MAX_TRUST


def test_adding_a_flag_twice_is_idempotent() -> None:
    change = StateChange(add_global_flags=("seen_platform",))
    once = apply_state_change(fresh_state(), change)
    twice = apply_state_change(once, change)
    assert serialize_state(once) == serialize_state(twice)


def test_removing_an_absent_flag_is_a_no_op() -> None:
    state = fresh_state()
    updated = apply_state_change(state, StateChange(remove_global_flags=("never_set",)))
    assert updated.global_flags == state.global_flags


def test_add_and_remove_of_the_same_flag_leaves_it_present() -> None:
    change = StateChange.from_dict({"addGlobalFlags": ["door_open"], "removeGlobalFlags": ["door_open"]})
    assert "door_open" in apply_state_change(fresh_state(), change).global_flags


def test_missing_character_is_healed_with_a_warning(caplog: pytest.LogCaptureFixture) -> None:
    change = StateChange(character_id="devon", trust_change=2)
    with caplog.at_level(logging.WARNING, logger="engine.state_change"):
        updated = apply_state_change(fresh_state(), change)
    assert updated.characters["devon"].trust == 2
    assert "devon" in caplog.text


def test_unknown_wire_fields_and_bad_values_are_ignored() -> None:
    change = StateChange.from_dict(
        {"teleport": "x", "trustChange": "lots", "addGlobalFlags": "single", "patternChanges": ["bad"]}
    )
    assert change.trust_change == 0
    assert change.add_global_flags == ("single",)
    assert dict(change.pattern_changes) == {}


def test_unknown_patterns_do_not_enter_state() -> None:
    updated = apply_state_change(fresh_state(), StateChange.from_dict({"patternChanges": {"chaos": 3}}))
    assert "chaos" not in updated.patterns


def test_wire_round_trip_keeps_only_set_fields() -> None:
    payload = {"characterId": "maya", "trustChange": -2, "setRelationshipStatus": "acquaintance"}
    change = StateChange.from_dict(payload)
    assert change.to_dict() == payload
    assert StateChange().is_empty()


def test_repeated_helping_choice_scenario() -> None:
    change = StateChange.from_dict({"characterId": "maya", "trustChange": 3, "patternChanges": {"helping": 1}})
    state = apply_state_changes(fresh_state(), [change, change, change])
    assert state.characters["maya"].trust == 9
    assert state.patterns["helping"] == 3
