import json
from dataclasses import replace
from pathlib import Path

import pytest

from engine.content import load_content
from engine.navigator import resolve_node
from engine.orbs import earn_orb
from engine.save_migrations import SaveCorruptError, SaveError, SaveMigrationError, migrate_save_payload
from engine.serialization import (
    deserialize_state,
    dumps_state,
    load_state,
    loads_state,
    save_state,
    serialize_state,
)
from engine.session import play_choice, start_session
from engine.state import SAVE_VERSION, QueuedGift, new_game_state
from engine.state_change import StateChange, apply_state_change

REPO_ROOT = Path(__file__).resolve().parents[1]


def rich_state():
    state = new_game_state("hub", player_id="p1", character_ids=["maya", "samuel"], start_character_id="samuel")
    state = apply_state_change(
        state,
        StateChange.from_dict(
            {
                "addGlobalFlags": ["b_flag", "a_flag"],
                "patternChanges": {"helping": 3},
                "characterId": "maya",
                "trustChange": 4,
                "setRelationshipStatus": "acquaintance",
                "addKnowledgeFlags": ["knows_servo"],
            }
        ),
    )
    state = replace(state, orbs=earn_orb(earn_orb(state.orbs, "helping"), "helping"))
    return state.with_ledger(
        pending_gifts=(QueuedGift("thanks", "samuel", "devon", 1, "Offer to help"),),
        witnessed_transformations=frozenset({"samuel_opens_up"}),
    )


def test_payload_is_json_safe_and_sorted() -> None:
    payload = serialize_state(rich_state())
    assert payload["version"] == SAVE_VERSION
    assert payload["state"]["global_flags"] == ["a_flag", "b_flag"]
    assert payload["state"]["characters"][0][0] == "maya"
    json.dumps(payload)


def test_round_trip_preserves_state() -> None:
    state = rich_state()
    restored = deserialize_state(serialize_state(state))
    assert serialize_state(restored) == serialize_state(state)
    assert restored.characters["maya"].knowledge_flags == frozenset({"knows_servo"})
    assert restored.ledger.pending_gifts[0].gift_id == "thanks"


def test_round_trip_preserves_behaviour() -> None:
    content = load_content(REPO_ROOT / "content" / "station.json")
    first = start_session(content)
    turn = play_choice(content, first.view, "s_offer_help")

    restored = deserialize_state(json.loads(dumps_state(turn.state)))
    original_view = resolve_node(turn.state.current_node_id, turn.state, content.registry)
    restored_view = resolve_node(restored.current_node_id, restored, content.registry)

    assert [c.choice_id for c in restored_view.selectable] == [c.choice_id for c in original_view.selectable]
    assert serialize_state(restored_view.state) == serialize_state(original_view.state)


def test_dumps_is_byte_stable() -> None:
    assert dumps_state(rich_state()) == dumps_state(loads_state(dumps_state(rich_state())))


def test_save_and_load_file(tmp_path: Path) -> None:
    path = tmp_path / "saves" / "slot1.json"
    save_state(rich_state(), path)
    assert serialize_state(load_state(path)) == serialize_state(rich_state())
    assert list(path.parent.glob("*.tmp")) == []


def test_missing_save_file(tmp_path: Path) -> None:
    with pytest.raises(SaveError, match="missing"):
        load_state(tmp_path / "nope.json")


def test_corrupt_json_is_rejected() -> None:
    with pytest.raises(SaveCorruptError):
        loads_state("{not json")


def test_legacy_flat_save_is_migrated() -> None:
    legacy = {
        "saveVersion": "1.0.0",
        "playerId": "old",
        "currentNodeId": "maya_intro",
        "globalFlags": ["met_maya"],
        "patterns": {"patience": 2},
        "lastSaved": 1700000000000,
        "characters": [
            {
                "characterId": "maya",
                "trust": 12,
                "relationshipStatus": "acquaintance",
                "knowledgeFlags": ["knows_robot"],
                "conversationHistory": ["maya_intro"],
            },
            {
                "characterId": "samuel",
                "trust": 4,
                "relationshipStatus": "stranger",
                "knowledgeFlags": [],
                "conversationHistory": [],
            },
        ],
    }
    state = deserialize_state(legacy)
    assert state.player_id == "old"
    assert state.current_node_id == "maya_intro"
    assert state.global_flags == frozenset({"met_maya"})
    assert state.patterns["patience"] == 2
    assert sorted(state.characters) == ["maya", "samuel"]
    assert state.characters["maya"].trust == 10
    assert state.characters["maya"].relationship == "acquaintance"
    assert state.characters["maya"].knowledge_flags == frozenset({"knows_robot"})
    assert state.characters["maya"].conversation_history == ("maya_intro",)
    assert state.characters["samuel"].trust == 4
    assert state.orbs.total_earned == 0


def test_legacy_character_map_is_still_migrated() -> None:
    legacy = {"currentNodeId": "hub", "characters": {"devon": {"trust": 3, "knowledgeFlags": ["lathe"]}}}
    state = deserialize_state(legacy)
    assert state.characters["devon"].trust == 3
    assert state.characters["devon"].knowledge_flags == frozenset({"lathe"})


def test_v1_save_gains_orbs_and_ledger_defaults() -> None:
    payload = {
        "version": 1,
        "metadata": {"schema": "save_v1", "version": 1},
        "state": {"current_node_id": "hub", "global_flags": ["x"], "characters": [["samuel", {"trust": 3}]]},
    }
    migrated = migrate_save_payload(payload, SAVE_VERSION)
    assert migrated["version"] == 2
    assert migrated["metadata"]["schema"] == "save_v2"
    assert migrated["state"]["orbs"] == {}
    assert "orbs" not in payload["state"]

    state = deserialize_state(payload)
    assert state.characters["samuel"].trust == 3
    assert state.ledger.pending_gifts == ()


@pytest.mark.parametrize(
    ("payload", "match"),
    [
        ({"version": 99, "state": {}}, "newer"),
        ({"version": True, "state": {}}, "invalid"),
        ({"version": "2", "state": {}}, "invalid"),
        ({"version": 0}, "legacy"),
    ],
)
def test_unsupported_saves_raise(payload, match: str) -> None:
    with pytest.raises(SaveMigrationError, match=match):
        deserialize_state(payload)


def test_missing_state_block_is_corrupt() -> None:
    with pytest.raises(SaveCorruptError, match="State block"):
        deserialize_state({"version": SAVE_VERSION})
