"""Save payload migration registry."""

from __future__ import annotations

import copy
from typing import Any, Callable, Dict, List


class SaveError(Exception):
    """Base class for persistence failures."""


class SaveCorruptError(SaveError):
    """Raised when a save payload is unreadable or structurally invalid."""


class SaveMigrationError(SaveError):
    """Raised when a save cannot be migrated to the latest schema."""


Migration = Callable[[Dict], Dict]

# Top-level keys of the flat, unversioned snapshots and their current names.
LEGACY_STATE_KEYS = {
    "characters": "characters",
    "globalFlags": "global_flags",
    "global_flags": "global_flags",
    "patterns": "patterns",
    "currentNodeId": "current_node_id",
    "current_node_id": "current_node_id",
    "currentCharacterId": "current_character_id",
    "current_character_id": "current_character_id",
    "playerId": "player_id",
    "player_id": "player_id",
}

LEGACY_CHARACTER_KEYS = {
    "trust": "trust",
    "relationshipStatus": "relationship",
    "relationship": "relationship",
    "knowledgeFlags": "knowledge_flags",
    "knowledge_flags": "knowledge_flags",
    "conversationHistory": "conversation_history",
    "conversation_history": "conversation_history",
}


def _legacy_character(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    return {LEGACY_CHARACTER_KEYS[key]: value for key, value in data.items() if key in LEGACY_CHARACTER_KEYS}


def _legacy_character_entries(entries: List[Any]) -> List[Any]:
    converted: List[Any] = []
    for entry in entries:
        if isinstance(entry, dict) and isinstance(entry.get("characterId"), str):
            converted.append([entry["characterId"], _legacy_character(entry)])
        else:
            converted.append(entry)
    return converted


def _migrate_v0_to_v1(payload: Dict) -> Dict:
    state = payload.get("state")
    if not isinstance(state, dict):
        state = {}
        for key, name in LEGACY_STATE_KEYS.items():
            if key in payload:
                state[name] = payload.get(key)
        if not state:
            raise SaveMigrationError("Missing state block for legacy save.")

    characters = state.get("characters")
    if isinstance(characters, dict):
        state["characters"] = [[cid, _legacy_character(data)] for cid, data in characters.items()]
    elif isinstance(characters, list):
        state["characters"] = _legacy_character_entries(characters)
    patterns = state.get("patterns")
    if isinstance(patterns, dict):
        state["patterns"] = [[name, value] for name, value in patterns.items()]
    flags = state.get("global_flags")
    if isinstance(flags, (list, tuple, set)):
        state["global_flags"] = sorted(str(flag) for flag in flags)

    metadata = payload.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    return {
        "version": 1,
        "metadata": {
            "schema": "save_v1",
            "version": 1,
            "saved_at": metadata.get("saved_at") or payload.get("saved_at") or payload.get("lastSaved"),
            "player_id": metadata.get("player_id", state.get("player_id")),
        },
        "state": state,
    }


def _migrate_v1_to_v2(payload: Dict) -> Dict:
    metadata = payload.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    metadata = dict(metadata)
    metadata["schema"] = "save_v2"
    metadata["version"] = 2

    state = payload.get("state")
    if not isinstance(state, dict):
        raise SaveMigrationError("Save payload has no state block.")
    state = dict(state)
    state.setdefault("orbs", {})
    state.setdefault("ledger", {})
    state.setdefault("current_character_id", None)

    upgraded = dict(payload)
    upgraded["version"] = 2
    upgraded["metadata"] = metadata
    upgraded["state"] = state
    return upgraded


MIGRATIONS: Dict[int, Migration] = {
    0: _migrate_v0_to_v1,
    1: _migrate_v1_to_v2,
}


def migrate_save_payload(payload: Dict, target_version: int) -> Dict:
    if not isinstance(payload, dict):
        raise SaveMigrationError("Save payload was not an object.")

    version = payload.get("version", 0)
    if version is None:
        version = 0
    if isinstance(version, bool) or not isinstance(version, int):
        raise SaveMigrationError("Save version missing or invalid.")
    if version > target_version:
        raise SaveMigrationError(
            f"Save schema {version} is newer than supported {target_version}."
        )

    current = copy.deepcopy(payload)
    while version < target_version:
        migrator = MIGRATIONS.get(version)
        if migrator is None:
            raise SaveMigrationError(
                f"No migration available for save schema {version}."
            )
        current = migrator(current)
        version = current.get("version", version + 1)
        if not isinstance(version, int):
            raise SaveMigrationError("Migration produced an invalid schema version.")

    return current
