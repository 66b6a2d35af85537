"""Conversion between ``GameState`` snapshots and JSON-safe payloads.

Frozensets are written as sorted lists and mappings as ``[key, value]`` pairs
so that two equal states always produce byte-identical JSON.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from engine.save_migrations import SaveCorruptError, SaveError, migrate_save_payload
from engine.state import (
    DEFAULT_PLAYER_ID,
    DEFAULT_RELATIONSHIP,
    DEFAULT_TRUST,
    MAX_TRUST,
    MIN_TRUST,
    PATTERNS,
    SAVE_VERSION,
    CharacterState,
    GameState,
    NarrativeLedger,
    OrbState,
    QueuedEcho,
    QueuedGift,
    TrustSample,
    TrustTimeline,
    clamp,
    frozen_mapping,
)

logger = logging.getLogger(__name__)


def _pairs(mapping: Mapping[str, Any]) -> List[List[Any]]:
    return [[key, mapping[key]] for key in sorted(mapping)]


def _from_pairs(value: Any) -> Dict[str, Any]:
    if isinstance(value, Mapping):
        return dict(value)
    result: Dict[str, Any] = {}
    if isinstance(value, list):
        for entry in value:
            if isinstance(entry, (list, tuple)) and len(entry) == 2 and isinstance(entry[0], str):
                result[entry[0]] = entry[1]
    return result


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return default


def _strs(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(item) for item in value if isinstance(item, (str, int)) and not isinstance(item, bool))


def _pattern_map(value: Any) -> Mapping[str, int]:
    raw = _from_pairs(value)
    return frozen_mapping({pattern: _int(raw.get(pattern)) for pattern in PATTERNS})


# ---------- serialize ----------
def _timeline_to_dict(timeline: Optional[TrustTimeline]) -> Optional[Dict[str, Any]]:
    if timeline is None:
        return None
    return {
        "points": [
            {
                "value": point.value,
                "timestamp": point.timestamp,
                "delta": point.delta,
                "node_id": point.node_id,
                "event": point.event,
            }
            for point in timeline.points
        ],
        "peak": timeline.peak,
        "peak_timestamp": timeline.peak_timestamp,
        "lowest": timeline.lowest,
        "lowest_timestamp": timeline.lowest_timestamp,
        "streak": timeline.streak,
    }


def _character_to_dict(character: CharacterState) -> Dict[str, Any]:
    return {
        "trust": character.trust,
        "relationship": character.relationship,
        "knowledge_flags": sorted(character.knowledge_flags),
        "conversation_history": list(character.conversation_history),
        "trust_timeline": _timeline_to_dict(character.trust_timeline),
    }


def _orbs_to_dict(orbs: OrbState) -> Dict[str, Any]:
    return {
        "balance": _pairs(orbs.balance),
        "total_earned": orbs.total_earned,
        "current_streak": orbs.current_streak,
        "current_streak_type": orbs.current_streak_type,
        "best_streak": orbs.best_streak,
        "arc_completions": orbs.arc_completions,
        "acknowledged": sorted(orbs.acknowledged),
        "last_viewed": _pairs(orbs.last_viewed),
        "last_viewed_total": orbs.last_viewed_total,
    }


def _ledger_to_dict(ledger: NarrativeLedger) -> Dict[str, Any]:
    return {
        "witnessed_transformations": sorted(ledger.witnessed_transformations),
        "pending_gifts": [
            {
                "gift_id": gift.gift_id,
                "source_character": gift.source_character,
                "target_character": gift.target_character,
                "interactions_remaining": gift.interactions_remaining,
                "source_choice_text": gift.source_choice_text,
            }
            for gift in ledger.pending_gifts
        ],
        "echo_queue": [
            {
                "echo_id": echo.echo_id,
                "target_character": echo.target_character,
                "interactions_remaining": echo.interactions_remaining,
            }
            for echo in ledger.echo_queue
        ],
        "delivered_echoes": sorted(ledger.delivered_echoes),
        "completed_puzzles": sorted(ledger.completed_puzzles),
        "shown_hints": sorted(ledger.shown_hints),
        "discovered_knowledge": sorted(ledger.discovered_knowledge),
        "iceberg_mentions": _pairs(ledger.iceberg_mentions),
        "unlocked_arcs": sorted(ledger.unlocked_arcs),
        "completed_arcs": sorted(ledger.completed_arcs),
    }


def serialize_state(state: GameState) -> Dict[str, Any]:
    """Return ``{"version": SAVE_VERSION, "state": {...}}`` for ``state``."""
    return {
        "version": SAVE_VERSION,
        "state": {
            "player_id": state.player_id,
            "current_node_id": state.current_node_id,
            "current_character_id": state.current_character_id,
            "global_flags": sorted(state.global_flags),
            "patterns": [[pattern, state.patterns.get(pattern, 0)] for pattern in PATTERNS],
            "characters": [
                [character_id, _character_to_dict(state.characters[character_id])]
                for character_id in sorted(state.characters)
            ],
            "orbs": _orbs_to_dict(state.orbs),
            "ledger": _ledger_to_dict(state.ledger),
        },
    }


# ---------- deserialize ----------
def _timeline_from_dict(data: Any) -> Optional[TrustTimeline]:
    if not isinstance(data, Mapping):
        return None
    points = []
    for entry in data.get("points") or []:
        if not isinstance(entry, Mapping):
            continue
        points.append(
            TrustSample(
                value=_int(entry.get("value")),
                timestamp=_int(entry.get("timestamp")),
                delta=_int(entry.get("delta")),
                node_id=str(entry.get("node_id") or ""),
                event=str(entry.get("event") or ""),
            )
        )
    return TrustTimeline(
        points=tuple(points),
        peak=_int(data.get("peak")),
        peak_timestamp=_int(data.get("peak_timestamp")),
        lowest=_int(data.get("lowest"), MAX_TRUST),
        lowest_timestamp=_int(data.get("lowest_timestamp")),
        streak=_int(data.get("streak")),
    )


def _character_from_dict(data: Any) -> CharacterState:
    if not isinstance(data, Mapping):
        return CharacterState()
    return CharacterState(
        trust=clamp(_int(data.get("trust"), DEFAULT_TRUST), MIN_TRUST, MAX_TRUST),
        relationship=str(data.get("relationship") or DEFAULT_RELATIONSHIP),
        knowledge_flags=frozenset(_strs(data.get("knowledge_flags"))),
        conversation_history=_strs(data.get("conversation_history")),
        trust_timeline=_timeline_from_dict(data.get("trust_timeline")),
    )


def _orbs_from_dict(data: Any) -> OrbState:
    if not isinstance(data, Mapping):
        return OrbState()
    streak_type = data.get("current_streak_type")
    return OrbState(
        balance=_pattern_map(data.get("balance")),
        total_earned=_int(data.get("total_earned")),
        current_streak=_int(data.get("current_streak")),
        current_streak_type=streak_type if streak_type in PATTERNS else None,
        best_streak=_int(data.get("best_streak")),
        arc_completions=_int(data.get("arc_completions")),
        acknowledged=frozenset(_strs(data.get("acknowledged"))),
        last_viewed=_pattern_map(data.get("last_viewed")),
        last_viewed_total=_int(data.get("last_viewed_total")),
    )


def _records(value: Any) -> Iterable[Mapping[str, Any]]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, Mapping)]


def _ledger_from_dict(data: Any) -> NarrativeLedger:
    if not isinstance(data, Mapping):
        return NarrativeLedger()
    return NarrativeLedger(
        witnessed_transformations=frozenset(_strs(data.get("witnessed_transformations"))),
        pending_gifts=tuple(
            QueuedGift(
                gift_id=str(entry.get("gift_id") or ""),
                source_character=str(entry.get("source_character") or ""),
                target_character=str(entry.get("target_character") or ""),
                interactions_remaining=_int(entry.get("interactions_remaining")),
                source_choice_text=str(entry.get("source_choice_text") or ""),
            )
            for entry in _records(data.get("pending_gifts"))
        ),
        echo_queue=tuple(
            QueuedEcho(
                echo_id=str(entry.get("echo_id") or ""),
                target_character=str(entry.get("target_character") or ""),
                interactions_remaining=_int(entry.get("interactions_remaining")),
            )
            for entry in _records(data.get("echo_queue"))
        ),
        delivered_echoes=frozenset(_strs(data.get("delivered_echoes"))),
        completed_puzzles=frozenset(_strs(data.get("completed_puzzles"))),
        shown_hints=frozenset(_strs(data.get("shown_hints"))),
        discovered_knowledge=frozenset(_strs(data.get("discovered_knowledge"))),
        iceberg_mentions=frozen_mapping(
            {key: _int(value) for key, value in _from_pairs(data.get("iceberg_mentions")).items()}
        ),
        unlocked_arcs=frozenset(_strs(data.get("unlocked_arcs"))),
        completed_arcs=frozenset(_strs(data.get("completed_arcs"))),
    )


def deserialize_state(payload: Dict[str, Any]) -> GameState:
    """Rebuild a ``GameState``, migrating older payloads first.

    Raises ``SaveMigrationError`` for unknown or newer versions and
    ``SaveCorruptError`` when the state block is missing.
    """
    payload = migrate_save_payload(payload, SAVE_VERSION)
    data = payload.get("state")
    if not isinstance(data, Mapping):
        raise SaveCorruptError("State block missing.")

    characters = {
        str(character_id): _character_from_dict(entry)
        for character_id, entry in _from_pairs(data.get("characters")).items()
    }
    current_character = data.get("current_character_id")
    return GameState(
        characters=frozen_mapping(characters),
        global_flags=frozenset(_strs(data.get("global_flags"))),
        patterns=_pattern_map(data.get("patterns")),
        orbs=_orbs_from_dict(data.get("orbs")),
        current_node_id=str(data.get("current_node_id") or ""),
        current_character_id=str(current_character) if current_character else None,
        player_id=str(data.get("player_id") or DEFAULT_PLAYER_ID),
        save_version=SAVE_VERSION,
        ledger=_ledger_from_dict(data.get("ledger")),
    )


def dumps_state(state: GameState) -> str:
    return json.dumps(serialize_state(state), sort_keys=True, separators=(",", ":"))


def loads_state(raw: str) -> GameState:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SaveCorruptError(f"Invalid JSON: {exc}") from exc
    return deserialize_state(payload)


def save_state(state: GameState, path: Path | str) -> Path:
    """Write ``state`` atomically to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", delete=False, dir=path.parent, prefix=path.name, suffix=".tmp", encoding="utf-8"
    ) as handle:
        json.dump(serialize_state(state), handle, indent=2)
        handle.write("\n")
        tmp_path = Path(handle.name)
    try:
        os.replace(str(tmp_path), str(path))
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise SaveError(f"Could not write save to {path}: {exc}") from exc
    logger.debug("Saved state for %s to %s", state.player_id, path)
    return path


def load_state(path: Path | str) -> GameState:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = handle.read()
    except FileNotFoundError as exc:
        raise SaveError("Save file missing.") from exc
    return loads_state(raw)
