"""Declarative state changes and the pure function that applies them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from engine.state import (
    MAX_TRUST,
    MIN_TRUST,
    PATTERNS,
    CharacterState,
    GameState,
    clamp,
    frozen_mapping,
)

logger = logging.getLogger(__name__)

# camelCase wire key -> dataclass field
WIRE_FIELDS: Dict[str, str] = {
    "addGlobalFlags": "add_global_flags",
    "removeGlobalFlags": "remove_global_flags",
    "patternChanges": "pattern_changes",
    "characterId": "character_id",
    "trustChange": "trust_change",
    "setRelationshipStatus": "set_relationship_status",
    "addKnowledgeFlags": "add_knowledge_flags",
    "removeKnowledgeFlags": "remove_knowledge_flags",
}


def _str_tuple(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value else ()
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(item for item in value if isinstance(item, str) and item)
    return ()


def _int_or_zero(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class StateChange:
    """Serializable diff applied to a :class:`GameState`.

    Every field is optional; an absent field means "no effect on that axis".
    """

    add_global_flags: Tuple[str, ...] = ()
    remove_global_flags: Tuple[str, ...] = ()
    pattern_changes: Mapping[str, int] = field(default_factory=frozen_mapping)
    character_id: Optional[str] = None
    trust_change: int = 0
    set_relationship_status: Optional[str] = None
    add_knowledge_flags: Tuple[str, ...] = ()
    remove_knowledge_flags: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "StateChange":
        """Parse the wire format, treating malformed fields as absent."""
        if not isinstance(data, Mapping):
            return cls()

        patterns: Dict[str, int] = {}
        raw_patterns = data.get("patternChanges")
        if isinstance(raw_patterns, Mapping):
            for pattern, delta in raw_patterns.items():
                if isinstance(pattern, str):
                    patterns[pattern] = _int_or_zero(delta)

        character_id = data.get("characterId")
        if not isinstance(character_id, str) or not character_id:
            character_id = None
        relationship = data.get("setRelationshipStatus")
        if not isinstance(relationship, str) or not relationship:
            relationship = None

        return cls(
            add_global_flags=_str_tuple(data.get("addGlobalFlags")),
            remove_global_flags=_str_tuple(data.get("removeGlobalFlags")),
            pattern_changes=frozen_mapping(patterns),
            character_id=character_id,
            trust_change=_int_or_zero(data.get("trustChange")),
            set_relationship_status=relationship,
            add_knowledge_flags=_str_tuple(data.get("addKnowledgeFlags")),
            remove_knowledge_flags=_str_tuple(data.get("removeKnowledgeFlags")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.add_global_flags:
            payload["addGlobalFlags"] = list(self.add_global_flags)
        if self.remove_global_flags:
            payload["removeGlobalFlags"] = list(self.remove_global_flags)
        if self.pattern_changes:
            payload["patternChanges"] = dict(self.pattern_changes)
        if self.character_id is not None:
            payload["characterId"] = self.character_id
        if self.trust_change:
            payload["trustChange"] = self.trust_change
        if self.set_relationship_status is not None:
            payload["setRelationshipStatus"] = self.set_relationship_status
        if self.add_knowledge_flags:
            payload["addKnowledgeFlags"] = list(self.add_knowledge_flags)
        if self.remove_knowledge_flags:
            payload["removeKnowledgeFlags"] = list(self.remove_knowledge_flags)
        return payload

    def is_empty(self) -> bool:
        return not self.to_dict()

    def touches_character(self) -> bool:
        return self.character_id is not None and bool(
            self.trust_change
            or self.set_relationship_status is not None
            or self.add_knowledge_flags
            or self.remove_knowledge_flags
        )


def _update_flags(
    flags: FrozenSet[str], add: Iterable[str], remove: Iterable[str]
) -> FrozenSet[str]:
    # Removes first, so a flag named on both sides ends present.
    return (flags - frozenset(remove)) | frozenset(add)


def heal_character(
    state: GameState, character_id: str, *, warn: bool = True
) -> Tuple[GameState, CharacterState]:
    """Return ``state`` with a default entry for ``character_id`` if it was missing."""
    existing = state.characters.get(character_id)
    if existing is not None:
        return state, existing
    if warn:
        logger.warning("Character '%s' had no state; created defaults.", character_id)
    created = CharacterState()
    return state.with_character(character_id, created), created


def apply_state_change(state: GameState, change: StateChange | None) -> GameState:
    """Apply ``change`` to ``state`` and return the resulting snapshot.

    ``state`` is never modified. Global flags, then patterns, then the targeted
    character are updated. Trust is accumulated before it is clamped into
    ``[MIN_TRUST, MAX_TRUST]``.
    """
    if change is None:
        return state

    updated = state
    if change.add_global_flags or change.remove_global_flags:
        updated = replace(
            updated,
            global_flags=_update_flags(
                updated.global_flags, change.add_global_flags, change.remove_global_flags
            ),
        )

    if change.pattern_changes:
        patterns = dict(updated.patterns)
        for pattern, delta in change.pattern_changes.items():
            if pattern not in PATTERNS:
                logger.debug("Ignoring change to unknown pattern '%s'.", pattern)
                continue
            patterns[pattern] = patterns.get(pattern, 0) + delta
        updated = replace(updated, patterns=frozen_mapping(patterns))

    if change.touches_character():
        updated, character = heal_character(updated, change.character_id)
        trust = character.trust
        if change.trust_change:
            trust = clamp(trust + change.trust_change, MIN_TRUST, MAX_TRUST)
        relationship = character.relationship
        if change.set_relationship_status is not None:
            relationship = change.set_relationship_status
        knowledge = _update_flags(
            character.knowledge_flags,
            change.add_knowledge_flags,
            change.remove_knowledge_flags,
        )
        updated = updated.with_character(
            change.character_id,
            replace(
                character,
                trust=trust,
                relationship=relationship,
                knowledge_flags=knowledge,
            ),
        )

    return updated


def apply_state_changes(state: GameState, changes: Iterable[StateChange | None]) -> GameState:
    for change in changes or ():
        state = apply_state_change(state, change)
    return state
