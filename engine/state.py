"""Immutable game state snapshots for the dialogue engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

PATTERNS: Tuple[str, ...] = ("analytical", "helping", "building", "patience", "exploring")

MIN_TRUST = 0
MAX_TRUST = 10
DEFAULT_TRUST = 0

RELATIONSHIP_STATUSES: Tuple[str, ...] = ("stranger", "acquaintance", "confidant")
DEFAULT_RELATIONSHIP = "stranger"

SAVE_VERSION = 2
DEFAULT_PLAYER_ID = "player"


def frozen_mapping(values: Mapping | None = None) -> Mapping:
    """Copy ``values`` into a read-only mapping that no caller can alias."""
    return MappingProxyType(dict(values or {}))


def zero_patterns() -> Mapping[str, int]:
    return frozen_mapping({pattern: 0 for pattern in PATTERNS})


def clamp(n, lo, hi): return lo if n < lo else hi if n > hi else n


@dataclass(frozen=True)
class TrustSample:
    value: int
    timestamp: int = 0
    delta: int = 0
    node_id: str = ""
    event: str = ""


@dataclass(frozen=True)
class TrustTimeline:
    """Trust values over time plus running peak/trough/streak statistics."""

    points: Tuple[TrustSample, ...] = ()
    peak: int = 0
    peak_timestamp: int = 0
    lowest: int = MAX_TRUST
    lowest_timestamp: int = 0
    streak: int = 0


@dataclass(frozen=True)
class CharacterState:
    trust: int = DEFAULT_TRUST
    relationship: str = DEFAULT_RELATIONSHIP
    knowledge_flags: FrozenSet[str] = frozenset()
    conversation_history: Tuple[str, ...] = ()
    trust_timeline: Optional[TrustTimeline] = None


@dataclass(frozen=True)
class OrbState:
    balance: Mapping[str, int] = field(default_factory=zero_patterns)
    total_earned: int = 0
    current_streak: int = 0
    current_streak_type: Optional[str] = None
    best_streak: int = 0
    arc_completions: int = 0
    acknowledged: FrozenSet[str] = frozenset()
    last_viewed: Mapping[str, int] = field(default_factory=zero_patterns)
    last_viewed_total: int = 0


@dataclass(frozen=True)
class QueuedGift:
    gift_id: str
    source_character: str
    target_character: str
    interactions_remaining: int
    source_choice_text: str = ""


@dataclass(frozen=True)
class QueuedEcho:
    echo_id: str
    target_character: str
    interactions_remaining: int


@dataclass(frozen=True)
class NarrativeLedger:
    """Bookkeeping the consequence pipeline carries from one turn to the next."""

    witnessed_transformations: FrozenSet[str] = frozenset()
    pending_gifts: Tuple[QueuedGift, ...] = ()
    echo_queue: Tuple[QueuedEcho, ...] = ()
    delivered_echoes: FrozenSet[str] = frozenset()
    completed_puzzles: FrozenSet[str] = frozenset()
    shown_hints: FrozenSet[str] = frozenset()
    discovered_knowledge: FrozenSet[str] = frozenset()
    iceberg_mentions: Mapping[str, int] = field(default_factory=frozen_mapping)
    unlocked_arcs: FrozenSet[str] = frozenset()
    completed_arcs: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class GameState:
    """One immutable snapshot of a playthrough.

    Every container is a frozenset, tuple or read-only mapping, so two states
    never share anything a caller could mutate. New states are produced with
    ``dataclasses.replace`` by the applicator and the pipeline.
    """

    characters: Mapping[str, CharacterState] = field(default_factory=frozen_mapping)
    global_flags: FrozenSet[str] = frozenset()
    patterns: Mapping[str, int] = field(default_factory=zero_patterns)
    orbs: OrbState = field(default_factory=OrbState)
    current_node_id: str = ""
    current_character_id: Optional[str] = None
    player_id: str = DEFAULT_PLAYER_ID
    save_version: int = SAVE_VERSION
    ledger: NarrativeLedger = field(default_factory=NarrativeLedger)

    def character(self, character_id: Optional[str]) -> Optional[CharacterState]:
        if character_id is None:
            return None
        return self.characters.get(character_id)

    def with_character(self, character_id: str, character: CharacterState) -> "GameState":
        characters: Dict[str, CharacterState] = dict(self.characters)
        characters[character_id] = character
        return replace(self, characters=frozen_mapping(characters))

    def with_ledger(self, **changes) -> "GameState":
        return replace(self, ledger=replace(self.ledger, **changes))


def new_game_state(
    start_node_id: str,
    *,
    player_id: str = DEFAULT_PLAYER_ID,
    character_ids: Iterable[str] = (),
    start_character_id: Optional[str] = None,
) -> GameState:
    characters = {character_id: CharacterState() for character_id in character_ids}
    return GameState(
        characters=frozen_mapping(characters),
        current_node_id=start_node_id,
        current_character_id=start_character_id,
        player_id=player_id,
    )
