"""Bounded reachability simulation over the dialogue graphs.

The simulator walks the same resolver and successor code that live play uses,
so a node it reports as reachable is reachable by some sequence of choices
under the engine's own rules.
"""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field, replace
from typing import Any, Deque, Dict, Iterable, List, Optional, Set, Tuple

from engine.graph import GraphRegistry
from engine.navigator import resolve_node, take_choice, take_interrupt
from engine.settings import Settings
from engine.state import PATTERNS, GameState, new_game_state

logger = logging.getLogger(__name__)

SOFT_DEADLOCK = "soft_deadlock"
DEAD_END = "dead_end"
MISSING_NODE = "missing_node"
REQUIRED_STATE = "required_state_violation"


@dataclass(frozen=True)
class Anomaly:
    kind: str
    node_id: str
    character_id: Optional[str] = None
    detail: str = ""

    def describe(self) -> str:
        owner = f" ({self.character_id})" if self.character_id else ""
        suffix = f": {self.detail}" if self.detail else ""
        return f"{self.kind} at '{self.node_id}'{owner}{suffix}"


@dataclass
class ReachabilityResult:
    start_node_id: str
    visited_node_ids: Tuple[str, ...] = ()
    # Distinct nodes reached per owning character; revisits do not add to it.
    visited_by_character: Dict[str, int] = field(default_factory=dict)
    hit_max_states: bool = False
    expanded_states: int = 0
    anomalies: Tuple[Anomaly, ...] = ()

    @property
    def is_exhaustive(self) -> bool:
        return not self.hit_max_states

    def anomalies_of(self, kind: str) -> List[Anomaly]:
        return [anomaly for anomaly in self.anomalies if anomaly.kind == kind]


def _flag_hash(flags: Iterable[str]) -> str:
    joined = "\n".join(sorted(flags)).encode("utf-8")
    return hashlib.blake2s(joined, digest_size=4).hexdigest()


def state_fingerprint(state: GameState, node_id: str | None = None, character_id: str | None = None) -> str:
    """Compact key for the parts of a state that can change what a node offers.

    Conversation history and trust timelines are not part of the key.
    """
    node_id = node_id or state.current_node_id
    character_id = character_id if character_id is not None else state.current_character_id
    patterns = ",".join(str(state.patterns.get(pattern, 0)) for pattern in PATTERNS)
    balance = ",".join(str(state.orbs.balance.get(pattern, 0)) for pattern in PATTERNS)
    parts = [
        node_id,
        character_id or "",
        patterns,
        f"{len(state.global_flags)}:{_flag_hash(state.global_flags)}",
        f"{balance},t{state.orbs.total_earned}",
    ]
    character = state.character(character_id)
    if character is not None:
        parts.extend(
            [
                f"t{character.trust}",
                f"r{character.relationship}",
                f"k{len(character.knowledge_flags)}",
            ]
        )
    return "|".join(parts)


def _source_of(state: GameState) -> str:
    character = state.character(state.current_character_id)
    if character is None or not character.conversation_history:
        return ""
    return character.conversation_history[-1]


def simulate_reachability(
    registry: GraphRegistry,
    start_node_id: str,
    initial_state: GameState | None = None,
    settings: Settings | None = None,
) -> ReachabilityResult:
    """Explore reachable (node, state) pairs from ``start_node_id``.

    Three independent bounds keep the walk finite: ``max_steps`` (path depth),
    ``max_states`` (expanded states overall) and
    ``max_unique_states_per_node``. Only ``max_states`` marks the result as
    truncated; the other two are part of the sampling policy.
    """
    settings = settings or Settings()
    state = initial_state or new_game_state(start_node_id)
    state = replace(state, current_node_id=start_node_id)

    worklist: Deque[Tuple[GameState, int]] = deque([(state, 0)])
    pop = worklist.popleft if settings.strategy == "bfs" else worklist.pop

    seen: Set[str] = set()
    per_node: Dict[str, int] = defaultdict(int)
    visited: Set[str] = set()
    visited_by_character: Dict[str, int] = defaultdict(int)
    anomalies: Dict[Tuple[str, str], Anomaly] = {}
    expanded = 0
    hit_max_states = False

    def note(anomaly: Anomaly) -> None:
        anomalies.setdefault((anomaly.kind, anomaly.node_id), anomaly)

    while worklist:
        current, depth = pop()
        if depth > settings.max_steps:
            continue
        if expanded >= settings.max_states:
            hit_max_states = True
            break

        node_id = current.current_node_id
        location = registry.locate(node_id)
        if location is None:
            source = _source_of(current)
            note(
                Anomaly(
                    MISSING_NODE,
                    node_id,
                    current.current_character_id,
                    f"target of a choice at '{source}'" if source else "start node is not registered",
                )
            )
            continue

        fingerprint = state_fingerprint(current, node_id, location.character_id)
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        expanded += 1

        if per_node[node_id] >= settings.max_unique_states_per_node:
            continue
        per_node[node_id] += 1

        if node_id not in visited:
            visited.add(node_id)
            visited_by_character[location.character_id] += 1

        result = resolve_node(
            node_id,
            current,
            registry,
            enforce_required_state=settings.enforce_required_state,
            orb_fill_capacity=settings.orb_fill_capacity,
        )
        if not result.success:
            note(Anomaly(REQUIRED_STATE, node_id, location.character_id, "; ".join(result.diagnostic)))
            continue

        node = result.node
        selectable = result.selectable
        if node.choices and not selectable:
            note(Anomaly(SOFT_DEADLOCK, node_id, location.character_id, "no choice is selectable"))
        elif not node.choices and not node.terminal:
            note(Anomaly(DEAD_END, node_id, location.character_id, "no choices and not terminal"))

        for choice in selectable:
            successor = take_choice(result.state, choice, orb_cap=settings.orb_balance_cap)
            worklist.append((successor, depth + 1))
        if node.interrupt is not None:
            worklist.append((take_interrupt(result.state, node.interrupt), depth + 1))

    logger.debug(
        "Simulated from %s: %d states expanded, %d nodes visited%s",
        start_node_id,
        expanded,
        len(visited),
        " (truncated)" if hit_max_states else "",
    )
    return ReachabilityResult(
        start_node_id=start_node_id,
        visited_node_ids=tuple(sorted(visited)),
        visited_by_character=dict(visited_by_character),
        hit_max_states=hit_max_states,
        expanded_states=expanded,
        anomalies=tuple(anomalies.values()),
    )


def simulate_starts(content: Any, settings: Settings | None = None) -> List[ReachabilityResult]:
    """One simulation per start entry of a loaded content bundle."""
    settings = settings or Settings()
    character_ids = list(content.registry.graphs)
    results = []
    for start in content.starts:
        initial = new_game_state(
            start.node_id,
            character_ids=character_ids,
            start_character_id=start.character_id,
        )
        results.append(simulate_reachability(content.registry, start.node_id, initial, settings))
    return results


def unreached_nodes(content: Any, results: Iterable[ReachabilityResult]) -> List[str]:
    reached: Set[str] = set()
    for result in results:
        reached.update(result.visited_node_ids)
    return sorted(node_id for node_id in content.registry.node_ids() if node_id not in reached)
