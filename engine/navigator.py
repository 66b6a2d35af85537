"""Node resolution across character graphs and the shared successor step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Tuple, Union

from engine.conditions import (
    DEFAULT_ORB_FILL_CAPACITY,
    EvaluatedChoice,
    SkillLevels,
    describe_unmet,
    evaluate,
    evaluate_choices,
)
from engine.graph import Choice, ContentVariation, DialogueNode, GraphRegistry, InterruptWindow
from engine.orbs import earn_orb
from engine.state import GameState, frozen_mapping
from engine.state_change import StateChange, apply_state_change, apply_state_changes, heal_character

logger = logging.getLogger(__name__)

MISSING_NODE = "MISSING_NODE"
MISSING_CHARACTER = "MISSING_CHARACTER"
REQUIRED_STATE_VIOLATION = "REQUIRED_STATE_VIOLATION"


@dataclass(frozen=True)
class NavigationError:
    """Resolution failure returned as a value so callers can fall back."""

    code: str
    node_id: str
    message: str
    character_id: Optional[str] = None
    diagnostic: Tuple[str, ...] = ()

    success = False


@dataclass(frozen=True)
class NavigationResult:
    state: GameState
    node: DialogueNode
    character_id: str
    content: Optional[ContentVariation]
    choices: Tuple[EvaluatedChoice, ...] = field(default_factory=tuple)

    success = True

    @property
    def selectable(self) -> List[Choice]:
        return [entry.choice for entry in self.choices if entry.selectable]

    @property
    def visible(self) -> List[EvaluatedChoice]:
        return [entry for entry in self.choices if entry.visible]


NavigateResult = Union[NavigationResult, NavigationError]


def select_content(
    node: DialogueNode,
    state: GameState,
    character_id: Optional[str],
    skill_levels: SkillLevels = None,
) -> Optional[ContentVariation]:
    """First variation whose condition passes, else the first variation."""
    for variation in node.content:
        if variation.condition and evaluate(variation.condition, state, character_id, skill_levels):
            return variation
    for variation in node.content:
        if not variation.condition:
            return variation
    return node.content[0] if node.content else None


def resolve_node(
    node_id: str,
    state: GameState,
    registry: GraphRegistry,
    *,
    skill_levels: SkillLevels = None,
    enforce_required_state: bool = False,
    orb_fill_capacity: int = DEFAULT_ORB_FILL_CAPACITY,
) -> NavigateResult:
    """Enter ``node_id``: move the cursor, run on-enter changes, evaluate choices.

    The owning character is looked up for every call, so a target that lives in
    another character's graph switches the current character.
    """
    location = registry.locate(node_id)
    if location is None:
        return NavigationError(
            code=MISSING_NODE,
            node_id=node_id,
            message=f"Could not find node '{node_id}' in any dialogue graph.",
        )

    node = location.node
    character_id = location.character_id
    if enforce_required_state and not evaluate(node.required_state, state, character_id, skill_levels):
        return NavigationError(
            code=REQUIRED_STATE_VIOLATION,
            node_id=node_id,
            message=f"Required state for '{node_id}' is not satisfied.",
            character_id=character_id,
            diagnostic=tuple(describe_unmet(node.required_state, state, character_id, skill_levels)),
        )

    # Entering a graph is how a character first gets state.
    entered, _ = heal_character(state, character_id, warn=False)
    entered = replace(entered, current_node_id=node_id, current_character_id=character_id)
    entered = apply_state_changes(entered, node.on_enter)

    return NavigationResult(
        state=entered,
        node=node,
        character_id=character_id,
        content=select_content(node, entered, character_id, skill_levels),
        choices=evaluate_choices(
            node, entered, character_id, skill_levels, orb_fill_capacity=orb_fill_capacity
        ),
    )


def resolve_character_entry(
    character_id: str, state: GameState, registry: GraphRegistry, **kwargs: Any
) -> NavigateResult:
    graph = registry.graph(character_id)
    if graph is None:
        return NavigationError(
            code=MISSING_CHARACTER,
            node_id="",
            message=f"No dialogue graph is registered for character '{character_id}'.",
            character_id=character_id,
        )
    return resolve_node(graph.start_node_id, state, registry, **kwargs)


def record_turn(state: GameState, node_id: str) -> GameState:
    character_id = state.current_character_id
    if character_id is None:
        return state
    state, character = heal_character(state, character_id)
    return state.with_character(
        character_id,
        replace(character, conversation_history=character.conversation_history + (node_id,)),
    )


def take_choice(state: GameState, choice: Choice, *, orb_cap: Optional[int] = None) -> GameState:
    """Produce the successor state for ``choice`` taken at the current node.

    Live play and the reachability simulator both step through this function:
    the choice consequence is applied, the departing node is appended to the
    current character's history, a pattern-tagged choice adds one to that
    pattern and earns one orb of it, and the cursor moves to the target.
    ``orb_cap`` bounds orb balances during simulation.
    """
    updated = apply_state_change(state, choice.consequence)
    updated = record_turn(updated, state.current_node_id)
    if choice.pattern:
        step = StateChange(pattern_changes=frozen_mapping({choice.pattern: 1}))
        updated = apply_state_change(updated, step)
        updated = replace(updated, orbs=earn_orb(updated.orbs, choice.pattern, cap=orb_cap))
    return replace(updated, current_node_id=choice.target)


def take_interrupt(state: GameState, interrupt: InterruptWindow) -> GameState:
    """Successor state when the player acts inside a node's interrupt window."""
    updated = apply_state_change(state, interrupt.consequence)
    updated = record_turn(updated, state.current_node_id)
    return replace(updated, current_node_id=interrupt.target_node_id)
