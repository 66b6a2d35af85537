"""Live-play glue: resolve, apply, derive feedback, recover from bad targets."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional

from engine.conditions import SkillLevels, evaluate_choices
from engine.consequences import ChoiceContext, PipelineResult, resolve_consequences
from engine.content import Content
from engine.graph import Choice
from engine.navigator import (
    NavigateResult,
    NavigationError,
    NavigationResult,
    resolve_node,
    select_content,
    take_choice,
    take_interrupt,
)
from engine.settings import Settings
from engine.state import DEFAULT_PLAYER_ID, GameState, new_game_state

logger = logging.getLogger(__name__)


class ChoiceNotAvailable(Exception):
    """Raised when a caller plays a choice the current node does not offer."""


@dataclass(frozen=True)
class TurnResult:
    state: GameState
    view: Optional[NavigationResult]
    feedback: Optional[PipelineResult] = None
    error: Optional[NavigationError] = None
    fell_back: bool = False


def _turn_number(state: GameState) -> int:
    return sum(len(character.conversation_history) for character in state.characters.values())


def _resolve(content: Content, node_id: str, state: GameState, settings: Settings, skill_levels: SkillLevels) -> NavigateResult:
    return resolve_node(
        node_id,
        state,
        content.registry,
        skill_levels=skill_levels,
        enforce_required_state=settings.enforce_required_state,
        orb_fill_capacity=settings.orb_fill_capacity,
    )


def _resolve_with_fallback(
    content: Content, state: GameState, settings: Settings, skill_levels: SkillLevels
) -> tuple[NavigateResult, Optional[NavigationError]]:
    result = _resolve(content, state.current_node_id, state, settings, skill_levels)
    if result.success:
        return result, None

    recovery = content.recovery_node()
    logger.warning("%s Falling back to '%s'.", result.message, recovery)
    if recovery is None or recovery == state.current_node_id:
        return result, result
    fallback = _resolve(content, recovery, replace(state, current_node_id=recovery), settings, skill_levels)
    return fallback, result


def start_session(
    content: Content,
    *,
    start_node: str | None = None,
    player_id: str = DEFAULT_PLAYER_ID,
    settings: Settings | None = None,
    skill_levels: SkillLevels = None,
    state: GameState | None = None,
) -> TurnResult:
    """Enter the chosen start (or resume ``state``) and return the first view."""
    settings = content.settings_for(settings)
    if state is None:
        entry = content.start(start_node)
        state = new_game_state(
            entry.node_id,
            player_id=player_id,
            character_ids=list(content.registry.graphs),
            start_character_id=entry.character_id,
        )
    result, error = _resolve_with_fallback(content, state, settings, skill_levels)
    if not result.success:
        return TurnResult(state=state, view=None, error=error)
    return TurnResult(state=result.state, view=result, error=error, fell_back=error is not None)


def _refresh(view: NavigationResult, state: GameState, settings: Settings, skill_levels: SkillLevels) -> NavigationResult:
    """Re-evaluate content and choices after the pipeline changed ``state``."""
    return replace(
        view,
        state=state,
        content=select_content(view.node, state, view.character_id, skill_levels),
        choices=evaluate_choices(
            view.node, state, view.character_id, skill_levels, orb_fill_capacity=settings.orb_fill_capacity
        ),
    )


def _trust_delta(choice: Choice, character_id: str) -> int:
    consequence = choice.consequence
    if consequence is None or consequence.character_id != character_id:
        return 0
    return consequence.trust_change


def _finish_turn(
    content: Content,
    view: NavigationResult,
    moved: GameState,
    choice: Optional[Choice],
    settings: Settings,
    skill_levels: SkillLevels,
    timestamp: Optional[int],
) -> TurnResult:
    previous = view.state
    result, error = _resolve_with_fallback(content, moved, settings, skill_levels)
    if not result.success:
        return TurnResult(state=moved, view=None, error=error)

    context = ChoiceContext(
        character_id=view.character_id,
        node_id=view.node.node_id,
        choice_id=choice.choice_id if choice is not None else "",
        choice_text=choice.text if choice is not None else "",
        pattern=choice.pattern if choice is not None else None,
        trust_delta=_trust_delta(choice, view.character_id) if choice is not None else 0,
        timestamp=_turn_number(previous) if timestamp is None else timestamp,
        entered_node_id=result.node.node_id,
        entered_tags=result.node.tags,
        character_name=content.registry.character_name(view.character_id),
    )
    feedback = resolve_consequences(previous, result.state, context, content.rules, settings)
    return TurnResult(
        state=feedback.state,
        view=_refresh(result, feedback.state, settings, skill_levels),
        feedback=feedback,
        error=error,
        fell_back=error is not None,
    )


def play_choice(
    content: Content,
    view: NavigationResult,
    choice_id: str,
    *,
    settings: Settings | None = None,
    skill_levels: SkillLevels = None,
    timestamp: int | None = None,
) -> TurnResult:
    """Take ``choice_id`` from ``view`` and return the next view with its feedback.

    Raises :class:`ChoiceNotAvailable` if the choice is unknown or not
    selectable. A target that cannot be resolved is reported on the result and
    play continues at the content's fallback node.
    """
    settings = content.settings_for(settings)
    for entry in view.choices:
        if entry.choice.choice_id == choice_id:
            if not entry.selectable:
                raise ChoiceNotAvailable(f"Choice '{choice_id}' is not available at '{view.node.node_id}'.")
            choice = entry.choice
            break
    else:
        raise ChoiceNotAvailable(f"Node '{view.node.node_id}' has no choice '{choice_id}'.")

    moved = take_choice(view.state, choice)
    return _finish_turn(content, view, moved, choice, settings, skill_levels, timestamp)


def play_interrupt(
    content: Content,
    view: NavigationResult,
    *,
    settings: Settings | None = None,
    skill_levels: SkillLevels = None,
    timestamp: int | None = None,
) -> TurnResult:
    """Act inside the current node's interrupt window."""
    settings = content.settings_for(settings)
    interrupt = view.node.interrupt
    if interrupt is None:
        raise ChoiceNotAvailable(f"Node '{view.node.node_id}' has no interrupt window.")
    moved = take_interrupt(view.state, interrupt)
    return _finish_turn(content, view, moved, None, settings, skill_levels, timestamp)
