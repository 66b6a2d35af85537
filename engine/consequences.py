"""Consequence resolution: derive narrative feedback from a state transition.

Two ordered tiers run after a choice has been applied:

* ``TIER_ONE`` evaluators run in sequence and each may replace the echo
  produced before it, so the last one to fire wins. The order encodes the
  priority transformation > milestone > pattern echo > trust feedback.
* ``TIER_TWO`` processors run afterwards and only append events. Their order
  decides which of several eligible events is surfaced first when a caller can
  show just one.

Everything here is a function of ``(previous, current, context, rules,
settings)``. Text variants are chosen with a stable hash, and the bookkeeping
that must survive between turns (acknowledged milestones, witnessed
transformations, queued gifts and echoes) lives in the returned state.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from engine.conditions import evaluate
from engine.narrative_rules import EchoLine, NarrativeRules
from engine.orbs import (
    acknowledge_milestone,
    dominant_pattern,
    earn_bonus_orbs,
    unacknowledged_milestone,
)
from engine.settings import Settings
from engine.state import PATTERNS, GameState, QueuedEcho, QueuedGift, frozen_mapping
from engine.state_change import StateChange, apply_state_change
from engine.trust import format_trust_toast, record_trust_change, trust_direction, trust_intensity

logger = logging.getLogger(__name__)

GIFT_RECALL_LIMIT = 50


@dataclass(frozen=True)
class ChoiceContext:
    """What the player just did, as seen by the pipeline."""

    character_id: str
    node_id: str = ""
    choice_id: str = ""
    choice_text: str = ""
    pattern: Optional[str] = None
    trust_delta: int = 0
    timestamp: int = 0
    entered_node_id: str = ""
    entered_tags: Tuple[str, ...] = ()
    character_name: str = ""


@dataclass(frozen=True)
class FeedbackEvent:
    kind: str
    text: str
    emotion: Optional[str] = None
    character_id: Optional[str] = None
    source: str = ""
    detail: Mapping[str, Any] = field(default_factory=frozen_mapping)


@dataclass(frozen=True)
class ProcessorLog:
    processor: str
    type: str
    data: Mapping[str, Any] = field(default_factory=frozen_mapping)


@dataclass(frozen=True)
class PipelineResult:
    state: GameState
    echo: Optional[FeedbackEvent]
    events: Tuple[FeedbackEvent, ...] = ()
    notices: Tuple[FeedbackEvent, ...] = ()
    logs: Tuple[ProcessorLog, ...] = ()


@dataclass
class Turn:
    """Working values for a single pipeline run."""

    previous: GameState
    state: GameState
    context: ChoiceContext
    rules: NarrativeRules
    settings: Settings
    echo: Optional[FeedbackEvent] = None
    events: List[FeedbackEvent] = field(default_factory=list)
    notices: List[FeedbackEvent] = field(default_factory=list)
    logs: List[ProcessorLog] = field(default_factory=list)

    @property
    def surfaced(self) -> bool:
        return self.echo is not None or bool(self.events)

    def log(self, processor: str, kind: str, **data: Any) -> None:
        self.logs.append(ProcessorLog(processor, kind, frozen_mapping(data)))
        logger.debug("[%s] %s %s", processor, kind, data)


def stable_pick(options: Sequence[EchoLine], *key: object) -> EchoLine:
    """Pick one of ``options`` deterministically from ``key``."""
    digest = hashlib.sha1("|".join(str(part) for part in key).encode("utf-8")).hexdigest()
    return options[int(digest[:8], 16) % len(options)]


def first_crossed_pattern(
    old: Mapping[str, int], new: Mapping[str, int], thresholds: Sequence[int]
) -> Optional[Tuple[str, int]]:
    """Lowest threshold first, then pattern order: the first ``old < t <= new``."""
    for threshold in sorted(thresholds):
        for pattern in PATTERNS:
            if old.get(pattern, 0) < threshold <= new.get(pattern, 0):
                return pattern, threshold
    return None


# ---------- Tier 1 ----------
def trust_feedback(turn: Turn) -> Optional[FeedbackEvent]:
    ctx = turn.context
    delta = ctx.trust_delta
    if delta == 0:
        return None

    character_id = ctx.character_id
    character = turn.state.character(character_id)
    trust = character.trust if character is not None else 0
    turn.notices.append(
        FeedbackEvent(
            kind="trust_change",
            text=format_trust_toast(ctx.character_name or character_id.title(), delta),
            character_id=character_id,
            source="trust",
            detail=frozen_mapping({"delta": delta, "trust": trust}),
        )
    )
    if character is not None:
        timeline = record_trust_change(
            character.trust_timeline,
            trust,
            delta,
            node_id=ctx.node_id,
            event=ctx.choice_text,
            timestamp=ctx.timestamp,
        )
        turn.state = turn.state.with_character(character_id, replace(character, trust_timeline=timeline))

    direction = trust_direction(delta)
    intensity = trust_intensity(delta)
    lines = turn.rules.trust_lines(character_id, direction, intensity)
    if not lines:
        return None
    line = stable_pick(lines, character_id, ctx.node_id, ctx.choice_id, delta)
    return FeedbackEvent(
        kind="trust",
        text=line.text,
        emotion=line.emotion,
        character_id=character_id,
        source="trust",
        detail=frozen_mapping({"delta": delta, "intensity": intensity, "trust": trust}),
    )


def pattern_echo(turn: Turn) -> Optional[FeedbackEvent]:
    crossed = first_crossed_pattern(
        turn.previous.patterns, turn.state.patterns, turn.settings.pattern_echo_thresholds
    )
    if crossed is None:
        return None

    pattern, threshold = crossed
    level = turn.state.patterns.get(pattern, 0)
    shift = f"Worldview Shift: {pattern.title()} (Level {level})"
    detail = frozen_mapping({"pattern": pattern, "level": level, "threshold": threshold})
    turn.notices.append(FeedbackEvent(kind="pattern_shift", text=shift, source="pattern", detail=detail))
    if turn.echo is not None:
        return None

    character_id = turn.context.character_id
    lines = turn.rules.pattern_lines(character_id, pattern)
    line = stable_pick(lines, character_id, pattern, threshold) if lines else EchoLine(shift)
    return FeedbackEvent(
        kind="pattern",
        text=line.text,
        emotion=line.emotion,
        character_id=character_id,
        source="pattern",
        detail=detail,
    )


def orb_milestone(turn: Turn) -> Optional[FeedbackEvent]:
    character_id = turn.context.character_id
    if character_id != turn.settings.hub_character:
        return None
    key = unacknowledged_milestone(turn.state.orbs)
    if key is None:
        return None
    lines = turn.rules.milestone_echoes.get(key)
    if not lines:
        return None

    turn.state = replace(turn.state, orbs=acknowledge_milestone(turn.state.orbs, key))
    line = stable_pick(lines, key, turn.state.orbs.total_earned)
    turn.log("milestone", "acknowledged", milestone=key)
    return FeedbackEvent(
        kind="milestone",
        text=line.text,
        emotion=line.emotion,
        character_id=character_id,
        source="milestone",
        detail=frozen_mapping({"milestone": key}),
    )


def transformation(turn: Turn) -> Optional[FeedbackEvent]:
    if turn.context.trust_delta <= 0:
        return None
    character_id = turn.context.character_id
    character = turn.state.character(character_id)
    if character is None:
        return None

    state = turn.state
    witnessed = state.ledger.witnessed_transformations
    for candidate in turn.rules.transformations:
        if candidate.character_id != character_id or candidate.transformation_id in witnessed:
            continue
        if character.trust < candidate.trust_min:
            continue
        if any(
            flag not in character.knowledge_flags and flag not in state.global_flags
            for flag in candidate.required_flags
        ):
            continue
        if any(state.patterns.get(p, 0) < minimum for p, minimum in candidate.required_patterns.items()):
            continue

        state = apply_state_change(
            state,
            StateChange(
                add_global_flags=candidate.global_flags_set,
                character_id=character_id if candidate.new_relationship else None,
                set_relationship_status=candidate.new_relationship,
            ),
        )
        turn.state = state.with_ledger(
            witnessed_transformations=witnessed | {candidate.transformation_id}
        )
        turn.log("transformation", "witnessed", id=candidate.transformation_id)
        if not candidate.trigger_dialogue:
            return None
        return FeedbackEvent(
            kind="transformation",
            text=candidate.trigger_dialogue[0],
            emotion=candidate.emotion_arc[0] if candidate.emotion_arc else None,
            character_id=character_id,
            source="transformation",
            detail=frozen_mapping({"transformation": candidate.transformation_id}),
        )
    return None


TierOneEvaluator = Callable[[Turn], Optional[FeedbackEvent]]

TIER_ONE: Tuple[Tuple[str, TierOneEvaluator], ...] = (
    ("trust", trust_feedback),
    ("pattern", pattern_echo),
    ("milestone", orb_milestone),
    ("transformation", transformation),
)


# ---------- Tier 2 ----------
def _add_flags(turn: Turn, *flags: str) -> None:
    turn.state = apply_state_change(turn.state, StateChange(add_global_flags=tuple(flags)))


def story_arc_unlocks(turn: Turn) -> List[FeedbackEvent]:
    events: List[FeedbackEvent] = []
    for arc in turn.rules.story_arcs:
        if arc.arc_id in turn.state.ledger.unlocked_arcs:
            continue
        if not evaluate(arc.condition, turn.state, turn.context.character_id):
            continue
        _add_flags(turn, arc.unlock_flag)
        turn.state = turn.state.with_ledger(unlocked_arcs=turn.state.ledger.unlocked_arcs | {arc.arc_id})
        turn.log("storyArc", "unlocked", arc=arc.arc_id)
        if arc.text:
            events.append(
                FeedbackEvent("story_arc", arc.text, arc.emotion, turn.context.character_id, "storyArc")
            )
    return events


def synthesis_puzzles(turn: Turn) -> List[FeedbackEvent]:
    events: List[FeedbackEvent] = []
    character_id = turn.context.character_id
    for puzzle in turn.rules.synthesis_puzzles:
        ledger = turn.state.ledger
        if puzzle.puzzle_id in ledger.completed_puzzles:
            continue
        if evaluate(puzzle.condition, turn.state, character_id):
            _add_flags(turn, puzzle.completion_flag)
            turn.state = turn.state.with_ledger(
                completed_puzzles=turn.state.ledger.completed_puzzles | {puzzle.puzzle_id}
            )
            turn.log("puzzle", "completed", puzzle=puzzle.puzzle_id)
            if puzzle.text:
                events.append(FeedbackEvent("puzzle_complete", puzzle.text, None, character_id, "puzzle"))
        elif (
            puzzle.hint_condition
            and puzzle.puzzle_id not in ledger.shown_hints
            and evaluate(puzzle.hint_condition, turn.state, character_id)
        ):
            turn.state = turn.state.with_ledger(shown_hints=ledger.shown_hints | {puzzle.puzzle_id})
            turn.log("puzzle", "hint", puzzle=puzzle.puzzle_id)
            if puzzle.hint_text:
                events.append(FeedbackEvent("puzzle_hint", puzzle.hint_text, None, character_id, "puzzle"))
    return events


def knowledge_discovery(turn: Turn) -> List[FeedbackEvent]:
    events: List[FeedbackEvent] = []
    for discovery in turn.rules.knowledge_discoveries:
        if discovery.discovery_id in turn.state.ledger.discovered_knowledge:
            continue
        owner = discovery.character_id or turn.context.character_id
        character = turn.state.character(owner)
        if character is None or discovery.knowledge_flag not in character.knowledge_flags:
            continue
        if discovery.trust_min is not None and character.trust < discovery.trust_min:
            continue
        turn.state = turn.state.with_ledger(
            discovered_knowledge=turn.state.ledger.discovered_knowledge | {discovery.discovery_id}
        )
        turn.log("knowledge", "discovered", id=discovery.discovery_id, character=owner)
        if discovery.text:
            events.append(FeedbackEvent("knowledge", discovery.text, None, owner, "knowledge"))
    return events


def cross_character_echoes(turn: Turn) -> List[FeedbackEvent]:
    ledger = turn.state.ledger
    new_flags = turn.state.global_flags - turn.previous.global_flags
    queue = [
        replace(entry, interactions_remaining=max(0, entry.interactions_remaining - 1))
        for entry in ledger.echo_queue
    ]
    queued_ids = {entry.echo_id for entry in queue}
    for echo in turn.rules.cross_character_echoes:
        if echo.source_flag not in new_flags:
            continue
        if echo.echo_id in queued_ids or echo.echo_id in ledger.delivered_echoes:
            continue
        queue.append(QueuedEcho(echo.echo_id, echo.target_character, echo.delay))
        turn.log("crossCharacter", "queued", id=echo.echo_id, target=echo.target_character)

    events: List[FeedbackEvent] = []
    delivered = ledger.delivered_echoes
    character_id = turn.context.character_id
    if not turn.surfaced:
        for entry in queue:
            if entry.target_character != character_id or entry.interactions_remaining > 0:
                continue
            echo = turn.rules.echo_by_id(entry.echo_id)
            if echo is None:
                continue
            if echo.required_pattern and (
                turn.state.patterns.get(echo.required_pattern, 0) < echo.required_pattern_min
            ):
                continue
            queue.remove(entry)
            delivered = delivered | {echo.echo_id}
            events.append(FeedbackEvent("cross_character", echo.text, echo.emotion, character_id, "crossCharacter"))
            turn.log("crossCharacter", "echo", id=echo.echo_id)
            break

    turn.state = turn.state.with_ledger(echo_queue=tuple(queue), delivered_echoes=delivered)
    return events


def pattern_combos(turn: Turn) -> List[FeedbackEvent]:
    events: List[FeedbackEvent] = []
    character = turn.state.character(turn.context.character_id)
    knowledge = character.knowledge_flags if character is not None else frozenset()
    for combo in turn.rules.pattern_combos:
        if combo.achieved_flag in turn.state.global_flags:
            continue
        if any(turn.state.patterns.get(p, 0) < minimum for p, minimum in combo.requirements.items()):
            continue
        if any(
            flag not in knowledge and flag not in turn.state.global_flags
            for flag in combo.required_knowledge
        ):
            continue
        _add_flags(turn, combo.achieved_flag)
        turn.log("combo", "achieved", id=combo.combo_id)
        if combo.text:
            events.append(FeedbackEvent("combo", combo.text, None, turn.context.character_id, "combo"))
    return events


def iceberg_references(turn: Turn) -> List[FeedbackEvent]:
    topics = [tag.split(":", 1)[1] for tag in turn.context.entered_tags if tag.startswith("iceberg:")]
    if not topics:
        return []

    mentions: Dict[str, int] = dict(turn.state.ledger.iceberg_mentions)
    for topic_id in topics:
        mentions[topic_id] = mentions.get(topic_id, 0) + 1
    turn.state = turn.state.with_ledger(iceberg_mentions=frozen_mapping(mentions))

    events: List[FeedbackEvent] = []
    for topic in turn.rules.iceberg_topics:
        if topic.topic_id not in topics or topic.investigable_flag in turn.state.global_flags:
            continue
        if mentions.get(topic.topic_id, 0) < topic.threshold:
            continue
        _add_flags(turn, topic.investigable_flag)
        turn.log("iceberg", "investigable", topic=topic.topic_id)
        if topic.text:
            events.append(FeedbackEvent("iceberg", topic.text, None, turn.context.character_id, "iceberg"))
    return events


def delayed_gifts(turn: Turn) -> List[FeedbackEvent]:
    ctx = turn.context
    ledger = turn.state.ledger
    pending = [
        replace(gift, interactions_remaining=max(0, gift.interactions_remaining - 1))
        for gift in ledger.pending_gifts
    ]
    delivered = ledger.delivered_echoes
    pending_ids = {gift.gift_id for gift in pending}
    for gift in turn.rules.delayed_gifts:
        if not ctx.choice_id or gift.choice_id != ctx.choice_id:
            continue
        if gift.source_character and gift.source_character != ctx.character_id:
            continue
        if gift.gift_id in pending_ids or f"gift:{gift.gift_id}" in delivered:
            continue
        pending.append(
            QueuedGift(
                gift_id=gift.gift_id,
                source_character=gift.source_character or ctx.character_id,
                target_character=gift.target_character,
                interactions_remaining=gift.delay,
                source_choice_text=ctx.choice_text,
            )
        )
        turn.log("delayedGift", "queued", id=gift.gift_id, target=gift.target_character)

    events: List[FeedbackEvent] = []
    if not turn.surfaced:
        # Oldest first: queue order is arrival order.
        for queued in pending:
            if queued.target_character != ctx.character_id or queued.interactions_remaining > 0:
                continue
            gift = turn.rules.gift_by_id(queued.gift_id)
            if gift is None:
                continue
            pending.remove(queued)
            delivered = delivered | {f"gift:{gift.gift_id}"}
            text = f'"{gift.text}"'
            if queued.source_choice_text:
                recall = queued.source_choice_text
                if len(recall) > GIFT_RECALL_LIMIT:
                    recall = recall[: GIFT_RECALL_LIMIT - 3] + "..."
                text += f'\n\n(Recall: "{recall}")'
            events.append(
                FeedbackEvent(
                    "gift",
                    text,
                    gift.emotion or "knowing",
                    ctx.character_id,
                    "delayedGift",
                    frozen_mapping({"gift": gift.gift_id, "source": queued.source_character}),
                )
            )
            turn.log("delayedGift", "delivery", id=gift.gift_id)
            break

    turn.state = turn.state.with_ledger(pending_gifts=tuple(pending), delivered_echoes=delivered)
    return events


def arc_completion(turn: Turn) -> List[FeedbackEvent]:
    events: List[FeedbackEvent] = []
    new_flags = turn.state.global_flags - turn.previous.global_flags
    for arc in turn.rules.arc_completions:
        if arc.completion_flag not in new_flags or arc.character_id in turn.state.ledger.completed_arcs:
            continue
        orbs = turn.state.orbs
        pattern = dominant_pattern(orbs)
        if pattern is not None:
            orbs = earn_bonus_orbs(orbs, pattern, arc.bonus_orbs)
        orbs = replace(orbs, arc_completions=orbs.arc_completions + 1)
        turn.state = replace(turn.state, orbs=orbs).with_ledger(
            completed_arcs=turn.state.ledger.completed_arcs | {arc.character_id}
        )
        turn.log("arcCompletion", "completed", arc=arc.character_id, pattern=pattern, bonus=arc.bonus_orbs)
        if arc.text:
            events.append(
                FeedbackEvent(
                    "arc_complete",
                    arc.text,
                    None,
                    arc.character_id,
                    "arcCompletion",
                    frozen_mapping({"pattern": pattern, "bonus_orbs": arc.bonus_orbs if pattern else 0}),
                )
            )
    return events


TierTwoProcessor = Callable[[Turn], List[FeedbackEvent]]

TIER_TWO: Tuple[Tuple[str, TierTwoProcessor], ...] = (
    ("storyArc", story_arc_unlocks),
    ("puzzle", synthesis_puzzles),
    ("knowledge", knowledge_discovery),
    ("crossCharacter", cross_character_echoes),
    ("combo", pattern_combos),
    ("iceberg", iceberg_references),
    ("delayedGift", delayed_gifts),
    ("arcCompletion", arc_completion),
)


def resolve_consequences(
    previous: GameState,
    current: GameState,
    context: ChoiceContext,
    rules: NarrativeRules | None = None,
    settings: Settings | None = None,
) -> PipelineResult:
    """Run both tiers for one choice and return the feedback plus the updated state."""
    turn = Turn(
        previous=previous,
        state=current,
        context=context,
        rules=rules or NarrativeRules(),
        settings=settings or Settings(),
    )

    for name, evaluator in TIER_ONE:
        echo = evaluator(turn)
        if echo is None:
            continue
        if turn.echo is not None:
            turn.log(name, "overwrote", replaced=turn.echo.kind)
        turn.echo = echo

    for name, processor in TIER_TWO:
        turn.events.extend(processor(turn))

    events = ([turn.echo] if turn.echo is not None else []) + turn.events
    return PipelineResult(
        state=turn.state,
        echo=events[0] if events else None,
        events=tuple(events),
        notices=tuple(turn.notices),
        logs=tuple(turn.logs),
    )
