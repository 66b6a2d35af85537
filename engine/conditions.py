"""Condition evaluation, orb gating and mercy unlock."""

from __future__ import annotations

import math
import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from engine.state import CharacterState, GameState

DEFAULT_ORB_FILL_CAPACITY = 100

COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
    "!=": operator.ne,
}

# Keys of the object form used by hand-authored "required state" blocks.
LEGACY_KEYS = (
    "trust",
    "relationship",
    "hasKnowledgeFlags",
    "lacksKnowledgeFlags",
    "hasGlobalFlags",
    "lacksGlobalFlags",
    "patterns",
)

SkillLevels = Optional[Mapping[str, int]]


def compare(actual: Any, op: Any, expected: Any) -> bool:
    comparator = COMPARATORS.get(op if isinstance(op, str) else ">=")
    if comparator is None:
        comparator = operator.ge
    try:
        return bool(comparator(actual, expected))
    except TypeError:
        return False


def _as_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, str)]
    return []


def _target_character(
    cond: Mapping[str, Any], state: GameState, character_id: Optional[str]
) -> Optional[CharacterState]:
    target = cond.get("character")
    if not isinstance(target, str) or not target:
        target = character_id
    return state.character(target)


def orb_fill(state: GameState, pattern: Optional[str], capacity: int = DEFAULT_ORB_FILL_CAPACITY) -> int:
    """Return the 0-100 fill level of one orb pattern."""
    balance = state.orbs.balance.get(pattern, 0)
    if capacity <= 0:
        return 100
    return min(100, math.floor(balance * 100 / capacity + 0.5))


def _in_range(value: int, bounds: Any) -> bool:
    if not isinstance(bounds, Mapping):
        return True
    low = bounds.get("min")
    high = bounds.get("max")
    if isinstance(low, int) and value < low:
        return False
    if isinstance(high, int) and value > high:
        return False
    return True


def _legacy_failures(
    cond: Mapping[str, Any], state: GameState, character_id: Optional[str]
) -> List[str]:
    failures: List[str] = []
    character = state.character(character_id)

    if "trust" in cond:
        if character is None or not _in_range(character.trust, cond["trust"]):
            failures.append(f"trust {cond['trust']}")
    if "relationship" in cond:
        allowed = _as_list(cond["relationship"])
        if character is None or character.relationship not in allowed:
            failures.append(f"relationship in {allowed}")
    for flag in _as_list(cond.get("hasKnowledgeFlags")):
        if character is None or flag not in character.knowledge_flags:
            failures.append(f"knowledge '{flag}'")
    for flag in _as_list(cond.get("lacksKnowledgeFlags")):
        if character is None or flag in character.knowledge_flags:
            failures.append(f"no knowledge '{flag}'")
    for flag in _as_list(cond.get("hasGlobalFlags")):
        if flag not in state.global_flags:
            failures.append(f"flag '{flag}'")
    for flag in _as_list(cond.get("lacksGlobalFlags")):
        if flag in state.global_flags:
            failures.append(f"no flag '{flag}'")
    patterns = cond.get("patterns")
    if isinstance(patterns, Mapping):
        for pattern, bounds in patterns.items():
            if not _in_range(state.patterns.get(pattern, 0), bounds):
                failures.append(f"pattern {pattern} {bounds}")
    return failures


def _name(cond: Mapping[str, Any], key: str) -> Optional[str]:
    # Non-string names never match anything, so they read as absent.
    value = cond.get(key)
    return value if isinstance(value, str) else None


def _leaf(
    cond: Mapping[str, Any],
    state: GameState,
    character_id: Optional[str],
    skill_levels: SkillLevels,
) -> bool:
    t = cond.get("type")

    if t == "has_flag":
        return _name(cond, "flag") in state.global_flags
    if t == "lacks_flag":
        return _name(cond, "flag") not in state.global_flags
    if t == "trust":
        character = _target_character(cond, state, character_id)
        if character is None:
            return False
        return compare(character.trust, cond.get("op"), cond.get("value", 0))
    if t == "relationship":
        character = _target_character(cond, state, character_id)
        if character is None:
            return False
        return character.relationship in _as_list(cond.get("value"))
    if t == "has_knowledge":
        character = _target_character(cond, state, character_id)
        return character is not None and _name(cond, "flag") in character.knowledge_flags
    if t == "lacks_knowledge":
        character = _target_character(cond, state, character_id)
        return character is not None and _name(cond, "flag") not in character.knowledge_flags
    if t == "pattern":
        return compare(state.patterns.get(_name(cond, "pattern"), 0), cond.get("op"), cond.get("value", 0))
    if t == "orb_fill":
        return compare(orb_fill(state, _name(cond, "pattern")), cond.get("op"), cond.get("value", 0))
    if t == "skill":
        level = (skill_levels or {}).get(_name(cond, "skill"), 0)
        return compare(level, cond.get("op"), cond.get("value", 0))
    # Unknown leaves do not gate anything; the content validator reports them.
    return True


def evaluate(
    condition: Any,
    state: GameState,
    character_id: Optional[str] = None,
    skill_levels: SkillLevels = None,
) -> bool:
    """Return whether ``condition`` holds for ``state``.

    ``None`` and empty conditions pass. A list is an AND of its entries.
    Tagged objects dispatch on ``type``; objects without a ``type`` are read as
    a legacy required-state block. Evaluation never raises for JSON-shaped
    input.
    """
    if not condition:
        return True
    if isinstance(condition, (list, tuple)):
        return all(evaluate(c, state, character_id, skill_levels) for c in condition)
    if not isinstance(condition, Mapping):
        return True

    t = condition.get("type")
    if t is None:
        return not _legacy_failures(condition, state, character_id)
    if t == "and":
        return all(
            evaluate(c, state, character_id, skill_levels)
            for c in condition.get("conditions") or ()
        )
    if t == "or":
        entries = condition.get("conditions") or ()
        if not entries:
            return True
        return any(evaluate(c, state, character_id, skill_levels) for c in entries)
    if t == "not":
        inner = condition.get("condition")
        if not inner:
            return True
        return not evaluate(inner, state, character_id, skill_levels)
    return _leaf(condition, state, character_id, skill_levels)


def _describe_leaf(cond: Mapping[str, Any]) -> str:
    t = cond.get("type")
    if t in ("has_flag", "lacks_flag", "has_knowledge", "lacks_knowledge"):
        return f"{t} '{cond.get('flag')}'"
    if t == "relationship":
        return f"relationship in {_as_list(cond.get('value'))}"
    subject = cond.get("pattern") or cond.get("skill") or cond.get("character") or ""
    subject = f" {subject}" if subject else ""
    return f"{t}{subject} {cond.get('op', '>=')} {cond.get('value', 0)}"


def describe_unmet(
    condition: Any,
    state: GameState,
    character_id: Optional[str] = None,
    skill_levels: SkillLevels = None,
) -> List[str]:
    """List human-readable descriptions of the parts of ``condition`` that fail."""
    if evaluate(condition, state, character_id, skill_levels):
        return []
    if isinstance(condition, (list, tuple)):
        unmet: List[str] = []
        for entry in condition:
            unmet.extend(describe_unmet(entry, state, character_id, skill_levels))
        return unmet
    t = condition.get("type")
    if t is None:
        return _legacy_failures(condition, state, character_id)
    if t == "and":
        unmet = []
        for entry in condition.get("conditions") or ():
            unmet.extend(describe_unmet(entry, state, character_id, skill_levels))
        return unmet
    if t == "or":
        options = [
            "; ".join(describe_unmet(entry, state, character_id, skill_levels))
            for entry in condition.get("conditions") or ()
        ]
        return [f"any of ({' | '.join(options)})"]
    if t == "not":
        return [f"not ({_describe_leaf(condition.get('condition') or {})})"]
    return [_describe_leaf(condition)]


@dataclass(frozen=True)
class EvaluatedChoice:
    choice: Any
    visible: bool
    enabled: bool
    orb_locked: bool = False
    mercy_unlocked: bool = False

    @property
    def selectable(self) -> bool:
        return self.visible and self.enabled and not self.orb_locked


def is_orb_locked(choice: Any, state: GameState, capacity: int = DEFAULT_ORB_FILL_CAPACITY) -> bool:
    requirement = getattr(choice, "required_orb_fill", None)
    if requirement is None:
        return False
    return orb_fill(state, requirement.pattern, capacity) < requirement.threshold


def apply_mercy_unlock(evaluated: Sequence[EvaluatedChoice]) -> Tuple[EvaluatedChoice, ...]:
    """Unlock the lowest-threshold choice when every eligible one is orb-locked.

    Eligible means visible with its enabled condition passing. Ties go to the
    first choice in declaration order.
    """
    candidates = [index for index, entry in enumerate(evaluated) if entry.visible and entry.enabled]
    if not candidates or not all(evaluated[index].orb_locked for index in candidates):
        return tuple(evaluated)

    best = candidates[0]
    for index in candidates[1:]:
        threshold = evaluated[index].choice.required_orb_fill.threshold
        if threshold < evaluated[best].choice.required_orb_fill.threshold:
            best = index

    result = list(evaluated)
    result[best] = EvaluatedChoice(
        choice=result[best].choice,
        visible=True,
        enabled=True,
        orb_locked=False,
        mercy_unlocked=True,
    )
    return tuple(result)


def evaluate_choices(
    node: Any,
    state: GameState,
    character_id: Optional[str] = None,
    skill_levels: SkillLevels = None,
    *,
    orb_fill_capacity: int = DEFAULT_ORB_FILL_CAPACITY,
) -> Tuple[EvaluatedChoice, ...]:
    evaluated = [
        EvaluatedChoice(
            choice=choice,
            visible=evaluate(choice.visible_if, state, character_id, skill_levels),
            enabled=evaluate(choice.enabled_if, state, character_id, skill_levels),
            orb_locked=is_orb_locked(choice, state, orb_fill_capacity),
        )
        for choice in node.choices
    ]
    return apply_mercy_unlock(evaluated)


def selectable_choices(evaluated: Sequence[EvaluatedChoice]) -> List[Any]:
    return [entry.choice for entry in evaluated if entry.selectable]
