"""Machine-readable schema specs for dialogue content files."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
import json
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Sequence, Tuple

from engine.conditions import COMPARATORS
from engine.state import PATTERNS, RELATIONSHIP_STATUSES
from engine.state_change import WIRE_FIELDS

ConditionValidator = Callable[[Mapping[str, Any], str], List[str]]
FieldCheck = Callable[[Any], bool]

COMPOUND_CONDITION_TYPES = ("and", "or", "not")
INTERRUPT_KINDS = ("silence", "comfort", "challenge", "connection", "grounding", "interruption")


def path(*parts: object) -> str:
    path_str = ""
    for part in parts:
        if isinstance(part, int):
            path_str = f"{path_str}[{part}]"
            continue
        if not isinstance(part, str):
            part = str(part)
        if part.isidentifier():
            path_str = f"{path_str}.{part}" if path_str else part
        else:
            path_str = f'{path_str}[{json.dumps(part)}]'
    return path_str


def format_validation_message(path_str: str, context: str, message: str) -> str:
    if context:
        return f"{path_str}: {context}: {message}"
    return f"{path_str}: {message}"


def is_non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def str_or_str_list(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, list) and value:
        return all(isinstance(item, str) and item.strip() != "" for item in value)
    return False


def is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def str_list(value: Any) -> bool:
    return isinstance(value, list) and all(is_non_empty_str(item) for item in value)


def normalize_nodes(
    raw_nodes: Any, ctx: Any | None = None, base: Sequence[object] = ("nodes",)
) -> Tuple[Dict[str, Dict[str, Any]], List[str]]:
    """Accept nodes as ``{id: node}`` or ``[{"id": ..., ...}]`` and return the mapping form."""
    nodes: Dict[str, Dict[str, Any]] = {}
    errors: List[str] = []
    node_ids: List[str] = []

    def add_error(context: str, path_parts: Sequence[object], message: str) -> None:
        path_str = path(*base, *path_parts)
        errors.append(format_validation_message(path_str, context, message))
        if ctx is not None:
            ctx.add(context, path_str, message)

    if isinstance(raw_nodes, dict):
        for node_id, payload in raw_nodes.items():
            if not is_non_empty_str(node_id):
                add_error("Nodes", (), "node identifiers must be non-empty strings.")
                continue
            if not isinstance(payload, dict):
                add_error("Nodes", (node_id,), f"node '{node_id}' must be an object.")
                continue
            nodes[node_id] = payload
        node_ids = list(nodes.keys())
    elif isinstance(raw_nodes, list):
        for idx, entry in enumerate(raw_nodes, start=1):
            if not isinstance(entry, MutableMapping):
                add_error(f"Node entry {idx}", (idx - 1,), "must be an object.")
                continue
            node_id = entry.get("id")
            if not is_non_empty_str(node_id):
                add_error(f"Node entry {idx}", (idx - 1, "id"), "is missing a valid 'id'.")
                continue
            node_ids.append(node_id)
            payload = dict(entry)
            payload.pop("id", None)
            nodes[node_id] = payload
    else:
        add_error(
            "Character graph",
            (),
            "must be an object mapping IDs to node definitions or a list of node entries.",
        )

    duplicates = [node_id for node_id, count in Counter(node_ids).items() if count > 1]
    if duplicates:
        dup_list = ", ".join(sorted(set(duplicates)))
        add_error("Nodes", (), f"duplicate node IDs found: {dup_list}.")

    return nodes, errors


@dataclass(frozen=True)
class ConditionSpec:
    required_fields: Tuple[str, ...]
    optional_fields: Tuple[str, ...]
    field_rules: Mapping[str, str]
    validate: ConditionValidator


@dataclass(frozen=True)
class ChangeFieldSpec:
    attribute: str
    rule: str
    check: FieldCheck


def _validate_flag(condition: Mapping[str, Any], context: str, name: str) -> List[str]:
    errors: List[str] = []
    if not is_non_empty_str(condition.get("flag")):
        errors.append(f"{context}: '{name}' requires a non-empty string 'flag'.")
    character = condition.get("character")
    if character is not None and not is_non_empty_str(character):
        errors.append(f"{context}: '{name}' requires 'character' to be a non-empty string when provided.")
    return errors


def _validate_comparison(condition: Mapping[str, Any], context: str, name: str) -> List[str]:
    errors: List[str] = []
    op = condition.get("op")
    if op is not None and op not in COMPARATORS:
        errors.append(f"{context}: '{name}' uses unsupported operator '{op}'.")
    if not is_int(condition.get("value")):
        errors.append(f"{context}: '{name}' requires an integer 'value'.")
    return errors


def _validate_trust(condition: Mapping[str, Any], context: str) -> List[str]:
    errors = _validate_comparison(condition, context, "trust")
    character = condition.get("character")
    if character is not None and not is_non_empty_str(character):
        errors.append(f"{context}: 'trust' requires 'character' to be a non-empty string when provided.")
    return errors


def _validate_relationship(condition: Mapping[str, Any], context: str) -> List[str]:
    value = condition.get("value")
    if not str_or_str_list(value):
        return [f"{context}: 'relationship' requires a status or list of statuses in 'value'."]
    statuses = [value] if isinstance(value, str) else value
    return [
        f"{context}: 'relationship' uses unknown status '{status}'."
        for status in statuses
        if status not in RELATIONSHIP_STATUSES
    ]


def _validate_pattern(condition: Mapping[str, Any], context: str, name: str) -> List[str]:
    errors: List[str] = []
    pattern = condition.get("pattern")
    if pattern not in PATTERNS:
        errors.append(f"{context}: '{name}' requires 'pattern' to be one of {', '.join(PATTERNS)}.")
    errors.extend(_validate_comparison(condition, context, name))
    return errors


def _validate_orb_fill(condition: Mapping[str, Any], context: str) -> List[str]:
    errors = _validate_pattern(condition, context, "orb_fill")
    value = condition.get("value")
    if is_int(value) and not 0 <= value <= 100:
        errors.append(f"{context}: 'orb_fill' value must be between 0 and 100.")
    return errors


def _validate_skill(condition: Mapping[str, Any], context: str) -> List[str]:
    errors: List[str] = []
    if not is_non_empty_str(condition.get("skill")):
        errors.append(f"{context}: 'skill' requires a non-empty string 'skill'.")
    errors.extend(_validate_comparison(condition, context, "skill"))
    return errors


def _validate_group(condition: Mapping[str, Any], context: str, name: str) -> List[str]:
    entries = condition.get("conditions")
    if not isinstance(entries, list) or not entries:
        return [f"{context}: '{name}' requires a non-empty 'conditions' list."]
    return []


def _validate_not(condition: Mapping[str, Any], context: str) -> List[str]:
    if not isinstance(condition.get("condition"), (Mapping, list)):
        return [f"{context}: 'not' requires a 'condition' object."]
    return []


def _comparison_rules(subject: str) -> Dict[str, str]:
    return {
        "value": f"integer {subject} to compare against",
        "op": f"optional comparator ({', '.join(COMPARATORS)}), defaults to >=",
    }


CONDITION_SPECS: Dict[str, ConditionSpec] = {
    "has_flag": ConditionSpec(
        required_fields=("flag",),
        optional_fields=(),
        field_rules={"flag": "non-empty global flag name"},
        validate=lambda condition, context: _validate_flag(condition, context, "has_flag"),
    ),
    "lacks_flag": ConditionSpec(
        required_fields=("flag",),
        optional_fields=(),
        field_rules={"flag": "non-empty global flag name"},
        validate=lambda condition, context: _validate_flag(condition, context, "lacks_flag"),
    ),
    "trust": ConditionSpec(
        required_fields=("value",),
        optional_fields=("op", "character"),
        field_rules={**_comparison_rules("trust"), "character": "optional character id, defaults to the current one"},
        validate=_validate_trust,
    ),
    "relationship": ConditionSpec(
        required_fields=("value",),
        optional_fields=("character",),
        field_rules={
            "value": f"status or list of statuses ({', '.join(RELATIONSHIP_STATUSES)})",
            "character": "optional character id, defaults to the current one",
        },
        validate=_validate_relationship,
    ),
    "has_knowledge": ConditionSpec(
        required_fields=("flag",),
        optional_fields=("character",),
        field_rules={"flag": "non-empty knowledge flag", "character": "optional character id"},
        validate=lambda condition, context: _validate_flag(condition, context, "has_knowledge"),
    ),
    "lacks_knowledge": ConditionSpec(
        required_fields=("flag",),
        optional_fields=("character",),
        field_rules={"flag": "non-empty knowledge flag", "character": "optional character id"},
        validate=lambda condition, context: _validate_flag(condition, context, "lacks_knowledge"),
    ),
    "pattern": ConditionSpec(
        required_fields=("pattern", "value"),
        optional_fields=("op",),
        field_rules={"pattern": f"one of {', '.join(PATTERNS)}", **_comparison_rules("pattern level")},
        validate=lambda condition, context: _validate_pattern(condition, context, "pattern"),
    ),
    "orb_fill": ConditionSpec(
        required_fields=("pattern", "value"),
        optional_fields=("op",),
        field_rules={"pattern": f"one of {', '.join(PATTERNS)}", **_comparison_rules("fill percentage (0-100)")},
        validate=_validate_orb_fill,
    ),
    "skill": ConditionSpec(
        required_fields=("skill", "value"),
        optional_fields=("op",),
        field_rules={"skill": "non-empty skill name", **_comparison_rules("skill level")},
        validate=_validate_skill,
    ),
    "and": ConditionSpec(
        required_fields=("conditions",),
        optional_fields=(),
        field_rules={"conditions": "non-empty list of conditions, all must pass"},
        validate=lambda condition, context: _validate_group(condition, context, "and"),
    ),
    "or": ConditionSpec(
        required_fields=("conditions",),
        optional_fields=(),
        field_rules={"conditions": "non-empty list of conditions, one must pass"},
        validate=lambda condition, context: _validate_group(condition, context, "or"),
    ),
    "not": ConditionSpec(
        required_fields=("condition",),
        optional_fields=(),
        field_rules={"condition": "condition that must fail"},
        validate=_validate_not,
    ),
}

LEGACY_CONDITION_RULES: Dict[str, str] = {
    "trust": "object with optional integer 'min' and 'max'",
    "relationship": "status or list of statuses",
    "hasKnowledgeFlags": "list of knowledge flags the character must have",
    "lacksKnowledgeFlags": "list of knowledge flags the character must not have",
    "hasGlobalFlags": "list of global flags that must be set",
    "lacksGlobalFlags": "list of global flags that must not be set",
    "patterns": "object mapping pattern names to {'min', 'max'} bounds",
}


def _pattern_changes(value: Any) -> bool:
    return isinstance(value, Mapping) and all(
        pattern in PATTERNS and is_int(delta) for pattern, delta in value.items()
    )


STATE_CHANGE_FIELDS: Dict[str, ChangeFieldSpec] = {
    "addGlobalFlags": ChangeFieldSpec(WIRE_FIELDS["addGlobalFlags"], "list of global flags to set", str_list),
    "removeGlobalFlags": ChangeFieldSpec(
        WIRE_FIELDS["removeGlobalFlags"], "list of global flags to clear", str_list
    ),
    "patternChanges": ChangeFieldSpec(
        WIRE_FIELDS["patternChanges"], "object mapping pattern names to integer deltas", _pattern_changes
    ),
    "characterId": ChangeFieldSpec(
        WIRE_FIELDS["characterId"], "character the trust/relationship/knowledge fields apply to", is_non_empty_str
    ),
    "trustChange": ChangeFieldSpec(WIRE_FIELDS["trustChange"], "integer trust delta (clamped 0-10)", is_int),
    "setRelationshipStatus": ChangeFieldSpec(
        WIRE_FIELDS["setRelationshipStatus"],
        f"one of {', '.join(RELATIONSHIP_STATUSES)}",
        lambda value: value in RELATIONSHIP_STATUSES,
    ),
    "addKnowledgeFlags": ChangeFieldSpec(
        WIRE_FIELDS["addKnowledgeFlags"], "list of knowledge flags to add", str_list
    ),
    "removeKnowledgeFlags": ChangeFieldSpec(
        WIRE_FIELDS["removeKnowledgeFlags"], "list of knowledge flags to remove", str_list
    ),
}

CHARACTER_SCOPED_FIELDS = ("trustChange", "setRelationshipStatus", "addKnowledgeFlags", "removeKnowledgeFlags")


def validate_state_change_fields(change: Mapping[str, Any], context: str) -> List[str]:
    errors: List[str] = []
    for key, value in change.items():
        spec = STATE_CHANGE_FIELDS.get(key)
        if spec is None:
            errors.append(f"{context}: unknown state change field '{key}'.")
        elif not spec.check(value):
            errors.append(f"{context}: '{key}' must be {spec.rule}.")
    if "characterId" not in change:
        scoped = [key for key in CHARACTER_SCOPED_FIELDS if key in change]
        if scoped:
            errors.append(f"{context}: {', '.join(scoped)} requires 'characterId'.")
    return errors


@dataclass(frozen=True)
class TableSpec:
    """Shape of one list-valued table under ``narrative``."""

    description: str
    key_field: str = "id"
    required_fields: Tuple[str, ...] = ("id",)
    character_fields: Tuple[str, ...] = ()
    condition_fields: Tuple[str, ...] = ()
    pattern_fields: Tuple[str, ...] = ()
    pattern_map_fields: Tuple[str, ...] = ()
    int_fields: Tuple[str, ...] = ()


NARRATIVE_TABLES: Dict[str, TableSpec] = {
    "transformations": TableSpec(
        "one-time character moments triggered by trust gains",
        required_fields=("id", "character"),
        character_fields=("character",),
        pattern_map_fields=("required_patterns",),
        int_fields=("trust_min",),
    ),
    "story_arcs": TableSpec(
        "arcs unlocked once their condition holds",
        required_fields=("id", "condition"),
        condition_fields=("condition",),
    ),
    "synthesis_puzzles": TableSpec(
        "puzzles completed by combining knowledge, with optional hints",
        required_fields=("id", "condition"),
        condition_fields=("condition", "hint_condition"),
    ),
    "knowledge_discoveries": TableSpec(
        "announcements for newly learned knowledge flags",
        required_fields=("id", "knowledge_flag"),
        character_fields=("character",),
        int_fields=("trust_min",),
    ),
    "cross_character_echoes": TableSpec(
        "lines another character says after a global flag appears",
        required_fields=("id", "source_flag", "target_character", "text"),
        character_fields=("target_character",),
        pattern_fields=("required_pattern",),
        int_fields=("delay", "required_pattern_min"),
    ),
    "pattern_combos": TableSpec(
        "pattern and knowledge combinations",
        required_fields=("id", "requirements"),
        pattern_map_fields=("requirements",),
    ),
    "iceberg_topics": TableSpec(
        "topics that become investigable after repeated mentions",
        int_fields=("threshold",),
    ),
    "delayed_gifts": TableSpec(
        "lines delivered a few turns after a specific choice",
        required_fields=("id", "choice_id", "target_character", "text"),
        character_fields=("source_character", "target_character"),
        int_fields=("delay",),
    ),
    "arc_completions": TableSpec(
        "character arcs that grant bonus orbs when their flag is set",
        key_field="character",
        required_fields=("character",),
        character_fields=("character",),
        int_fields=("bonus_orbs",),
    ),
}

ECHO_TABLES: Dict[str, str] = {
    "trust_echoes": "character -> positive/negative -> subtle/noticeable/significant -> lines",
    "pattern_echoes": "character (or '*') -> pattern -> lines",
    "milestone_echoes": "milestone key -> lines",
}

TRUST_DIRECTIONS = ("positive", "negative")
TRUST_INTENSITIES = ("subtle", "noticeable", "significant", "any")
