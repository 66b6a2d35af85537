"""Shared schema validation utilities for dialogue content files."""

from __future__ import annotations

from typing import Any, Collection, Dict, Iterable, List, Mapping, Sequence, Set

from engine.orbs import MILESTONE_ORDER
from engine.state import PATTERNS
from engine.world_schema import (
    COMPOUND_CONDITION_TYPES,
    CONDITION_SPECS,
    ECHO_TABLES,
    INTERRUPT_KINDS,
    LEGACY_CONDITION_RULES,
    NARRATIVE_TABLES,
    TRUST_DIRECTIONS,
    TRUST_INTENSITIES,
    format_validation_message,
    is_int,
    is_non_empty_str,
    normalize_nodes,
    path,
    str_list,
    validate_state_change_fields,
)


class ValidationContext:
    """Utility container for accumulating validation errors."""

    def __init__(self) -> None:
        self.errors: List[str] = []

    def add(self, context: str, path_str: str, message: str) -> None:
        self.errors.append(format_validation_message(path_str, context, message))

    def extend(self, messages: Iterable[str]) -> None:
        self.errors.extend(messages)

    def extend_with_path(self, messages: Iterable[str], path_str: str) -> None:
        for message in messages:
            self.errors.append(f"{path_str}: {message}")

    def ok(self) -> bool:
        return not self.errors


def require(condition: bool, context: str, path_str: str, message: str, ctx: ValidationContext) -> None:
    if not condition:
        ctx.add(context, path_str, message)


def _is_list(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, Mapping))


def validate_condition(
    condition: Any, context: str, path_parts: Sequence[object], ctx: ValidationContext
) -> None:
    if condition in (None, {}):
        return
    if _is_list(condition):
        if not condition:
            ctx.add(context, path(*path_parts), "condition list must not be empty.")
            return
        for idx, sub in enumerate(condition, start=1):
            if not isinstance(sub, Mapping):
                ctx.add(
                    context,
                    path(*path_parts, idx - 1),
                    f"condition list entry {idx} must be an object.",
                )
                continue
            validate_condition(sub, f"{context} (entry {idx})", (*path_parts, idx - 1), ctx)
        return
    if not isinstance(condition, Mapping):
        ctx.add(context, path(*path_parts), "condition must be an object or null.")
        return

    cond_type = condition.get("type")
    if cond_type is None:
        for key in condition:
            if key not in LEGACY_CONDITION_RULES:
                ctx.add(context, path(*path_parts, key), f"unknown required-state key '{key}'.")
        return

    spec = CONDITION_SPECS.get(cond_type)
    if spec is None:
        ctx.add(context, path(*path_parts, "type"), f"unsupported condition type '{cond_type}'.")
        return
    ctx.extend_with_path(spec.validate(condition, context), path(*path_parts))

    if cond_type not in COMPOUND_CONDITION_TYPES:
        return
    if cond_type == "not":
        validate_condition(condition.get("condition"), f"{context} (not)", (*path_parts, "condition"), ctx)
        return
    entries = condition.get("conditions")
    if _is_list(entries):
        for idx, sub in enumerate(entries, start=1):
            validate_condition(
                sub, f"{context} ({cond_type} {idx})", (*path_parts, "conditions", idx - 1), ctx
            )


def validate_state_change(
    change: Any,
    context: str,
    characters: Collection[str],
    path_parts: Sequence[object],
    ctx: ValidationContext,
) -> None:
    if not isinstance(change, Mapping):
        ctx.add(context, path(*path_parts), "state change must be an object.")
        return
    ctx.extend_with_path(validate_state_change_fields(change, context), path(*path_parts))
    character_id = change.get("characterId")
    if is_non_empty_str(character_id) and character_id not in characters:
        ctx.add(context, path(*path_parts, "characterId"), f"references unknown character '{character_id}'.")


def validate_choice(
    choice: Any,
    node_id: str,
    index: int,
    node_ids: Collection[str],
    characters: Collection[str],
    path_parts: Sequence[object],
    ctx: ValidationContext,
) -> None:
    context = f"Choice {index} in node '{node_id}'"
    if not isinstance(choice, Mapping):
        ctx.add(context, path(*path_parts), "must be an object.")
        return

    choice_id = choice.get("id")
    if choice_id is not None and not is_non_empty_str(choice_id):
        ctx.add(context, path(*path_parts, "id"), "'id' must be a non-empty string when provided.")

    require(is_non_empty_str(choice.get("text")), context, path(*path_parts, "text"), "requires non-empty 'text'.", ctx)

    target = choice.get("target")
    if target is None:
        ctx.add(context, path(*path_parts, "target"), "is missing a 'target'.")
    elif not is_non_empty_str(target):
        ctx.add(context, path(*path_parts, "target"), "must use a non-empty string 'target'.")
    elif target not in node_ids:
        ctx.add(context, path(*path_parts, "target"), f"targets unknown node '{target}'.")

    validate_condition(choice.get("visible_if"), context, (*path_parts, "visible_if"), ctx)
    validate_condition(choice.get("enabled_if"), context, (*path_parts, "enabled_if"), ctx)

    pattern = choice.get("pattern")
    if pattern is not None and pattern not in PATTERNS:
        ctx.add(context, path(*path_parts, "pattern"), f"unknown pattern '{pattern}'.")

    consequence = choice.get("consequence")
    if consequence is not None:
        validate_state_change(consequence, context, characters, (*path_parts, "consequence"), ctx)

    orb_fill = choice.get("required_orb_fill")
    if orb_fill is not None:
        if not isinstance(orb_fill, Mapping):
            ctx.add(context, path(*path_parts, "required_orb_fill"), "must be an object.")
        else:
            if orb_fill.get("pattern") not in PATTERNS:
                ctx.add(
                    context,
                    path(*path_parts, "required_orb_fill", "pattern"),
                    f"must be one of {', '.join(PATTERNS)}.",
                )
            threshold = orb_fill.get("threshold")
            if not is_int(threshold) or not 0 <= threshold <= 100:
                ctx.add(
                    context,
                    path(*path_parts, "required_orb_fill", "threshold"),
                    "must be an integer between 0 and 100.",
                )


def _validate_content_block(node: Mapping[str, Any], context: str, base: Sequence[object], ctx: ValidationContext) -> None:
    content = node.get("content")
    if content is None:
        require(
            is_non_empty_str(node.get("text")),
            context,
            path(*base, "text"),
            "requires non-empty 'text' or a 'content' list.",
            ctx,
        )
        return
    if not _is_list(content) or not content:
        ctx.add(context, path(*base, "content"), "'content' must be a non-empty list.")
        return
    for idx, entry in enumerate(content):
        if isinstance(entry, str):
            continue
        if not isinstance(entry, Mapping) or not is_non_empty_str(entry.get("text")):
            ctx.add(context, path(*base, "content", idx), "must be a string or an object with 'text'.")
            continue
        validate_condition(entry.get("condition"), context, (*base, "content", idx, "condition"), ctx)


def validate_node(
    node: Mapping[str, Any],
    node_id: str,
    node_ids: Collection[str],
    characters: Collection[str],
    base: Sequence[object],
    ctx: ValidationContext,
) -> None:
    context = f"Node '{node_id}'"
    speaker = node.get("speaker")
    if speaker is not None and not isinstance(speaker, str):
        ctx.add(context, path(*base, "speaker"), "'speaker' must be a string.")

    _validate_content_block(node, context, base, ctx)

    on_enter = node.get("on_enter")
    if on_enter is not None:
        if not _is_list(on_enter):
            ctx.add(context, path(*base, "on_enter"), "on_enter must be a list of state changes if present.")
        else:
            for idx, change in enumerate(on_enter, start=1):
                validate_state_change(
                    change, f"{context} on_enter change {idx}", characters, (*base, "on_enter", idx - 1), ctx
                )

    validate_condition(node.get("required_state"), context, (*base, "required_state"), ctx)

    interrupt = node.get("interrupt")
    if interrupt is not None:
        if not isinstance(interrupt, Mapping):
            ctx.add(context, path(*base, "interrupt"), "interrupt must be an object.")
        else:
            target = interrupt.get("target")
            if not is_non_empty_str(target) or target not in node_ids:
                ctx.add(context, path(*base, "interrupt", "target"), f"targets unknown node '{target}'.")
            duration = interrupt.get("duration_ms")
            if not is_int(duration) or duration <= 0:
                ctx.add(context, path(*base, "interrupt", "duration_ms"), "must be a positive integer.")
            kind = interrupt.get("type", "silence")
            if kind not in INTERRUPT_KINDS:
                ctx.add(context, path(*base, "interrupt", "type"), f"unknown interrupt type '{kind}'.")
            if interrupt.get("consequence") is not None:
                validate_state_change(
                    interrupt["consequence"], context, characters, (*base, "interrupt", "consequence"), ctx
                )

    terminal = node.get("terminal")
    if terminal is not None and not isinstance(terminal, bool):
        ctx.add(context, path(*base, "terminal"), "'terminal' must be true or false.")

    tags = node.get("tags")
    if tags is not None and not str_list(tags):
        ctx.add(context, path(*base, "tags"), "'tags' must be a list of strings.")

    choices = node.get("choices")
    if choices is None:
        return
    if not _is_list(choices):
        ctx.add(context, path(*base, "choices"), "choices must be provided as a list.")
        return
    seen: Set[str] = set()
    for index, choice in enumerate(choices, start=1):
        validate_choice(choice, node_id, index, node_ids, characters, (*base, "choices", index - 1), ctx)
        choice_id = choice.get("id") if isinstance(choice, Mapping) else None
        if is_non_empty_str(choice_id):
            if choice_id in seen:
                ctx.add(context, path(*base, "choices", index - 1, "id"), f"duplicate choice id '{choice_id}'.")
            seen.add(choice_id)


def _validate_echo_lines(lines: Any, context: str, path_parts: Sequence[object], ctx: ValidationContext) -> None:
    if isinstance(lines, str):
        lines = [lines]
    if not _is_list(lines) or not lines:
        ctx.add(context, path(*path_parts), "must be a non-empty list of lines.")
        return
    for idx, line in enumerate(lines):
        if isinstance(line, str) and line.strip():
            continue
        if isinstance(line, Mapping) and is_non_empty_str(line.get("text")):
            continue
        ctx.add(context, path(*path_parts, idx), "must be a string or an object with 'text'.")


def _validate_echo_tables(narrative: Mapping[str, Any], characters: Collection[str], ctx: ValidationContext) -> None:
    trust_echoes = narrative.get("trust_echoes", {})
    if not isinstance(trust_echoes, Mapping):
        ctx.add("Narrative", path("narrative", "trust_echoes"), "must be an object.")
        trust_echoes = {}
    for character_id, directions in trust_echoes.items():
        base = ("narrative", "trust_echoes", character_id)
        if character_id not in characters:
            ctx.add("Trust echoes", path(*base), f"references unknown character '{character_id}'.")
        if not isinstance(directions, Mapping):
            ctx.add("Trust echoes", path(*base), "must map directions to lines.")
            continue
        for direction, intensities in directions.items():
            if direction not in TRUST_DIRECTIONS:
                ctx.add("Trust echoes", path(*base, direction), f"unknown direction '{direction}'.")
                continue
            if not isinstance(intensities, Mapping):
                _validate_echo_lines(intensities, "Trust echoes", (*base, direction), ctx)
                continue
            for intensity, lines in intensities.items():
                if intensity not in TRUST_INTENSITIES:
                    ctx.add("Trust echoes", path(*base, direction, intensity), f"unknown intensity '{intensity}'.")
                    continue
                _validate_echo_lines(lines, "Trust echoes", (*base, direction, intensity), ctx)

    pattern_echoes = narrative.get("pattern_echoes", {})
    if not isinstance(pattern_echoes, Mapping):
        ctx.add("Narrative", path("narrative", "pattern_echoes"), "must be an object.")
        pattern_echoes = {}
    for character_id, patterns in pattern_echoes.items():
        base = ("narrative", "pattern_echoes", character_id)
        if character_id != "*" and character_id not in characters:
            ctx.add("Pattern echoes", path(*base), f"references unknown character '{character_id}'.")
        if not isinstance(patterns, Mapping):
            ctx.add("Pattern echoes", path(*base), "must map patterns to lines.")
            continue
        for pattern, lines in patterns.items():
            if pattern not in PATTERNS:
                ctx.add("Pattern echoes", path(*base, pattern), f"unknown pattern '{pattern}'.")
                continue
            _validate_echo_lines(lines, "Pattern echoes", (*base, pattern), ctx)

    milestone_echoes = narrative.get("milestone_echoes", {})
    if not isinstance(milestone_echoes, Mapping):
        ctx.add("Narrative", path("narrative", "milestone_echoes"), "must be an object.")
        milestone_echoes = {}
    for key, lines in milestone_echoes.items():
        if key not in MILESTONE_ORDER:
            ctx.add("Milestone echoes", path("narrative", "milestone_echoes", key), f"unknown milestone '{key}'.")
            continue
        _validate_echo_lines(lines, "Milestone echoes", ("narrative", "milestone_echoes", key), ctx)


def validate_narrative(
    narrative: Any,
    characters: Collection[str],
    choice_ids: Collection[str],
    ctx: ValidationContext,
) -> None:
    if narrative is None:
        return
    if not isinstance(narrative, Mapping):
        ctx.add("Content data", path("narrative"), "'narrative' must be an object.")
        return

    for key in narrative:
        if key not in NARRATIVE_TABLES and key not in ECHO_TABLES:
            ctx.add("Narrative", path("narrative", key), f"unknown narrative table '{key}'.")
    _validate_echo_tables(narrative, characters, ctx)

    for table, spec in NARRATIVE_TABLES.items():
        entries = narrative.get(table)
        if entries is None:
            continue
        if not _is_list(entries):
            ctx.add("Narrative", path("narrative", table), f"'{table}' must be a list.")
            continue
        seen: Set[str] = set()
        for idx, entry in enumerate(entries, start=1):
            base = ("narrative", table, idx - 1)
            context = f"{table} entry {idx}"
            if not isinstance(entry, Mapping):
                ctx.add(context, path(*base), "must be an object.")
                continue
            for name in spec.required_fields:
                if entry.get(name) in (None, "", [], {}):
                    ctx.add(context, path(*base, name), f"requires '{name}'.")
            key = entry.get(spec.key_field)
            if is_non_empty_str(key):
                if key in seen:
                    ctx.add(context, path(*base, spec.key_field), f"duplicate {spec.key_field} '{key}'.")
                seen.add(key)
            for name in spec.character_fields:
                value = entry.get(name)
                if is_non_empty_str(value) and value not in characters:
                    ctx.add(context, path(*base, name), f"references unknown character '{value}'.")
            for name in spec.condition_fields:
                validate_condition(entry.get(name), context, (*base, name), ctx)
            for name in spec.pattern_fields:
                value = entry.get(name)
                if value is not None and value not in PATTERNS:
                    ctx.add(context, path(*base, name), f"unknown pattern '{value}'.")
            for name in spec.pattern_map_fields:
                value = entry.get(name)
                if value is None:
                    continue
                if not isinstance(value, Mapping):
                    ctx.add(context, path(*base, name), "must map patterns to integer minimums.")
                    continue
                for pattern, minimum in value.items():
                    if pattern not in PATTERNS or not is_int(minimum):
                        ctx.add(context, path(*base, name, pattern), "must map a known pattern to an integer.")
            for name in spec.int_fields:
                value = entry.get(name)
                if value is not None and not is_int(value):
                    ctx.add(context, path(*base, name), f"'{name}' must be an integer.")
            if table == "delayed_gifts":
                choice_id = entry.get("choice_id")
                if is_non_empty_str(choice_id) and choice_id not in choice_ids:
                    ctx.add(context, path(*base, "choice_id"), f"references unknown choice '{choice_id}'.")


def collect_character_nodes(
    characters: Mapping[str, Any], ctx: ValidationContext | None = None
) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """Normalise every character's nodes into ``{character: {node_id: node}}``."""
    graphs: Dict[str, Dict[str, Dict[str, Any]]] = {}
    for character_id, payload in characters.items():
        if not isinstance(payload, Mapping):
            if ctx is not None:
                ctx.add("Characters", path("characters", character_id), "character must be an object.")
            continue
        nodes, _errors = normalize_nodes(payload.get("nodes"), ctx, base=("characters", character_id, "nodes"))
        graphs[character_id] = nodes
    return graphs


def validate_content(content: Mapping[str, Any]) -> List[str]:
    ctx = ValidationContext()

    require(
        is_non_empty_str(content.get("title")),
        "Content data",
        path("title"),
        "must include a non-empty 'title'.",
        ctx,
    )

    characters = content.get("characters")
    if not isinstance(characters, Mapping) or not characters:
        ctx.add("Content data", path("characters"), "must include a non-empty 'characters' object.")
        return ctx.errors

    graphs = collect_character_nodes(characters, ctx)
    owners: Dict[str, str] = {}
    for character_id, nodes in graphs.items():
        for node_id in nodes:
            if node_id in owners:
                ctx.add(
                    "Nodes",
                    path("characters", character_id, "nodes", node_id),
                    f"node '{node_id}' is already defined by '{owners[node_id]}'.",
                )
                continue
            owners[node_id] = character_id

    character_ids = list(graphs)
    choice_ids: Set[str] = set()
    for character_id, nodes in graphs.items():
        payload = characters[character_id]
        name = payload.get("name")
        if name is not None and not is_non_empty_str(name):
            ctx.add(f"Character '{character_id}'", path("characters", character_id, "name"), "'name' must be a non-empty string.")
        start_node = payload.get("start_node")
        if start_node is not None and start_node not in nodes:
            ctx.add(
                f"Character '{character_id}'",
                path("characters", character_id, "start_node"),
                f"start node '{start_node}' is not one of this character's nodes.",
            )
        if not nodes:
            ctx.add(f"Character '{character_id}'", path("characters", character_id, "nodes"), "must define at least one node.")
        for node_id, node in nodes.items():
            validate_node(node, node_id, owners, character_ids, ("characters", character_id, "nodes", node_id), ctx)
            for choice in node.get("choices") or []:
                if isinstance(choice, Mapping) and is_non_empty_str(choice.get("id")):
                    choice_ids.add(choice["id"])

    starts = content.get("starts", [])
    if _is_list(starts):
        for idx, start in enumerate(starts, start=1):
            context = f"Start entry {idx}"
            if not isinstance(start, Mapping):
                ctx.add(context, path("starts", idx - 1), "must be an object.")
                continue
            node_ref = start.get("node")
            if not is_non_empty_str(node_ref):
                ctx.add(context, path("starts", idx - 1, "node"), "requires a non-empty 'node'.")
                continue
            if node_ref not in owners:
                ctx.add(context, path("starts", idx - 1, "node"), f"references unknown node '{node_ref}'.")
                continue
            character_ref = start.get("character")
            if character_ref is not None and character_ref != owners[node_ref]:
                ctx.add(
                    context,
                    path("starts", idx - 1, "character"),
                    f"node '{node_ref}' belongs to '{owners[node_ref]}', not '{character_ref}'.",
                )
    else:
        ctx.add("Content data", path("starts"), "'starts' must be a list of start definitions if present.")

    fallback = content.get("fallback_node")
    if fallback is not None and fallback not in owners:
        ctx.add("Content data", path("fallback_node"), f"references unknown node '{fallback}'.")

    hub = content.get("hub_character")
    if hub is not None and hub not in graphs:
        ctx.add("Content data", path("hub_character"), f"references unknown character '{hub}'.")

    validate_narrative(content.get("narrative"), character_ids, choice_ids, ctx)
    return ctx.errors
