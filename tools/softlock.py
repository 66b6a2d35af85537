"""Soft-lock analysis helpers for content validation."""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from engine.schema import collect_character_nodes
from engine.world_schema import path

# Conditions that start out false for a fresh game state.
GATED_CONDITION_TYPES = {
    "has_flag",
    "has_knowledge",
    "orb_fill",
    "pattern",
    "relationship",
    "skill",
    "trust",
}


def _is_gated_condition(condition: Any) -> bool:
    if condition in (None, {}, []):
        return False
    if isinstance(condition, Sequence) and not isinstance(condition, (str, bytes, Mapping)):
        return any(_is_gated_condition(entry) for entry in condition)
    if not isinstance(condition, Mapping):
        return True
    cond_type = condition.get("type")
    if cond_type is None:
        # Legacy required-state blocks always constrain something.
        return True
    if cond_type == "and":
        return any(_is_gated_condition(entry) for entry in condition.get("conditions") or ())
    if cond_type == "or":
        entries = condition.get("conditions") or ()
        return bool(entries) and all(_is_gated_condition(entry) for entry in entries)
    if cond_type == "not":
        return True
    return cond_type in GATED_CONDITION_TYPES


def _iter_choices(
    graphs: Mapping[str, Mapping[str, Any]],
) -> Iterable[Tuple[str, str, int, Mapping[str, Any], Tuple[object, ...]]]:
    for character_id, nodes in graphs.items():
        for node_id, node in nodes.items():
            choices = node.get("choices")
            if not isinstance(choices, Sequence) or isinstance(choices, (str, bytes)):
                continue
            for index, choice in enumerate(choices):
                if isinstance(choice, Mapping) and isinstance(choice.get("target"), str):
                    yield (
                        character_id,
                        node_id,
                        index,
                        choice,
                        ("characters", character_id, "nodes", node_id, "choices", index, "target"),
                    )


def analyze_softlocks(content: Mapping[str, Any]) -> List[str]:
    """Warn about nodes whose every exit is gated.

    Orb fill requirements alone never gate a node because the lowest one is
    always unlocked when nothing else is available.
    """
    characters = content.get("characters")
    if not isinstance(characters, Mapping):
        return []
    graphs = collect_character_nodes(characters)
    nodes: Dict[str, Mapping[str, Any]] = {}
    for character_nodes in graphs.values():
        nodes.update(character_nodes)

    choice_meta: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for _character_id, node_id, index, choice, target_path in _iter_choices(graphs):
        gated = _is_gated_condition(choice.get("visible_if")) or _is_gated_condition(choice.get("enabled_if"))
        choice_meta[node_id].append(
            {
                "index": index,
                "target": choice["target"],
                "gated": gated,
                "path": path(*target_path),
            }
        )

    warnings: List[str] = []
    for character_id, character_nodes in graphs.items():
        for node_id in character_nodes:
            choices = choice_meta.get(node_id, [])
            if choices and not any(not choice["gated"] for choice in choices):
                choice_paths = ", ".join(choice["path"] for choice in choices)
                warnings.append(
                    f"{path('characters', character_id, 'nodes', node_id)}: all choices are gated."
                    f" Choices: {choice_paths}."
                )

    starts = content.get("starts", [])
    if not isinstance(starts, Sequence) or isinstance(starts, (str, bytes)):
        starts = []
    start_nodes = [
        start["node"] for start in starts if isinstance(start, Mapping) and isinstance(start.get("node"), str)
    ]

    def traverse(start_node: str) -> List[str]:
        visited: set[str] = set()
        queue: deque[str] = deque([start_node])
        chain_warnings: List[str] = []
        while queue:
            node_id = queue.popleft()
            if node_id in visited:
                continue
            visited.add(node_id)
            choices = choice_meta.get(node_id, [])
            ungated = [choice for choice in choices if not choice["gated"]]
            if choices and not ungated:
                chain_warnings.append(
                    f"traversal from start '{start_node}' hit '{node_id}' with no ungated exits."
                )
            for choice in ungated:
                if choice["target"] in nodes:
                    queue.append(choice["target"])
        return chain_warnings

    for start_node in start_nodes:
        if start_node in nodes:
            warnings.extend(traverse(start_node))

    return warnings
