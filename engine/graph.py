"""Dialogue graph types and the registry that indexes every node."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from engine.state import frozen_mapping
from engine.state_change import StateChange


@dataclass(frozen=True)
class OrbFillRequirement:
    pattern: str
    threshold: int


@dataclass(frozen=True)
class ContentVariation:
    text: str
    emotion: Optional[str] = None
    condition: Any = None


@dataclass(frozen=True)
class InterruptWindow:
    """A time-boxed alternate branch offered while a node is on screen."""

    duration_ms: int
    kind: str
    target_node_id: str
    text: str = ""
    consequence: Optional[StateChange] = None


@dataclass(frozen=True)
class Choice:
    choice_id: str
    text: str
    target: str
    visible_if: Any = None
    enabled_if: Any = None
    pattern: Optional[str] = None
    consequence: Optional[StateChange] = None
    required_orb_fill: Optional[OrbFillRequirement] = None


@dataclass(frozen=True)
class DialogueNode:
    node_id: str
    speaker: str = ""
    content: Tuple[ContentVariation, ...] = ()
    on_enter: Tuple[StateChange, ...] = ()
    required_state: Any = None
    interrupt: Optional[InterruptWindow] = None
    choices: Tuple[Choice, ...] = ()
    terminal: bool = False
    tags: Tuple[str, ...] = ()

    def choice(self, choice_id: str) -> Optional[Choice]:
        for choice in self.choices:
            if choice.choice_id == choice_id:
                return choice
        return None


@dataclass(frozen=True)
class DialogueGraph:
    character_id: str
    name: str
    start_node_id: str
    nodes: Mapping[str, DialogueNode] = field(default_factory=frozen_mapping)


@dataclass(frozen=True)
class NodeLocation:
    character_id: str
    node: DialogueNode


def _orb_requirement(data: Any) -> Optional[OrbFillRequirement]:
    if not isinstance(data, Mapping):
        return None
    pattern = data.get("pattern")
    threshold = data.get("threshold")
    if not isinstance(pattern, str) or not isinstance(threshold, int):
        return None
    return OrbFillRequirement(pattern=pattern, threshold=threshold)


def choice_from_dict(data: Mapping[str, Any], index: int, node_id: str) -> Choice:
    consequence = data.get("consequence")
    pattern = data.get("pattern")
    return Choice(
        choice_id=str(data.get("id") or f"{node_id}#{index}"),
        text=str(data.get("text", "")),
        target=str(data.get("target", "")),
        visible_if=data.get("visible_if"),
        enabled_if=data.get("enabled_if"),
        pattern=pattern if isinstance(pattern, str) and pattern else None,
        consequence=StateChange.from_dict(consequence) if consequence else None,
        required_orb_fill=_orb_requirement(data.get("required_orb_fill")),
    )


def _content_from_dict(data: Mapping[str, Any]) -> Tuple[ContentVariation, ...]:
    raw = data.get("content")
    variations: List[ContentVariation] = []
    if isinstance(raw, list):
        for entry in raw:
            if isinstance(entry, str):
                variations.append(ContentVariation(text=entry))
            elif isinstance(entry, Mapping):
                variations.append(
                    ContentVariation(
                        text=str(entry.get("text", "")),
                        emotion=entry.get("emotion"),
                        condition=entry.get("condition"),
                    )
                )
    if not variations and isinstance(data.get("text"), str):
        variations.append(ContentVariation(text=data["text"], emotion=data.get("emotion")))
    return tuple(variations)


def _interrupt_from_dict(data: Any) -> Optional[InterruptWindow]:
    if not isinstance(data, Mapping) or not isinstance(data.get("target"), str):
        return None
    consequence = data.get("consequence")
    return InterruptWindow(
        duration_ms=int(data.get("duration_ms", 0) or 0),
        kind=str(data.get("type", "silence")),
        target_node_id=data["target"],
        text=str(data.get("text", "")),
        consequence=StateChange.from_dict(consequence) if consequence else None,
    )


def node_from_dict(node_id: str, data: Mapping[str, Any]) -> DialogueNode:
    on_enter = data.get("on_enter") or []
    choices = data.get("choices") or []
    tags = data.get("tags") or []
    return DialogueNode(
        node_id=node_id,
        speaker=str(data.get("speaker", "")),
        content=_content_from_dict(data),
        on_enter=tuple(StateChange.from_dict(entry) for entry in on_enter if isinstance(entry, Mapping)),
        required_state=data.get("required_state"),
        interrupt=_interrupt_from_dict(data.get("interrupt")),
        choices=tuple(
            choice_from_dict(choice, index, node_id)
            for index, choice in enumerate(choices)
            if isinstance(choice, Mapping)
        ),
        terminal=bool(data.get("terminal", False)),
        tags=tuple(tag for tag in tags if isinstance(tag, str)),
    )


class GraphRegistry:
    """Read-only set of character graphs with a flat node-id index.

    Node ids are unique across every registered graph, so a single dictionary
    answers "which character owns this node" for cross-graph jumps.
    """

    def __init__(self, graphs: Mapping[str, DialogueGraph]) -> None:
        self._graphs: Dict[str, DialogueGraph] = dict(graphs)
        self._index: Dict[str, NodeLocation] = {}
        for character_id, graph in self._graphs.items():
            for node_id, node in graph.nodes.items():
                if node_id in self._index:
                    owner = self._index[node_id].character_id
                    raise ValueError(
                        f"Node '{node_id}' is defined by both '{owner}' and '{character_id}'."
                    )
                self._index[node_id] = NodeLocation(character_id=character_id, node=node)

    @classmethod
    def from_dict(cls, characters: Mapping[str, Mapping[str, Any]]) -> "GraphRegistry":
        """Build from ``{character_id: {"name", "start_node", "nodes": {id: node}}}``."""
        graphs: Dict[str, DialogueGraph] = {}
        for character_id, payload in characters.items():
            nodes = payload.get("nodes") or {}
            graphs[character_id] = DialogueGraph(
                character_id=character_id,
                name=str(payload.get("name") or character_id.title()),
                start_node_id=str(payload.get("start_node") or next(iter(nodes), "")),
                nodes=frozen_mapping(
                    {node_id: node_from_dict(node_id, node) for node_id, node in nodes.items()}
                ),
            )
        return cls(graphs)

    @property
    def graphs(self) -> Mapping[str, DialogueGraph]:
        return frozen_mapping(self._graphs)

    def graph(self, character_id: str) -> Optional[DialogueGraph]:
        return self._graphs.get(character_id)

    def locate(self, node_id: str) -> Optional[NodeLocation]:
        return self._index.get(node_id)

    def node(self, node_id: str) -> Optional[DialogueNode]:
        location = self._index.get(node_id)
        return location.node if location is not None else None

    def character_name(self, character_id: Optional[str]) -> str:
        graph = self._graphs.get(character_id) if character_id else None
        if graph is not None:
            return graph.name
        return (character_id or "").title()

    def node_ids(self) -> List[str]:
        return list(self._index)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def __iter__(self) -> Iterator[NodeLocation]:
        return iter(self._index.values())

    def __len__(self) -> int:
        return len(self._index)
