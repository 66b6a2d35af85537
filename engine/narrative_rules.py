"""Authorable rule tables consumed by the consequence pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from engine.state import frozen_mapping


@dataclass(frozen=True)
class EchoLine:
    text: str
    emotion: Optional[str] = None


EchoLibrary = Tuple[EchoLine, ...]

DEFAULT_MILESTONE_ECHOES: Dict[str, EchoLibrary] = {
    "firstOrb": (EchoLine("Your choices are starting to leave a shape behind.", "knowing"),),
    "tier_emerging": (EchoLine("A pattern is forming in the way you choose.", "warm"),),
    "tier_developing": (EchoLine("Your way of seeing is taking hold.", "knowing"),),
    "tier_flourishing": (EchoLine("People here have started to notice you.", "moved"),),
    "tier_mastered": (EchoLine("You know who you are now.", "proud"),),
    "streak3": (EchoLine("Three alike in a row. You are finding a rhythm.", "warm"),),
    "streak5": (EchoLine("Five choices with one voice.", "knowing"),),
    "streak10": (EchoLine("Ten in a row. That is conviction.", "proud"),),
    "arcComplete": (EchoLine("A chapter closes and new paths open.", "warm"),),
}


@dataclass(frozen=True)
class Transformation:
    transformation_id: str
    character_id: str
    trust_min: int = 0
    required_flags: Tuple[str, ...] = ()
    required_patterns: Mapping[str, int] = field(default_factory=frozen_mapping)
    trigger_dialogue: Tuple[str, ...] = ()
    emotion_arc: Tuple[str, ...] = ()
    global_flags_set: Tuple[str, ...] = ()
    new_relationship: Optional[str] = None


@dataclass(frozen=True)
class StoryArc:
    arc_id: str
    condition: Any
    text: str = ""
    emotion: Optional[str] = None
    flag: str = ""

    @property
    def unlock_flag(self) -> str:
        return self.flag or f"story_arc_{self.arc_id}_unlocked"


@dataclass(frozen=True)
class SynthesisPuzzle:
    puzzle_id: str
    condition: Any
    text: str = ""
    hint_condition: Any = None
    hint_text: str = ""
    reward_flag: str = ""

    @property
    def completion_flag(self) -> str:
        return self.reward_flag or f"puzzle_{self.puzzle_id}_solved"


@dataclass(frozen=True)
class KnowledgeDiscovery:
    discovery_id: str
    character_id: str
    knowledge_flag: str
    text: str = ""
    trust_min: Optional[int] = None


@dataclass(frozen=True)
class CrossCharacterEcho:
    echo_id: str
    source_flag: str
    target_character: str
    text: str
    emotion: Optional[str] = None
    delay: int = 0
    required_pattern: Optional[str] = None
    required_pattern_min: int = 0


@dataclass(frozen=True)
class PatternCombo:
    combo_id: str
    requirements: Mapping[str, int] = field(default_factory=frozen_mapping)
    required_knowledge: Tuple[str, ...] = ()
    text: str = ""

    @property
    def achieved_flag(self) -> str:
        return f"combo_{self.combo_id}_achieved"


@dataclass(frozen=True)
class IcebergTopic:
    topic_id: str
    threshold: int = 3
    text: str = ""

    @property
    def investigable_flag(self) -> str:
        return f"iceberg_{self.topic_id}_investigable"


@dataclass(frozen=True)
class DelayedGift:
    gift_id: str
    choice_id: str
    source_character: str
    target_character: str
    text: str
    emotion: Optional[str] = None
    delay: int = 1


@dataclass(frozen=True)
class ArcCompletion:
    character_id: str
    flag: str = ""
    bonus_orbs: int = 5
    text: str = ""

    @property
    def completion_flag(self) -> str:
        return self.flag or f"{self.character_id}_arc_complete"


def _str(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def _strs(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list):
        return tuple(item for item in value if isinstance(item, str))
    return ()


def _int_map(value: Any) -> Mapping[str, int]:
    if not isinstance(value, Mapping):
        return frozen_mapping()
    return frozen_mapping({k: v for k, v in value.items() if isinstance(k, str) and _int(v, None) is not None})


def _lines(value: Any) -> EchoLibrary:
    if isinstance(value, (str, Mapping)):
        value = [value]
    if not isinstance(value, list):
        return ()
    lines: List[EchoLine] = []
    for entry in value:
        if isinstance(entry, str):
            lines.append(EchoLine(entry))
        elif isinstance(entry, Mapping) and isinstance(entry.get("text"), str):
            lines.append(EchoLine(entry["text"], entry.get("emotion")))
    return tuple(lines)


def _mapping(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def _entries(data: Mapping[str, Any], key: str) -> List[Mapping[str, Any]]:
    value = data.get(key)
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, Mapping)]


@dataclass(frozen=True)
class NarrativeRules:
    """Every table the pipeline reads, in one immutable bundle."""

    trust_echoes: Mapping[str, Mapping[str, Mapping[str, EchoLibrary]]] = field(default_factory=frozen_mapping)
    pattern_echoes: Mapping[str, Mapping[str, EchoLibrary]] = field(default_factory=frozen_mapping)
    milestone_echoes: Mapping[str, EchoLibrary] = field(
        default_factory=lambda: frozen_mapping(DEFAULT_MILESTONE_ECHOES)
    )
    transformations: Tuple[Transformation, ...] = ()
    story_arcs: Tuple[StoryArc, ...] = ()
    synthesis_puzzles: Tuple[SynthesisPuzzle, ...] = ()
    knowledge_discoveries: Tuple[KnowledgeDiscovery, ...] = ()
    cross_character_echoes: Tuple[CrossCharacterEcho, ...] = ()
    pattern_combos: Tuple[PatternCombo, ...] = ()
    iceberg_topics: Tuple[IcebergTopic, ...] = ()
    delayed_gifts: Tuple[DelayedGift, ...] = ()
    arc_completions: Tuple[ArcCompletion, ...] = ()

    def trust_lines(self, character_id: str, direction: str, intensity: str) -> EchoLibrary:
        by_direction = self.trust_echoes.get(character_id, {}).get(direction, {})
        return by_direction.get(intensity) or by_direction.get("any") or ()

    def pattern_lines(self, character_id: str, pattern: str) -> EchoLibrary:
        lines = self.pattern_echoes.get(character_id, {}).get(pattern)
        if lines:
            return lines
        return self.pattern_echoes.get("*", {}).get(pattern, ())

    def echo_by_id(self, echo_id: str) -> Optional[CrossCharacterEcho]:
        for echo in self.cross_character_echoes:
            if echo.echo_id == echo_id:
                return echo
        return None

    def gift_by_id(self, gift_id: str) -> Optional[DelayedGift]:
        for gift in self.delayed_gifts:
            if gift.gift_id == gift_id:
                return gift
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "NarrativeRules":
        if not isinstance(data, Mapping):
            return cls()

        trust_echoes: Dict[str, Mapping[str, Mapping[str, EchoLibrary]]] = {}
        for character_id, directions in _mapping(data, "trust_echoes").items():
            if not isinstance(directions, Mapping):
                continue
            parsed: Dict[str, Mapping[str, EchoLibrary]] = {}
            for direction, intensities in directions.items():
                if isinstance(intensities, Mapping):
                    parsed[direction] = frozen_mapping(
                        {name: _lines(lines) for name, lines in intensities.items()}
                    )
                else:
                    parsed[direction] = frozen_mapping({"any": _lines(intensities)})
            trust_echoes[character_id] = frozen_mapping(parsed)

        pattern_echoes: Dict[str, Mapping[str, EchoLibrary]] = {}
        for character_id, patterns in _mapping(data, "pattern_echoes").items():
            if isinstance(patterns, Mapping):
                pattern_echoes[character_id] = frozen_mapping(
                    {pattern: _lines(lines) for pattern, lines in patterns.items()}
                )

        milestone_echoes = dict(DEFAULT_MILESTONE_ECHOES)
        for key, lines in _mapping(data, "milestone_echoes").items():
            parsed_lines = _lines(lines)
            if parsed_lines:
                milestone_echoes[key] = parsed_lines

        return cls(
            trust_echoes=frozen_mapping(trust_echoes),
            pattern_echoes=frozen_mapping(pattern_echoes),
            milestone_echoes=frozen_mapping(milestone_echoes),
            transformations=tuple(
                Transformation(
                    transformation_id=_str(entry.get("id")),
                    character_id=_str(entry.get("character")),
                    trust_min=_int(entry.get("trust_min")),
                    required_flags=_strs(entry.get("required_flags")),
                    required_patterns=_int_map(entry.get("required_patterns")),
                    trigger_dialogue=_strs(entry.get("trigger_dialogue")),
                    emotion_arc=_strs(entry.get("emotion_arc")),
                    global_flags_set=_strs(entry.get("global_flags_set")),
                    new_relationship=entry.get("new_relationship") or None,
                )
                for entry in _entries(data, "transformations")
            ),
            story_arcs=tuple(
                StoryArc(
                    arc_id=_str(entry.get("id")),
                    condition=entry.get("condition"),
                    text=_str(entry.get("text")),
                    emotion=entry.get("emotion"),
                    flag=_str(entry.get("flag")),
                )
                for entry in _entries(data, "story_arcs")
            ),
            synthesis_puzzles=tuple(
                SynthesisPuzzle(
                    puzzle_id=_str(entry.get("id")),
                    condition=entry.get("condition"),
                    text=_str(entry.get("text")),
                    hint_condition=entry.get("hint_condition"),
                    hint_text=_str(entry.get("hint_text")),
                    reward_flag=_str(entry.get("reward_flag")),
                )
                for entry in _entries(data, "synthesis_puzzles")
            ),
            knowledge_discoveries=tuple(
                KnowledgeDiscovery(
                    discovery_id=_str(entry.get("id")),
                    character_id=_str(entry.get("character")),
                    knowledge_flag=_str(entry.get("knowledge_flag")),
                    text=_str(entry.get("text")),
                    trust_min=_int(entry.get("trust_min"), None),
                )
                for entry in _entries(data, "knowledge_discoveries")
            ),
            cross_character_echoes=tuple(
                CrossCharacterEcho(
                    echo_id=_str(entry.get("id")),
                    source_flag=_str(entry.get("source_flag")),
                    target_character=_str(entry.get("target_character")),
                    text=_str(entry.get("text")),
                    emotion=entry.get("emotion"),
                    delay=_int(entry.get("delay")),
                    required_pattern=entry.get("required_pattern") or None,
                    required_pattern_min=_int(entry.get("required_pattern_min")),
                )
                for entry in _entries(data, "cross_character_echoes")
            ),
            pattern_combos=tuple(
                PatternCombo(
                    combo_id=_str(entry.get("id")),
                    requirements=_int_map(entry.get("requirements")),
                    required_knowledge=_strs(entry.get("required_knowledge")),
                    text=_str(entry.get("text")),
                )
                for entry in _entries(data, "pattern_combos")
            ),
            iceberg_topics=tuple(
                IcebergTopic(
                    topic_id=_str(entry.get("id")),
                    threshold=_int(entry.get("threshold"), 3),
                    text=_str(entry.get("text")),
                )
                for entry in _entries(data, "iceberg_topics")
            ),
            delayed_gifts=tuple(
                DelayedGift(
                    gift_id=_str(entry.get("id")),
                    choice_id=_str(entry.get("choice_id")),
                    source_character=_str(entry.get("source_character")),
                    target_character=_str(entry.get("target_character")),
                    text=_str(entry.get("text")),
                    emotion=entry.get("emotion"),
                    delay=_int(entry.get("delay"), 1),
                )
                for entry in _entries(data, "delayed_gifts")
            ),
            arc_completions=tuple(
                ArcCompletion(
                    character_id=_str(entry.get("character")),
                    flag=_str(entry.get("flag")),
                    bonus_orbs=_int(entry.get("bonus_orbs"), 5),
                    text=_str(entry.get("text")),
                )
                for entry in _entries(data, "arc_completions")
            ),
        )
