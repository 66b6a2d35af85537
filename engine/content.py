"""Loading content files into graphs, starts and narrative rules."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from engine.graph import GraphRegistry
from engine.narrative_rules import NarrativeRules
from engine.schema import collect_character_nodes, validate_content
from engine.settings import Settings

logger = logging.getLogger(__name__)

MAPPING_TABLES = ("trust_echoes", "pattern_echoes", "milestone_echoes")


@dataclass(frozen=True)
class StartEntry:
    node_id: str
    character_id: Optional[str] = None
    title: str = ""


@dataclass(frozen=True)
class Content:
    title: str
    registry: GraphRegistry
    rules: NarrativeRules
    starts: Tuple[StartEntry, ...] = ()
    fallback_node: Optional[str] = None
    hub_character: Optional[str] = None

    def start(self, node_id: str | None = None) -> StartEntry:
        if node_id is None:
            return self.starts[0]
        for entry in self.starts:
            if entry.node_id == node_id:
                return entry
        raise KeyError(f"No start entry for node '{node_id}'.")

    def recovery_node(self) -> Optional[str]:
        if self.fallback_node:
            return self.fallback_node
        return self.starts[0].node_id if self.starts else None

    def settings_for(self, settings: Settings | None = None) -> Settings:
        settings = settings or Settings()
        if self.hub_character and self.hub_character != settings.hub_character:
            return replace(settings, hub_character=self.hub_character)
        return settings


def _raise_content_validation(errors: List[str]) -> None:
    details = "\n- ".join(errors)
    raise ValueError(f"Invalid content file:\n- {details}")


def _merge_narrative(base: Dict[str, Any], module: Mapping[str, Any], module_path: Path) -> None:
    for key, value in module.items():
        if key in MAPPING_TABLES:
            if not isinstance(value, Mapping):
                _raise_content_validation([f"{module_path}: narrative.{key} must be an object."])
            merged = dict(base.get(key) or {})
            for owner, entries in value.items():
                if owner in merged and isinstance(merged[owner], Mapping) and isinstance(entries, Mapping):
                    merged[owner] = {**merged[owner], **entries}
                else:
                    merged[owner] = entries
            base[key] = merged
        else:
            if not isinstance(value, list):
                _raise_content_validation([f"{module_path}: narrative.{key} must be a list."])
            base[key] = list(base.get(key) or []) + list(value)


def merge_content_modules(content: Dict[str, Any], content_path: Path) -> Dict[str, Any]:
    modules = content.get("modules")
    if not modules:
        return content
    if not isinstance(modules, list):
        _raise_content_validation(["'modules' must be a list of module file paths."])

    characters = content.get("characters") or {}
    if not isinstance(characters, dict):
        _raise_content_validation(["'characters' must be an object mapping character IDs to graphs."])
    base_starts = content.get("starts") or []
    if not isinstance(base_starts, list):
        _raise_content_validation(["'starts' must be a list of start entries."])
    narrative = content.get("narrative") or {}
    if not isinstance(narrative, dict):
        _raise_content_validation(["'narrative' must be an object."])

    combined_characters = {cid: dict(payload) for cid, payload in characters.items() if isinstance(payload, dict)}
    combined_starts = list(base_starts)
    combined_narrative = dict(narrative)
    known_nodes = {
        node_id for nodes in collect_character_nodes(combined_characters).values() for node_id in nodes
    }
    base_dir = content_path.resolve().parent

    for module_ref in modules:
        if not isinstance(module_ref, str) or not module_ref.strip():
            _raise_content_validation(["module entries must be non-empty strings."])
        module_path = (base_dir / module_ref).resolve()
        with open(module_path, "r", encoding="utf-8") as handle:
            module = json.load(handle)
        if not isinstance(module, dict):
            _raise_content_validation([f"{module_path}: module data must be a JSON object."])

        module_characters = module.get("characters") or {}
        if not isinstance(module_characters, dict):
            _raise_content_validation([f"{module_path}: 'characters' must be an object."])
        module_graphs = collect_character_nodes(module_characters)
        for character_id, nodes in module_graphs.items():
            overlap = known_nodes.intersection(nodes)
            if overlap:
                _raise_content_validation(
                    [f"{module_path}: node IDs already exist: {', '.join(sorted(overlap))}."]
                )
            known_nodes.update(nodes)
            existing = combined_characters.get(character_id)
            if existing is None:
                combined_characters[character_id] = {**module_characters[character_id], "nodes": dict(nodes)}
            else:
                merged_nodes = collect_character_nodes({character_id: existing})[character_id]
                merged_nodes.update(nodes)
                existing["nodes"] = merged_nodes

        module_starts = module.get("starts") or []
        if not isinstance(module_starts, list):
            _raise_content_validation([f"{module_path}: 'starts' must be a list."])
        combined_starts.extend(module_starts)

        module_narrative = module.get("narrative") or {}
        if not isinstance(module_narrative, dict):
            _raise_content_validation([f"{module_path}: 'narrative' must be an object."])
        _merge_narrative(combined_narrative, module_narrative, module_path)
        logger.debug("Merged content module %s", module_path)

    content["characters"] = combined_characters
    content["starts"] = combined_starts
    content["narrative"] = combined_narrative
    return content


def build_content(data: Mapping[str, Any]) -> Content:
    """Validate a parsed content document and build the runtime bundle."""
    errors = validate_content(data)
    if errors:
        _raise_content_validation(errors)

    characters = data["characters"]
    graphs = collect_character_nodes(characters)
    registry = GraphRegistry.from_dict(
        {
            character_id: {
                "name": characters[character_id].get("name"),
                "start_node": characters[character_id].get("start_node"),
                "nodes": nodes,
            }
            for character_id, nodes in graphs.items()
        }
    )

    starts: List[StartEntry] = []
    for start in data.get("starts") or []:
        node_id = start["node"]
        location = registry.locate(node_id)
        starts.append(
            StartEntry(
                node_id=node_id,
                character_id=start.get("character") or location.character_id,
                title=str(start.get("title") or node_id),
            )
        )
    if not starts:
        hub = data.get("hub_character")
        graph = registry.graph(hub) if hub else next(iter(registry.graphs.values()))
        starts.append(StartEntry(node_id=graph.start_node_id, character_id=graph.character_id, title=graph.name))

    return Content(
        title=data["title"],
        registry=registry,
        rules=NarrativeRules.from_dict(data.get("narrative")),
        starts=tuple(starts),
        fallback_node=data.get("fallback_node"),
        hub_character=data.get("hub_character"),
    )


def load_content(path: Path | str) -> Content:
    path = Path(path)
    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        _raise_content_validation(["Content data must be a JSON object."])

    data = merge_content_modules(data, path)
    content = build_content(data)
    logger.debug(
        "Loaded %s: %d characters, %d nodes", path, len(content.registry.graphs), len(content.registry)
    )
    return content
