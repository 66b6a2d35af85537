"""List nodes no start can reach by following choice and interrupt targets."""

import json
import sys
from pathlib import Path
from typing import Dict, List, Set, Tuple

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CONTENT_PATH = REPO_ROOT / "content" / "station.json"

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from engine.schema import collect_character_nodes


def load_content(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def build_graph(content: dict) -> Tuple[Dict[str, List[str]], List[str]]:
    """Return the adjacency list across every character graph and missing-target messages."""
    graphs = collect_character_nodes(content.get("characters") or {})
    nodes = {node_id: node for character_nodes in graphs.values() for node_id, node in character_nodes.items()}
    graph: Dict[str, List[str]] = {node_id: [] for node_id in nodes}
    missing: List[str] = []
    for node_id, node in nodes.items():
        targets = [choice.get("target") for choice in node.get("choices", []) or [] if isinstance(choice, dict)]
        interrupt = node.get("interrupt")
        if isinstance(interrupt, dict):
            targets.append(interrupt.get("target"))
        for target in targets:
            if not isinstance(target, str):
                continue
            graph[node_id].append(target)
            if target not in nodes:
                missing.append(f"{node_id} -> missing node {target}")
    return graph, missing


def traverse_from(start_node: str, graph: Dict[str, List[str]]) -> Set[str]:
    if start_node not in graph:
        return set()
    visited: Set[str] = set()
    stack = [start_node]
    while stack:
        current = stack.pop()
        if current in visited or current not in graph:
            continue
        visited.add(current)
        stack.extend(graph.get(current, []))
    return visited


def unreachable_nodes(content: dict) -> List[str]:
    graph, _ = build_graph(content)
    all_reached: Set[str] = set()
    for start in content.get("starts", []) or []:
        node = start.get("node") if isinstance(start, dict) else None
        if isinstance(node, str):
            all_reached.update(traverse_from(node, graph))
    return sorted(set(graph) - all_reached)


def main() -> None:
    content_path = Path(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_CONTENT_PATH
    content = load_content(content_path)
    graph, missing = build_graph(content)
    unreachable = unreachable_nodes(content)

    print(f"Content file: {content_path}")
    print(f"Total nodes: {len(graph)}")
    print(f"Reachable nodes: {len(graph) - len(unreachable)}")
    for message in missing:
        print(f"Missing target: {message}")
    if unreachable:
        print("Unreachable nodes:")
        for node_id in unreachable:
            print(f"  - {node_id}")
    else:
        print("All nodes reachable from the defined starts.")


if __name__ == "__main__":
    main()
