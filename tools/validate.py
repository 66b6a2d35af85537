#!/usr/bin/env python3
"""Validate dialogue content and simulate every start for reachability problems."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Sequence

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CONTENT = REPO_ROOT / "content" / "station.json"

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from engine.content import build_content, merge_content_modules
from engine.schema import validate_content
from engine.settings import Settings, load_settings
from engine.simulator import simulate_starts, unreached_nodes
from tools.softlock import analyze_softlocks


def load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate dialogue content files.")
    parser.add_argument(
        "content_path",
        nargs="?",
        default=str(DEFAULT_CONTENT),
        help="Path to the content JSON file.",
    )
    parser.add_argument("--settings", help="Settings JSON with simulator bounds.")
    parser.add_argument("--max-states", type=int, help="Override the simulator state budget.")
    parser.add_argument("--strategy", choices=("bfs", "dfs"), help="Override the exploration order.")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail on simulator anomalies, truncated runs and unreached nodes too.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log simulator progress.")
    return parser.parse_args(argv)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.settings) if args.settings else Settings()
    if args.max_states is not None:
        settings.max_states = args.max_states
    if args.strategy is not None:
        settings.strategy = args.strategy
    return settings.clamp()


def main(argv: Sequence[str]) -> None:
    args = parse_args(argv[1:])
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    content_path = Path(args.content_path).resolve()
    try:
        data = load_json(content_path)
    except json.JSONDecodeError as exc:
        print(f"Failed to parse JSON from {content_path}: {exc}")
        sys.exit(1)
    if not isinstance(data, dict):
        print(f"Validation failed (path: message):\n - {content_path}: content data must be a JSON object.")
        sys.exit(1)

    try:
        data = merge_content_modules(data, content_path)
    except (OSError, ValueError) as exc:
        print(f"Failed to merge content modules: {exc}")
        sys.exit(1)

    errors = validate_content(data)
    if errors:
        print("Validation failed (path: message):")
        for err in errors:
            print(f" - {err}")
        sys.exit(1)

    warnings = analyze_softlocks(data)
    if warnings:
        print("Soft-lock warnings (path: message):")
        for warning in warnings:
            print(f" - {warning}")

    content = build_content(data)
    settings = content.settings_for(_settings_from_args(args))
    results = simulate_starts(content, settings)
    problems: List[str] = []
    for result in results:
        status = "exhaustive" if result.is_exhaustive else "TRUNCATED"
        print(
            f"Start '{result.start_node_id}': {len(result.visited_node_ids)} nodes,"
            f" {result.expanded_states} states ({status})."
        )
        if not result.is_exhaustive:
            problems.append(f"run from '{result.start_node_id}' hit max_states={settings.max_states}.")
        for anomaly in result.anomalies:
            problems.append(anomaly.describe())

    unreached = unreached_nodes(content, results)
    if unreached:
        problems.append(f"unreached nodes: {', '.join(unreached)}.")

    if problems:
        print("Simulation warnings:")
        for problem in problems:
            print(f" - {problem}")
        if args.strict:
            sys.exit(1)

    print(f"Validation passed for {content_path}.")


if __name__ == "__main__":
    main(sys.argv)
