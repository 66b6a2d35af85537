"""Update documentation blocks that list allowed schema types."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Sequence

REPO_ROOT = Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from engine import world_schema

MARKER_START = "<!-- schema-docs:start -->"
MARKER_END = "<!-- schema-docs:end -->"


def _format_type_list(types: list[str]) -> str:
    return ", ".join(f"`{type_name}`" for type_name in types)


def render_block() -> str:
    lines = [
        f"- **Allowed condition types:** {_format_type_list(list(world_schema.CONDITION_SPECS))}",
        f"- **Legacy required-state keys:** {_format_type_list(list(world_schema.LEGACY_CONDITION_RULES))}",
        f"- **State change fields:** {_format_type_list(list(world_schema.STATE_CHANGE_FIELDS))}",
        f"- **Narrative tables:** {_format_type_list(list(world_schema.ECHO_TABLES) + list(world_schema.NARRATIVE_TABLES))}",
        "",
        "| Condition | Fields |",
        "| --- | --- |",
    ]
    for name, spec in world_schema.CONDITION_SPECS.items():
        fields = "; ".join(f"`{field}`: {rule}" for field, rule in spec.field_rules.items())
        lines.append(f"| `{name}` | {fields} |")
    lines.extend(["", "| State change field | Rule |", "| --- | --- |"])
    for name, spec in world_schema.STATE_CHANGE_FIELDS.items():
        lines.append(f"| `{name}` | {spec.rule} |")
    lines.extend(["", "_Regenerate with `python tools/generate_schema_docs.py` when the schema spec changes._"])
    return "\n".join(lines)


def replace_block(path: Path, new_block: str) -> None:
    content = path.read_text(encoding="utf-8")
    if MARKER_START not in content or MARKER_END not in content:
        raise RuntimeError(f"Markers not found in {path}.")
    before, rest = content.split(MARKER_START, 1)
    _, after = rest.split(MARKER_END, 1)
    updated = f"{before}{MARKER_START}\n{new_block}\n{MARKER_END}{after}"
    path.write_text(updated, encoding="utf-8")


def main(argv: Sequence[str] = ()) -> None:
    targets = [Path(arg) for arg in argv] or [REPO_ROOT / "README.md"]
    block = render_block()
    for target in targets:
        replace_block(target, block)
        print(f"Updated schema docs in {target}.")


if __name__ == "__main__":
    main(sys.argv[1:])
