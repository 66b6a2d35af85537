"""Engine and simulator settings persisted as JSON."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

logger = logging.getLogger(__name__)

_BASE_DIR = Path(__file__).resolve().parent.parent
SETTINGS_PATH = _BASE_DIR / "settings.json"

DEFAULT_PATTERN_ECHO_THRESHOLDS: Tuple[int, ...] = (3, 5, 10)


def _clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, value))


@dataclass
class Settings:
    """Tunable bounds and thresholds shared by live play and the simulator."""

    max_steps: int = 200
    max_states: int = 5000
    strategy: str = "bfs"
    max_unique_states_per_node: int = 25
    orb_balance_cap: int = 100
    orb_fill_capacity: int = 100
    pattern_echo_thresholds: Tuple[int, ...] = field(
        default_factory=lambda: DEFAULT_PATTERN_ECHO_THRESHOLDS
    )
    hub_character: str = "samuel"
    enforce_required_state: bool = False

    _STRATEGIES = {"bfs", "dfs"}

    def clamp(self) -> "Settings":
        self.max_steps = _clamp(int(self.max_steps), 1, 100_000)
        self.max_states = _clamp(int(self.max_states), 1, 10_000_000)
        self.max_unique_states_per_node = _clamp(int(self.max_unique_states_per_node), 1, 100_000)
        self.orb_balance_cap = _clamp(int(self.orb_balance_cap), 1, 1_000_000)
        self.orb_fill_capacity = _clamp(int(self.orb_fill_capacity), 1, 1_000_000)

        strategy = str(self.strategy).lower()
        if strategy not in self._STRATEGIES:
            strategy = "bfs"
        self.strategy = strategy

        thresholds = sorted({int(value) for value in self.pattern_echo_thresholds if int(value) > 0})
        self.pattern_echo_thresholds = tuple(thresholds) or DEFAULT_PATTERN_ECHO_THRESHOLDS

        self.hub_character = str(self.hub_character or "samuel")
        self.enforce_required_state = bool(self.enforce_required_state)
        return self

    def copy(self) -> "Settings":
        return Settings.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["pattern_echo_thresholds"] = list(self.pattern_echo_thresholds)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "Settings":
        if not isinstance(data, dict):
            return cls()

        def _as_int(key: str, default: int) -> int:
            try:
                return int(data.get(key, default))
            except (TypeError, ValueError):
                return default

        def _as_bool(key: str, default: bool) -> bool:
            value = data.get(key, default)
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in {"true", "1", "yes", "on"}:
                    return True
                if lowered in {"false", "0", "no", "off"}:
                    return False
            return bool(value) if value is not None else default

        raw_thresholds = data.get("pattern_echo_thresholds", DEFAULT_PATTERN_ECHO_THRESHOLDS)
        thresholds = []
        if isinstance(raw_thresholds, (list, tuple)):
            for value in raw_thresholds:
                try:
                    thresholds.append(int(value))
                except (TypeError, ValueError):
                    continue

        settings = cls(
            max_steps=_as_int("max_steps", 200),
            max_states=_as_int("max_states", 5000),
            strategy=str(data.get("strategy", "bfs")),
            max_unique_states_per_node=_as_int("max_unique_states_per_node", 25),
            orb_balance_cap=_as_int("orb_balance_cap", 100),
            orb_fill_capacity=_as_int("orb_fill_capacity", 100),
            pattern_echo_thresholds=tuple(thresholds),
            hub_character=str(data.get("hub_character", "samuel")),
            enforce_required_state=_as_bool("enforce_required_state", False),
        )
        return settings.clamp()


def load_settings(path: Path | str = SETTINGS_PATH) -> Settings:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return Settings()
    except (OSError, json.JSONDecodeError, TypeError) as exc:
        logger.warning("Could not read settings from %s: %s", path, exc)
        return Settings()
    return Settings.from_dict(data)


def save_settings(settings: Settings, path: Path | str = SETTINGS_PATH) -> Settings:
    path = Path(path)
    sanitized = settings.copy().clamp()
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", delete=False, dir=path.parent, prefix=path.name, suffix=".tmp", encoding="utf-8"
        ) as tmp_file:
            json.dump(sanitized.to_dict(), tmp_file, indent=2)
            tmp_file.write("\n")
            tmp_path = Path(tmp_file.name)
        os.replace(str(tmp_path), str(path))
    except OSError as exc:
        logger.error("Failed to save settings: %s", exc)
        if tmp_path is not None:
            try:
                tmp_path.unlink()
            except OSError:
                pass
    return sanitized
