"""Configuration loading and typed engine settings."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "gaps": {
        "effort_multiple": 3.0,
        "action_window": 2,
        "skill_similarity_floor": 0.0,
        "embedding_similarity_floor": 0.35,
        "max_hops": 3,
        "min_indicators": 1,
        "max_gaps": 0,
        "skip_cyclic_pairs": True,
    },
    "ranking": {
        "debounce_ms": 2000,
        "rate_limit_ms": 0,
    },
    "validator": {
        "max_repairs": 2,
        "planner_timeout": 30.0,
        "log_iterations": True,
    },
    "bridging": {
        "min_text_length": 10,
        "max_text_length": 500,
        "min_effort_hours": 1,
        "max_effort_hours": 160,
        "generation_workers": 4,
    },
    "paths": {
        "data": "data",
        "db_path": "data/prioritizer.sqlite",
        "logs": "data/logs",
        "config": DEFAULT_CONFIG_NAME,
    },
}


class ConfigError(ValueError):
    """Raised when a configuration file cannot be loaded."""


def copy_config_template() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    return data


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    return value if isinstance(value, Mapping) else {}


def _float(section: Mapping[str, Any], key: str, default: float, *, minimum: float = 0.0) -> float:
    value = section.get(key, default)
    if isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


def _int(section: Mapping[str, Any], key: str, default: int, *, minimum: int = 0) -> int:
    value = section.get(key, default)
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


def _bool(section: Mapping[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes", "on"}:
            return True
        if lowered in {"false", "0", "no", "off"}:
            return False
    return default


@dataclass(slots=True)
class GapSettings:
    """Thresholds used by the gap detector."""

    effort_multiple: float = 3.0
    action_window: int = 2
    skill_similarity_floor: float = 0.0
    embedding_similarity_floor: float = 0.35
    max_hops: int = 3
    min_indicators: int = 1
    max_gaps: int = 0
    skip_cyclic_pairs: bool = True

    @classmethod
    def from_mapping(cls, section: Mapping[str, Any]) -> "GapSettings":
        defaults = cls()
        return cls(
            effort_multiple=_float(section, "effort_multiple", defaults.effort_multiple, minimum=0.0),
            action_window=_int(section, "action_window", defaults.action_window),
            skill_similarity_floor=_float(section, "skill_similarity_floor", defaults.skill_similarity_floor),
            embedding_similarity_floor=_float(
                section, "embedding_similarity_floor", defaults.embedding_similarity_floor, minimum=-1.0
            ),
            max_hops=_int(section, "max_hops", defaults.max_hops, minimum=1),
            min_indicators=_int(section, "min_indicators", defaults.min_indicators, minimum=1),
            max_gaps=_int(section, "max_gaps", defaults.max_gaps),
            skip_cyclic_pairs=_bool(section, "skip_cyclic_pairs", defaults.skip_cyclic_pairs),
        )


@dataclass(slots=True)
class RankingSettings:
    """Debounce parameters for reflection-driven adjustments."""

    debounce_ms: int = 2000
    rate_limit_ms: int = 0

    @classmethod
    def from_mapping(cls, section: Mapping[str, Any]) -> "RankingSettings":
        defaults = cls()
        return cls(
            debounce_ms=_int(section, "debounce_ms", defaults.debounce_ms),
            rate_limit_ms=_int(section, "rate_limit_ms", defaults.rate_limit_ms),
        )


@dataclass(slots=True)
class ValidatorSettings:
    """Repair cap and timeouts for the plan validator loop."""

    max_repairs: int = 2
    planner_timeout: float = 30.0
    log_iterations: bool = True

    @classmethod
    def from_mapping(cls, section: Mapping[str, Any]) -> "ValidatorSettings":
        defaults = cls()
        return cls(
            max_repairs=_int(section, "max_repairs", defaults.max_repairs),
            planner_timeout=_float(section, "planner_timeout", defaults.planner_timeout, minimum=0.001),
            log_iterations=_bool(section, "log_iterations", defaults.log_iterations),
        )


@dataclass(slots=True)
class BridgingSettings:
    """Bounds applied to generated bridging tasks."""

    min_text_length: int = 10
    max_text_length: int = 500
    min_effort_hours: int = 1
    max_effort_hours: int = 160
    generation_workers: int = 4

    @classmethod
    def from_mapping(cls, section: Mapping[str, Any]) -> "BridgingSettings":
        defaults = cls()
        return cls(
            min_text_length=_int(section, "min_text_length", defaults.min_text_length, minimum=1),
            max_text_length=_int(section, "max_text_length", defaults.max_text_length, minimum=1),
            min_effort_hours=_int(section, "min_effort_hours", defaults.min_effort_hours, minimum=1),
            max_effort_hours=_int(section, "max_effort_hours", defaults.max_effort_hours, minimum=1),
            generation_workers=_int(section, "generation_workers", defaults.generation_workers, minimum=1),
        )


@dataclass(slots=True)
class EngineSettings:
    """Typed view over ``config.yaml``."""

    gaps: GapSettings = field(default_factory=GapSettings)
    ranking: RankingSettings = field(default_factory=RankingSettings)
    validator: ValidatorSettings = field(default_factory=ValidatorSettings)
    bridging: BridgingSettings = field(default_factory=BridgingSettings)
    data_root: Path = Path("data")
    db_path: Path = Path("data/prioritizer.sqlite")
    logs_root: Path | None = Path("data/logs")

    @classmethod
    def from_config(cls, config: Mapping[str, Any], base_dir: Path | None = None) -> "EngineSettings":
        """Instantiate settings using project configuration values."""
        paths = _section(config, "paths")
        root = base_dir or Path(".")

        def _resolve(value: Any, fallback: Path) -> Path:
            if not isinstance(value, str) or not value.strip():
                return fallback
            candidate = Path(value.strip())
            if not candidate.is_absolute():
                candidate = root / candidate
            return candidate

        data_root = _resolve(paths.get("data"), root / "data")
        db_path = _resolve(paths.get("db_path"), data_root / "prioritizer.sqlite")
        logs_root: Path | None
        if "logs" in paths and paths.get("logs") is None:
            logs_root = None
        else:
            logs_root = _resolve(paths.get("logs"), data_root / "logs")

        return cls(
            gaps=GapSettings.from_mapping(_section(config, "gaps")),
            ranking=RankingSettings.from_mapping(_section(config, "ranking")),
            validator=ValidatorSettings.from_mapping(_section(config, "validator")),
            bridging=BridgingSettings.from_mapping(_section(config, "bridging")),
            data_root=data_root,
            db_path=db_path,
            logs_root=logs_root,
        )
