from __future__ import annotations

from pathlib import Path

import pytest

from prioritizer.config import (
    ConfigError,
    EngineSettings,
    copy_config_template,
    load_config,
    write_config,
)


def test_missing_config_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")


def test_non_mapping_config_raises(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_template_round_trips_through_yaml(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "config.yaml"
    write_config(path, copy_config_template())

    assert load_config(path) == copy_config_template()


def test_invalid_values_fall_back_to_defaults() -> None:
    settings = EngineSettings.from_config(
        {
            "gaps": {"effort_multiple": "lots", "max_hops": 0, "skip_cyclic_pairs": "no"},
            "ranking": {"debounce_ms": True},
            "validator": {"max_repairs": "4", "planner_timeout": -1},
            "bridging": "not a mapping",
        }
    )

    assert settings.gaps.effort_multiple == 3.0
    assert settings.gaps.max_hops == 3
    assert settings.gaps.skip_cyclic_pairs is False
    assert settings.ranking.debounce_ms == 2000
    assert settings.validator.max_repairs == 4
    assert settings.validator.planner_timeout == 30.0
    assert settings.bridging.max_effort_hours == 160


def test_paths_resolve_against_base_dir(tmp_path: Path) -> None:
    config = copy_config_template()
    config["paths"]["db_path"] = "/var/tmp/custom.sqlite"
    settings = EngineSettings.from_config(config, tmp_path)

    assert settings.data_root == tmp_path / "data"
    assert settings.db_path == Path("/var/tmp/custom.sqlite")
    assert settings.logs_root == tmp_path / "data" / "logs"


def test_null_logs_path_disables_logging(tmp_path: Path) -> None:
    settings = EngineSettings.from_config({"paths": {"logs": None}}, tmp_path)

    assert settings.logs_root is None
    assert settings.db_path == tmp_path / "data" / "prioritizer.sqlite"
