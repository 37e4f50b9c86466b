from __future__ import annotations

from pathlib import Path

import pytest

from cse.config import ConfigError, EngineSettings, load_config, load_settings
from cse.tools.patch import ContentPolicy


def test_missing_config_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.yaml")

    assert config["retry"] == {"max_attempts": 3, "base_delay": 1.0}
    assert config["apply"]["content_policy"] == "strict"


def test_required_config_must_exist(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml", required=True)


def test_yaml_values_merge_over_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "workspace:\n  root: project\nretry:\n  max_attempts: 5\napply:\n  content_policy: LENIENT\n",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.workspace.root == (tmp_path / "project").resolve()
    assert settings.retry.max_attempts == 5
    assert settings.retry.base_delay == 1.0
    assert settings.apply.content_policy is ContentPolicy.LENIENT
    assert "**/node_modules/**" in settings.workspace.exclude


def test_malformed_yaml_raises_config_error(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("retry: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path)


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path)


@pytest.mark.parametrize(
    "override",
    [
        {"retry": {"max_attempts": 0}},
        {"retry": {"base_delay": "soon"}},
        {"apply": {"content_policy": "fuzzy"}},
        {"apply": {"max_workers": True}},
        {"workspace": {"include": [1, 2]}},
    ],
)
def test_invalid_values_are_rejected(override: dict) -> None:
    with pytest.raises(ConfigError):
        EngineSettings.from_config(override, env={})


def test_environment_overrides_file_values() -> None:
    env = {
        "CSE_MAX_ATTEMPTS": "7",
        "CSE_BASE_DELAY": "0.5",
        "CSE_PRODUCER_TIMEOUT": "30",
        "CSE_PRODUCER_URL": " https://producer.example/changes ",
    }

    settings = EngineSettings.from_config({"retry": {"max_attempts": 2}}, env=env)

    assert settings.retry.max_attempts == 7
    assert settings.retry.base_delay == 0.5
    assert settings.producer.timeout == 30.0
    assert settings.producer.url == "https://producer.example/changes"


def test_invalid_environment_values_are_ignored() -> None:
    env = {"CSE_MAX_ATTEMPTS": "many", "CSE_BASE_DELAY": "-1"}

    settings = EngineSettings.from_config({}, env=env)

    assert settings.retry.max_attempts == 3
    assert settings.retry.base_delay == 1.0


def test_zero_max_file_bytes_disables_limit() -> None:
    settings = EngineSettings.from_config({"workspace": {"max_file_bytes": 0}}, env={})

    assert settings.workspace.max_file_bytes is None
