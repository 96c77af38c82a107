"""Tests for environment-driven configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from sitebox.config import Config
from sitebox.errors import ConfigError


def test_overrides_take_precedence(tmp_path) -> None:
    config = Config(storage_root=str(tmp_path), reserved_ports=[5200], package_manager="npm")
    assert config.storage_root == Path(tmp_path)
    assert config.reserved_ports == frozenset({5200})
    assert config.package_manager == "npm"


def test_unknown_override_is_rejected() -> None:
    with pytest.raises(ConfigError):
        Config(storage_dir="/tmp")


def test_environment_values_are_parsed(monkeypatch) -> None:
    monkeypatch.setenv("SITEBOX_BUILD_TIMEOUT", "90")
    monkeypatch.setenv("SITEBOX_RESERVED_PORTS", "5173, 5174")
    monkeypatch.setenv("SITEBOX_IDLE_HOURS", "0.5")

    config = Config()

    assert config.build_timeout == 90
    assert config.reserved_ports == frozenset({5173, 5174})
    assert config.idle_hours == 0.5


def test_non_integer_environment_value_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("SITEBOX_BUILD_TIMEOUT", "soon")
    with pytest.raises(ConfigError):
        Config()


@pytest.mark.parametrize(
    "overrides",
    [
        {"package_manager": "yarn"},
        {"port_range_start": 6000, "port_range_end": 5000},
        {"install_attempts": 0},
        {"command_timeout": 0},
    ],
)
def test_invalid_settings_are_rejected(overrides) -> None:
    with pytest.raises(ConfigError):
        Config(**overrides)


def test_generative_repair_needs_all_azure_settings() -> None:
    partial = Config(azure_openai_api_key="key", azure_openai_endpoint=None, azure_openai_deployment_name="gpt")
    assert not partial.generative_repair_enabled

    full = Config(
        azure_openai_api_key="key",
        azure_openai_endpoint="https://example.openai.azure.com",
        azure_openai_deployment_name="gpt",
    )
    assert full.generative_repair_enabled
