# backend/codeweave/core/tests/test_config_manager.py
import json
from pathlib import Path

import pytest

from codeweave.core.config_manager import ConfigManager, OrchestratorSettings
from codeweave.core.operation_extractor import DEFAULT_MATCHER_ORDER

# --- Pytest Fixtures ---

@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    return tmp_path

def write_config(workspace: Path, data) -> None:
    config_dir = workspace / ".codeweave"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "config.json").write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")

# --- Test Cases ---

def test_defaults_without_file_or_environment(workspace: Path):
    settings = ConfigManager(workspace, environ={}).load()
    assert settings.max_task_retries == 2
    assert settings.task_timeout_seconds == 300
    assert settings.extraction_order == DEFAULT_MATCHER_ORDER
    assert settings.provider == "openai"
    assert settings.resolved_model == "gpt-4o-mini"
    assert settings.resolved_api_base is None


def test_file_values_are_loaded(workspace: Path):
    write_config(workspace, {"max_task_retries": 4, "provider": "OpenRouter", "split_groups_by_directory": True})
    settings = ConfigManager(workspace, environ={}).load()
    assert settings.max_task_retries == 4
    assert settings.provider == "openrouter"
    assert settings.split_groups_by_directory is True
    assert settings.resolved_api_base.startswith("https://openrouter.ai/")


def test_environment_overrides_file(workspace: Path):
    write_config(workspace, {"max_task_retries": 4, "task_timeout_seconds": 60})
    environ = {
        "CODEWEAVE_MAX_TASK_RETRIES": "1",
        "CODEWEAVE_EXTRACTION_ORDER": "fence_info, wrapper_tag",
        "CODEWEAVE_SPLIT_GROUPS_BY_DIRECTORY": "true",
    }
    settings = ConfigManager(workspace, environ=environ).load()
    assert settings.max_task_retries == 1
    assert settings.task_timeout_seconds == 60
    assert settings.extraction_order == ["fence_info", "wrapper_tag"]
    assert settings.split_groups_by_directory is True


@pytest.mark.parametrize("data", [
    {"max_task_retries": -1},
    {"task_timeout_seconds": 0},
    {"extraction_order": ["wrapper_tag", "crystal_ball"]},
    {"provider": "nobody"},
    {"unknown_key": 1},
])
def test_invalid_values_raise_value_error(workspace: Path, data):
    write_config(workspace, data)
    with pytest.raises(ValueError):
        ConfigManager(workspace, environ={}).load()


def test_malformed_json_raises_value_error(workspace: Path):
    write_config(workspace, "{not json")
    with pytest.raises(ValueError, match="Invalid config file"):
        ConfigManager(workspace, environ={}).load()


def test_save_then_load(workspace: Path):
    manager = ConfigManager(workspace, environ={})
    path = manager.save(OrchestratorSettings(max_context_files=3, model="gpt-4o"))
    assert path.is_file()
    settings = manager.load()
    assert settings.max_context_files == 3
    assert settings.resolved_model == "gpt-4o"


def test_get_api_key(workspace: Path):
    manager = ConfigManager(workspace, environ={"OPENAI_API_KEY": " sk-test "})
    assert manager.get_api_key("openai") == "sk-test"
    with pytest.raises(ValueError, match="OPENROUTER_API_KEY"):
        manager.get_api_key("openrouter")
    with pytest.raises(ValueError):
        manager.get_api_key("nobody")
