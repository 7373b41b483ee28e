# backend/codeweave/core/config_manager.py
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .file_system_manager import STATE_DIR_NAME
from .operation_extractor import DEFAULT_MATCHER_ORDER, MATCHERS

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"
ENV_PREFIX = "CODEWEAVE_"

# Provider id -> how to build its client. `api_key_env` names the environment variable holding the key.
PROVIDERS: Dict[str, Dict[str, Any]] = {
    "openai": {
        "display_name": "OpenAI",
        "api_key_env": "OPENAI_API_KEY",
        "default_model": "gpt-4o-mini",
        "api_base": None,
    },
    "openrouter": {
        "display_name": "OpenRouter",
        "api_key_env": "OPENROUTER_API_KEY",
        "default_model": "deepseek/deepseek-chat",
        "api_base": "https://openrouter.ai/api/v1/chat/completions",
    },
}


class OrchestratorSettings(BaseModel):
    """Run-time settings of the orchestrator. Unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid")

    max_task_retries: int = Field(default=2, ge=0)
    task_timeout_seconds: float = Field(default=300, gt=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    planner_temperature: float = Field(default=0.2, ge=0, le=2)
    task_temperature: float = Field(default=0.4, ge=0, le=2)
    max_context_chars: int = Field(default=25000, gt=0)
    max_context_files: int = Field(default=20, ge=0)
    split_groups_by_directory: bool = False
    extraction_order: List[str] = Field(default_factory=lambda: list(DEFAULT_MATCHER_ORDER))
    provider: str = "openai"
    model: Optional[str] = None
    api_base: Optional[str] = None

    @field_validator("extraction_order")
    @classmethod
    def check_extraction_order(cls, value: List[str]) -> List[str]:
        unknown = [name for name in value if name not in MATCHERS]
        if unknown:
            raise ValueError(f"unknown extraction matcher(s) {unknown}; valid names are {list(MATCHERS)}")
        if not value:
            raise ValueError("extraction_order must name at least one matcher")
        return value

    @field_validator("provider")
    @classmethod
    def check_provider(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in PROVIDERS:
            raise ValueError(f"unknown provider '{value}'; valid providers are {list(PROVIDERS)}")
        return value

    @property
    def resolved_model(self) -> str:
        return self.model or PROVIDERS[self.provider]["default_model"]

    @property
    def resolved_api_base(self) -> Optional[str]:
        return self.api_base or PROVIDERS[self.provider]["api_base"]


class ConfigManager:
    """
    Loads OrchestratorSettings for a workspace.

    Values come from `<workspace>/.codeweave/config.json` (if present), then
    `CODEWEAVE_<FIELD>` environment variables override them. Lists in the
    environment are comma separated.
    """
    def __init__(self, workspace_root: str | Path, environ: Optional[Mapping[str, str]] = None):
        self.workspace_root = Path(workspace_root)
        self.config_path = self.workspace_root / STATE_DIR_NAME / CONFIG_FILE_NAME
        self.environ = os.environ if environ is None else environ

    def _load_file(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.debug(f"No config file at {self.config_path}; using defaults.")
            return {}
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.exception(f"Failed to load or parse config file: {self.config_path}")
            raise ValueError(f"Invalid config file '{self.config_path}': {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Config file '{self.config_path}' must contain a JSON object.")
        logger.info(f"Loaded config from {self.config_path}.")
        return data

    def _load_environment(self) -> Dict[str, Any]:
        overrides: Dict[str, Any] = {}
        for name in OrchestratorSettings.model_fields:
            raw = self.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name == "extraction_order":
                overrides[name] = [part.strip() for part in raw.split(",") if part.strip()]
            else:
                overrides[name] = raw  # pydantic coerces "3", "true", "0.5" in lax mode.
        if overrides:
            logger.info(f"Applying environment overrides: {sorted(overrides)}")
        return overrides

    def load(self) -> OrchestratorSettings:
        """
        Raises:
            ValueError: If the file is malformed or any value fails validation.
        """
        values = {**self._load_file(), **self._load_environment()}
        try:
            return OrchestratorSettings(**values)
        except ValidationError as e:
            logger.error(f"Invalid orchestrator settings: {e}")
            raise ValueError(f"Invalid orchestrator settings: {e}") from e

    def save(self, settings: OrchestratorSettings) -> Path:
        """Writes settings to the workspace config file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            json.dump(settings.model_dump(), f, indent=2)
        return self.config_path

    def get_api_key(self, provider: str) -> str:
        """
        Raises:
            ValueError: If the provider is unknown or its key variable is unset.
        """
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider '{provider}'.")
        env_name = PROVIDERS[provider]["api_key_env"]
        api_key = self.environ.get(env_name, "").strip()
        if not api_key:
            raise ValueError(f"API key for provider '{provider}' not found. Set the {env_name} environment variable.")
        return api_key
