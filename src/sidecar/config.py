"""Application configuration.

Settings are layered: built-in defaults, then a JSON file, then environment
overrides. The merged dict is validated once with pydantic; a malformed file
or an invalid value is a ``ConfigError`` and aborts startup.
"""

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError
from .logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_IGNORED_PATTERNS = [
    ".git",
    "node_modules",
    "target",
    "dist",
    "build",
    "__pycache__",
    ".venv",
    "venv",
    ".env",
    ".DS_Store",
    "*.pyc",
    "*.lock",
]

DEFAULT_ALLOWED_COMMANDS = [
    "ls", "cat", "head", "tail", "wc", "grep", "rg", "find", "echo", "pwd",
    "git", "python", "python3", "pytest", "uv", "pip", "make", "cargo", "npm",
    "node", "sed", "awk", "sort", "uniq", "diff", "mkdir", "touch", "cp", "mv",
    "sh", "bash", "sleep", "date", "env", "which",
]

DEFAULT_SYSTEM_PROMPT = """You are sidecar, a capable assistant running in the user's terminal.
You can read and edit files, run allow-listed shell commands, search the web and
search local knowledge collections. Use tools when they help; answer directly
when they do not. Keep answers concise. When a tool fails, read the error and
adjust instead of repeating the same call."""


class LLMSettings(BaseModel):
    """Connection settings for the OpenAI-compatible model endpoint."""

    model: str = "qwen2.5-coder:7b"
    base_url: str = "http://localhost:11434/v1"
    api_key: str = "not-needed"
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, gt=0)
    request_timeout: float = Field(default=300.0, gt=0)
    context_token_limit: int = Field(default=32768, gt=0)


class Settings(BaseModel):
    """Validated application settings."""

    log_level: str = "INFO"
    log_file: Optional[str] = None
    llm: LLMSettings = Field(default_factory=LLMSettings)
    search_url: str = "http://localhost:8080"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    index_dir: str = "~/.local/share/sidecar/index"
    sessions_dir: str = "~/.local/share/sidecar/sessions"
    collections: dict[str, Optional[str]] = Field(default_factory=dict)
    ignored_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORED_PATTERNS))
    tool_timeouts: dict[str, float] = Field(default_factory=dict)
    default_tool_timeout: float = Field(default=60.0, gt=0)
    command_timeout: float = Field(default=120.0, gt=0)
    process_grace_period: float = Field(default=2.0, ge=0)
    max_output_bytes: int = Field(default=256_000, gt=0)
    max_payload_chars: int = Field(default=20_000, gt=0)
    max_tool_rounds: int = Field(default=8, gt=0)
    allowed_commands: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    confirm_tools: bool = True
    python_venv_dir: str = "~/.local/share/sidecar/venv"
    python_auto_install: bool = True
    chunk_lines: int = Field(default=30, gt=0)
    chunk_overlap: int = Field(default=5, ge=0)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value}")
        return value

    @field_validator("chunk_overlap")
    @classmethod
    def _overlap_below_size(cls, value: int, info) -> int:
        size = info.data.get("chunk_lines")
        if size is not None and value >= size:
            raise ValueError("chunk_overlap must be smaller than chunk_lines")
        return value

    def timeout_for(self, tool_name: str) -> float:
        return self.tool_timeouts.get(tool_name, self.default_tool_timeout)

    def index_path(self) -> Path:
        return Path(self.index_dir).expanduser()

    def python_venv_path(self) -> Path:
        return Path(self.python_venv_dir).expanduser()

    def sessions_path(self) -> Path:
        return Path(self.sessions_dir).expanduser()


_ENV_OVERRIDES = {
    "SIDECAR_LLM_BASE_URL": ("llm", "base_url"),
    "SIDECAR_LLM_MODEL": ("llm", "model"),
    "SIDECAR_SEARCH_URL": ("search_url",),
    "SIDECAR_LOG_LEVEL": ("log_level",),
    "SIDECAR_LOG_FILE": ("log_file",),
    "SIDECAR_INDEX_DIR": ("index_dir",),
}

settings: Optional[Settings] = None


def _candidate_paths(path: Optional[str]) -> list[Path]:
    if path:
        return [Path(path).expanduser()]
    candidates = []
    if os.getenv("SIDECAR_CONFIG"):
        candidates.append(Path(os.environ["SIDECAR_CONFIG"]).expanduser())
    candidates.append(Path("config.json"))
    candidates.append(Path("~/.config/sidecar/config.json").expanduser())
    return candidates


def _read_config_file(path: Optional[str]) -> dict:
    for candidate in _candidate_paths(path):
        if not candidate.is_file():
            logger.debug("No config at %s", candidate)
            continue
        try:
            with open(candidate, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Malformed config file {candidate}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Could not read config file {candidate}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {candidate} must contain a JSON object")
        logger.debug("Loaded config from %s", candidate)
        return data
    if path:
        raise ConfigError(f"Config file not found: {path}")
    return {}


def _apply_env(data: dict) -> None:
    for var, keys in _ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value is None:
            continue
        target = data
        for key in keys[:-1]:
            target = target.setdefault(key, {})
        target[keys[-1]] = value


def load_settings(path: Optional[str] = None) -> Settings:
    """Build settings from defaults, the config file and the environment.

    Args:
        path: Explicit config file. When given it must exist.

    Returns:
        Validated settings, also cached for ``get_settings``.

    Raises:
        ConfigError: The file is malformed or a value is invalid.
    """
    global settings
    data = _read_config_file(path)
    _apply_env(data)
    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    return settings


def get_settings() -> Settings:
    """Return the loaded settings, loading from the default locations once."""
    if settings is None:
        return load_settings()
    return settings
