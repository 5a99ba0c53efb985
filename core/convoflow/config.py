"""Shared convoflow configuration utilities.

Centralises reading of ~/.convoflow/configuration.json so that the engine,
the HTTP server and the CLI share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_MAX_TOKENS = 500
DEFAULT_MAX_STEPS = 50
DEFAULT_GOAL_CONFIDENCE = 70
DEFAULT_DEBOUNCE_SECONDS = 1.0

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

CONVOFLOW_CONFIG_FILE = Path.home() / ".convoflow" / "configuration.json"


def get_config_path() -> Path:
    """Return the configuration file path, honouring CONVOFLOW_CONFIG."""
    override = os.environ.get("CONVOFLOW_CONFIG")
    if override:
        return Path(override)
    return CONVOFLOW_CONFIG_FILE


def get_convoflow_config() -> dict[str, Any]:
    """Load convoflow configuration from disk."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the user's preferred LLM model string (e.g. 'openai/gpt-4o-mini')."""
    llm = get_convoflow_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return get_convoflow_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable specified in configuration."""
    llm = get_convoflow_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_crm_credentials() -> tuple[str | None, str | None]:
    """Return (access_token, location_id) for the HighLevel CRM, if configured."""
    crm = get_convoflow_config().get("crm", {})
    token_env_var = crm.get("access_token_env_var", "HIGHLEVEL_ACCESS_TOKEN")
    return os.environ.get(token_env_var), crm.get("location_id")


def get_max_steps() -> int:
    """Return the per-turn node-hop ceiling."""
    return get_convoflow_config().get("engine", {}).get("max_steps", DEFAULT_MAX_STEPS)


def get_goal_confidence_threshold() -> int:
    return get_convoflow_config().get("engine", {}).get(
        "goal_confidence_threshold", DEFAULT_GOAL_CONFIDENCE
    )


def get_debounce_seconds() -> float:
    return get_convoflow_config().get("autosave", {}).get(
        "debounce_seconds", DEFAULT_DEBOUNCE_SECONDS
    )


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """LLM runtime configuration loaded from ~/.convoflow/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.7
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None


@dataclass
class EngineConfig:
    """Execution limits and judgment policy for the workflow executor."""

    max_steps: int = field(default_factory=get_max_steps)
    goal_confidence_threshold: int = field(default_factory=get_goal_confidence_threshold)
    history_window: int = 20
    evaluation_timeout_seconds: float = 60.0


@dataclass
class AutosaveConfig:
    """Debounce settings for graph persistence."""

    debounce_seconds: float = field(default_factory=get_debounce_seconds)


@dataclass
class ServerConfig:
    """Configuration for the HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080
    data_dir: str | None = None
