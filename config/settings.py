"""
Configuration loader for the flow execution engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""


@dataclass
class EngineConfig:
    max_steps: int = 100                        # auto-advance guard per turn
    history_limit: int = 50                     # history entries kept per session
    turn_timeout_seconds: float = 30.0          # 0 = no turn deadline
    collaborator_timeout_seconds: float = 15.0  # per external call
    max_delay_seconds: float = 30.0             # upper bound for delay nodes
    strict_routing: bool = False                # handle miss is an error instead of default edge
    error_message: str = "Desculpe, ocorreu um erro. Tente novamente mais tarde."


@dataclass
class BackendConfig:
    type: str = "rest"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class WebhookConfig:
    default_timeout_seconds: float = 10.0
    max_retries: int = 3


@dataclass
class MediaConfig:
    type: str = "mock"                          # "rest" | "mock"
    base_url: str = ""
    api_key: str = ""


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"               # "memory" | "file"
    store_file_dir: str = "./data/sessions"
    store_flush_interval_s: float = 0           # 0 = write on every save


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    flows_dir: str = ""
    flows: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], current):
    """Build a config section, keeping current values for missing keys."""
    known = {k: v for k, v in raw.items() if k in current.__dataclass_fields__}
    return cls(**{**current.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOW_ENGINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "llm" in raw:
            settings.llm = _section(LLMConfig, raw["llm"], settings.llm)
        if "engine" in raw:
            settings.engine = _section(EngineConfig, raw["engine"], settings.engine)
        if "backend" in raw:
            settings.backend = _section(BackendConfig, raw["backend"], settings.backend)
        if "webhook" in raw:
            settings.webhook = _section(WebhookConfig, raw["webhook"], settings.webhook)
        if "media" in raw:
            settings.media = _section(MediaConfig, raw["media"], settings.media)
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)

        flows_dir = raw.get("flows_dir", "")
        if flows_dir and not Path(flows_dir).is_absolute():
            flows_dir = str(Path(config_path).parent / flows_dir)
        settings.flows_dir = flows_dir
        settings.flows = raw.get("flows", [])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
