"""
Configuration loader for the SessionRelay system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

HOUR_S = 60 * 60
DAY_S = 24 * HOUR_S


@dataclass
class PersistenceConfig:
    backend: str = "file"                               # "file" | "memory" | "redis" | "sql"
    data_dir: str = "./data/conversation-states"        # directory for file backend
    run_state_max_age_s: int = DAY_S                    # approval-pending window
    context_max_age_s: int = 7 * DAY_S                  # customer-continuity window
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "relay:"
    database_url: str = "sqlite:///./session_relay.db"  # postgresql:// | mysql:// | sqlite://


@dataclass
class IdentityConfig:
    resolver: str = "phone"             # "phone" | "crm"
    crm_base_url: str = "https://api.example-crm.com"
    crm_api_key: str = ""
    crm_timeout_s: float = 5.0
    fallback_to_phone: bool = True


@dataclass
class LifecycleConfig:
    sweep_interval_s: int = HOUR_S
    in_memory_max_age_s: int = 4 * HOUR_S
    handle_cache_limit: int = 100


@dataclass
class EngineConfig:
    turn_timeout_s: float = 30.0
    factory: str = ""                   # "package.module:callable" returning an ExecutionEngine
    default_agent: str = "customer_support"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"                # "json" | "console"
    redact_pii: bool = True


@dataclass
class Settings:
    app_name: str = "SessionRelay"
    debug: bool = False
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SESSION_RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)

        if "persistence" in raw:
            p = raw["persistence"] or {}
            d = PersistenceConfig()
            settings.persistence = PersistenceConfig(
                backend=p.get("backend", d.backend),
                data_dir=p.get("data_dir", d.data_dir),
                run_state_max_age_s=int(p.get("run_state_max_age_s", d.run_state_max_age_s)),
                context_max_age_s=int(p.get("context_max_age_s", d.context_max_age_s)),
                redis_url=p.get("redis_url", d.redis_url),
                key_prefix=p.get("key_prefix", d.key_prefix),
                database_url=p.get("database_url", d.database_url),
            )

        if "identity" in raw:
            i = raw["identity"] or {}
            d = IdentityConfig()
            settings.identity = IdentityConfig(
                resolver=i.get("resolver", d.resolver),
                crm_base_url=i.get("crm_base_url", d.crm_base_url),
                crm_api_key=i.get("crm_api_key", d.crm_api_key),
                crm_timeout_s=float(i.get("crm_timeout_s", d.crm_timeout_s)),
                fallback_to_phone=_as_bool(i.get("fallback_to_phone"), d.fallback_to_phone),
            )

        if "lifecycle" in raw:
            lc = raw["lifecycle"] or {}
            d = LifecycleConfig()
            settings.lifecycle = LifecycleConfig(
                sweep_interval_s=int(lc.get("sweep_interval_s", d.sweep_interval_s)),
                in_memory_max_age_s=int(lc.get("in_memory_max_age_s", d.in_memory_max_age_s)),
                handle_cache_limit=int(lc.get("handle_cache_limit", d.handle_cache_limit)),
            )

        if "engine" in raw:
            e = raw["engine"] or {}
            d = EngineConfig()
            settings.engine = EngineConfig(
                turn_timeout_s=float(e.get("turn_timeout_s", d.turn_timeout_s)),
                factory=e.get("factory", d.factory),
                default_agent=e.get("default_agent", d.default_agent),
            )

        if "logging" in raw:
            lg = raw["logging"] or {}
            d = LoggingConfig()
            settings.logging = LoggingConfig(
                level=lg.get("level", d.level),
                format=lg.get("format", d.format),
                redact_pii=_as_bool(lg.get("redact_pii"), d.redact_pii),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
