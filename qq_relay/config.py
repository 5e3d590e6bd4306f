"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from .types import (
    GatewayConfig,
    GuardConfig,
    HistoryConfig,
    ModelConfig,
    OpenAIConfig,
    RelayConfig,
    ServerConfig,
)

CONFIG_FILENAMES = [
    "qq-relay.yaml",
    "qq-relay.yml",
    "qq-relay.json",
]

# env var -> (section, key)
ENV_OVERRIDES = {
    "OPENAI_API_KEY": ("openai", "api_key"),
    "OPENAI_BASE_URL": ("openai", "base_url"),
    "QQ_RELAY_PROXY": ("openai", "proxy"),
    "ONEBOT_BASE_URL": ("gateway", "base_url"),
    "ONEBOT_ACCESS_TOKEN": ("gateway", "access_token"),
}


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def _apply_env(raw: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    raw = {k: (dict(v) if isinstance(v, dict) else v) for k, v in raw.items()}
    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            raw.setdefault(section, {})
            if not isinstance(raw[section], dict):
                raw[section] = {}
            raw[section][key] = value
    return raw


def _build_config(raw: dict[str, Any]) -> RelayConfig:
    """Build a RelayConfig from a raw dict."""
    server_raw = _section(raw, "server")
    server = ServerConfig(
        host=server_raw.get("host", "0.0.0.0"),
        port=int(server_raw.get("port", 5701)),
        workers=int(server_raw.get("workers", 8)),
        queue_size=int(server_raw.get("queue_size", 256)),
    )

    gateway_raw = _section(raw, "gateway")
    gateway = GatewayConfig(
        base_url=gateway_raw.get("base_url", "http://127.0.0.1:5700"),
        access_token=gateway_raw.get("access_token") or "",
        timeout=float(gateway_raw.get("timeout", 30.0)),
    )

    openai_raw = _section(raw, "openai")
    openai = OpenAIConfig(
        base_url=openai_raw.get("base_url", "https://api.openai.com/v1"),
        api_key=openai_raw.get("api_key") or "",
        proxy=openai_raw.get("proxy") or None,
        timeout=float(openai_raw.get("timeout", 120.0)),
    )

    defaults = ModelConfig()
    models_raw = _section(raw, "models")
    models = ModelConfig(
        default_model=models_raw.get("default_model", defaults.default_model),
        escalated_model=models_raw.get("escalated_model", defaults.escalated_model),
        vision_model=models_raw.get("vision_model", defaults.vision_model),
        escalation_prefix=models_raw.get("escalation_prefix", defaults.escalation_prefix),
        system_prompt=models_raw.get("system_prompt") or "",
    )

    guard_defaults = GuardConfig()
    guard_raw = _section(raw, "guard")
    guard = GuardConfig(**{
        name: guard_raw.get(name, getattr(guard_defaults, name))
        for name in guard_defaults.__dataclass_fields__
    })
    guard.max_input_tokens = float(guard.max_input_tokens)

    history_raw = _section(raw, "history")
    history = HistoryConfig(
        max_entries=int(history_raw.get("max_entries", 10)),
        soft_token_limit=int(history_raw.get("soft_token_limit", 10_000)),
        hard_token_limit=int(history_raw.get("hard_token_limit", 15_000)),
    )

    return RelayConfig(
        server=server,
        gateway=gateway,
        openai=openai,
        models=models,
        guard=guard,
        history=history,
        token_counter=str(raw.get("token_counter") or "estimate"),
    )


def validate_config(config: RelayConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if not config.openai.api_key:
        errors.append("openai.api_key is not set (or set OPENAI_API_KEY)")
    elif not config.openai.api_key.startswith("sk"):
        errors.append("Invalid OpenAI API key, key should start with sk-")

    if config.history.soft_token_limit > config.history.hard_token_limit:
        errors.append(
            f"history.soft_token_limit ({config.history.soft_token_limit}) must be <= "
            f"history.hard_token_limit ({config.history.hard_token_limit})"
        )

    if config.history.max_entries < 2 or config.history.max_entries % 2:
        errors.append(
            f"history.max_entries ({config.history.max_entries}) must be an even number >= 2"
        )

    if config.guard.max_input_tokens <= 0:
        errors.append("guard.max_input_tokens must be > 0")

    if config.server.workers < 1:
        errors.append("server.workers must be >= 1")

    if not 0 < config.server.port < 65536:
        errors.append(f"server.port ({config.server.port}) is out of range")

    mode = config.token_counter
    if mode not in ("estimate", "tiktoken") and not (
        mode.startswith("callable:") and len(mode[len("callable:"):].rsplit(":", 1)) == 2
    ):
        errors.append(
            f"Unknown token_counter mode: {mode!r} "
            "(expected estimate, tiktoken or callable:module:func)"
        )

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
    env: Mapping[str, str] | None = None,
) -> RelayConfig:
    """Load config from dict, explicit path, or auto-discover.

    Environment variables in ``ENV_OVERRIDES`` take precedence over file
    values. Pass ``env={}`` to ignore the process environment.
    """
    env = os.environ if env is None else env

    if config_dict is not None:
        return _build_config(_apply_env(config_dict, env))

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config(_apply_env({}, env))

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(_apply_env(raw, env))
