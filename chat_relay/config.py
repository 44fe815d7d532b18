"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from .types import (
    ROLES,
    CaptchaConfig,
    ClientConfig,
    Message,
    PromptTemplate,
    RelayConfig,
    ServerConfig,
    StorageConfig,
    UpstreamConfig,
)

CONFIG_FILENAMES = [
    "chat-relay.yaml",
    "chat-relay.yml",
    "chat-relay.json",
]

STORAGE_BACKENDS = ("sqlite", "filesystem")


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


def _expect(raw: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    """Fetch *key* from *raw*, raising ValueError when it has the wrong type.

    ``None`` is accepted only for keys whose default is ``None``.
    """
    value = raw.get(key, default)
    if value is None and default is None:
        return None
    # bool is an int subclass
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ValueError(f"'{key}' must be {kind.__name__}, got {type(value).__name__}")
    return value


def parse_prompt(raw: dict[str, Any]) -> PromptTemplate:
    messages = []
    for i, m in enumerate(_expect(raw, "messages", list, [])):
        if not isinstance(m, dict):
            raise ValueError(f"prompt.messages[{i}] must be a mapping")
        messages.append(Message(
            role=_expect(m, "role", str, ""),
            content=_expect(m, "content", str, ""),
        ))
    return PromptTemplate(
        model=_expect(raw, "model", str, ""),
        messages=messages,
        max_tokens=_expect(raw, "max_tokens", int, None),
    )


def parse_client_config(raw: dict[str, Any]) -> ClientConfig:
    """Build a ClientConfig from the stored/posted document.

    Raises ValueError for a document that is not shaped like a client
    config, including fields of the wrong type.
    """
    if not isinstance(raw, dict):
        raise ValueError("client config must be a mapping")
    prompt_raw = raw.get("prompt")
    if not isinstance(prompt_raw, dict):
        raise ValueError("client config requires a 'prompt' mapping")
    return ClientConfig(
        prompt=parse_prompt(prompt_raw),
        questions=[str(q) for q in _expect(raw, "questions", list, [])],
        welcome=_expect(raw, "welcome", str, ""),
        announcement=_expect(raw, "announcement", str, None),
    )


def _build_config(raw: dict[str, Any]) -> RelayConfig:
    """Build a RelayConfig from a raw dict."""
    upstream_raw = raw.get("upstream", {})
    upstream = UpstreamConfig(
        url=upstream_raw.get("url", UpstreamConfig.url),
        api_key_env=upstream_raw.get("api_key_env", UpstreamConfig.api_key_env),
        timeout=upstream_raw.get("timeout", UpstreamConfig.timeout),
        connect_timeout=upstream_raw.get("connect_timeout", UpstreamConfig.connect_timeout),
    )

    captcha_raw = raw.get("captcha", {})
    captcha = CaptchaConfig(
        verify_url=captcha_raw.get("verify_url", CaptchaConfig.verify_url),
        secret_env=captcha_raw.get("secret_env", CaptchaConfig.secret_env),
        timeout=captcha_raw.get("timeout", CaptchaConfig.timeout),
    )

    server_raw = raw.get("server", {})
    server = ServerConfig(
        allowed_origins=server_raw.get("allowed_origins", ["http://localhost:3000"]),
        max_question_length=server_raw.get("max_question_length", 300),
        default_max_tokens=server_raw.get("default_max_tokens", 128),
        timezone=server_raw.get("timezone", "UTC"),
        hint_count=server_raw.get("hint_count", 3),
        admin_secret_env=server_raw.get("admin_secret_env", ServerConfig.admin_secret_env),
    )

    storage_raw = raw.get("storage", {})
    storage = StorageConfig(
        backend=storage_raw.get("backend", "sqlite"),
        root=storage_raw.get("root", ".chat-relay"),
    )

    client_raw = raw.get("client")
    client = parse_client_config(client_raw) if client_raw else None

    return RelayConfig(
        version=raw.get("version", "1.0"),
        upstream=upstream,
        captcha=captcha,
        server=server,
        storage=storage,
        client=client,
    )


def validate_client_config(client: ClientConfig) -> list[str]:
    errors: list[str] = []
    if not client.prompt.model:
        errors.append("prompt.model is required")
    if not client.prompt.messages:
        errors.append("prompt.messages must not be empty")
    elif client.prompt.messages[0].role != "system":
        errors.append(
            f"first prompt message must have role 'system' "
            f"(got '{client.prompt.messages[0].role}')"
        )
    for i, m in enumerate(client.prompt.messages):
        if m.role not in ROLES:
            errors.append(f"prompt.messages[{i}] has unknown role '{m.role}'")
    if client.prompt.max_tokens is not None and client.prompt.max_tokens < 1:
        errors.append("prompt.max_tokens must be >= 1")
    return errors


def validate_config(config: RelayConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if config.server.max_question_length < 1:
        errors.append("server.max_question_length must be >= 1")

    if config.server.default_max_tokens < 1:
        errors.append("server.default_max_tokens must be >= 1")

    if config.server.hint_count < 1:
        errors.append("server.hint_count must be >= 1")

    if config.storage.backend not in STORAGE_BACKENDS:
        errors.append(
            f"Unknown storage backend '{config.storage.backend}' "
            f"(expected one of {', '.join(STORAGE_BACKENDS)})"
        )

    if config.client is not None:
        errors.extend(f"client: {e}" for e in validate_client_config(config.client))

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> RelayConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)
