"""
Runtime configuration - stored project config, env overrides, provider defaults.

Resolution order for every field:
    explicit argument -> UFOO_UCODE_* environment -> .ufoo/config.json -> defaults
"""
import os
import re
import json
import logging
from pathlib import Path
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional, Callable, Mapping

from .defaults import (
    DEFAULT_PROVIDER,
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_ANTHROPIC_BASE_URL,
    TRANSPORT_OPENAI_CHAT,
    TRANSPORT_ANTHROPIC_MESSAGES,
    UFOO_DIR,
    CONFIG_FILE,
)

logger = logging.getLogger(__name__)

CONFIG_KEYS = (
    "ucodeProvider",
    "ucodeModel",
    "ucodeBaseUrl",
    "ucodeApiKey",
    "agentProvider",
    "agentModel",
)

PROVIDER_ALIASES = {
    "codex": "openai",
    "codex-cli": "openai",
    "codex-code": "openai",
    "claude": "anthropic",
    "claude-cli": "anthropic",
    "claude-code": "anthropic",
}

_MESSAGES_SEGMENT = re.compile(r"/messages(?:$|[/?#])")
_CHAT_COMPLETIONS_SEGMENT = re.compile(r"/chat/completions(?:$|[/?#])")


def config_path(workspace_root: str) -> Path:
    return Path(workspace_root) / UFOO_DIR / CONFIG_FILE


def load_config(workspace_root: str) -> Dict[str, str]:
    """Read the project config. A missing or unreadable file yields an empty config."""
    path = config_path(workspace_root)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("ignoring unreadable config %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        return {}
    return {k: data[k] for k in CONFIG_KEYS if isinstance(data.get(k), str)}


def normalize_provider(value: Optional[str]) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    return PROVIDER_ALIASES.get(text, text)


def resolve_transport(provider: str = "", base_url: str = "") -> str:
    """Pick the wire protocol from the provider name and the base URL shape."""
    url = str(base_url or "").strip().lower()

    if normalize_provider(provider) == "anthropic":
        return TRANSPORT_ANTHROPIC_MESSAGES
    if "anthropic.com" in url:
        return TRANSPORT_ANTHROPIC_MESSAGES
    if _MESSAGES_SEGMENT.search(url) and not _CHAT_COMPLETIONS_SEGMENT.search(url):
        return TRANSPORT_ANTHROPIC_MESSAGES

    return TRANSPORT_OPENAI_CHAT


@dataclass
class RuntimeConfig:
    """Everything a transport needs to reach the provider."""
    provider: str
    model: str
    base_url: str
    api_key: str
    transport: str

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if redact and data["api_key"]:
            data["api_key"] = data["api_key"][:4] + "..."
        return data


def _first(*values) -> str:
    for value in values:
        text = str(value or "").strip()
        if text:
            return text
    return ""


def resolve_runtime_config(
    workspace_root: str = ".",
    provider: str = "",
    model: str = "",
    base_url: str = "",
    api_key: str = "",
    env: Optional[Mapping[str, str]] = None,
    config_loader: Optional[Callable[[str], Dict[str, str]]] = None,
) -> RuntimeConfig:
    env = os.environ if env is None else env
    config = (config_loader or load_config)(workspace_root) or {}

    configured_provider = normalize_provider(
        config.get("ucodeProvider") or config.get("agentProvider")
    )
    selected_provider = normalize_provider(
        _first(provider, env.get("UFOO_UCODE_PROVIDER"), configured_provider, DEFAULT_PROVIDER)
    ) or DEFAULT_PROVIDER

    selected_model = _first(
        model,
        env.get("UFOO_UCODE_MODEL"),
        config.get("ucodeModel"),
        config.get("agentModel"),
    )

    if selected_provider == "anthropic":
        default_base_url = _first(env.get("ANTHROPIC_BASE_URL"), DEFAULT_ANTHROPIC_BASE_URL)
    else:
        default_base_url = _first(env.get("OPENAI_BASE_URL"), DEFAULT_OPENAI_BASE_URL)

    selected_base_url = _first(
        base_url,
        env.get("UFOO_UCODE_BASE_URL"),
        config.get("ucodeBaseUrl"),
        default_base_url,
    )

    provider_key = ""
    if selected_provider == "openai":
        provider_key = env.get("OPENAI_API_KEY", "")
    elif selected_provider == "anthropic":
        provider_key = env.get("ANTHROPIC_API_KEY", "")

    selected_api_key = _first(
        api_key,
        env.get("UFOO_UCODE_API_KEY"),
        config.get("ucodeApiKey"),
        provider_key,
    )

    return RuntimeConfig(
        provider=selected_provider,
        model=selected_model,
        base_url=selected_base_url,
        api_key=selected_api_key,
        transport=resolve_transport(selected_provider, selected_base_url),
    )
