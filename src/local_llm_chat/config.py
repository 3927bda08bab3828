"""local_llm_chat.config

Settings come from environment variables, each with a default that matches a
stock local install (Ollama on 11434, LM Studio on 1234, the WebUI on 7860).

A `.env` file in the working directory is read once at import; its values only
fill in variables that are not already set.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .endpoints import EndpointConfig, EndpointKind


def _parse_env_line(raw: str) -> tuple[str, str] | None:
    line = raw.strip()
    if line.startswith("export "):
        line = line[len("export ") :].lstrip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    name, _, value = line.partition("=")
    name = name.strip()
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        value = value[1:-1]
    return (name, value) if name else None


def _load_dotenv_best_effort(path: Path | None = None) -> list[str]:
    """Apply `KEY=VALUE` lines from `path` (default `./.env`). Returns the keys set."""

    env_path = path or (Path.cwd() / ".env")
    try:
        lines = env_path.read_text(encoding="utf-8").splitlines()
    except (OSError, ValueError):
        # Missing or unreadable: start with the process environment only.
        return []

    applied: list[str] = []
    for raw in lines:
        pair = _parse_env_line(raw)
        if pair is None or pair[0] in os.environ:
            continue
        os.environ[pair[0]] = pair[1]
        applied.append(pair[0])
    return applied


_load_dotenv_best_effort()

# Placeholder until the model list has been fetched from the server.
DEFAULT_LLM_MODEL: str = "local-model"

# Endpoint kinds exposed in the chat settings picker.
CHAT_KINDS: tuple[EndpointKind, ...] = (EndpointKind.LMSTUDIO, EndpointKind.OLLAMA)

DEFAULT_CHAT_KIND: EndpointKind = EndpointKind.OLLAMA


@dataclass(frozen=True)
class AppConfig:
    chat: EndpointConfig
    image: EndpointConfig
    log_dir: Path
    system_prompt: str = ""
    temperature: float = 0.7
    progress_interval_s: float = 0.5
    frame_interval_ms: int = 16


def _parse_kind(raw: str | None) -> EndpointKind:
    v = (raw or "").strip().casefold()
    for kind in CHAT_KINDS:
        if v == kind.value:
            return kind
    return DEFAULT_CHAT_KIND


def _parse_float(raw: str | None, default: float) -> float:
    try:
        return float(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def load_config() -> AppConfig:
    kind = _parse_kind(os.environ.get("LLM_ENDPOINT"))
    chat = EndpointConfig(
        kind=kind,
        base_url=os.environ.get("LLM_BASE_URL") or kind.default_base_url,
        selected_model=os.environ.get("LLM_MODEL") or DEFAULT_LLM_MODEL,
    )
    image = EndpointConfig(
        kind=EndpointKind.STABLE_DIFFUSION,
        base_url=os.environ.get("SD_BASE_URL") or EndpointKind.STABLE_DIFFUSION.default_base_url,
        selected_model=os.environ.get("SD_MODEL", ""),
    )
    log_dir = Path(os.environ.get("LOCAL_LLM_CHAT_LOG_DIR") or (Path.home() / ".local_llm_chat"))

    return AppConfig(
        chat=chat,
        image=image,
        log_dir=log_dir,
        system_prompt=os.environ.get("LLM_SYSTEM_PROMPT", ""),
        temperature=_parse_float(os.environ.get("LLM_TEMPERATURE"), 0.7),
        progress_interval_s=_parse_float(os.environ.get("SD_PROGRESS_INTERVAL"), 0.5),
    )
