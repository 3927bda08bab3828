from __future__ import annotations

import os
from pathlib import Path

import pytest

from local_llm_chat import config as cfg_mod
from local_llm_chat.endpoints import EndpointKind


ENV_KEYS = (
    "LLM_ENDPOINT",
    "LLM_BASE_URL",
    "LLM_MODEL",
    "SD_BASE_URL",
    "SD_MODEL",
    "LOCAL_LLM_CHAT_LOG_DIR",
    "LLM_SYSTEM_PROMPT",
    "LLM_TEMPERATURE",
    "SD_PROGRESS_INTERVAL",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for k in ENV_KEYS:
        monkeypatch.delenv(k, raising=False)
    return monkeypatch


def test_defaults(clean_env) -> None:
    c = cfg_mod.load_config()
    assert c.chat.kind is EndpointKind.OLLAMA
    assert c.chat.base_url == "http://localhost:11434"
    assert c.chat.selected_model == cfg_mod.DEFAULT_LLM_MODEL
    assert c.image.kind is EndpointKind.STABLE_DIFFUSION
    assert c.image.base_url == "http://localhost:7860"
    assert c.temperature == 0.7
    assert c.progress_interval_s == 0.5


def test_env_overrides(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("LLM_ENDPOINT", " LMStudio ")
    clean_env.setenv("LLM_MODEL", "qwen2.5-7b")
    clean_env.setenv("SD_BASE_URL", "http://gpu-box:7860")
    clean_env.setenv("SD_MODEL", "sdxl.safetensors [def]")
    clean_env.setenv("LOCAL_LLM_CHAT_LOG_DIR", str(tmp_path))
    clean_env.setenv("LLM_TEMPERATURE", "0.2")

    c = cfg_mod.load_config()
    assert c.chat.kind is EndpointKind.LMSTUDIO
    assert c.chat.base_url == "http://localhost:1234"
    assert c.chat.selected_model == "qwen2.5-7b"
    assert c.image.base_url == "http://gpu-box:7860"
    assert c.image.selected_model == "sdxl.safetensors [def]"
    assert c.log_dir == tmp_path
    assert c.temperature == 0.2


def test_unknown_endpoint_and_bad_numbers_fall_back(clean_env) -> None:
    clean_env.setenv("LLM_ENDPOINT", "stable_diffusion")
    clean_env.setenv("SD_PROGRESS_INTERVAL", "soon")
    c = cfg_mod.load_config()
    assert c.chat.kind is cfg_mod.DEFAULT_CHAT_KIND
    assert c.progress_interval_s == 0.5


def test_dotenv_does_not_override_existing_env(clean_env, tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "# local settings\nLLM_MODEL='from-dotenv'\nexport SD_MODEL=\"dotenv-sd\"\nnot a pair\n=orphan\n",
        encoding="utf-8",
    )
    clean_env.chdir(tmp_path)
    clean_env.setenv("LLM_MODEL", "from-env")
    try:
        assert cfg_mod._load_dotenv_best_effort() == ["SD_MODEL"]
        assert os.environ["LLM_MODEL"] == "from-env"
        assert os.environ["SD_MODEL"] == "dotenv-sd"
    finally:
        os.environ.pop("SD_MODEL", None)


def test_missing_dotenv_is_ignored(tmp_path: Path) -> None:
    assert cfg_mod._load_dotenv_best_effort(tmp_path / "nope.env") == []
    assert cfg_mod._load_dotenv_best_effort(tmp_path) == []
