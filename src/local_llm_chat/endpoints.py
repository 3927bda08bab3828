"""local_llm_chat.endpoints

What to send where, per backend.

Each backend is a member of the closed `EndpointKind` enum. Request building
dispatches on the member explicitly so backend differences stay visible in one
place:

- LM Studio: OpenAI-compatible `/v1/chat/completions`, SSE response.
- Ollama: native `/api/chat`, newline-delimited JSON response.
- Stable Diffusion: Automatic1111 WebUI `/sdapi/v1/*`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence


JsonDict = dict[str, Any]


class WireFormat(str, Enum):
    SSE = "sse"
    NDJSON = "ndjson"


class EndpointKind(str, Enum):
    LMSTUDIO = "lmstudio"
    OLLAMA = "ollama"
    STABLE_DIFFUSION = "stable_diffusion"

    @property
    def label(self) -> str:
        if self is EndpointKind.LMSTUDIO:
            return "OpenAI-Compatible (LM Studio)"
        if self is EndpointKind.OLLAMA:
            return "Ollama"
        return "Stable Diffusion (Automatic1111)"

    @property
    def default_base_url(self) -> str:
        if self is EndpointKind.LMSTUDIO:
            return "http://localhost:1234"
        if self is EndpointKind.OLLAMA:
            return "http://localhost:11434"
        return "http://localhost:7860"

    @property
    def wire_format(self) -> WireFormat:
        if self is EndpointKind.LMSTUDIO:
            return WireFormat.SSE
        if self is EndpointKind.OLLAMA:
            return WireFormat.NDJSON
        raise ValueError(f"{self.value} does not stream chat responses")

    @property
    def chat_path(self) -> str:
        if self is EndpointKind.LMSTUDIO:
            return "v1/chat/completions"
        if self is EndpointKind.OLLAMA:
            return "api/chat"
        raise ValueError(f"{self.value} has no chat endpoint")

    @property
    def models_path(self) -> str:
        if self is EndpointKind.LMSTUDIO:
            return "v1/models"
        if self is EndpointKind.OLLAMA:
            return "api/tags"
        return "sdapi/v1/sd-models"


@dataclass(frozen=True)
class EndpointConfig:
    """Immutable endpoint snapshot handed to each background task."""

    kind: EndpointKind
    base_url: str
    selected_model: str = ""

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def with_changes(self, **changes: Any) -> "EndpointConfig":
        data = {"kind": self.kind, "base_url": self.base_url, "selected_model": self.selected_model}
        data.update(changes)
        return EndpointConfig(**data)


@dataclass(frozen=True)
class ChatOptions:
    temperature: float = 0.7
    timeout_s: float = 300.0


def build_chat_body(
    kind: EndpointKind,
    *,
    model: str,
    messages: Sequence[Mapping[str, str]],
    options: ChatOptions | None = None,
) -> JsonDict:
    opts = options or ChatOptions()
    wire = [{"role": str(m["role"]), "content": str(m["content"])} for m in messages]
    if kind is EndpointKind.LMSTUDIO:
        return {
            "model": model,
            "messages": wire,
            "temperature": opts.temperature,
            "stream": True,
        }
    if kind is EndpointKind.OLLAMA:
        return {"model": model, "messages": wire, "stream": True}
    raise ValueError(f"{kind.value} has no chat endpoint")


# ---- Automatic1111 txt2img ----


SCHEDULERS: tuple[str, ...] = ("Automatic", "Uniform", "Karras", "Exponential", "Polyexponential")


@dataclass(frozen=True)
class HiresFix:
    hr_scale: float = 2.0
    hr_upscaler: str = "Latent"
    denoising_strength: float = 0.55
    # None -> half of the base steps.
    hr_second_pass_steps: int | None = None


@dataclass(frozen=True)
class GenerationParams:
    prompt: str
    steps: int = 20
    cfg_scale: float = 7.0
    width: int = 512
    height: int = 512
    sampler_name: str = "Euler a"
    model: str = ""
    negative_prompt: str = ""
    scheduler: str = ""
    seed: int | None = None
    lora: str = ""
    lora_weight: float = 1.0
    hires: HiresFix | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)


def format_lora_tag(name: str, weight: float = 1.0) -> str:
    """Automatic1111 prompt syntax: `<lora:name:weight>`."""

    n = str(name or "").strip()
    if not n:
        return ""
    return f"<lora:{n}:{weight:g}>"


def build_txt2img_body(params: GenerationParams) -> JsonDict:
    if not params.prompt.strip():
        raise ValueError("prompt must be a non-empty string")

    prompt = params.prompt.strip()
    tag = format_lora_tag(params.lora, params.lora_weight)
    if tag and tag not in prompt:
        prompt = f"{prompt} {tag}"

    body: JsonDict = {
        "prompt": prompt,
        "steps": int(params.steps),
        "cfg_scale": float(params.cfg_scale),
        "width": int(params.width),
        "height": int(params.height),
        "sampler_name": params.sampler_name,
    }
    if params.negative_prompt.strip():
        body["negative_prompt"] = params.negative_prompt.strip()
    if params.scheduler:
        body["scheduler"] = params.scheduler
    if params.seed is not None:
        body["seed"] = int(params.seed)
    if params.model:
        body["override_settings"] = {"sd_model_checkpoint": params.model}
    if params.hires is not None:
        hr = params.hires
        second = hr.hr_second_pass_steps if hr.hr_second_pass_steps is not None else int(params.steps) // 2
        body.update(
            {
                "enable_hr": True,
                "hr_scale": hr.hr_scale,
                "hr_upscaler": hr.hr_upscaler,
                "hr_second_pass_steps": second,
                "denoising_strength": hr.denoising_strength,
            }
        )
    for k, v in params.extra.items():
        body.setdefault(str(k), v)
    return body
