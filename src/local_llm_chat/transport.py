"""local_llm_chat.transport

HTTP transport for the chat and image backends.

- Chat: a streamed POST; the caller iterates raw body chunks.
- Images: Automatic1111 `txt2img` (blocks until the image is done) plus a
  separate `progress` query that can be polled while it runs.
- Catalogs: model / LoRA / sampler listings for the settings forms.

Every call opens its own request and nothing is retried here: a retry is the
user pressing Send (or Generate) again. httpx errors are mapped at this
boundary onto the `TransportError` hierarchy so nothing above the transport
needs to know about httpx.
"""

from __future__ import annotations

import base64
import binascii
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Optional, Sequence

import httpx

from .endpoints import (
    SCHEDULERS,
    ChatOptions,
    EndpointConfig,
    EndpointKind,
    GenerationParams,
    build_chat_body,
    build_txt2img_body,
)


_LOG = logging.getLogger("local_llm_chat.transport")

JsonDict = dict[str, Any]


# ---- Errors ----


class TransportError(RuntimeError):
    pass


class NetworkError(TransportError):
    """Connection refused, DNS failure or timeout: the server is unreachable."""


class HttpStatusError(TransportError):
    def __init__(self, status_code: int, body: str = "", *, url: str = "") -> None:
        self.status_code = int(status_code)
        self.body = body
        self.url = url
        excerpt = f": {body}" if body else ""
        super().__init__(f"Server returned error {self.status_code}{excerpt}")


class DecodeError(TransportError):
    """A single frame could not be decoded. Recovered locally."""

    def __init__(self, message: str, *, frame: str = "") -> None:
        super().__init__(message)
        self.frame = frame


class StreamInterrupted(TransportError):
    """The connection dropped mid-stream. `partial_text` is what arrived."""

    def __init__(self, message: str, *, partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text


class ServerStreamError(TransportError):
    """The server reported an error inside an otherwise healthy stream."""


def describe_error(exc: BaseException) -> str:
    """User-facing one-liner for an error state."""

    if isinstance(exc, NetworkError):
        return f"Server unreachable: {exc}"
    if isinstance(exc, StreamInterrupted):
        return f"Stream interrupted: {exc}"
    if isinstance(exc, TransportError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


_BODY_EXCERPT_CHARS = 300


def _excerpt(text: str) -> str:
    t = (text or "").strip()
    if len(t) > _BODY_EXCERPT_CHARS:
        t = t[:_BODY_EXCERPT_CHARS] + " …"
    return t


@contextmanager
def _network_errors(url: str) -> Iterator[None]:
    try:
        yield
    except httpx.TimeoutException as e:
        raise NetworkError(f"Timed out talking to {url}") from e
    except httpx.TransportError as e:
        raise NetworkError(f"Server unreachable at {url}: {e}") from e


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.is_error:
        raise HttpStatusError(resp.status_code, _excerpt(resp.text), url=str(resp.request.url))


# ---- Result types ----


@dataclass(frozen=True)
class Progress:
    fraction: float
    eta_relative: float = 0.0
    preview: Optional[bytes] = None
    job_count: Optional[int] = None

    @property
    def percent(self) -> float:
        return max(0.0, min(100.0, self.fraction * 100.0))

    @property
    def is_terminal(self) -> bool:
        return self.fraction >= 1.0


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    info: str = ""
    parameters: JsonDict = field(default_factory=dict)


@dataclass(frozen=True)
class SDModel:
    title: str
    model_name: str


@dataclass(frozen=True)
class LoRA:
    name: str
    alias: str = ""


def _b64_image(raw: str) -> bytes:
    s = raw.split(",", 1)[1] if raw.startswith("data:") else raw
    try:
        return base64.b64decode(s, validate=False)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Failed to decode base64 image: {e}") from e


class ChatStream:
    """An open streamed chat response. Iterate for raw body chunks."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    def __iter__(self) -> Iterator[bytes]:
        try:
            yield from self._response.iter_bytes()
        except (httpx.TransportError, httpx.StreamError) as e:
            raise StreamInterrupted(f"(stream disconnected) {type(e).__name__}: {e}") from e

    def close(self) -> None:
        self._response.close()

    def __enter__(self) -> "ChatStream":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class Transport:
    def __init__(
        self,
        *,
        client: Optional[httpx.Client] = None,
        catalog_timeout_s: float = 5.0,
        long_timeout_s: float = 300.0,
    ) -> None:
        self._client = client or httpx.Client(timeout=catalog_timeout_s)
        self._catalog_timeout_s = float(catalog_timeout_s)
        self._long_timeout_s = float(long_timeout_s)

    def close(self) -> None:
        self._client.close()

    # ---- Chat ----

    def send_chat(
        self,
        endpoint: EndpointConfig,
        messages: Sequence[Mapping[str, str]],
        model: Optional[str] = None,
        *,
        options: Optional[ChatOptions] = None,
    ) -> ChatStream:
        opts = options or ChatOptions(timeout_s=self._long_timeout_s)
        url = endpoint.url(endpoint.kind.chat_path)
        body = build_chat_body(
            endpoint.kind,
            model=model or endpoint.selected_model,
            messages=messages,
            options=opts,
        )
        _LOG.info("chat_request kind=%s url=%s model=%s messages=%d", endpoint.kind.value, url, body["model"], len(messages))

        request = self._client.build_request("POST", url, json=body, timeout=opts.timeout_s)
        with _network_errors(url):
            resp = self._client.send(request, stream=True)
        if resp.is_error:
            try:
                with _network_errors(url):
                    resp.read()
            finally:
                resp.close()
            _raise_for_status(resp)
        return ChatStream(resp)

    def list_models(self, endpoint: EndpointConfig) -> list[str]:
        if endpoint.kind is EndpointKind.LMSTUDIO:
            return self._list_openai_models(endpoint)
        if endpoint.kind is EndpointKind.OLLAMA:
            data = self._get_json(endpoint, endpoint.kind.models_path)
            models = data.get("models") if isinstance(data, dict) else None
            return [str(m["name"]) for m in models or [] if isinstance(m, dict) and m.get("name")]
        return [m.title for m in self.list_sd_models(endpoint)]

    def _list_openai_models(self, endpoint: EndpointConfig) -> list[str]:
        from openai import APIConnectionError, APIStatusError, OpenAI  # imported lazily

        url = endpoint.url("v1")
        client = OpenAI(
            base_url=url,
            api_key="lm-studio",
            timeout=self._catalog_timeout_s,
            max_retries=0,
            http_client=self._client,
        )
        _LOG.info("list_models kind=%s url=%s", endpoint.kind.value, url)
        try:
            return [m.id for m in client.models.list()]
        except APIStatusError as e:
            raise HttpStatusError(e.status_code, _excerpt(str(e.message)), url=url) from e
        except APIConnectionError as e:
            raise NetworkError(f"Server unreachable at {url}: {e}") from e

    # ---- Images ----

    def submit_generation(self, endpoint: EndpointConfig, params: GenerationParams) -> GeneratedImage:
        url = endpoint.url("sdapi/v1/txt2img")
        body = build_txt2img_body(params)
        _LOG.info(
            "txt2img_request url=%s steps=%s size=%sx%s sampler=%s model=%s",
            url,
            body["steps"],
            body["width"],
            body["height"],
            body["sampler_name"],
            params.model or "(current)",
        )
        with _network_errors(url):
            resp = self._client.post(url, json=body, timeout=self._long_timeout_s)
        _raise_for_status(resp)
        data = resp.json()
        images = data.get("images") if isinstance(data, dict) else None
        if not images:
            raise TransportError("No images returned from the server")
        params_out = data.get("parameters")
        return GeneratedImage(
            data=_b64_image(str(images[0])),
            info=str(data.get("info") or ""),
            parameters=params_out if isinstance(params_out, dict) else {},
        )

    def query_progress(self, endpoint: EndpointConfig) -> Progress:
        url = endpoint.url("sdapi/v1/progress")
        with _network_errors(url):
            resp = self._client.get(url, timeout=self._catalog_timeout_s)
        _raise_for_status(resp)
        data = resp.json()
        if not isinstance(data, dict):
            raise DecodeError("progress response must be a JSON object", frame=resp.text[:200])
        state = data.get("state") if isinstance(data.get("state"), dict) else {}
        preview = data.get("current_image")
        job_count = state.get("job_count")
        return Progress(
            fraction=float(data.get("progress") or 0.0),
            eta_relative=float(data.get("eta_relative") or 0.0),
            preview=_b64_image(preview) if isinstance(preview, str) and preview else None,
            job_count=int(job_count) if isinstance(job_count, int) else None,
        )

    def list_sd_models(self, endpoint: EndpointConfig) -> list[SDModel]:
        data = self._get_json(endpoint, "sdapi/v1/sd-models")
        return [
            SDModel(title=str(m.get("title") or ""), model_name=str(m.get("model_name") or ""))
            for m in data or []
            if isinstance(m, dict)
        ]

    def list_loras(self, endpoint: EndpointConfig) -> list[LoRA]:
        data = self._get_json(endpoint, "sdapi/v1/loras")
        return [
            LoRA(name=str(m["name"]), alias=str(m.get("alias") or ""))
            for m in data or []
            if isinstance(m, dict) and m.get("name")
        ]

    def list_samplers(self, endpoint: EndpointConfig) -> list[str]:
        data = self._get_json(endpoint, "sdapi/v1/samplers")
        return [str(s["name"]) for s in data or [] if isinstance(s, dict) and s.get("name")]

    def list_schedulers(self, endpoint: EndpointConfig) -> list[str]:  # noqa: ARG002
        # The WebUI API does not expose schedulers; these are its built-in names.
        return list(SCHEDULERS)

    def set_sd_model(self, endpoint: EndpointConfig, title: str) -> None:
        url = endpoint.url("sdapi/v1/options")
        _LOG.info("sd_change_model url=%s model=%s", url, title)
        with _network_errors(url):
            resp = self._client.post(url, json={"sd_model_checkpoint": title}, timeout=self._long_timeout_s)
        _raise_for_status(resp)

    def _get_json(self, endpoint: EndpointConfig, path: str) -> Any:
        url = endpoint.url(path)
        _LOG.info("catalog_request url=%s", url)
        with _network_errors(url):
            resp = self._client.get(url, timeout=self._catalog_timeout_s)
        _raise_for_status(resp)
        try:
            return resp.json()
        except ValueError as e:
            raise DecodeError(f"Failed to parse response from {url}", frame=resp.text[:200]) from e
