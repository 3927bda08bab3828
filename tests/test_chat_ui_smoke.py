from __future__ import annotations

import json
import os
from pathlib import Path

import httpx

from local_llm_chat.chat_session import ChatStatus, Message
from local_llm_chat.config import DEFAULT_LLM_MODEL, AppConfig
from local_llm_chat.endpoints import EndpointConfig, EndpointKind
from local_llm_chat.transport import Transport


def _reply(request: httpx.Request) -> httpx.Response:
    payload = {"choices": [{"index": 0, "delta": {"content": "Hello <b>there</b>"}}]}
    return httpx.Response(200, content=f"data: {json.dumps(payload)}\n\ndata: [DONE]\n\n".encode())


def test_chat_ui_send_and_render(tmp_path: Path, inline_bridge) -> None:
    # Avoid needing a real display server in CI/headless contexts.
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

    from local_llm_chat.chat_ui import ChatWindow  # noqa: WPS433

    cfg = AppConfig(
        chat=EndpointConfig(kind=EndpointKind.LMSTUDIO, base_url="http://lm:1234", selected_model="qwen"),
        image=EndpointConfig(kind=EndpointKind.STABLE_DIFFUSION, base_url="http://sd:7860"),
        log_dir=tmp_path,
    )
    transport = Transport(client=httpx.Client(transport=httpx.MockTransport(_reply)))
    w = ChatWindow(cfg=cfg, transport=transport, bridge=inline_bridge)
    try:
        w._input.setPlainText("hi")
        w._on_send()
        w._tick()
        assert w._chat.state.status is ChatStatus.COMPLETE
        html_out = w._transcript.toHtml()
        assert "Hello" in html_out
        assert "Hello <b>there</b>" in w._transcript.toPlainText()
        assert w._chat_status.text() == "Complete"
    finally:
        w.close()


def test_render_transcript_escapes_and_marks_thinking() -> None:
    from local_llm_chat.chat_ui import render_transcript  # noqa: WPS433

    conv = (
        Message(role="user", content="<script>x</script>"),
        Message(role="assistant", content="<think>pondering</think>Answer"),
    )
    out = render_transcript(conv, ChatStatus.ERROR, "Server unreachable: refused")
    assert "&lt;script&gt;" in out
    assert "Thinking..." in out
    assert "pondering" in out
    assert "Answer" in out
    assert "Server unreachable" in out

    waiting = render_transcript(conv[:1], ChatStatus.SENDING, "")
    assert "Waiting for the server" in waiting


def _window(tmp_path: Path, bridge, handler):
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

    from local_llm_chat.chat_ui import ChatWindow  # noqa: WPS433

    cfg = AppConfig(
        chat=EndpointConfig(kind=EndpointKind.LMSTUDIO, base_url="http://lm:1234", selected_model="qwen"),
        image=EndpointConfig(kind=EndpointKind.STABLE_DIFFUSION, base_url="http://sd:7860"),
        log_dir=tmp_path,
    )
    transport = Transport(client=httpx.Client(transport=httpx.MockTransport(handler)))
    return ChatWindow(cfg=cfg, transport=transport, bridge=bridge)


def test_changing_endpoint_kind_resets_model(tmp_path: Path, inline_bridge) -> None:
    w = _window(tmp_path, inline_bridge, _reply)
    try:
        w._kind.setCurrentIndex(w._kind.findData(EndpointKind.OLLAMA.value))
        assert w._chat_url.text() == "http://localhost:11434"
        assert w._model.currentText() == DEFAULT_LLM_MODEL

        w._on_apply_settings()
        ep = w._chat.endpoint
        assert ep.kind is EndpointKind.OLLAMA
        assert ep.base_url == "http://localhost:11434"
        assert ep.selected_model == DEFAULT_LLM_MODEL
    finally:
        w.close()


def test_choosing_checkpoint_switches_server_model(tmp_path: Path, inline_bridge) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    w = _window(tmp_path, inline_bridge, handler)
    try:
        w._sd_model.addItem("sdxl_base.safetensors")
        w._sd_model.setCurrentIndex(w._sd_model.findText("sdxl_base.safetensors"))
        w._on_sd_model_chosen()
        w._tick()

        (req,) = seen
        assert str(req.url) == "http://sd:7860/sdapi/v1/options"
        assert json.loads(req.content) == {"sd_model_checkpoint": "sdxl_base.safetensors"}
        assert w._images.endpoint.selected_model == "sdxl_base.safetensors"
        assert w._image_status.text() == "Model: sdxl_base.safetensors"
    finally:
        w.close()
