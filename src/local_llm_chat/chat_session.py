"""local_llm_chat.chat_session

State machine for the single active conversation.

    Idle -> Sending -> Streaming -> Complete
            Sending -> Error              (stream never established)
                       Streaming -> Error (dropped mid-stream; partial text kept)

The token stream runs as a background task on the "chat" slot of the
`TaskBridge`. The task publishes snapshots of the accumulated text; the UI
calls `tick()` once per frame, which polls the bridge and applies whatever
arrived. No state here is touched from a background thread.

Re-entrant send: a new message while Sending/Streaming aborts the current
stream and starts a new one. The aborted stream's partial reply stays in the
conversation as an ordinary (now immutable) assistant message.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Sequence

from .bridge import PollResult, TaskBridge, TaskContext, TaskHandle, Terminal, Update
from .config import DEFAULT_LLM_MODEL
from .endpoints import ChatOptions, EndpointConfig
from .stream_decoder import decoder_for
from .transport import ServerStreamError, StreamInterrupted, Transport, describe_error


_LOG = logging.getLogger("local_llm_chat.chat_session")

JsonDict = dict[str, Any]

ROLES: frozenset[str] = frozenset({"user", "assistant", "system"})


class ChatStatus(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def in_flight(self) -> bool:
        return self in (ChatStatus.SENDING, ChatStatus.STREAMING)


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class StreamState:
    status: ChatStatus = ChatStatus.IDLE
    accumulated_text: str = ""
    last_update_time: float = 0.0
    error: str = ""


@dataclass(frozen=True)
class StreamSnapshot:
    """Published by the stream task: everything received so far."""

    text: str


def stream_chat_task(
    ctx: TaskContext,
    *,
    transport: Transport,
    endpoint: EndpointConfig,
    messages: Sequence[dict[str, str]],
    options: ChatOptions,
) -> str:
    """Background half of a send: open the stream and publish snapshots."""

    decoder = decoder_for(endpoint.kind)
    text = ""
    with transport.send_chat(endpoint, messages, options=options) as stream:
        # Release the connection as soon as the stream is abandoned.
        ctx.on_abandon(stream.close)
        ctx.publish(StreamSnapshot(text))
        try:
            for delta in decoder.iter_deltas(stream):
                if ctx.superseded:
                    _LOG.info("stream_abandoned gen=%d chars=%d", ctx.handle.generation, len(text))
                    return text
                text += delta
                ctx.publish(StreamSnapshot(text))
        except (StreamInterrupted, ServerStreamError) as e:
            if ctx.superseded:
                _LOG.info("stream_abandoned gen=%d chars=%d", ctx.handle.generation, len(text))
                return text
            raise StreamInterrupted(str(e), partial_text=text) from e

    if not decoder.done and not ctx.superseded:
        raise StreamInterrupted("connection closed before the end-of-stream marker", partial_text=text)
    if decoder.errors:
        _LOG.warning("stream_done_with_skipped_frames skipped=%d frames=%d", len(decoder.errors), decoder.frames)
    return text


class ChatSession:
    SLOT = "chat"
    MODELS_SLOT = "chat_models"

    def __init__(
        self,
        *,
        bridge: TaskBridge,
        transport: Transport,
        endpoint: EndpointConfig,
        options: Optional[ChatOptions] = None,
        system_prompt: str = "",
    ) -> None:
        self._bridge = bridge
        self._transport = transport
        self.endpoint = endpoint
        self.options = options or ChatOptions()
        self.system_prompt = system_prompt
        self.state = StreamState()
        self._conversation: list[Message] = []
        self._handle: Optional[TaskHandle] = None
        self._models_handle: Optional[TaskHandle] = None
        self.available_models: list[str] = []
        self.models_error = ""

    # ---- Read access for the UI ----

    @property
    def conversation(self) -> tuple[Message, ...]:
        return tuple(self._conversation)

    @property
    def handle(self) -> Optional[TaskHandle]:
        return self._handle

    @property
    def busy(self) -> bool:
        return self.state.status.in_flight

    # ---- Actions ----

    def send(self, text: str) -> Optional[TaskHandle]:
        prompt = (text or "").strip()
        if not prompt:
            return None
        if self.busy:
            self._abandon_current("superseded by a new message")

        self._conversation.append(Message(role="user", content=prompt))
        messages = self._wire_messages()
        endpoint = self.endpoint
        options = self.options
        transport = self._transport

        self.state = StreamState(status=ChatStatus.SENDING, last_update_time=time.time())
        self._handle = self._bridge.spawn(
            self.SLOT,
            lambda ctx: stream_chat_task(
                ctx,
                transport=transport,
                endpoint=endpoint,
                messages=messages,
                options=options,
            ),
        )
        _LOG.info(
            "chat_send gen=%d kind=%s model=%s chars=%d history=%d",
            self._handle.generation,
            endpoint.kind.value,
            endpoint.selected_model,
            len(prompt),
            len(messages),
        )
        return self._handle

    def abort(self) -> None:
        if not self.busy:
            return
        self._abandon_current("aborted")
        self.state = replace(self.state, status=ChatStatus.IDLE)

    def clear(self) -> None:
        """New chat: drop the stream and the conversation."""

        self._bridge.cancel(self.SLOT)
        self._handle = None
        self._conversation.clear()
        self.state = StreamState()

    def tick(self) -> bool:
        """Poll the bridge and apply what arrived. Returns True if anything changed."""

        changed = self._tick_models()
        handle = self._handle
        if handle is None:
            return changed
        while (res := self._bridge.poll(handle)) is not None:
            changed = self.apply(handle, res) or changed
            if isinstance(res, Terminal):
                break
        return changed

    def apply(self, handle: TaskHandle, res: PollResult) -> bool:
        if res is None:
            return False
        if handle != self._handle:
            _LOG.info("stale_result_dropped slot=%s gen=%d", handle.slot, handle.generation)
            return False

        now = time.time()
        if isinstance(res, Update):
            snap = res.value
            if not isinstance(snap, StreamSnapshot):
                return False
            if self.state.status is ChatStatus.SENDING:
                self._conversation.append(Message(role="assistant", content=""))
                self.state = replace(self.state, status=ChatStatus.STREAMING, last_update_time=now)
            self._set_text(snap.text, now)
            return True

        # Terminal
        self._handle = None
        if res.ok:
            text = str(res.value or "")
            if text and self.state.status is ChatStatus.SENDING:
                self._conversation.append(Message(role="assistant", content=""))
            self._set_text(text, now)
            self._drop_empty_reply()
            self.state = replace(self.state, status=ChatStatus.COMPLETE, last_update_time=now)
            _LOG.info("chat_complete gen=%d chars=%d", handle.generation, len(self.state.accumulated_text))
            return True

        err = res.error
        if isinstance(err, StreamInterrupted) and err.partial_text:
            if self.state.status is ChatStatus.SENDING:
                self._conversation.append(Message(role="assistant", content=""))
            self._set_text(err.partial_text, now)
        self._drop_empty_reply()
        reason = describe_error(err) if err is not None else "unknown error"
        self.state = replace(self.state, status=ChatStatus.ERROR, error=reason, last_update_time=now)
        _LOG.warning(
            "chat_error gen=%d kept_chars=%d error=%s",
            handle.generation,
            len(self.state.accumulated_text),
            reason,
        )
        return True

    # ---- Models (settings form) ----

    def refresh_models(self) -> None:
        endpoint = self.endpoint
        transport = self._transport
        self.models_error = ""
        self._models_handle = self._bridge.spawn(self.MODELS_SLOT, lambda ctx: transport.list_models(endpoint))

    @property
    def models_loading(self) -> bool:
        return self._models_handle is not None

    def _tick_models(self) -> bool:
        if self._models_handle is None:
            return False
        res = self._bridge.poll(self._models_handle)
        if not isinstance(res, Terminal):
            return False
        self._models_handle = None
        if res.ok:
            self.available_models = list(res.value or [])
            # Select the first model if none was picked yet.
            if self.endpoint.selected_model in ("", DEFAULT_LLM_MODEL) and self.available_models:
                self.endpoint = self.endpoint.with_changes(selected_model=self.available_models[0])
        else:
            self.models_error = f"Failed to fetch models: {describe_error(res.error)}"
            _LOG.warning("list_models_failed error=%s", self.models_error)
        return True

    # ---- Internals ----

    def _wire_messages(self) -> list[dict[str, str]]:
        out: list[dict[str, str]] = []
        if self.system_prompt.strip():
            out.append({"role": "system", "content": self.system_prompt.strip()})
        for m in self._conversation:
            if m.role not in ROLES or not m.content:
                continue
            if m.role == "user" and out and out[-1]["role"] == "user":
                # User and assistant turns must alternate; an unanswered
                # prompt (aborted or failed send) is merged into the next one.
                out[-1] = {"role": "user", "content": f"{out[-1]['content']}\n\n{m.content}"}
                continue
            out.append(m.to_wire())
        return out

    def _set_text(self, text: str, now: float) -> None:
        # Snapshots only ever extend the reply.
        if len(text) < len(self.state.accumulated_text):
            return
        self.state = replace(self.state, accumulated_text=text, last_update_time=now)
        if self._conversation and self._conversation[-1].role == "assistant":
            last = self._conversation[-1]
            if last.content != text:
                self._conversation[-1] = replace(last, content=text)

    def _drop_empty_reply(self) -> None:
        if self._conversation and self._conversation[-1].role == "assistant" and not self._conversation[-1].content:
            self._conversation.pop()

    def _abandon_current(self, why: str) -> None:
        old = self._handle
        self._bridge.cancel(self.SLOT)
        self._handle = None
        self._drop_empty_reply()
        if old is not None:
            _LOG.info(
                "chat_abandoned gen=%d reason=%s kept_chars=%d",
                old.generation,
                why,
                len(self.state.accumulated_text),
            )
