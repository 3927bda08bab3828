"""local_llm_chat.stream_decoder

Incremental decoding of streamed chat responses.

Chunks arrive at arbitrary boundaries: a frame may span several chunks and a
chunk may hold several frames. Decoders buffer partial lines (and partial UTF-8
sequences) and resume on the next chunk, so the deltas produced never depend on
where the transport happened to split the body.

Two wire formats:
- SSE (`data: {json}` lines, terminated by `data: [DONE]`), used by
  OpenAI-compatible servers such as LM Studio.
- NDJSON (one JSON object per line, terminated by `"done": true`), used by
  Ollama's native chat API.

A malformed frame is skipped and recorded; it never aborts the stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Iterable, Iterator

from .endpoints import EndpointKind, WireFormat
from .transport import DecodeError, ServerStreamError


_LOG = logging.getLogger("local_llm_chat.stream_decoder")

SSE_SENTINEL = "[DONE]"


class _LineBuffer:
    """Bytes in, complete text lines out."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._utf8.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [ln[:-1] if ln.endswith("\r") else ln for ln in lines]

    def flush(self) -> list[str]:
        tail = self._pending + self._utf8.decode(b"", final=True)
        self._pending = ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []


class StreamDecoder:
    """Base decoder: feed raw chunks, collect text deltas.

    Subclasses implement `_decode_line`, returning the delta carried by one
    line (or None).
    """

    def __init__(self) -> None:
        self._lines = _LineBuffer()
        self.done = False
        self.frames = 0
        self.errors: list[DecodeError] = []
        # Set when the server reports an error in-stream; raised after the
        # deltas decoded before it have been handed out.
        self.failure: ServerStreamError | None = None

    def feed(self, chunk: bytes) -> list[str]:
        if self.done or self.failure is not None or not chunk:
            return []
        return self._decode_lines(self._lines.feed(chunk))

    def close(self) -> list[str]:
        """Connection closed: decode whatever is left in the buffer."""

        if self.done or self.failure is not None:
            return []
        return self._decode_lines(self._lines.flush())

    def iter_deltas(self, chunks: Iterable[bytes]) -> Iterator[str]:
        for chunk in chunks:
            yield from self.feed(chunk)
            if self.failure is not None:
                raise self.failure
            if self.done:
                return
        yield from self.close()
        if self.failure is not None:
            raise self.failure

    def _decode_lines(self, lines: list[str]) -> list[str]:
        out: list[str] = []
        for line in lines:
            if self.done:
                break
            try:
                delta = self._decode_line(line)
            except DecodeError as e:
                self.errors.append(e)
                _LOG.warning("frame_skipped error=%s frame=%r", str(e), e.frame[:200])
                continue
            except ServerStreamError as e:
                self.failure = e
                break
            if delta:
                out.append(delta)
        return out

    def _decode_line(self, line: str) -> str | None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _load_json(self, payload: str) -> dict[str, Any]:
        self.frames += 1
        try:
            obj = json.loads(payload)
        except json.JSONDecodeError as e:
            raise DecodeError(f"invalid JSON: {e}", frame=payload) from e
        if not isinstance(obj, dict):
            raise DecodeError("frame must be a JSON object", frame=payload)
        return obj


class SSEDecoder(StreamDecoder):
    """OpenAI-compatible `data: {...}` frames."""

    def _decode_line(self, line: str) -> str | None:
        if not line or line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if not sep or name != "data":
            # `event:` / `id:` / `retry:` carry nothing we render.
            return None
        payload = value[1:] if value.startswith(" ") else value
        if payload.strip() == SSE_SENTINEL:
            self.done = True
            return None
        obj = self._load_json(payload)
        err = obj.get("error")
        if err:
            raise ServerStreamError(_error_text(err))
        choices = obj.get("choices")
        if not isinstance(choices, list):
            raise DecodeError("frame has no 'choices' list", frame=payload)
        if not choices:
            return None
        first = choices[0] if isinstance(choices[0], dict) else {}
        delta = first.get("delta") if isinstance(first.get("delta"), dict) else {}
        content = delta.get("content")
        return content if isinstance(content, str) else None


class NDJSONDecoder(StreamDecoder):
    """Ollama `/api/chat` lines: `{"message": {"content": ...}, "done": false}`."""

    def _decode_line(self, line: str) -> str | None:
        if not line.strip():
            return None
        obj = self._load_json(line)
        err = obj.get("error")
        if err:
            raise ServerStreamError(_error_text(err))
        msg = obj.get("message")
        content = msg.get("content") if isinstance(msg, dict) else None
        if obj.get("done") is True:
            self.done = True
        return content if isinstance(content, str) else None


def _error_text(err: Any) -> str:
    if isinstance(err, dict):
        return str(err.get("message") or err)
    return str(err)


def decoder_for(kind: EndpointKind) -> StreamDecoder:
    if kind.wire_format is WireFormat.SSE:
        return SSEDecoder()
    return NDJSONDecoder()
