from __future__ import annotations

import json

import pytest

from local_llm_chat.endpoints import EndpointKind
from local_llm_chat.stream_decoder import NDJSONDecoder, SSEDecoder, decoder_for
from local_llm_chat.transport import ServerStreamError


def _frame(content: str) -> bytes:
    payload = {"id": "c1", "object": "chat.completion.chunk", "choices": [{"index": 0, "delta": {"content": content}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


DONE = b"data: [DONE]\n\n"


def _sse(*contents: str) -> bytes:
    return b"".join(_frame(c) for c in contents) + DONE


def _decode(decoder, chunks) -> list[str]:
    return list(decoder.iter_deltas(chunks))


def test_hello_world_frames_in_one_chunk() -> None:
    dec = SSEDecoder()
    assert _decode(dec, [_sse("Hello", " world")]) == ["Hello", " world"]
    assert dec.done


def test_sse_deltas_do_not_depend_on_chunk_boundaries() -> None:
    body = _sse("Héllo", " wörld", " 🙂", "\n\nnext line")
    expected = _decode(SSEDecoder(), [body])
    assert "".join(expected) == "Héllo wörld 🙂\n\nnext line"

    for i in range(len(body) + 1):
        assert _decode(SSEDecoder(), [body[:i], body[i:]]) == expected, f"split at {i}"

    for i in range(0, len(body), 7):
        for j in range(i, len(body), 13):
            assert _decode(SSEDecoder(), [body[:i], body[i:j], body[j:]]) == expected

    one_byte_chunks = [body[k : k + 1] for k in range(len(body))]
    assert _decode(SSEDecoder(), one_byte_chunks) == expected


def test_malformed_frame_is_skipped_and_recorded() -> None:
    body = _frame("a") + b"data: {not json\n\n" + _frame("b") + b"data: [1, 2]\n\n" + _frame("c") + DONE
    dec = SSEDecoder()
    assert _decode(dec, [body]) == ["a", "b", "c"]
    assert len(dec.errors) == 2
    assert dec.done


def test_empty_chunks_are_noops() -> None:
    body = _sse("x", "y")
    assert _decode(SSEDecoder(), [b"", body[:10], b"", body[10:], b""]) == ["x", "y"]


def test_nothing_is_emitted_after_the_sentinel() -> None:
    dec = SSEDecoder()
    assert _decode(dec, [_sse("a") + _frame("late")]) == ["a"]
    assert dec.feed(_frame("later")) == []


def test_connection_close_without_sentinel_flushes_last_line() -> None:
    body = _frame("Once") + _frame(" upon") + _frame(" a").rstrip(b"\n")
    dec = SSEDecoder()
    assert "".join(_decode(dec, [body])) == "Once upon a"
    assert not dec.done


def test_role_only_and_finish_frames_produce_no_delta() -> None:
    role = b'data: {"choices":[{"index":0,"delta":{"role":"assistant"}}]}\n\n'
    finish = b'data: {"choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}\n\n'
    assert _decode(SSEDecoder(), [role + _frame("hi") + finish + DONE]) == ["hi"]


def test_crlf_comments_and_other_fields_are_tolerated() -> None:
    body = b": keep-alive\r\n\r\nevent: message\r\nid: 7\r\n" + _frame("ok").replace(b"\n", b"\r\n") + b"data: [DONE]\r\n\r\n"
    dec = SSEDecoder()
    assert _decode(dec, [body]) == ["ok"]
    assert dec.done
    assert dec.errors == []


def test_sse_error_payload_raises() -> None:
    body = _frame("partial") + b'data: {"error": {"message": "model not loaded"}}\n\n'
    dec = SSEDecoder()
    got: list[str] = []
    with pytest.raises(ServerStreamError, match="model not loaded"):
        for delta in dec.iter_deltas([body]):
            got.append(delta)
    assert got == ["partial"]
    assert dec.feed(_frame("after")) == []


def _ndjson(*contents: str) -> bytes:
    lines = [json.dumps({"model": "llama3", "message": {"role": "assistant", "content": c}, "done": False}) for c in contents]
    lines.append(json.dumps({"model": "llama3", "message": {"role": "assistant", "content": ""}, "done": True}))
    return ("\n".join(lines) + "\n").encode("utf-8")


def test_ndjson_stream_and_done_marker() -> None:
    body = _ndjson("Hel", "lo ", "wörld")
    expected = ["Hel", "lo ", "wörld"]
    for i in range(len(body) + 1):
        dec = NDJSONDecoder()
        assert _decode(dec, [body[:i], body[i:]]) == expected
        assert dec.done


def test_ndjson_malformed_line_is_skipped() -> None:
    good = _ndjson("a", "b").split(b"\n")
    body = b"\n".join([good[0], b"{oops", good[1], good[2]]) + b"\n"
    dec = NDJSONDecoder()
    assert _decode(dec, [body]) == ["a", "b"]
    assert len(dec.errors) == 1


def test_ndjson_error_line_raises() -> None:
    with pytest.raises(ServerStreamError, match="not found"):
        list(NDJSONDecoder().iter_deltas([b'{"error": "model \'x\' not found"}\n']))


def test_decoder_for_matches_backend_wire_format() -> None:
    assert isinstance(decoder_for(EndpointKind.LMSTUDIO), SSEDecoder)
    assert isinstance(decoder_for(EndpointKind.OLLAMA), NDJSONDecoder)
    with pytest.raises(ValueError):
        decoder_for(EndpointKind.STABLE_DIFFUSION)
