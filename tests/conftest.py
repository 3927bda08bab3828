from __future__ import annotations

import time
from concurrent.futures import Executor, Future
from typing import Any, Callable

import pytest

from local_llm_chat.bridge import TaskBridge


class InlineExecutor(Executor):
    """Runs each task to completion inside `submit` (deterministic tests)."""

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        fut: Future = Future()
        try:
            fut.set_result(fn(*args, **kwargs))
        except BaseException as e:  # noqa: BLE001
            fut.set_exception(e)
        return fut


@pytest.fixture
def inline_bridge() -> TaskBridge:
    return TaskBridge(executor=InlineExecutor())


@pytest.fixture
def thread_bridge():
    bridge = TaskBridge()
    yield bridge
    bridge.shutdown()


def _tick_until(session: Any, predicate: Callable[[], bool], *, timeout_s: float = 5.0, on_change=None) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if session.tick() and on_change is not None:
            on_change()
        if predicate():
            return
        time.sleep(0.002)
    raise AssertionError("condition not reached before timeout")


@pytest.fixture
def tick_until():
    """Tick a session (as the UI timer would) until `predicate()` holds."""

    return _tick_until
