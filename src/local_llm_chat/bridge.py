"""local_llm_chat.bridge

Background tasks the UI can poll once per frame.

Threading:
- Each task runs on its own daemon thread and does all network I/O there.
  A task stuck waiting on a slow server never holds up other slots, and an
  open request never keeps the process alive after the window closes.
- The UI thread calls `poll(handle)` every frame; it never blocks.
- Each task owns one `_ExchangeCell`: a lock-protected single slot holding the
  latest update (overwritten, so updates must be snapshots) and, once the task
  returns or raises, its terminal result.

Slots:
- A slot ("chat", "image", ...) has at most one current handle. Spawning on a
  slot supersedes the previous handle: its cell is closed, later publishes are
  dropped and `poll` on it returns None. There is no server-side cancel. The
  task sees `ctx.superseded`, and any hook it registered with
  `ctx.on_abandon` (typically closing its open response) runs right away.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union


_LOG = logging.getLogger("local_llm_chat.bridge")

T = TypeVar("T")


@dataclass(frozen=True)
class TaskHandle:
    slot: str
    generation: int
    task_id: int


@dataclass(frozen=True)
class Update(Generic[T]):
    value: T


@dataclass(frozen=True)
class Terminal:
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


PollResult = Union[None, Update[Any], Terminal]

Hook = Callable[[], Any]


class _ExchangeCell:
    """Single-producer / single-consumer slot."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._update: Optional[Update[Any]] = None
        self._terminal: Optional[Terminal] = None
        self._delivered = False
        self._closed = False
        self._hooks: list[Hook] = []

    def put_update(self, value: Any) -> bool:
        with self._lock:
            if self._closed or self._terminal is not None:
                return False
            self._update = Update(value)
            return True

    def put_terminal(self, terminal: Terminal) -> None:
        with self._lock:
            self._hooks.clear()
            if self._closed or self._terminal is not None:
                return
            self._terminal = terminal

    def take(self) -> PollResult:
        with self._lock:
            if self._closed:
                return None
            if self._update is not None:
                upd, self._update = self._update, None
                return upd
            if self._terminal is not None and not self._delivered:
                self._delivered = True
                return self._terminal
            return None

    def add_hook(self, hook: Hook) -> bool:
        """Register `hook` for `close()`. Returns False if already closed."""

        with self._lock:
            if self._closed:
                return False
            self._hooks.append(hook)
            return True

    def close(self) -> list[Hook]:
        """Close the cell and hand back the hooks the caller must run."""

        with self._lock:
            self._closed = True
            self._update = None
            hooks, self._hooks = self._hooks, []
        return hooks

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed


def _run_hooks(hooks: list[Hook], handle: TaskHandle) -> None:
    for hook in hooks:
        try:
            hook()
        except Exception as e:  # noqa: BLE001
            # The task is abandoned whether or not the hook succeeded.
            _LOG.info("abandon_hook_failed slot=%s gen=%d error=%s", handle.slot, handle.generation, e)


class TaskContext:
    """What a running task sees of the bridge."""

    def __init__(self, handle: TaskHandle, cell: _ExchangeCell) -> None:
        self.handle = handle
        self._cell = cell

    @property
    def superseded(self) -> bool:
        return self._cell.closed

    def publish(self, value: Any) -> bool:
        """Offer a snapshot to the UI. Returns False once superseded."""

        return self._cell.put_update(value)

    def on_abandon(self, hook: Hook) -> None:
        """Run `hook` when this task is superseded or the bridge shuts down.

        Runs immediately if that already happened. Dropped once the task has
        finished.
        """

        if not self._cell.add_hook(hook):
            _run_hooks([hook], self.handle)


Task = Callable[[TaskContext], Any]


class _ThreadPerTask(Executor):
    """One daemon thread per submitted call."""

    def __init__(self, thread_name_prefix: str = "llm_io") -> None:
        self._prefix = thread_name_prefix
        self._ids = itertools.count(1)

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        fut: Future = Future()

        def run() -> None:
            if not fut.set_running_or_notify_cancel():
                return
            try:
                fut.set_result(fn(*args, **kwargs))
            except BaseException as e:  # noqa: BLE001
                fut.set_exception(e)

        threading.Thread(target=run, name=f"{self._prefix}-{next(self._ids)}", daemon=True).start()
        return fut


class TaskBridge:
    def __init__(self, *, executor: Optional[Executor] = None) -> None:
        self._executor = executor or _ThreadPerTask()
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._generations: dict[str, int] = {}
        self._current: dict[str, TaskHandle] = {}
        self._cells: dict[TaskHandle, _ExchangeCell] = {}

    def spawn(self, slot: str, task: Task) -> TaskHandle:
        with self._lock:
            gen = self._generations.get(slot, 0) + 1
            self._generations[slot] = gen
            handle = TaskHandle(slot=slot, generation=gen, task_id=next(self._ids))
            prev = self._current.get(slot)
            hooks = self._retire(prev) if prev is not None else []
            cell = _ExchangeCell()
            self._current[slot] = handle
            self._cells[handle] = cell

        if prev is not None:
            _LOG.info("task_superseded slot=%s old_gen=%d new_gen=%d", slot, prev.generation, gen)
            _run_hooks(hooks, prev)
        ctx = TaskContext(handle, cell)
        self._executor.submit(self._run, task, ctx, cell)
        return handle

    def poll(self, handle: Optional[TaskHandle]) -> PollResult:
        if handle is None:
            return None
        with self._lock:
            if self._current.get(handle.slot) != handle:
                return None
            cell = self._cells.get(handle)
        if cell is None:
            return None
        res = cell.take()
        if isinstance(res, Terminal):
            with self._lock:
                if self._current.get(handle.slot) == handle:
                    del self._current[handle.slot]
                self._cells.pop(handle, None)
        return res

    def current(self, slot: str) -> Optional[TaskHandle]:
        with self._lock:
            return self._current.get(slot)

    def is_current(self, handle: Optional[TaskHandle]) -> bool:
        if handle is None:
            return False
        with self._lock:
            return self._current.get(handle.slot) == handle

    def cancel(self, slot: str) -> None:
        """Supersede the slot's current task without starting a new one."""

        with self._lock:
            prev = self._current.pop(slot, None)
            hooks: list[Hook] = []
            if prev is not None:
                self._generations[slot] = prev.generation + 1
                hooks = self._retire(prev)
        if prev is not None:
            _LOG.info("task_cancelled slot=%s gen=%d", slot, prev.generation)
            _run_hooks(hooks, prev)

    def shutdown(self) -> None:
        """Abandon every task and run their abandon hooks."""

        with self._lock:
            retired = [(h, self._retire(h)) for h in list(self._current.values())]
            self._current.clear()
        for handle, hooks in retired:
            _run_hooks(hooks, handle)
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _retire(self, handle: TaskHandle) -> list[Hook]:
        # Caller holds self._lock; the returned hooks run after it is released.
        cell = self._cells.pop(handle, None)
        return cell.close() if cell is not None else []

    @staticmethod
    def _run(task: Task, ctx: TaskContext, cell: _ExchangeCell) -> None:
        try:
            value = task(ctx)
        except Exception as e:  # noqa: BLE001
            if not ctx.superseded:
                _LOG.error(
                    "task_failed slot=%s gen=%d error=%s",
                    ctx.handle.slot,
                    ctx.handle.generation,
                    f"{type(e).__name__}: {e}",
                )
            cell.put_terminal(Terminal(error=e))
            return
        cell.put_terminal(Terminal(value=value))
