"""local_llm_chat.progress

Progress polling for the active image job.

`ProgressPoller.tick()` is called from the UI tick. It issues at most one
progress query at a time, no more often than `interval_s`, through the task
bridge. Once stopped (terminal status observed by the caller, or a progress
fraction of 1.0 seen here) it never issues another query.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .bridge import TaskBridge, TaskHandle, Terminal
from .transport import Progress, describe_error


_LOG = logging.getLogger("local_llm_chat.progress")


class ProgressPoller:
    def __init__(
        self,
        bridge: TaskBridge,
        query: Callable[[], Progress],
        *,
        slot: str = "image_progress",
        interval_s: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bridge = bridge
        self._query = query
        self._slot = slot
        self.interval_s = float(interval_s)
        self._clock = clock
        self._handle: Optional[TaskHandle] = None
        self._last_sent: Optional[float] = None
        self.queries = 0
        self.failures = 0
        self.stopped = False

    @property
    def in_flight(self) -> bool:
        return self._handle is not None

    def due(self) -> bool:
        if self.stopped or self._handle is not None:
            return False
        if self._last_sent is None:
            return True
        return (self._clock() - self._last_sent) >= self.interval_s

    def tick(self) -> Optional[Progress]:
        """Collect a finished query (if any) and send the next one when due."""

        if self.stopped:
            return None

        got: Optional[Progress] = None
        if self._handle is not None:
            res = self._bridge.poll(self._handle)
            if isinstance(res, Terminal):
                self._handle = None
                if res.ok and isinstance(res.value, Progress):
                    got = res.value
                elif res.error is not None:
                    # The job itself may still finish; keep polling.
                    self.failures += 1
                    _LOG.warning("progress_query_failed error=%s", describe_error(res.error))

        if got is not None and got.is_terminal:
            self.stop()
            return got

        if self.due():
            self._last_sent = self._clock()
            self.queries += 1
            query = self._query
            self._handle = self._bridge.spawn(self._slot, lambda ctx: query())
        return got

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        if self._handle is not None:
            self._bridge.cancel(self._slot)
            self._handle = None
        _LOG.info("progress_poller_stopped queries=%d failures=%d", self.queries, self.failures)
