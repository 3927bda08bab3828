"""local_llm_chat.generation

State machine for the active image-generation job.

    Idle -> Queued -> Running(pct) -> Done(image) | Error(reason)

The submission (`txt2img`) runs as one background task on the "image" slot;
a `ProgressPoller` queries progress alongside it. All transitions happen in
`tick()`, called from the UI thread. Submitting a new job supersedes the
previous one: its submission result and its poller are both discarded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional

from .bridge import TaskBridge, TaskHandle, Terminal
from .endpoints import EndpointConfig, GenerationParams
from .progress import ProgressPoller
from .transport import GeneratedImage, LoRA, SDModel, Transport, describe_error


_LOG = logging.getLogger("local_llm_chat.generation")


class JobStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


@dataclass(frozen=True)
class GenerationJob:
    handle: Optional[TaskHandle]
    params: GenerationParams
    status: JobStatus = JobStatus.QUEUED
    percent: float = 0.0
    preview: Optional[bytes] = None
    image: Optional[GeneratedImage] = None
    error: str = ""
    started_at: float = field(default_factory=time.time)

    @property
    def prompt(self) -> str:
        return self.params.prompt


@dataclass(frozen=True)
class SDCatalog:
    models: list[SDModel] = field(default_factory=list)
    loras: list[LoRA] = field(default_factory=list)
    samplers: list[str] = field(default_factory=list)
    schedulers: list[str] = field(default_factory=list)


class GenerationSession:
    SLOT = "image"
    CATALOG_SLOT = "image_catalog"
    MODEL_SLOT = "image_model"

    def __init__(
        self,
        *,
        bridge: TaskBridge,
        transport: Transport,
        endpoint: EndpointConfig,
        progress_interval_s: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bridge = bridge
        self._transport = transport
        self.endpoint = endpoint
        self.progress_interval_s = float(progress_interval_s)
        self._clock = clock
        self.job: Optional[GenerationJob] = None
        self._poller: Optional[ProgressPoller] = None
        self._catalog_handle: Optional[TaskHandle] = None
        self._switch_handle: Optional[TaskHandle] = None
        self._switch_target = ""
        self.catalog = SDCatalog()
        self.catalog_error = ""
        self.model_error = ""

    @property
    def busy(self) -> bool:
        return self.job is not None and not self.job.status.is_terminal

    @property
    def poller(self) -> Optional[ProgressPoller]:
        return self._poller

    def submit(self, params: GenerationParams) -> GenerationJob:
        if self.busy:
            _LOG.info("job_superseded prompt=%r", self.job.prompt[:60] if self.job else "")
        self._stop_poller()

        endpoint = self.endpoint
        if not params.model and endpoint.selected_model:
            params = replace(params, model=endpoint.selected_model)
        transport = self._transport

        handle = self._bridge.spawn(self.SLOT, lambda ctx: transport.submit_generation(endpoint, params))
        self._poller = ProgressPoller(
            self._bridge,
            lambda: transport.query_progress(endpoint),
            interval_s=self.progress_interval_s,
            clock=self._clock,
        )
        self.job = GenerationJob(handle=handle, params=params)
        _LOG.info(
            "job_submitted gen=%d steps=%d size=%dx%d sampler=%s lora=%s",
            handle.generation,
            params.steps,
            params.width,
            params.height,
            params.sampler_name,
            params.lora or "-",
        )
        return self.job

    def cancel(self) -> None:
        """Stop tracking the job. The server may still finish it."""

        self._stop_poller()
        self._bridge.cancel(self.SLOT)
        if self.busy and self.job is not None:
            self.job = replace(self.job, status=JobStatus.ERROR, error="Cancelled")

    def tick(self) -> bool:
        changed = self._tick_catalog()
        changed = self._tick_model_switch() or changed
        job = self.job
        if job is None or job.status.is_terminal:
            return changed

        res = self._bridge.poll(job.handle)
        if isinstance(res, Terminal):
            self._stop_poller()
            if res.ok:
                self.job = replace(job, status=JobStatus.DONE, image=res.value, percent=100.0)
                _LOG.info("job_done gen=%d bytes=%d", job.handle.generation if job.handle else 0, len(res.value.data))
            else:
                reason = describe_error(res.error) if res.error is not None else "unknown error"
                self.job = replace(job, status=JobStatus.ERROR, error=reason)
                _LOG.warning("job_failed error=%s", reason)
            return True

        progress = self._poller.tick() if self._poller is not None else None
        if progress is None or progress.is_terminal or progress.fraction <= 0.0:
            return changed
        updated = replace(
            job,
            status=JobStatus.RUNNING,
            percent=round(progress.percent, 1),
            preview=progress.preview or job.preview,
        )
        if updated != job:
            self.job = updated
            changed = True
        return changed

    def _stop_poller(self) -> None:
        if self._poller is not None:
            self._poller.stop()

    # ---- Catalog (settings form) ----

    def refresh_catalog(self) -> None:
        endpoint = self.endpoint
        transport = self._transport

        def fetch(ctx) -> SDCatalog:  # noqa: ANN001
            return SDCatalog(
                models=transport.list_sd_models(endpoint),
                loras=transport.list_loras(endpoint),
                samplers=transport.list_samplers(endpoint),
                schedulers=transport.list_schedulers(endpoint),
            )

        self.catalog_error = ""
        self._catalog_handle = self._bridge.spawn(self.CATALOG_SLOT, fetch)

    @property
    def catalog_loading(self) -> bool:
        return self._catalog_handle is not None

    def _tick_catalog(self) -> bool:
        if self._catalog_handle is None:
            return False
        res = self._bridge.poll(self._catalog_handle)
        if not isinstance(res, Terminal):
            return False
        self._catalog_handle = None
        if res.ok:
            self.catalog = res.value
        else:
            self.catalog_error = f"Failed to fetch Stable Diffusion catalog: {describe_error(res.error)}"
            _LOG.warning("sd_catalog_failed error=%s", self.catalog_error)
        return True

    # ---- Checkpoint switch ----

    def switch_model(self, title: str) -> Optional[TaskHandle]:
        """Load checkpoint `title` on the server; later jobs default to it."""

        title = title.strip()
        if not title or title == self.endpoint.selected_model:
            return None
        endpoint = self.endpoint
        transport = self._transport
        self.model_error = ""
        self._switch_target = title
        self._switch_handle = self._bridge.spawn(
            self.MODEL_SLOT, lambda ctx: transport.set_sd_model(endpoint, title)
        )
        return self._switch_handle

    @property
    def model_switching(self) -> bool:
        return self._switch_handle is not None

    def _tick_model_switch(self) -> bool:
        if self._switch_handle is None:
            return False
        res = self._bridge.poll(self._switch_handle)
        if not isinstance(res, Terminal):
            return False
        self._switch_handle = None
        if res.ok:
            self.endpoint = self.endpoint.with_changes(selected_model=self._switch_target)
            _LOG.info("sd_model_switched model=%s", self._switch_target)
        else:
            self.model_error = f"Failed to switch model: {describe_error(res.error)}"
            _LOG.warning("sd_model_switch_failed error=%s", self.model_error)
        return True
