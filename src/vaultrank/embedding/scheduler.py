"""Priority inference scheduler.

Interactive queries run on the HIGH lane and bulk re-embedding on the LOW
lane. Requests go to one EmbeddingWorker through a bounded thread pool, so
no more than ``max_concurrency`` are in flight at a time.

Guarantees:
- a HIGH request is dispatched before any LOW request queued at that moment
- equal priorities dispatch in submission order
- each request id is unique among pending requests and released only after
  its response is delivered
- a configure request runs only while nothing else is in flight, and new
  submissions are rejected with ModelUnavailable until it finishes
- submitting to a lane cancels the previous request still pending in that
  lane, and a late result for a cancelled request is dropped
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import itertools
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

import structlog

from vaultrank.config.models import SchedulerConfig
from vaultrank.core.errors import ModelUnavailable, QueueFull
from vaultrank.embedding.protocol import (
    ConfigureOutput,
    ConfigureRequest,
    EmbedOutput,
    EmbedRequest,
    Priority,
    ProgressEvent,
    RequestIdAllocator,
    ResponseStatus,
    WorkerResponse,
)
from vaultrank.embedding.registry import Provider, TextKind
from vaultrank.embedding.worker import EmbeddingWorker

log = structlog.get_logger()


class SchedulerState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    CONFIGURING = "configuring"


@dataclass
class _Job:
    request: EmbedRequest
    priority: Priority
    future: asyncio.Future[EmbedOutput]


@dataclass
class SchedulerStatus:
    state: SchedulerState
    queued: int
    in_flight: int
    session: int
    model_id: str | None
    dimension: int | None


@dataclass
class InferenceScheduler:
    """Dispatches embedding work to the worker by priority."""

    worker: EmbeddingWorker
    config: SchedulerConfig = field(default_factory=SchedulerConfig)
    quantized: bool = True

    _state: SchedulerState = field(default=SchedulerState.STOPPED, init=False)
    _executor: ThreadPoolExecutor | None = field(default=None, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _heap: list[tuple[int, int, _Job]] = field(default_factory=list, init=False)
    _seq: itertools.count[int] = field(default_factory=itertools.count, init=False)
    _ids: RequestIdAllocator = field(default_factory=RequestIdAllocator, init=False)
    _in_flight: int = field(default=0, init=False)
    _wakeup: asyncio.Event | None = field(default=None, init=False)
    _idle: asyncio.Event | None = field(default=None, init=False)
    _configure_lock: asyncio.Lock | None = field(default=None, init=False)
    _dispatcher: asyncio.Task[None] | None = field(default=None, init=False)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False)
    _lanes: dict[str, asyncio.Future[EmbedOutput]] = field(default_factory=dict, init=False)
    _listeners: list[Callable[[ProgressEvent], None]] = field(default_factory=list, init=False)
    _session: int = field(default=0, init=False)
    _active: ConfigureOutput | None = field(default=None, init=False)

    # ===================================================================
    # Lifecycle
    # ===================================================================

    async def start(self) -> None:
        """Start the dispatcher on the running loop."""
        if self._executor is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrency,
            thread_name_prefix="vaultrank-inference",
        )
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._configure_lock = asyncio.Lock()
        self._state = SchedulerState.RUNNING
        self._dispatcher = self._loop.create_task(self._dispatch_loop())
        log.info(
            "scheduler.started",
            max_concurrency=self.config.max_concurrency,
            queue_max_size=self.config.queue_max_size,
        )

    async def stop(self) -> None:
        """Stop dispatching, fail queued work and shut the pool down."""
        if self._executor is None:
            return
        self._state = SchedulerState.STOPPED

        if self._dispatcher is not None and not self._dispatcher.done():
            self._dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatcher
        self._dispatcher = None

        while self._heap:
            _, _, job = heapq.heappop(self._heap)
            if not job.future.done():
                job.future.set_exception(
                    ModelUnavailable.not_loaded(job.request.model_id, "scheduler stopped")
                )
            self._ids.release(job.request.id)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._executor.shutdown(wait=True)
        self._executor = None
        self.worker.close()
        log.info("scheduler.stopped")

    def add_progress_listener(self, listener: Callable[[ProgressEvent], None]) -> None:
        self._listeners.append(listener)

    # ===================================================================
    # Configuration
    # ===================================================================

    async def configure(
        self,
        provider: Provider,
        model_id: str,
        *,
        num_threads: int = 2,
        simd: bool = True,
        quantized: bool = True,
        dimension: int | None = None,
    ) -> ConfigureOutput:
        """Swap the worker's backend once nothing is in flight.

        Raises the worker's error (typically ModelUnavailable) if the new
        backend cannot be loaded; the previous backend stays active then.
        """
        assert self._configure_lock is not None and self._idle is not None
        assert self._loop is not None and self._executor is not None

        async with self._configure_lock:
            self._state = SchedulerState.CONFIGURING
            try:
                await self._idle.wait()
                request = ConfigureRequest(
                    id=self._ids.allocate(),
                    provider=provider,
                    model_id=model_id,
                    num_threads=num_threads,
                    simd=simd,
                    quantized=quantized,
                    dimension=dimension,
                )
                log.info("scheduler.configure", request_id=request.id, model=model_id)
                try:
                    response: WorkerResponse = await self._loop.run_in_executor(
                        self._executor, self.worker.handle, request, self._emit_progress
                    )
                finally:
                    self._ids.release(request.id)
            finally:
                if self._state is SchedulerState.CONFIGURING:
                    self._state = SchedulerState.RUNNING
                self._signal()

            if response.status is ResponseStatus.ERROR:
                assert response.error is not None
                raise response.error
            assert isinstance(response.output, ConfigureOutput)
            self._active = response.output
            self.quantized = quantized
            self._session += 1
            log.info(
                "scheduler.configured",
                model=response.output.model_id,
                dimension=response.output.dimension,
                artifact=response.output.artifact,
                session=self._session,
            )
            return response.output

    @property
    def session(self) -> int:
        """Incremented on every successful configure."""
        return self._session

    @property
    def active_model(self) -> ConfigureOutput | None:
        return self._active

    # ===================================================================
    # Submission
    # ===================================================================

    def submit(
        self,
        texts: Sequence[str],
        model_id: str,
        priority: Priority = Priority.LOW,
        *,
        kind: TextKind = TextKind.DOCUMENT,
        lane: str | None = None,
    ) -> asyncio.Future[EmbedOutput]:
        """Queue an embed request; the returned future resolves with its vectors.

        Raises:
            ModelUnavailable: scheduler stopped or reconfiguring.
            QueueFull: the queue is at capacity for this priority.
        """
        if self._state is SchedulerState.STOPPED or self._loop is None:
            raise ModelUnavailable.not_loaded(model_id, "scheduler not running")
        if self._state is SchedulerState.CONFIGURING:
            raise ModelUnavailable.reconfiguring()

        depth = len(self._heap)
        limit = self.config.queue_max_size
        if priority is Priority.HIGH:
            limit += self.config.high_priority_ceiling
        if depth >= limit:
            raise QueueFull.at_capacity(depth, limit, priority.name)

        if lane is not None:
            previous = self._lanes.get(lane)
            if previous is not None and not previous.done():
                previous.cancel()
                log.debug("scheduler.lane_superseded", lane=lane)

        future: asyncio.Future[EmbedOutput] = self._loop.create_future()
        request = EmbedRequest(
            id=self._ids.allocate(),
            texts=tuple(texts),
            model_id=model_id,
            kind=kind,
            quantized=self.quantized,
        )
        job = _Job(request=request, priority=priority, future=future)
        heapq.heappush(self._heap, (priority.value, next(self._seq), job))
        if lane is not None:
            self._lanes[lane] = future

        log.debug(
            "scheduler.submitted",
            request_id=request.id,
            priority=priority.name,
            texts=len(request.texts),
            depth=len(self._heap),
        )
        self._signal()
        return future

    async def embed(
        self,
        texts: Sequence[str],
        model_id: str,
        priority: Priority = Priority.LOW,
        *,
        kind: TextKind = TextKind.DOCUMENT,
        lane: str | None = None,
    ) -> EmbedOutput:
        """Submit and wait for the result."""
        return await self.submit(texts, model_id, priority, kind=kind, lane=lane)

    @property
    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            state=self._state,
            queued=len(self._heap),
            in_flight=self._in_flight,
            session=self._session,
            model_id=self._active.model_id if self._active else None,
            dimension=self._active.dimension if self._active else None,
        )

    @property
    def pending_ids(self) -> frozenset[int]:
        return self._ids.pending

    # ===================================================================
    # Dispatch
    # ===================================================================

    def _signal(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    async def _dispatch_loop(self) -> None:
        assert self._wakeup is not None
        while True:
            while (
                self._heap
                and self._state is SchedulerState.RUNNING
                and self._in_flight < self.config.max_concurrency
            ):
                _, _, job = heapq.heappop(self._heap)
                if job.future.done():
                    # Cancelled while queued
                    self._ids.release(job.request.id)
                    continue
                self._start(job)
            self._wakeup.clear()
            await self._wakeup.wait()

    def _start(self, job: _Job) -> None:
        assert self._loop is not None and self._idle is not None
        self._in_flight += 1
        self._idle.clear()
        task = self._loop.create_task(self._run(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: _Job) -> None:
        assert self._loop is not None and self._idle is not None
        response: WorkerResponse | None = None
        try:
            response = await self._loop.run_in_executor(
                self._executor, self.worker.handle, job.request, self._emit_progress
            )
        except Exception as e:
            log.exception("scheduler.dispatch_failed", request_id=job.request.id)
            if not job.future.done():
                job.future.set_exception(e)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

        if response is not None:
            self._deliver(job, response)
        self._ids.release(job.request.id)
        self._signal()

    def _deliver(self, job: _Job, response: WorkerResponse) -> None:
        if job.future.done():
            log.debug("scheduler.result_dropped", request_id=job.request.id)
            return
        if response.status is ResponseStatus.SUCCESS:
            job.future.set_result(response.output)  # type: ignore[arg-type]
        else:
            assert response.error is not None
            job.future.set_exception(response.error)

    def _emit_progress(self, event: ProgressEvent) -> None:
        """Called from the worker thread."""
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._notify, event)

    def _notify(self, event: ProgressEvent) -> None:
        log.debug("scheduler.progress", **event.to_dict())
        for listener in self._listeners:
            listener(event)
