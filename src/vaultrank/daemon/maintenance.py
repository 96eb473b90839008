"""Background maintenance loop.

Change notifications flow through a bounded channel into a single consumer
task, which coalesces them per document, waits for a quiet period and hands
the batch to the coordinator. Query handling never waits on this loop.

Events the channel cannot take are not lost: the loop remembers that it
overflowed and reconciles with a full scan on its next flush. Documents
whose embedding was deferred (scheduler saturated or reconfiguring) are fed
back into the channel after a backoff.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from vaultrank.config.models import IndexerConfig
from vaultrank.core.errors import VaultRankError
from vaultrank.documents.model import ChangeEvent, ChangeKind

if TYPE_CHECKING:
    from vaultrank.index.ops import IndexCoordinator, IndexStats

log = structlog.get_logger()


class MaintenanceState(Enum):
    """Maintenance loop state."""

    IDLE = "idle"
    INDEXING = "indexing"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class MaintenanceStatus:
    state: MaintenanceState
    queued: int
    pending: int
    rescan_pending: bool
    last_stats: IndexStats | None = None
    last_error: str | None = None


def coalesce(pending: dict[str, ChangeEvent], event: ChangeEvent) -> None:
    """Merge ``event`` into the per-document map of not-yet-applied changes."""
    prev = pending.get(event.doc_id)

    if event.kind is ChangeKind.RENAMED and event.old_id:
        before = pending.pop(event.old_id, None)
        if before is not None and before.kind is ChangeKind.CREATED:
            pending[event.doc_id] = ChangeEvent(ChangeKind.CREATED, event.doc_id)
        elif before is not None and before.kind is ChangeKind.RENAMED and before.old_id:
            pending[event.doc_id] = ChangeEvent(ChangeKind.RENAMED, event.doc_id, before.old_id)
        else:
            pending[event.doc_id] = event
        return

    if prev is None:
        pending[event.doc_id] = event
    elif event.kind is ChangeKind.DELETED:
        if prev.kind is ChangeKind.CREATED:
            del pending[event.doc_id]
        elif prev.kind is ChangeKind.RENAMED and prev.old_id:
            # Renamed then deleted: the old id is what the index knows about
            del pending[event.doc_id]
            pending[prev.old_id] = ChangeEvent(ChangeKind.DELETED, prev.old_id)
        else:
            pending[event.doc_id] = event
    elif event.kind is ChangeKind.MODIFIED:
        if prev.kind is ChangeKind.DELETED:
            pending[event.doc_id] = event
    elif event.kind is ChangeKind.CREATED:
        if prev.kind is ChangeKind.DELETED:
            pending[event.doc_id] = ChangeEvent(ChangeKind.MODIFIED, event.doc_id)
        elif prev.kind is not ChangeKind.RENAMED:
            pending[event.doc_id] = event


@dataclass
class MaintenanceLoop:
    """
    Dedicated consumer of document change events.

    Usage::

        loop = MaintenanceLoop(coordinator, config.indexer)
        await loop.start()
        loop.offer(events)          # from a watcher callback
        await loop.submit(events)   # waits for channel space
        await loop.stop()
    """

    coordinator: IndexCoordinator
    config: IndexerConfig = field(default_factory=IndexerConfig)
    on_complete: Callable[[IndexStats], Awaitable[None]] | None = None

    _queue: asyncio.Queue[ChangeEvent] = field(init=False)
    _state: MaintenanceState = field(default=MaintenanceState.STOPPED, init=False)
    _pending: dict[str, ChangeEvent] = field(default_factory=dict, init=False)
    _rescan: bool = field(default=False, init=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False)
    _retry_tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False)
    _idle: asyncio.Event = field(init=False)
    _last_stats: IndexStats | None = field(default=None, init=False)
    _last_error: str | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        self._queue = asyncio.Queue(maxsize=self.config.queue_max_size)
        self._idle = asyncio.Event()
        self._idle.set()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._state = MaintenanceState.IDLE
        self._task = asyncio.create_task(self._run(), name="vaultrank-maintenance")
        log.info(
            "maintenance.started",
            queue_max_size=self.config.queue_max_size,
            debounce_sec=self.config.debounce_sec,
        )

    async def stop(self) -> None:
        """Stop consuming. Changes not yet applied are picked up by the next scan."""
        self._state = MaintenanceState.STOPPING
        for task in list(self._retry_tasks):
            task.cancel()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._state = MaintenanceState.STOPPED
        log.info("maintenance.stopped", dropped=len(self._pending) + self._queue.qsize())

    # --- Producers ---

    def offer(self, events: Iterable[ChangeEvent]) -> int:
        """Enqueue without waiting. Returns how many events were accepted.

        On overflow the remaining events are dropped and a full scan is
        scheduled instead.
        """
        accepted = 0
        for event in events:
            try:
                self._queue.put_nowait(event)
            except asyncio.QueueFull:
                if not self._rescan:
                    log.warning("maintenance.channel_full", capacity=self.config.queue_max_size)
                self._rescan = True
                self._idle.clear()
                break
            accepted += 1
            self._idle.clear()
        return accepted

    async def submit(self, events: Iterable[ChangeEvent]) -> None:
        """Enqueue, waiting for channel space."""
        for event in events:
            self._idle.clear()
            await self._queue.put(event)

    async def wait_idle(self) -> None:
        """Wait until every accepted event has been applied."""
        await self._idle.wait()

    # --- Consumer ---

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            coalesce(self._pending, event)
            # Sliding window: keep absorbing until the channel goes quiet
            while True:
                try:
                    event = await asyncio.wait_for(
                        self._queue.get(), timeout=self.config.debounce_sec
                    )
                except asyncio.TimeoutError:
                    break
                coalesce(self._pending, event)
            await self._flush()

    async def _flush(self) -> None:
        events = list(self._pending.values())
        self._pending.clear()
        rescan, self._rescan = self._rescan, False
        self._state = MaintenanceState.INDEXING
        try:
            await self._apply(events, rescan)
        finally:
            self._state = MaintenanceState.IDLE
            if (
                self._queue.empty()
                and not self._pending
                and not self._rescan
                and not self._retry_tasks
            ):
                self._idle.set()

    async def _apply(self, events: list[ChangeEvent], rescan: bool) -> None:
        try:
            if rescan:
                stats = await self.coordinator.scan()
            else:
                stats = await self.coordinator.apply_changes(events)
        except VaultRankError as e:
            self._last_error = e.message
            log.error("maintenance.flush_failed", error=e.error_name, message=e.message)
            return
        except Exception as e:
            self._last_error = str(e)
            log.exception("maintenance.flush_failed", error=str(e))
            return

        self._last_stats = stats
        self._last_error = None
        log.info(
            "maintenance.flushed",
            events=len(events),
            full_scan=rescan,
            added=stats.documents_added,
            updated=stats.documents_updated,
            removed=stats.documents_removed,
            embedded=stats.embeddings_written,
            deferred=len(stats.deferred),
        )
        if stats.deferred:
            self._schedule_retry(stats.deferred)
        if self.on_complete is not None:
            await self.on_complete(stats)

    def _schedule_retry(self, doc_ids: list[str]) -> None:
        task = asyncio.create_task(self._retry_later(doc_ids))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _retry_later(self, doc_ids: list[str]) -> None:
        await asyncio.sleep(self.config.queue_full_backoff_sec)
        log.debug("maintenance.deferred_requeued", count=len(doc_ids))
        await self.submit(ChangeEvent(ChangeKind.MODIFIED, d) for d in doc_ids)

    @property
    def status(self) -> MaintenanceStatus:
        return MaintenanceStatus(
            state=self._state,
            queued=self._queue.qsize(),
            pending=len(self._pending),
            rescan_pending=self._rescan,
            last_stats=self._last_stats,
            last_error=self._last_error,
        )
