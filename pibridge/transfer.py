"""Transfer coordination for PiBridge.

The :class:`TransferCoordinator` turns a caller's request into a
:class:`~pibridge.models.TransferBatch`, runs it through a strategy on a
per-session worker thread, retries transient failures and finally hands the
batch to the reconciler.

Handles:
- One FIFO worker per Session, so two batches never interleave bytes on the
  same connection; batches for different sessions run concurrently.
- Cancellation through a per-batch ``threading.Event``.
- Item completion callbacks delivered in submission order.
"""

from __future__ import annotations

import copy
import errno
import logging
import os
import posixpath
import queue
import stat as _stat
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Sequence

from pibridge.errors import FailureReason, ResolutionError, ResolutionReason
from pibridge.models import (
    ItemCompleted,
    ItemFailed,
    ItemProgress,
    ItemStarted,
    ItemStatus,
    ProgressEvent,
    StrategyKind,
    TransferBatch,
    TransferDirection,
    TransferItem,
)
from pibridge.reconcile import Reconciler
from pibridge.remote_fs import EntryKind, RemoteFilesystemView
from pibridge.strategies import CHUNK_SIZE, StrategyOptions, rsync_available, run_strategy
from pibridge.utils.path_helpers import (
    human_readable_size,
    local_is_case_insensitive,
    normalize_local_path,
    normalize_remote_path,
    posix_join,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Request / settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransferSettings:
    """Coordinator policy; see :meth:`pibridge.config.ConfigManager.transfer_settings`."""

    max_item_retries: int = 3
    retry_base_delay: float = 1.0
    stall_timeout: float = 60.0
    chunk_size: int = CHUNK_SIZE
    rsync_size_threshold: int = 8 * 1024 * 1024
    rsync_options: tuple[str, ...] = ()
    cancel_grace: float = 5.0

    @classmethod
    def from_config(cls, config) -> "TransferSettings":
        """Build settings from anything with a ``get(key, default)`` (e.g. ConfigManager)."""
        defaults = cls()
        return cls(
            max_item_retries=int(config.get("max_item_retries", defaults.max_item_retries)),
            retry_base_delay=float(config.get("retry_base_delay", defaults.retry_base_delay)),
            stall_timeout=float(config.get("stall_timeout", defaults.stall_timeout)),
            chunk_size=int(config.get("transfer_chunk_size", defaults.chunk_size)),
            rsync_size_threshold=int(config.get("rsync_size_threshold", defaults.rsync_size_threshold)),
            rsync_options=tuple(config.get("rsync_options", defaults.rsync_options)),
        )

    def strategy_options(self) -> StrategyOptions:
        return StrategyOptions(
            chunk_size=self.chunk_size,
            stall_timeout=self.stall_timeout,
            rsync_options=self.rsync_options,
            cancel_grace=self.cancel_grace,
        )


@dataclass(frozen=True)
class TransferRequest:
    """What the caller wants moved.  *destination* is a directory."""

    sources: Sequence[str]
    destination: str
    direction: TransferDirection
    strategy_hint: StrategyKind | None = None


@dataclass(frozen=True)
class BatchHandle:
    batch_id: str


# ---------------------------------------------------------------------------
# Source resolution
# ---------------------------------------------------------------------------


def _walk_local_dir(directory: Path, ancestors: tuple[str, ...]) -> Iterator[tuple[Path, str, os.stat_result]]:
    """Yield ``(path, relative_posix_path, stat)`` for every file under *directory*.

    Symlinks are followed; one that leads back into a directory on the
    current descent chain is a cycle.
    """
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda e: e.name)

    for entry in entries:
        try:
            st = os.stat(entry.path)
        except OSError as exc:
            if exc.errno == errno.ELOOP:
                raise ResolutionError(
                    f"Symlink loop at {entry.path}", ResolutionReason.CYCLIC_SYMLINK, path=entry.path
                ) from exc
            if entry.is_symlink():
                logger.warning("Skipping dangling symlink %s", entry.path)
                continue
            raise

        if _stat.S_ISDIR(st.st_mode):
            real = os.path.realpath(entry.path)
            if real in ancestors:
                raise ResolutionError(
                    f"Symlink cycle: {entry.path} leads back to {real}",
                    ResolutionReason.CYCLIC_SYMLINK,
                    path=entry.path,
                )
            for path, rel, sub_st in _walk_local_dir(Path(entry.path), ancestors + (real,)):
                yield path, f"{entry.name}/{rel}", sub_st
        elif _stat.S_ISREG(st.st_mode):
            yield Path(entry.path), entry.name, st
        else:
            logger.debug("Skipping special file %s", entry.path)


def resolve_uploads(sources: Sequence[str], destination: str) -> list[TransferItem]:
    """Expand local *sources* into upload items below remote *destination*."""
    dest_root = normalize_remote_path(destination)
    items: list[TransferItem] = []
    for source in sources:
        path = normalize_local_path(source)
        try:
            st = os.stat(path)
        except FileNotFoundError as exc:
            raise ResolutionError(
                f"Source not found: {path}", ResolutionReason.SOURCE_MISSING, path=str(path)
            ) from exc
        except OSError as exc:
            if exc.errno == errno.ELOOP:
                raise ResolutionError(
                    f"Symlink loop at {path}", ResolutionReason.CYCLIC_SYMLINK, path=str(path)
                ) from exc
            raise

        if _stat.S_ISDIR(st.st_mode):
            for file_path, rel, file_st in _walk_local_dir(path, (os.path.realpath(path),)):
                items.append(
                    TransferItem(
                        source_path=str(file_path),
                        destination_path=posix_join(dest_root, path.name, rel),
                        direction=TransferDirection.UPLOAD,
                        size_bytes=file_st.st_size,
                        source_mtime=file_st.st_mtime,
                    )
                )
        else:
            items.append(
                TransferItem(
                    source_path=str(path),
                    destination_path=posix_join(dest_root, path.name),
                    direction=TransferDirection.UPLOAD,
                    size_bytes=st.st_size,
                    source_mtime=st.st_mtime,
                )
            )
    return items


def _walk_remote_dir(
    view: RemoteFilesystemView,
    session,
    directory: str,
    canonical: str,
    ancestors: tuple[str, ...],
):
    """Remote counterpart of :func:`_walk_local_dir`, driven by the view."""
    for entry in view.list(session, directory):
        target = entry
        if entry.kind == EntryKind.SYMLINK:
            target = view.stat(session, entry.path, follow=True)
            if target is None:
                logger.warning("Skipping dangling remote symlink %s", entry.path)
                continue

        if target.kind == EntryKind.DIRECTORY:
            if entry.kind == EntryKind.SYMLINK:
                child_canonical = view.canonical_path(session, entry.path)
            else:
                child_canonical = posix_join(canonical, entry.name)
            if child_canonical in ancestors:
                raise ResolutionError(
                    f"Symlink cycle: {entry.path} leads back to {child_canonical}",
                    ResolutionReason.CYCLIC_SYMLINK,
                    path=entry.path,
                )
            for path, rel, sub in _walk_remote_dir(
                view, session, entry.path, child_canonical, ancestors + (child_canonical,)
            ):
                yield path, f"{entry.name}/{rel}", sub
        else:
            yield entry.path, entry.name, target


def resolve_downloads(
    view: RemoteFilesystemView,
    session,
    sources: Sequence[str],
    destination: str,
) -> list[TransferItem]:
    """Expand remote *sources* into download items below local *destination*."""
    dest_root = normalize_local_path(destination)
    items: list[TransferItem] = []
    for source in sources:
        path = normalize_remote_path(source)
        entry = view.stat(session, path, follow=True)
        if entry is None:
            raise ResolutionError(
                f"Remote source not found: {path}", ResolutionReason.SOURCE_MISSING, path=path
            )
        name = posixpath.basename(path) or path
        if entry.kind == EntryKind.DIRECTORY:
            canonical = view.canonical_path(session, path)
            for file_path, rel, file_entry in _walk_remote_dir(view, session, path, canonical, (canonical,)):
                items.append(
                    TransferItem(
                        source_path=file_path,
                        destination_path=str(dest_root.joinpath(name, *rel.split("/"))),
                        direction=TransferDirection.DOWNLOAD,
                        size_bytes=file_entry.size_bytes,
                        source_mtime=file_entry.modified_at,
                    )
                )
        else:
            items.append(
                TransferItem(
                    source_path=path,
                    destination_path=str(dest_root / name),
                    direction=TransferDirection.DOWNLOAD,
                    size_bytes=entry.size_bytes,
                    source_mtime=entry.modified_at,
                )
            )
    return items


def check_collisions(items: Sequence[TransferItem], case_insensitive: bool) -> None:
    """Refuse batches where two items would write the same destination.

    Raises:
        ResolutionError: ``DESTINATION_COLLISION``.
    """
    seen: dict[str, str] = {}
    for item in items:
        key = item.destination_path.casefold() if case_insensitive else item.destination_path
        if key in seen:
            raise ResolutionError(
                f"{item.source_path} and {seen[key]} both map to {item.destination_path}",
                ResolutionReason.DESTINATION_COLLISION,
                path=item.destination_path,
            )
        seen[key] = item.source_path


# ---------------------------------------------------------------------------
# Ordered completion delivery
# ---------------------------------------------------------------------------


class CompletionBuffer:
    """Releases finished item indices strictly in submission order."""

    def __init__(self, count: int) -> None:
        self._count = count
        self._next = 0
        self._finished: set[int] = set()

    def finish(self, index: int) -> list[int]:
        """Mark *index* finished; return every index now deliverable."""
        self._finished.add(index)
        released = []
        while self._next < self._count and self._next in self._finished:
            released.append(self._next)
            self._finished.discard(self._next)
            self._next += 1
        return released

    @property
    def pending(self) -> int:
        return self._count - self._next


# ---------------------------------------------------------------------------
# TransferCoordinator
# ---------------------------------------------------------------------------

ItemCallback = Callable[[TransferBatch, TransferItem], None]
BatchCallback = Callable[[TransferBatch], None]


@dataclass
class _Job:
    batch: TransferBatch
    session: object
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done_event: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)
    started: bool = False
    buffer: CompletionBuffer | None = None
    retry_wanted: set[int] = field(default_factory=set)


class TransferCoordinator:
    """Accepts transfer requests and drives them to a terminal state."""

    def __init__(
        self,
        view: RemoteFilesystemView,
        settings: TransferSettings | None = None,
        reconciler: Reconciler | None = None,
        on_progress: ItemCallback | None = None,
        on_item_complete: ItemCallback | None = None,
        on_batch_complete: BatchCallback | None = None,
        rsync_probe: Callable[[object], bool] = rsync_available,
    ) -> None:
        """Initialise the coordinator.

        Args:
            view: Shared remote listing cache.
            settings: Retry / strategy policy.
            reconciler: Post-transfer checker (defaults to one over *view*).
            on_progress: Called after each progress event, from a worker thread.
            on_item_complete: Called once per item with its final status,
                in submission order.
            on_batch_complete: Called with a snapshot when a batch finishes.
            rsync_probe: Returns True if rsync can be used for a session.
        """
        self._view = view
        self.settings = settings or TransferSettings()
        self._reconciler = reconciler or Reconciler(view)
        self.on_progress = on_progress
        self.on_item_complete = on_item_complete
        self.on_batch_complete = on_batch_complete
        self._rsync_probe = rsync_probe

        self._jobs: dict[str, _Job] = {}
        # Keyed by Session object; an id() can be reused once a session is collected.
        self._workers: dict[object, tuple[queue.Queue, threading.Thread]] = {}
        self._rsync_cache: dict[object, bool] = {}
        self._lock = threading.Lock()
        self._shutdown = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, request: TransferRequest, session) -> BatchHandle:
        """Resolve *request* into a batch and queue it behind *session*'s other batches.

        Raises:
            ResolutionError: Cyclic symlink, missing source or colliding
                destinations.  Nothing is queued in that case.
            ValueError: Malformed remote path.
        """
        if self._shutdown:
            raise RuntimeError("TransferCoordinator has been shut down")

        if request.direction == TransferDirection.UPLOAD:
            items = resolve_uploads(request.sources, request.destination)
            check_collisions(items, case_insensitive=False)
        else:
            items = resolve_downloads(self._view, session, request.sources, request.destination)
            check_collisions(items, case_insensitive=local_is_case_insensitive())

        strategy = self.choose_strategy(session, items, request.strategy_hint)
        batch = TransferBatch(
            items=items,
            strategy=strategy,
            direction=request.direction,
            destination=request.destination,
        )
        job = _Job(batch=batch, session=session, buffer=CompletionBuffer(len(items)))
        with self._lock:
            self._jobs[batch.id] = job
        self._queue_for(session).put(job)

        logger.info(
            "Queued batch %s: %d item(s), %s, %s via %s",
            batch.id[:8],
            len(items),
            human_readable_size(batch.total_bytes),
            request.direction.name,
            strategy.name,
        )
        return BatchHandle(batch.id)

    def progress(self, handle: BatchHandle) -> TransferBatch:
        """Return a point-in-time copy of the batch behind *handle*."""
        job = self._job(handle)
        with job.lock:
            return copy.deepcopy(job.batch)

    def cancel(self, handle: BatchHandle) -> None:
        """Cancel a queued or running batch.  Finished batches are unaffected."""
        job = self._job(handle)
        job.cancel_event.set()
        with job.lock:
            if job.started:
                logger.info("Cancel requested for running batch %s", handle.batch_id[:8])
                return
            job.started = True
            released = []
            for index, item in enumerate(job.batch.items):
                item.fail(FailureReason.CANCELLED, "cancelled before start")
                released += job.buffer.finish(index)
        logger.info("Cancelled queued batch %s", handle.batch_id[:8])
        self._deliver(job, released)
        self._finish(job)

    def wait(self, handle: BatchHandle, timeout: float | None = None) -> TransferBatch:
        """Block until the batch finishes (or *timeout* passes); return a snapshot."""
        self._job(handle).done_event.wait(timeout)
        return self.progress(handle)

    def forget(self, handle: BatchHandle) -> TransferBatch:
        """Drop a finished batch from the registry and return its final state."""
        job = self._job(handle)
        if not job.done_event.is_set():
            raise RuntimeError(f"Batch {handle.batch_id} is still running")
        with self._lock:
            self._jobs.pop(handle.batch_id, None)
        return job.batch

    def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel everything and stop the worker threads."""
        self._shutdown = True
        with self._lock:
            jobs = list(self._jobs.values())
            workers = list(self._workers.values())
        for job in jobs:
            if not job.done_event.is_set():
                self.cancel(BatchHandle(job.batch.id))
        for work_queue, _ in workers:
            work_queue.put(None)
        for _, thread in workers:
            thread.join(timeout=timeout)

    def choose_strategy(self, session, items: Sequence[TransferItem], hint: StrategyKind | None) -> StrategyKind:
        """rsync for multi-file or large batches when both ends support it; SCP otherwise."""
        if hint is not None:
            return hint
        if not items:
            return StrategyKind.SCP
        large = any(item.size_bytes > self.settings.rsync_size_threshold for item in items)
        if (len(items) > 1 or large) and self._rsync_usable(session):
            return StrategyKind.RSYNC
        return StrategyKind.SCP

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _job(self, handle: BatchHandle) -> _Job:
        with self._lock:
            job = self._jobs.get(handle.batch_id)
        if job is None:
            raise KeyError(f"Unknown batch {handle.batch_id!r}")
        return job

    def _rsync_usable(self, session) -> bool:
        with self._lock:
            if session in self._rsync_cache:
                return self._rsync_cache[session]
        usable = self._rsync_probe(session)
        with self._lock:
            self._rsync_cache[session] = usable
        logger.debug("rsync %s for %s", "available" if usable else "unavailable", session)
        return usable

    def _queue_for(self, session) -> queue.Queue:
        """Return (starting if needed) the FIFO worker queue for *session*."""
        with self._lock:
            if session not in self._workers:
                work_queue: queue.Queue = queue.Queue()
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(work_queue,),
                    name=f"transfer-worker-{len(self._workers)}",
                    daemon=True,
                )
                self._workers[session] = (work_queue, thread)
                thread.start()
            return self._workers[session][0]

    def _worker_loop(self, work_queue: queue.Queue) -> None:
        """Process batches for one session, one at a time."""
        logger.debug("Transfer worker started")
        while True:
            job = work_queue.get()
            if job is None:
                break
            with job.lock:
                skip = job.started
                job.started = True
            if not skip:
                try:
                    self._run_batch(job)
                except Exception:
                    logger.exception("Batch %s crashed", job.batch.id[:8])
                    self._fail_unfinished(job, FailureReason.IO_ERROR, "internal error")
                    self._finish(job)
            work_queue.task_done()
        logger.debug("Transfer worker exiting")

    def _run_batch(self, job: _Job) -> None:
        batch = job.batch
        options = self.settings.strategy_options()
        pending = list(range(len(batch.items)))
        round_no = 0

        while pending:
            subset = [batch.items[i] for i in pending]
            job.retry_wanted.clear()
            events = run_strategy(batch.strategy, job.session, subset, job.cancel_event, options)
            try:
                for event in events:
                    self._apply(job, pending[event.index], event)
            finally:
                events.close()

            leftovers = [i for i in pending if not batch.items[i].is_terminal]
            if leftovers:
                logger.error("Strategy left %d item(s) unreported", len(leftovers))
                self._fail_unfinished(job, FailureReason.IO_ERROR, "strategy ended without a result")

            retry = sorted(job.retry_wanted)
            if not retry:
                break
            round_no += 1
            delay = self.settings.retry_base_delay * (2 ** (round_no - 1))
            with job.lock:
                for index in retry:
                    batch.items[index].retry()
            logger.info(
                "Retrying %d item(s) in %.1fs (round %d/%d)",
                len(retry), delay, round_no, self.settings.max_item_retries,
            )
            if job.cancel_event.wait(delay):
                self._fail_unfinished(job, FailureReason.CANCELLED, "cancelled during retry wait")
                break
            pending = retry

        drift = self._reconciler.reconcile(batch, job.session)
        with job.lock:
            batch.drift = drift
        self._finish(job)

    def _apply(self, job: _Job, index: int, event: ProgressEvent) -> None:
        """Fold one strategy event into the batch state."""
        item = job.batch.items[index]
        released: list[int] = []
        with job.lock:
            if isinstance(event, ItemStarted):
                item.start()
            elif isinstance(event, ItemProgress):
                item.bytes_done = event.bytes_done
            elif isinstance(event, ItemCompleted):
                item.complete(event.bytes_moved)
                released = job.buffer.finish(index)
            elif isinstance(event, ItemFailed):
                item.fail(event.reason, event.message)
                if (
                    event.reason.transient
                    and item.attempts < self.settings.max_item_retries
                    and not job.cancel_event.is_set()
                ):
                    job.retry_wanted.add(index)
                else:
                    released = job.buffer.finish(index)

        if isinstance(event, ItemProgress) and self.on_progress:
            try:
                self.on_progress(job.batch, item)
            except Exception:
                logger.exception("Exception in on_progress callback")
        self._deliver(job, released)

    def _fail_unfinished(self, job: _Job, reason: FailureReason, message: str) -> None:
        released: list[int] = []
        with job.lock:
            for index, item in enumerate(job.batch.items):
                if item.status in (ItemStatus.PENDING, ItemStatus.IN_PROGRESS, ItemStatus.RETRYING):
                    item.fail(reason, message)
                    released += job.buffer.finish(index)
        self._deliver(job, released)

    def _deliver(self, job: _Job, indices: list[int]) -> None:
        if not self.on_item_complete:
            return
        for index in indices:
            try:
                self.on_item_complete(job.batch, job.batch.items[index])
            except Exception:
                logger.exception("Exception in on_item_complete callback")

    def _finish(self, job: _Job) -> None:
        with job.lock:
            job.batch.finished_at = time.time()
            snapshot = copy.deepcopy(job.batch)
        logger.info(
            "Batch %s finished: %s (%d/%d completed)",
            snapshot.id[:8],
            snapshot.overall_status.name,
            sum(1 for i in snapshot.items if i.status == ItemStatus.COMPLETED),
            len(snapshot.items),
        )
        job.done_event.set()
        if self.on_batch_complete:
            try:
                self.on_batch_complete(snapshot)
            except Exception:
                logger.exception("Exception in on_batch_complete callback")
