"""Transfer data model shared by the strategies, coordinator and reconciler."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Iterable, Union

from pibridge.errors import FailureReason, InvalidTransition

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransferDirection(Enum):
    """Direction of a file transfer."""

    UPLOAD = auto()
    DOWNLOAD = auto()


class StrategyKind(Enum):
    """Interchangeable transfer algorithms."""

    SCP = "scp"
    RSYNC = "rsync"


class ItemStatus(Enum):
    """Lifecycle state of a TransferItem."""

    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETED = auto()
    FAILED = auto()
    RETRYING = auto()


class BatchStatus(Enum):
    RUNNING = auto()
    SUCCEEDED = auto()
    PARTIALLY_FAILED = auto()
    FAILED = auto()
    CANCELLED = auto()


_ALLOWED_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.IN_PROGRESS, ItemStatus.FAILED}),
    ItemStatus.IN_PROGRESS: frozenset({ItemStatus.COMPLETED, ItemStatus.FAILED}),
    ItemStatus.FAILED: frozenset({ItemStatus.RETRYING}),
    ItemStatus.RETRYING: frozenset({ItemStatus.IN_PROGRESS, ItemStatus.FAILED}),
    ItemStatus.COMPLETED: frozenset(),
}

# ---------------------------------------------------------------------------
# TransferItem
# ---------------------------------------------------------------------------


@dataclass
class TransferItem:
    """One file-level unit of work inside a batch."""

    source_path: str
    destination_path: str
    direction: TransferDirection
    size_bytes: int
    source_mtime: float | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ItemStatus = ItemStatus.PENDING
    bytes_done: int = 0
    failure: FailureReason | None = None
    failure_message: str | None = None
    attempts: int = 0
    start_time: float | None = None
    end_time: float | None = None

    def transition(self, new_status: ItemStatus) -> None:
        """Move to *new_status*, refusing anything that is not a forward step.

        Raises:
            InvalidTransition: For example COMPLETED -> anything.
        """
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"{self.source_path}: {self.status.name} -> {new_status.name} is not allowed"
            )
        self.status = new_status

    def start(self) -> None:
        self.transition(ItemStatus.IN_PROGRESS)
        self.bytes_done = 0
        self.failure = None
        self.failure_message = None
        self.start_time = time.monotonic()
        self.end_time = None

    def complete(self, bytes_moved: int | None = None) -> None:
        self.transition(ItemStatus.COMPLETED)
        if bytes_moved is not None:
            self.bytes_done = bytes_moved
        self.end_time = time.monotonic()

    def fail(self, reason: FailureReason, message: str | None = None) -> None:
        self.transition(ItemStatus.FAILED)
        self.failure = reason
        self.failure_message = message or reason.name.replace("_", " ").lower()
        self.end_time = time.monotonic()

    def retry(self) -> None:
        self.transition(ItemStatus.RETRYING)
        self.attempts += 1

    @property
    def is_terminal(self) -> bool:
        return self.status in (ItemStatus.COMPLETED, ItemStatus.FAILED)

    @property
    def progress_fraction(self) -> float:
        """Fraction of the file transferred (0.0 – 1.0)."""
        if self.size_bytes <= 0:
            return 1.0 if self.status == ItemStatus.COMPLETED else 0.0
        return min(1.0, self.bytes_done / self.size_bytes)

    @property
    def speed_mbps(self) -> float:
        """Current transfer speed in MB/s, or 0 if not yet started."""
        if self.start_time is None or self.bytes_done == 0:
            return 0.0
        elapsed = (self.end_time or time.monotonic()) - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_done / elapsed) / (1024 * 1024)


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemStarted:
    index: int


@dataclass(frozen=True)
class ItemProgress:
    index: int
    bytes_done: int


@dataclass(frozen=True)
class ItemCompleted:
    index: int
    bytes_moved: int = 0


@dataclass(frozen=True)
class ItemFailed:
    index: int
    reason: FailureReason
    message: str = ""


ProgressEvent = Union[ItemStarted, ItemProgress, ItemCompleted, ItemFailed]

# ---------------------------------------------------------------------------
# TransferBatch
# ---------------------------------------------------------------------------


def derive_overall_status(items: Iterable[TransferItem]) -> BatchStatus:
    """Compute a batch outcome from its item statuses alone.

    Unfinished items keep the batch RUNNING.  Once every item is terminal,
    CANCELLED wins if any item failed because of cancellation; otherwise an
    all-COMPLETED batch SUCCEEDED, a mix is PARTIALLY_FAILED and an
    all-FAILED batch FAILED.
    """
    completed = failed = 0
    cancelled = False
    for item in items:
        if item.status == ItemStatus.COMPLETED:
            completed += 1
        elif item.status == ItemStatus.FAILED:
            failed += 1
            cancelled = cancelled or item.failure == FailureReason.CANCELLED
        else:
            return BatchStatus.RUNNING
    if cancelled:
        return BatchStatus.CANCELLED
    if failed == 0:
        return BatchStatus.SUCCEEDED
    if completed == 0:
        return BatchStatus.FAILED
    return BatchStatus.PARTIALLY_FAILED


@dataclass
class TransferBatch:
    """The unit of work submitted by a caller."""

    items: list[TransferItem]
    strategy: StrategyKind
    direction: TransferDirection
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    destination: str | None = None
    drift: DriftReport | None = None
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def overall_status(self) -> BatchStatus:
        return derive_overall_status(self.items)

    @property
    def done(self) -> bool:
        return self.finished_at is not None

    @property
    def total_bytes(self) -> int:
        return sum(item.size_bytes for item in self.items)

    @property
    def bytes_done(self) -> int:
        return sum(item.bytes_done for item in self.items)

    def failures(self) -> list[TransferItem]:
        """Items that ended FAILED, in submission order."""
        return [item for item in self.items if item.status == ItemStatus.FAILED]


# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DriftEntry:
    """One observed mismatch between expected and actual file state."""

    path: str
    kind: str  # "size", "mtime", "missing", "type" or "unverified"
    expected: object = None
    actual: object = None


@dataclass
class DriftReport:
    mismatches: list[DriftEntry] = field(default_factory=list)
    only_local: list[str] = field(default_factory=list)
    only_remote: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.mismatches or self.only_local or self.only_remote)
