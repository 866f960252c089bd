"""Post-transfer verification.

After a batch finishes, the :class:`Reconciler` refreshes the listing cache
for every directory an upload touched and re-reads the metadata of each
completed destination.  Anything that does not match what was sent ends up
in a :class:`~pibridge.models.DriftReport`.  It never changes item or batch
status; drift is informational.
"""

from __future__ import annotations

import logging
import os
import stat as _stat

from pibridge.errors import ListError, ResolutionError
from pibridge.models import (
    DriftEntry,
    DriftReport,
    ItemStatus,
    TransferBatch,
    TransferDirection,
    TransferItem,
)
from pibridge.remote_fs import RemoteFilesystemView
from pibridge.utils.path_helpers import (
    is_remote_descendant,
    normalize_local_path,
    normalize_remote_path,
    remote_parent,
)

logger = logging.getLogger(__name__)


def _compare(path: str, item: TransferItem, size: int, mtime: float) -> list[DriftEntry]:
    drift = []
    if size != item.size_bytes:
        drift.append(DriftEntry(path, "size", expected=item.size_bytes, actual=size))
    if item.source_mtime is not None and int(mtime) != int(item.source_mtime):
        drift.append(DriftEntry(path, "mtime", expected=int(item.source_mtime), actual=int(mtime)))
    return drift


def _touched_directories(batch: TransferBatch, completed: list[TransferItem]) -> set[str]:
    """Each upload's parent directory plus its ancestors up to the destination root."""
    root = None
    if batch.direction == TransferDirection.UPLOAD and batch.destination:
        root = normalize_remote_path(batch.destination)
    touched: set[str] = set()
    for item in completed:
        if item.direction != TransferDirection.UPLOAD:
            continue
        directory = remote_parent(item.destination_path)
        touched.add(directory)
        while root is not None and directory != root and is_remote_descendant(directory, root):
            directory = remote_parent(directory)
            touched.add(directory)
    return touched


class Reconciler:
    """Checks finished batches against the filesystems they wrote to."""

    def __init__(self, view: RemoteFilesystemView) -> None:
        self._view = view

    def reconcile(self, batch: TransferBatch, session) -> DriftReport:
        report = DriftReport()
        completed = [item for item in batch.items if item.status == ItemStatus.COMPLETED]

        for directory in sorted(_touched_directories(batch, completed)):
            self._view.invalidate(directory)

        for item in completed:
            if item.direction == TransferDirection.UPLOAD:
                report.mismatches.extend(self._check_remote(session, item))
            else:
                report.mismatches.extend(self._check_local(item))

        if report.is_empty:
            logger.debug("Batch %s: no drift across %d item(s)", batch.id[:8], len(completed))
        else:
            logger.warning(
                "Batch %s: %d drift entr%s detected",
                batch.id[:8],
                len(report.mismatches),
                "y" if len(report.mismatches) == 1 else "ies",
            )
        return report

    def _check_remote(self, session, item: TransferItem) -> list[DriftEntry]:
        path = item.destination_path
        try:
            entry = self._view.stat(session, path, follow=True)
        except (ListError, ResolutionError) as exc:
            logger.warning("Could not verify %s: %s", path, exc)
            return [DriftEntry(path, "unverified", actual=str(exc))]
        if entry is None:
            return [DriftEntry(path, "missing", expected=item.size_bytes)]
        return _compare(path, item, entry.size_bytes, entry.modified_at)

    @staticmethod
    def _check_local(item: TransferItem) -> list[DriftEntry]:
        path = item.destination_path
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return [DriftEntry(path, "missing", expected=item.size_bytes)]
        except OSError as exc:
            logger.warning("Could not verify %s: %s", path, exc)
            return [DriftEntry(path, "unverified", actual=str(exc))]
        return _compare(path, item, st.st_size, st.st_mtime)

    # ------------------------------------------------------------------
    # Directory comparison
    # ------------------------------------------------------------------

    def compare_directories(self, session, local_dir: str, remote_dir: str) -> DriftReport:
        """One-level diff of *local_dir* against *remote_dir*.

        Names present on one side only land in ``only_local`` /
        ``only_remote``; files present on both sides are compared by size
        and whole-second mtime.  Directories are matched by name only.

        Raises:
            ListError: If the remote directory cannot be listed.
        """
        local_root = normalize_local_path(local_dir)
        remote_root = normalize_remote_path(remote_dir)

        local: dict[str, os.stat_result] = {}
        with os.scandir(local_root) as it:
            for entry in it:
                try:
                    local[entry.name] = entry.stat()
                except FileNotFoundError:
                    logger.debug("Skipping dangling symlink %s", entry.path)

        remote = {entry.name: entry for entry in self._view.list(session, remote_root)}

        report = DriftReport(
            only_local=sorted(set(local) - set(remote)),
            only_remote=sorted(set(remote) - set(local)),
        )
        for name in sorted(set(local) & set(remote)):
            st, entry = local[name], remote[name]
            local_is_dir = _stat.S_ISDIR(st.st_mode)
            if local_is_dir != entry.is_dir:
                report.mismatches.append(
                    DriftEntry(
                        name,
                        "type",
                        expected="directory" if local_is_dir else "file",
                        actual="directory" if entry.is_dir else entry.kind.value,
                    )
                )
                continue
            if local_is_dir:
                continue
            if st.st_size != entry.size_bytes:
                report.mismatches.append(DriftEntry(name, "size", expected=st.st_size, actual=entry.size_bytes))
            if int(st.st_mtime) != int(entry.modified_at):
                report.mismatches.append(
                    DriftEntry(name, "mtime", expected=int(st.st_mtime), actual=int(entry.modified_at))
                )

        logger.info(
            "Compared %s with %s: %d local-only, %d remote-only, %d mismatch(es)",
            local_root,
            remote_root,
            len(report.only_local),
            len(report.only_remote),
            len(report.mismatches),
        )
        return report
