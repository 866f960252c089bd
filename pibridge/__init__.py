"""PiBridge: file transfer and synchronisation between a workstation and a remote SSH host."""

from __future__ import annotations

from pibridge.config import ConfigManager, host_from_profile
from pibridge.errors import (
    ConnectionError,
    FailureReason,
    ListError,
    PiBridgeError,
    ResolutionError,
    SessionError,
)
from pibridge.models import BatchStatus, ItemStatus, StrategyKind, TransferBatch, TransferDirection
from pibridge.reconcile import Reconciler
from pibridge.remote_fs import RemoteFilesystemView
from pibridge.session import KeyFileAuth, PasswordAuth, RemoteHost, Session, SessionManager
from pibridge.transfer import BatchHandle, TransferCoordinator, TransferRequest, TransferSettings

__version__ = "0.1.0"

__all__ = [
    "BatchHandle",
    "BatchStatus",
    "ConfigManager",
    "ConnectionError",
    "FailureReason",
    "ItemStatus",
    "KeyFileAuth",
    "ListError",
    "PasswordAuth",
    "PiBridgeError",
    "Reconciler",
    "RemoteFilesystemView",
    "RemoteHost",
    "ResolutionError",
    "Session",
    "SessionError",
    "SessionManager",
    "StrategyKind",
    "TransferBatch",
    "TransferCoordinator",
    "TransferDirection",
    "TransferRequest",
    "TransferSettings",
    "host_from_profile",
]
