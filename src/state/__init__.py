"""
Tracker data models and local persistence for sync.

This package defines the snapshot document exchanged with the remote blob,
its encrypted envelope, the on-device store boundary, and sync settings.
"""

from .models import (
    ChangeType,
    EncryptedEnvelope,
    Entry,
    Snapshot,
    SyncPhase,
    SyncState,
    SyncTrigger,
    Tag,
    Tracker,
)

__all__ = [
    "ChangeType",
    "EncryptedEnvelope",
    "Entry",
    "Snapshot",
    "SyncPhase",
    "SyncState",
    "SyncTrigger",
    "Tag",
    "Tracker",
]
