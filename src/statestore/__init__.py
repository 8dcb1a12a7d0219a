"""Statestore for deployment tracking and idempotent creation."""

from .base import RecordStore
from .errors import AlreadyExists, InvalidTransition, RecordNotFound, StoreError
from .firestore_client import FirestoreRecordStore
from .memory import MemoryRecordStore
from .records import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    DeploymentRecord,
)


def build_record_store(backend: str = "firestore", **kwargs) -> RecordStore:
    """Return the record store for a configured backend name."""
    if backend == "memory":
        return MemoryRecordStore()
    if backend == "firestore":
        return FirestoreRecordStore(**kwargs)
    raise ValueError(f"Unknown store backend: {backend}")


__all__ = [
    "RecordStore",
    "FirestoreRecordStore",
    "MemoryRecordStore",
    "DeploymentRecord",
    "StoreError",
    "AlreadyExists",
    "RecordNotFound",
    "InvalidTransition",
    "STATUS_PENDING",
    "STATUS_RUNNING",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "build_record_store",
]
