"""In-process record store for local development and tests."""

import logging
import threading
from dataclasses import replace
from typing import Dict

from .base import RecordStore
from .errors import AlreadyExists, InvalidTransition, RecordNotFound, StoreError
from .records import STATUS_PENDING, DeploymentRecord, can_transition, utc_now

logger = logging.getLogger(__name__)


class MemoryRecordStore(RecordStore):
    """Record store kept in a dict guarded by a lock.

    Records returned to callers are copies; mutating them does not change
    stored state.
    """

    def __init__(self):
        self._records: Dict[str, DeploymentRecord] = {}
        self._lock = threading.Lock()

    def create(self, tag: str, service_name: str = "") -> DeploymentRecord:
        with self._lock:
            if tag in self._records:
                logger.info(f"Create failed: {tag} already exists", extra={"tag": tag})
                raise AlreadyExists(tag)
            now = utc_now()
            record = DeploymentRecord(
                tag=tag,
                service_name=service_name,
                status=STATUS_PENDING,
                created_at=now,
                updated_at=now,
            )
            self._records[tag] = record
        logger.info(f"Created deployment: {tag}", extra={"tag": tag, "service_name": service_name})
        return replace(record)

    def _locked_get(self, tag: str) -> DeploymentRecord:
        try:
            return self._records[tag]
        except KeyError:
            raise RecordNotFound(tag) from None

    def get(self, tag: str) -> DeploymentRecord:
        with self._lock:
            return replace(self._locked_get(tag))

    def set_handle_and_status(self, tag: str, handle: str, status: str) -> DeploymentRecord:
        with self._lock:
            record = self._locked_get(tag)
            if record.remote_handle and record.remote_handle != handle:
                raise StoreError(f"Deployment {tag} already has handle {record.remote_handle}")
            if record.status != status and not can_transition(record.status, status):
                raise InvalidTransition(tag, record.status, status)
            record.remote_handle = handle
            record.status = status
            record.updated_at = utc_now()
            return replace(record)

    def set_status(self, tag: str, status: str) -> DeploymentRecord:
        with self._lock:
            record = self._locked_get(tag)
            if record.status == status:
                return replace(record)
            if not can_transition(record.status, status):
                raise InvalidTransition(tag, record.status, status)
            record.status = status
            record.updated_at = utc_now()
            return replace(record)
