"""
Firestore-based statestore for deployment records.

One document per tag in the deployments collection; the tag is the document
ID so uniqueness is enforced by Firestore itself.
"""

import logging
import os
from typing import Optional

from google.api_core import exceptions as gcp_exceptions

from .base import RecordStore
from .errors import AlreadyExists, InvalidTransition, RecordNotFound, StoreError
from .records import STATUS_PENDING, DeploymentRecord, can_transition, utc_now

logger = logging.getLogger(__name__)

COLLECTION = "deployments"


class FirestoreRecordStore(RecordStore):
    """Record store backed by a Firestore collection."""

    def __init__(self, client=None, project: Optional[str] = None, collection: str = COLLECTION):
        self._client = client
        self._project = project
        self.collection = collection

    def _get_client(self):
        """Get Firestore client, initializing if needed."""
        if self._client is None:
            try:
                from google.cloud import firestore

                project = self._project or os.getenv("GOOGLE_CLOUD_PROJECT") or os.getenv("GCP_PROJECT")
                if project:
                    self._client = firestore.Client(project=project)
                else:
                    self._client = firestore.Client()
            except Exception as e:
                logger.error(f"Failed to initialize Firestore: {e}")
                raise StoreError(f"Failed to initialize Firestore: {e}") from e
        return self._client

    def _doc(self, tag: str):
        return self._get_client().collection(self.collection).document(tag)

    def _snapshot(self, tag: str):
        try:
            snapshot = self._doc(tag).get()
        except gcp_exceptions.GoogleAPIError as e:
            raise StoreError(f"Failed to read deployment {tag}: {e}") from e
        if not snapshot.exists:
            raise RecordNotFound(tag)
        return snapshot

    def _record(self, snapshot) -> DeploymentRecord:
        data = snapshot.to_dict()
        data["tag"] = snapshot.id
        return DeploymentRecord.from_dict(data)

    def create(self, tag: str, service_name: str = "") -> DeploymentRecord:
        """Insert a pending record.

        ``document.create`` fails server-side if the document already exists,
        so the uniqueness check and the insert are one atomic operation.
        """
        now = utc_now()
        record = DeploymentRecord(
            tag=tag,
            service_name=service_name,
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        try:
            self._doc(tag).create(record.to_dict())
        except gcp_exceptions.AlreadyExists as e:
            logger.info(
                f"Create failed: {tag} already exists",
                extra={"tag": tag},
            )
            raise AlreadyExists(tag) from e
        except gcp_exceptions.GoogleAPIError as e:
            logger.error(f"Failed to create deployment {tag}: {e}", extra={"tag": tag})
            raise StoreError(f"Failed to create deployment {tag}: {e}") from e

        logger.info(
            f"Created deployment: {tag}",
            extra={"tag": tag, "service_name": service_name},
        )
        return record

    def get(self, tag: str) -> DeploymentRecord:
        return self._record(self._snapshot(tag))

    def _update(self, tag: str, snapshot, data: dict) -> DeploymentRecord:
        # Precondition on the read we based this update on; a concurrent
        # writer makes Firestore reject the write instead of clobbering it.
        client = self._get_client()
        option = client.write_option(last_update_time=snapshot.update_time)
        try:
            self._doc(tag).update(data, option=option)
        except gcp_exceptions.GoogleAPIError as e:
            logger.error(f"Failed to update deployment {tag}: {e}", extra={"tag": tag})
            raise StoreError(f"Failed to update deployment {tag}: {e}") from e

        record = self._record(snapshot)
        for key, value in data.items():
            setattr(record, key, value)
        return record

    def set_handle_and_status(self, tag: str, handle: str, status: str) -> DeploymentRecord:
        snapshot = self._snapshot(tag)
        record = self._record(snapshot)

        if record.remote_handle and record.remote_handle != handle:
            raise StoreError(
                f"Deployment {tag} already has handle {record.remote_handle}"
            )
        if record.status != status and not can_transition(record.status, status):
            raise InvalidTransition(tag, record.status, status)

        updated = self._update(
            tag,
            snapshot,
            {"remote_handle": handle, "status": status, "updated_at": utc_now()},
        )
        logger.info(
            f"Updated deployment: {tag} -> {status}",
            extra={"tag": tag, "status": status, "eval_id": handle},
        )
        return updated

    def set_status(self, tag: str, status: str) -> DeploymentRecord:
        snapshot = self._snapshot(tag)
        record = self._record(snapshot)

        if record.status == status:
            return record
        if not can_transition(record.status, status):
            raise InvalidTransition(tag, record.status, status)

        updated = self._update(tag, snapshot, {"status": status, "updated_at": utc_now()})
        logger.info(
            f"Updated deployment: {tag} -> {status}",
            extra={"tag": tag, "status": status},
        )
        return updated
