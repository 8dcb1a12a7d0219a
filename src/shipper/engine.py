"""Deployment engine: tracks one Nomad submission per tag."""
import asyncio
import logging
import weakref
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from statestore import AlreadyExists, DeploymentRecord, RecordNotFound, RecordStore, StoreError
from statestore.records import STATUS_FAILED, STATUS_PENDING, STATUS_RUNNING, is_terminal

from .errors import Conflict, InvalidInput, JobNotFound, NotFound, OrchestratorError, ParseError
from .nomad_client import NomadClient, map_outcome_to_status, merge_deployment_metadata, wrap_job


@dataclass
class DeploymentResult:
    """Outcome returned to callers for submit and status operations."""

    status: str
    tag: str
    handle: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> "DeploymentResult":
        return cls(status=record.status, tag=record.tag, handle=record.remote_handle or None)


def _require(value: Optional[str], name: str, tag: Optional[str] = None) -> None:
    if not value or not value.strip():
        raise InvalidInput(f"{name} is required", tag=tag)


class DeploymentEngine:
    """Submits deployments to Nomad and reconciles their status.

    Every deployment is keyed by a caller-supplied tag. The record is created
    in the store before Nomad is contacted, and a tag can only ever be used
    once. Store calls run in a worker thread since backends may block.
    """

    def __init__(
        self,
        store: RecordStore,
        client: NomadClient,
        updated_by: str = "shipper",
        enforce_index: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.client = client
        self.updated_by = updated_by
        self.enforce_index = enforce_index
        self.logger = logger or logging.getLogger(__name__)
        # Entries drop out once no submission holds or waits on the lock.
        self._service_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def _create(self, tag: str, service_name: str) -> DeploymentRecord:
        try:
            return await asyncio.to_thread(self.store.create, tag, service_name)
        except AlreadyExists as e:
            self.logger.warning(f"Deployment with tag {tag} already exists", extra={"tag": tag})
            raise Conflict(f"A deployment with tag {tag} already exists", tag=tag) from e

    async def _mark_failed(self, tag: str, error: Exception) -> DeploymentResult:
        try:
            await asyncio.to_thread(self.store.set_status, tag, STATUS_FAILED)
        except StoreError as e:
            self.logger.error(f"Failed to mark deployment {tag} as failed: {e}", extra={"tag": tag})
        return DeploymentResult(status=STATUS_FAILED, tag=tag, message=str(error) or type(error).__name__)

    async def _record_submission(self, tag: str, handle: str) -> DeploymentResult:
        try:
            await asyncio.to_thread(self.store.set_handle_and_status, tag, handle, STATUS_RUNNING)
        except StoreError as e:
            # The job is live in Nomad regardless; report what actually happened.
            self.logger.error(
                f"Failed to record evaluation ID for {tag}: {e}",
                extra={"tag": tag, "eval_id": handle},
            )
        return DeploymentResult(status=STATUS_RUNNING, tag=tag, handle=handle)

    def _service_lock(self, service_name: str) -> asyncio.Lock:
        lock = self._service_locks.get(service_name)
        if lock is None:
            lock = asyncio.Lock()
            self._service_locks[service_name] = lock
        return lock

    async def submit_by_name(self, tag: str, service_name: str) -> DeploymentResult:
        """Redeploy a registered Nomad job with fresh deployment metadata."""
        _require(tag, "Tag ID")
        _require(service_name, "Service name", tag=tag)

        self.logger.info(
            f"Deployment request received for {service_name}",
            extra={"tag": tag, "service_name": service_name},
        )
        await self._create(tag, service_name)

        try:
            # Fetch and resubmit is a read-modify-write on the Nomad job.
            async with self._service_lock(service_name):
                job = await self.client.fetch_job_definition(service_name)
                merged = merge_deployment_metadata(job, tag, self.updated_by)
                handle = await self.client.submit_job(wrap_job(merged, self.enforce_index))
        except (JobNotFound, OrchestratorError) as e:
            self.logger.error(
                f"Nomad deployment failed: {e}",
                extra={"tag": tag, "service_name": service_name},
            )
            return await self._mark_failed(tag, e)

        return await self._record_submission(tag, handle)

    async def submit_by_document(self, tag: str, raw_document: str) -> DeploymentResult:
        """Parse an uploaded job file with Nomad and submit it."""
        _require(tag, "Tag ID")
        _require(raw_document, "Job file", tag=tag)

        self.logger.info(
            "Job deployment request received",
            extra={"tag": tag, "content_length": len(raw_document)},
        )
        await self._create(tag, "")

        try:
            payload = await self.client.parse_raw_job_document(raw_document)
        except ParseError as e:
            self.logger.error(f"Failed to parse job file: {e}", extra={"tag": tag})
            await self._mark_failed(tag, e)
            e.tag = tag
            raise
        except OrchestratorError as e:
            self.logger.error(f"Nomad parse API failed: {e}", extra={"tag": tag})
            return await self._mark_failed(tag, e)

        try:
            handle = await self.client.submit_job(payload)
        except OrchestratorError as e:
            self.logger.error(f"Nomad job submission failed: {e}", extra={"tag": tag})
            return await self._mark_failed(tag, e)

        return await self._record_submission(tag, handle)

    async def query_status(self, tag: str) -> DeploymentResult:
        """Return the deployment status, refreshing it from Nomad while running."""
        _require(tag, "Tag ID")

        try:
            record = await asyncio.to_thread(self.store.get, tag)
        except RecordNotFound as e:
            raise NotFound(f"Deployment not found: {tag}", tag=tag) from e

        # Terminal records are final; pending ones have nothing to poll.
        if is_terminal(record.status) or record.status == STATUS_PENDING or not record.remote_handle:
            return DeploymentResult.from_record(record)

        try:
            outcome = await self.client.fetch_evaluation_outcome(record.remote_handle)
        except OrchestratorError as e:
            self.logger.warning(
                f"Failed to get job status from Nomad, returning last known status: {e}",
                extra={"tag": tag, "eval_id": record.remote_handle},
            )
            return DeploymentResult.from_record(record)

        mapped = map_outcome_to_status(outcome)
        if mapped != record.status:
            try:
                record = await asyncio.to_thread(self.store.set_status, tag, mapped)
            except StoreError as e:
                self.logger.error(
                    f"Failed to update deployment status for {tag}: {e}",
                    extra={"tag": tag, "status": mapped},
                )
                record.status = mapped
            else:
                self.logger.info(
                    f"Deployment {tag} is now {mapped}",
                    extra={"tag": tag, "eval_id": record.remote_handle, "nomad_status": outcome},
                )

        return DeploymentResult.from_record(record)
