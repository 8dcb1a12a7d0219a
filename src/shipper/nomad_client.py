"""Nomad API client for submitting jobs and polling evaluations."""
import asyncio
import copy
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import aiohttp

from statestore.records import STATUS_COMPLETED, STATUS_FAILED, STATUS_RUNNING

from .errors import (
    JobNotFound,
    OrchestratorError,
    OrchestratorRejected,
    OrchestratorUnavailable,
    ParseError,
)

logger = logging.getLogger(__name__)

JobDocument = Dict[str, Any]

META_TAG = "tag"
META_TIMESTAMP = "timestamp"
META_UPDATED_BY = "updated_by"
RESERVED_META_KEYS = (META_TAG, META_TIMESTAMP, META_UPDATED_BY)

# Nomad evaluation status -> deployment status. Everything else is in progress.
OUTCOME_STATUS = {
    "complete": STATUS_COMPLETED,
    "failed": STATUS_FAILED,
    "pending": STATUS_RUNNING,
}


def merge_deployment_metadata(
    job: JobDocument,
    tag: str,
    updated_by: str,
    now: Optional[float] = None,
) -> JobDocument:
    """Return a copy of ``job`` with deployment metadata merged into ``Meta``.

    Existing keys other than the reserved ones are kept as they are; the
    reserved keys (tag, timestamp, updated_by) always take the new values.
    The input document is not modified.
    """
    merged = copy.deepcopy(job)
    existing = job.get("Meta")

    meta: Dict[str, Any] = {}
    if isinstance(existing, dict):
        meta = {k: v for k, v in existing.items() if k not in RESERVED_META_KEYS}

    timestamp = int(time.time() if now is None else now)
    meta[META_TAG] = tag
    meta[META_TIMESTAMP] = str(timestamp)
    meta[META_UPDATED_BY] = updated_by

    merged["Meta"] = meta
    return merged


def map_outcome_to_status(raw: Any) -> str:
    """Map a Nomad evaluation status to a deployment status.

    Unknown values map to running so pollers keep polling.
    """
    if not isinstance(raw, str):
        return STATUS_RUNNING
    return OUTCOME_STATUS.get(raw, STATUS_RUNNING)


def wrap_job(job: JobDocument, enforce_index: bool = False) -> Dict[str, Any]:
    """Build the ``POST /v1/jobs`` envelope for a job document."""
    payload: Dict[str, Any] = {"Job": job}
    if enforce_index and job.get("JobModifyIndex") is not None:
        payload["EnforceIndex"] = True
        payload["JobModifyIndex"] = job["JobModifyIndex"]
    return payload


class NomadClient:
    """Client for interacting with the Nomad HTTP API."""

    SUBMIT_TIMEOUT = 30
    STATUS_TIMEOUT = 10

    def __init__(self, base_url: str, token: Optional[str] = None, skip_tls_verify: bool = False):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.skip_tls_verify = skip_tls_verify

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["X-Nomad-Token"] = self.token
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, str]:
        """Send one request to Nomad and return (status, body text)."""
        url = f"{self.base_url}/v1{path}"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
                async with session.request(
                    method,
                    url,
                    headers=self._headers(),
                    json=payload,
                    params=params,
                    ssl=not self.skip_tls_verify,
                ) as resp:
                    body = await resp.text(errors="replace")
                    logger.debug(f"Nomad {method} {path} -> {resp.status}")
                    return resp.status, body
        except asyncio.TimeoutError as e:
            logger.error(f"Nomad {method} {path} timed out after {timeout}s")
            raise OrchestratorUnavailable(f"Nomad request timed out after {timeout}s: {method} {path}") from e
        except aiohttp.ClientError as e:
            logger.error(f"Nomad {method} {path} failed: {e}")
            raise OrchestratorUnavailable(f"Failed to reach Nomad: {e}") from e

    @staticmethod
    def _decode(body: str, what: str) -> Any:
        try:
            return json.loads(body)
        except ValueError as e:
            raise OrchestratorError(f"Failed to decode Nomad {what} response: {e}") from e

    async def fetch_job_definition(self, service_name: str) -> JobDocument:
        """Fetch the current definition of a registered job."""
        logger.info(f"Fetching job definition for {service_name}", extra={"service_name": service_name})
        status, body = await self._request(
            "GET", f"/job/{quote(service_name, safe='')}", self.SUBMIT_TIMEOUT
        )

        if status == 404:
            logger.error(f"Job {service_name} not found in Nomad", extra={"service_name": service_name})
            raise JobNotFound(f"Job {service_name} not found in Nomad")
        if status != 200:
            logger.error(
                f"Failed to fetch job definition: {status} - {body}",
                extra={"service_name": service_name, "status_code": status},
            )
            raise OrchestratorRejected(
                f"Failed to fetch job definition, Nomad returned status: {status}", status
            )

        data = self._decode(body, "job definition")
        job = data.get("Job") if isinstance(data, dict) else None
        if not isinstance(job, dict):
            logger.error("Invalid job definition format - Job field missing or wrong type")
            raise OrchestratorError("Invalid job definition format")
        return job

    async def submit_job(self, payload: Dict[str, Any]) -> str:
        """Register a job and return the evaluation ID Nomad created for it."""
        if not isinstance(payload.get("Job"), dict):
            raise OrchestratorError("Submission payload must contain a Job object")

        job_id = payload["Job"].get("ID") or payload["Job"].get("Name")
        logger.info(f"Submitting job {job_id} to Nomad", extra={"job_id": job_id})
        status, body = await self._request("POST", "/jobs", self.SUBMIT_TIMEOUT, payload=payload)

        if status != 200:
            logger.error(
                f"Nomad rejected job submission: {status} - {body}",
                extra={"job_id": job_id, "status_code": status},
            )
            detail = body.strip()
            message = f"Nomad returned status: {status}"
            if detail:
                message = f"{message} - {detail}"
            raise OrchestratorRejected(message, status)

        data = self._decode(body, "job submission")
        eval_id = data.get("EvalID") if isinstance(data, dict) else None
        if not eval_id:
            raise OrchestratorError("Nomad job submission response has no EvalID")

        logger.info(
            f"Submitted job {job_id}, evaluation {eval_id}",
            extra={"job_id": job_id, "eval_id": eval_id},
        )
        return eval_id

    async def fetch_evaluation_outcome(self, handle: str) -> Optional[str]:
        """Return the raw Status of a Nomad evaluation."""
        status, body = await self._request(
            "GET", f"/evaluation/{quote(handle, safe='')}", self.STATUS_TIMEOUT
        )
        if status != 200:
            logger.error(
                f"Failed to get evaluation status: {status} - {body}",
                extra={"eval_id": handle, "status_code": status},
            )
            raise OrchestratorRejected(f"Nomad returned status: {status}", status)

        data = self._decode(body, "evaluation")
        if not isinstance(data, dict):
            raise OrchestratorError("Invalid evaluation response format")
        outcome = data.get("Status")
        logger.debug(f"Evaluation {handle} status: {outcome}", extra={"eval_id": handle})
        return outcome

    async def parse_raw_job_document(self, raw_text: str) -> Dict[str, Any]:
        """Convert an HCL job file to canonical JSON using Nomad's parse API.

        Returns the canonical job wrapped in the envelope ``submit_job`` expects.
        """
        request = {
            "JobHCL": raw_text,
            "Variables": "",
            "Canonicalize": True,
        }
        status, body = await self._request(
            "POST",
            "/jobs/parse",
            self.SUBMIT_TIMEOUT,
            payload=request,
            params={"namespace": "*"},
        )

        if status != 200:
            logger.error(
                f"Nomad parse API returned status {status}: {body}",
                extra={"status_code": status},
            )
            raise ParseError(f"Failed to parse job file: Nomad returned status {status}: {body.strip()}")

        job = self._decode(body, "parse")
        if not isinstance(job, dict):
            raise ParseError("Failed to parse job file: Nomad returned a non-object job")
        return {"Job": job}
