"""Tests for the deployment engine."""

import asyncio
import gc
from unittest.mock import patch

import pytest

from shipper.engine import DeploymentEngine, DeploymentResult
from shipper.errors import (
    Conflict,
    InvalidInput,
    JobNotFound,
    NotFound,
    OrchestratorRejected,
    OrchestratorUnavailable,
    ParseError,
)
from statestore import StoreError
from statestore.records import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_RUNNING


class TestSubmitByName:
    """Submitting a registered job by name."""

    @pytest.mark.asyncio
    async def test_successful_submission(self, engine, store, nomad):
        nomad.fetch_job_definition.return_value = {"ID": "web", "Meta": {"owner": "ops"}}
        nomad.submit_job.return_value = "e1"

        result = await engine.submit_by_name("v1", "web")

        assert result == DeploymentResult(status=STATUS_RUNNING, tag="v1", handle="e1")
        record = store.get("v1")
        assert record.status == STATUS_RUNNING
        assert record.remote_handle == "e1"
        assert record.service_name == "web"

        nomad.fetch_job_definition.assert_awaited_once_with("web")
        payload = nomad.submit_job.await_args[0][0]
        meta = payload["Job"]["Meta"]
        assert meta["owner"] == "ops"
        assert meta["tag"] == "v1"
        assert meta["updated_by"] == "shipper"
        assert meta["timestamp"]

    @pytest.mark.asyncio
    async def test_then_status_completes(self, engine, store, nomad):
        nomad.fetch_job_definition.return_value = {"ID": "web", "Meta": {"owner": "ops"}}
        nomad.submit_job.return_value = "e1"
        await engine.submit_by_name("v1", "web")

        nomad.fetch_evaluation_outcome.return_value = "complete"
        result = await engine.query_status("v1")

        assert result.status == STATUS_COMPLETED
        assert result.handle == "e1"
        assert store.get("v1").status == STATUS_COMPLETED
        nomad.fetch_evaluation_outcome.assert_awaited_once_with("e1")

    @pytest.mark.asyncio
    async def test_job_not_found_marks_failed(self, engine, store, nomad):
        nomad.fetch_job_definition.side_effect = JobNotFound("Job web not found in Nomad")

        result = await engine.submit_by_name("v2", "web")

        assert result.status == STATUS_FAILED
        assert result.message
        assert result.handle is None
        record = store.get("v2")
        assert record.status == STATUS_FAILED
        assert record.remote_handle == ""
        nomad.submit_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submission_rejected_marks_failed(self, engine, store, nomad):
        nomad.fetch_job_definition.return_value = {"ID": "web"}
        nomad.submit_job.side_effect = OrchestratorRejected("Nomad returned status: 500", 500)

        result = await engine.submit_by_name("v3", "web")

        assert result.status == STATUS_FAILED
        assert "500" in result.message
        assert store.get("v3").status == STATUS_FAILED

    @pytest.mark.asyncio
    async def test_orchestrator_unavailable_marks_failed(self, engine, store, nomad):
        nomad.fetch_job_definition.side_effect = OrchestratorUnavailable("Failed to reach Nomad")

        result = await engine.submit_by_name("v4", "web")

        assert result.status == STATUS_FAILED
        assert store.get("v4").status == STATUS_FAILED

    @pytest.mark.asyncio
    async def test_duplicate_tag_conflicts(self, engine, store, nomad):
        nomad.fetch_job_definition.return_value = {"ID": "web"}
        nomad.submit_job.return_value = "e1"
        await engine.submit_by_name("v1", "web")

        with pytest.raises(Conflict):
            await engine.submit_by_name("v1", "web")

        record = store.get("v1")
        assert record.status == STATUS_RUNNING
        assert record.remote_handle == "e1"
        assert nomad.fetch_job_definition.await_count == 1
        assert nomad.submit_job.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_tag_cannot_be_reused(self, engine, nomad):
        nomad.fetch_job_definition.side_effect = JobNotFound("Job web not found in Nomad")
        await engine.submit_by_name("v2", "web")

        with pytest.raises(Conflict):
            await engine.submit_by_name("v2", "web")

    @pytest.mark.asyncio
    async def test_concurrent_same_tag_single_winner(self, engine, nomad):
        async def slow_fetch(name):
            await asyncio.sleep(0.01)
            return {"ID": name}

        nomad.fetch_job_definition.side_effect = slow_fetch
        nomad.submit_job.return_value = "e1"

        results = await asyncio.gather(
            engine.submit_by_name("race", "web"),
            engine.submit_by_name("race", "web"),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, Conflict)]
        successes = [r for r in results if isinstance(r, DeploymentResult)]
        assert len(conflicts) == 1
        assert len(successes) == 1
        assert nomad.submit_job.await_count == 1

    @pytest.mark.asyncio
    async def test_same_service_submissions_are_serialized(self, engine, nomad):
        active = 0
        max_active = 0

        async def tracking_fetch(name):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.01)
            active -= 1
            return {"ID": name}

        nomad.fetch_job_definition.side_effect = tracking_fetch
        nomad.submit_job.return_value = "e1"

        await asyncio.gather(
            engine.submit_by_name("a", "web"),
            engine.submit_by_name("b", "web"),
        )

        assert max_active == 1

    @pytest.mark.asyncio
    async def test_service_locks_released_after_submission(self, engine, nomad):
        nomad.fetch_job_definition.return_value = {"ID": "web"}
        nomad.submit_job.return_value = "e1"

        await engine.submit_by_name("v1", "web")
        await engine.submit_by_name("v2", "api")
        gc.collect()

        assert "web" not in engine._service_locks
        assert "api" not in engine._service_locks

    @pytest.mark.asyncio
    async def test_service_lock_reused_while_held(self, engine):
        lock = engine._service_lock("web")

        async with lock:
            assert engine._service_lock("web") is lock
            assert engine._service_lock("api") is not lock

    @pytest.mark.asyncio
    async def test_enforce_index_sends_modify_index(self, store, nomad):
        engine = DeploymentEngine(store, nomad, enforce_index=True)
        nomad.fetch_job_definition.return_value = {"ID": "web", "JobModifyIndex": 42}
        nomad.submit_job.return_value = "e1"

        await engine.submit_by_name("v1", "web")

        payload = nomad.submit_job.await_args[0][0]
        assert payload["EnforceIndex"] is True
        assert payload["JobModifyIndex"] == 42

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tag", ["", "   ", None])
    async def test_empty_tag_rejected(self, engine, store, nomad, tag):
        with pytest.raises(InvalidInput):
            await engine.submit_by_name(tag, "web")

        nomad.fetch_job_definition.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_service_name_rejected(self, engine, store):
        with pytest.raises(InvalidInput):
            await engine.submit_by_name("v1", "")

        with pytest.raises(StoreError):
            store.get("v1")

    @pytest.mark.asyncio
    async def test_store_failure_on_create_aborts(self, engine, store, nomad):
        with patch.object(store, "create", side_effect=StoreError("database down")):
            with pytest.raises(StoreError):
                await engine.submit_by_name("v1", "web")

        nomad.fetch_job_definition.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_failure_after_submit_still_reports_running(self, engine, store, nomad):
        nomad.fetch_job_definition.return_value = {"ID": "web"}
        nomad.submit_job.return_value = "e1"

        with patch.object(store, "set_handle_and_status", side_effect=StoreError("database down")):
            result = await engine.submit_by_name("v1", "web")

        assert result.status == STATUS_RUNNING
        assert result.handle == "e1"
        assert store.get("v1").status == STATUS_PENDING


class TestSubmitByDocument:
    """Submitting an uploaded job file."""

    @pytest.mark.asyncio
    async def test_successful_submission(self, engine, store, nomad):
        nomad.parse_raw_job_document.return_value = {"Job": {"ID": "batch"}}
        nomad.submit_job.return_value = "e2"

        result = await engine.submit_by_document("j1", 'job "batch" {}')

        assert result == DeploymentResult(status=STATUS_RUNNING, tag="j1", handle="e2")
        record = store.get("j1")
        assert record.service_name == ""
        assert record.remote_handle == "e2"
        nomad.fetch_job_definition.assert_not_awaited()
        nomad.submit_job.assert_awaited_once_with({"Job": {"ID": "batch"}})

    @pytest.mark.asyncio
    async def test_parse_error_marks_failed_and_raises(self, engine, store, nomad):
        nomad.parse_raw_job_document.side_effect = ParseError("Failed to parse job file: bad")

        with pytest.raises(ParseError) as exc_info:
            await engine.submit_by_document("j2", "not hcl")

        assert exc_info.value.tag == "j2"
        assert store.get("j2").status == STATUS_FAILED
        nomad.submit_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submit_failure_returns_failed(self, engine, store, nomad):
        nomad.parse_raw_job_document.return_value = {"Job": {"ID": "batch"}}
        nomad.submit_job.side_effect = OrchestratorUnavailable("Failed to reach Nomad")

        result = await engine.submit_by_document("j3", 'job "batch" {}')

        assert result.status == STATUS_FAILED
        assert result.message == "Failed to reach Nomad"
        assert store.get("j3").status == STATUS_FAILED

    @pytest.mark.asyncio
    async def test_empty_document_rejected_before_record(self, engine, store):
        with pytest.raises(InvalidInput):
            await engine.submit_by_document("j4", "  ")

        with pytest.raises(StoreError):
            store.get("j4")

    @pytest.mark.asyncio
    async def test_duplicate_tag_conflicts(self, engine, nomad):
        nomad.parse_raw_job_document.return_value = {"Job": {"ID": "batch"}}
        nomad.submit_job.return_value = "e2"
        await engine.submit_by_document("j1", 'job "batch" {}')

        with pytest.raises(Conflict):
            await engine.submit_by_document("j1", 'job "batch" {}')


class TestQueryStatus:
    """Status reconciliation."""

    @pytest.mark.asyncio
    async def test_unknown_tag(self, engine):
        with pytest.raises(NotFound):
            await engine.query_status("unknown")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", [STATUS_COMPLETED, STATUS_FAILED])
    async def test_terminal_record_skips_orchestrator(self, engine, store, nomad, terminal):
        store.create("v1", "web")
        store.set_handle_and_status("v1", "e1", STATUS_RUNNING)
        store.set_status("v1", terminal)

        result = await engine.query_status("v1")

        assert result.status == terminal
        nomad.fetch_evaluation_outcome.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pending_record_skips_orchestrator(self, engine, store, nomad):
        store.create("v1", "web")

        result = await engine.query_status("v1")

        assert result == DeploymentResult(status=STATUS_PENDING, tag="v1")
        nomad.fetch_evaluation_outcome.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_outcome(self, engine, store, nomad):
        store.create("v1", "web")
        store.set_handle_and_status("v1", "e1", STATUS_RUNNING)
        nomad.fetch_evaluation_outcome.return_value = "failed"

        result = await engine.query_status("v1")

        assert result.status == STATUS_FAILED
        assert store.get("v1").status == STATUS_FAILED

    @pytest.mark.asyncio
    async def test_unknown_outcome_stays_running(self, engine, store, nomad):
        store.create("v1", "web")
        before = store.set_handle_and_status("v1", "e1", STATUS_RUNNING)
        nomad.fetch_evaluation_outcome.return_value = "blocked"

        result = await engine.query_status("v1")

        assert result.status == STATUS_RUNNING
        assert store.get("v1").updated_at == before.updated_at

    @pytest.mark.asyncio
    async def test_orchestrator_failure_returns_last_known(self, engine, store, nomad):
        store.create("v1", "web")
        store.set_handle_and_status("v1", "e1", STATUS_RUNNING)
        nomad.fetch_evaluation_outcome.side_effect = OrchestratorUnavailable("timeout")

        result = await engine.query_status("v1")

        assert result == DeploymentResult(status=STATUS_RUNNING, tag="v1", handle="e1")
        assert store.get("v1").status == STATUS_RUNNING

    @pytest.mark.asyncio
    async def test_store_failure_during_reconcile_returns_real_outcome(self, engine, store, nomad):
        store.create("v1", "web")
        store.set_handle_and_status("v1", "e1", STATUS_RUNNING)
        nomad.fetch_evaluation_outcome.return_value = "complete"

        with patch.object(store, "set_status", side_effect=StoreError("database down")):
            result = await engine.query_status("v1")

        assert result.status == STATUS_COMPLETED

    @pytest.mark.asyncio
    async def test_empty_tag(self, engine):
        with pytest.raises(InvalidInput):
            await engine.query_status("")


class TestDeploymentResult:
    def test_to_dict_omits_none(self):
        assert DeploymentResult(status="running", tag="v1").to_dict() == {"status": "running", "tag": "v1"}
