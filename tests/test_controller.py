from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from recruiter_stream import (
    RunStatus,
    StreamConfig,
    UpdateKind,
    WorkflowAlreadyRunningError,
    WorkflowClient,
    WorkflowRunController,
)

from conftest import StreamingBackend, split_every, sse, sse_body

SQL = {"name": "SQL", "reason": "required"}


def end_to_end_body() -> bytes:
    return sse_body(
        {"type": "status", "step": "core_skills", "message": "Analyzing..."},
        {"type": "result", "step": "core_skills", "data": [SQL]},
        {"type": "status", "step": "ai_analysis", "message": "..."},
        {"type": "result", "step": "ai_analysis_markdown", "data": "# Summary"},
        {"type": "complete", "data": {}},
    )


def wait_for_kind(controller: WorkflowRunController, kind: UpdateKind) -> asyncio.Event:
    seen = asyncio.Event()

    def observer(update):
        if update.kind == kind:
            seen.set()

    controller.subscribe(observer)
    return seen


class TestRun:
    async def test_end_to_end(self, make_controller, request_payload, meta):
        backend = StreamingBackend(split_every(end_to_end_body(), 7))
        controller = make_controller(backend)

        record = await controller.run(request_payload, meta)

        assert record.status == RunStatus.COMPLETE
        assert len(controller.workflow_result.core_skills) == 1
        assert controller.workflow_result.ai_analysis_markdown == "# Summary"
        assert controller.is_generating is False
        assert controller.generation_error is None
        assert controller.analysis_history == (record,)
        assert controller.last_analyzed_at == record.finished_at

        sent = json.loads(backend.requests[0].content)
        assert backend.requests[0].method == "POST"
        assert backend.requests[0].url.path == "/recruiter-workflow/generate-stream"
        assert sent["resumes"] == [{"resume_id": "r-1", "candidate_id": "c-1"}]
        assert "step_overrides" not in sent

    async def test_start_workflow(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend([end_to_end_body()]))

        record = await controller.start_workflow(request_payload, meta)

        assert record.status == RunStatus.COMPLETE
        assert controller.analysis_history == (record,)
        assert controller.workflow_result is record.result
        assert controller.last_analyzed_at == record.finished_at

    async def test_job_metadata_seeds_result(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend([end_to_end_body()]))
        record = await controller.run(request_payload, meta)
        assert record.result.job["title"] == "Data Engineer"

    async def test_plain_dict_payload(self, make_controller, meta):
        backend = StreamingBackend([end_to_end_body()])
        controller = make_controller(backend)
        payload = {"job_description": "jd", "resumes": [{"resume_id": "r-9"}], "step_overrides": {"core_skills": {"provider": "x", "model": "y"}}}

        record = await controller.run(payload, meta)

        assert record.status == RunStatus.COMPLETE
        assert json.loads(backend.requests[0].content) == payload

    async def test_observers_see_start_progress_and_finalize(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend([end_to_end_body()]))
        kinds: list[UpdateKind] = []
        controller.subscribe(lambda update: kinds.append(update.kind))

        await controller.run(request_payload, meta)

        assert kinds[0] == UpdateKind.STARTED
        assert kinds.count(UpdateKind.STATUS) == 2
        assert kinds.count(UpdateKind.RESULT) == 2
        assert kinds[-2:] == [UpdateKind.COMPLETED, UpdateKind.FINALIZED]

    async def test_done_without_complete_succeeds(self, make_controller, request_payload, meta):
        body = sse_body({"type": "result", "step": "core_skills", "data": [SQL]}, {"type": "done"})
        controller = make_controller(StreamingBackend([body]))
        record = await controller.run(request_payload, meta)
        assert record.status == RunStatus.COMPLETE
        assert record.result.core_skills == [SQL]

    async def test_events_after_complete_do_not_change_record(self, make_controller, request_payload, meta):
        body = sse_body(
            {"type": "result", "step": "core_skills", "data": [SQL]},
            {"type": "complete", "data": {}},
            {"type": "result", "step": "core_skills", "data": [SQL, SQL]},
            {"type": "error", "message": "late"},
        )
        controller = make_controller(StreamingBackend([body]))
        record = await controller.run(request_payload, meta)

        assert record.status == RunStatus.COMPLETE
        assert record.result.core_skills == [SQL]
        assert controller.generation_error is None

    async def test_malformed_lines_do_not_abort(self, make_controller, request_payload, meta):
        body = (
            b"data: {oops\n\n"
            + b": keep-alive\n\n"
            + sse({"type": "result", "step": "core_skills", "data": [SQL]})
            + b"data: not json either\n\n"
            + b"data: " + b"[" * 100000 + b"]" * 100000 + b"\n\n"
            + sse({"type": "complete", "data": {}})
        )
        controller = make_controller(StreamingBackend([body]))
        record = await controller.run(request_payload, meta)
        assert record.status == RunStatus.COMPLETE
        assert record.result.core_skills == [SQL]


class TestFailures:
    async def test_stream_closes_without_terminal_event(self, make_controller, request_payload, meta):
        body = sse({"type": "result", "step": "core_skills", "data": [SQL]})
        controller = make_controller(StreamingBackend([body]))

        record = await controller.run(request_payload, meta)

        assert record.status == RunStatus.ERROR
        assert record.result.core_skills == [SQL]
        assert len(controller.analysis_history) == 1
        assert controller.generation_error == "Stream closed before the workflow completed"
        assert controller.workflow_result.core_skills == [SQL]
        assert controller.is_generating is False
        assert controller.last_analyzed_at is None

    async def test_non_2xx_fails_immediately(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend(status_code=503))

        record = await controller.run(request_payload, meta)

        assert record.status == RunStatus.ERROR
        assert record.error == "Stream request failed with status 503"
        assert record.result.core_skills == []
        assert len(controller.analysis_history) == 1

    async def test_connection_refused(self, config, request_payload, meta):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = WorkflowClient(config, transport=httpx.MockTransport(refuse))
        controller = WorkflowRunController(client, config)

        record = await controller.run(request_payload, meta)

        assert record.status == RunStatus.ERROR
        assert "connection refused" in record.error

    async def test_connection_drop_mid_stream_keeps_partial(self, make_controller, request_payload, meta):
        body = sse_body(
            {"type": "result", "step": "core_skills", "data": [SQL]},
            {"type": "partial", "step": "ranked_shortlist", "data": [{"candidate_id": "c-1", "rank": 1}]},
        )
        backend = StreamingBackend([body], fail_with=httpx.ReadError("connection reset"))
        controller = make_controller(backend)

        record = await controller.run(request_payload, meta)

        assert record.status == RunStatus.ERROR
        assert "connection reset" in record.error
        assert record.result.core_skills == [SQL]
        assert record.result.ranked_shortlist == [{"candidate_id": "c-1", "rank": 1}]

    async def test_backend_error_event_is_fatal(self, make_controller, request_payload, meta):
        body = sse_body(
            {"type": "result", "step": "core_skills", "data": [SQL]},
            {"type": "error", "step": "ai_analysis", "message": "LLM provider failed"},
            {"type": "result", "step": "ai_analysis_markdown", "data": "# never"},
        )
        controller = make_controller(StreamingBackend([body], hang=True))

        record = await controller.run(request_payload, meta)

        assert record.status == RunStatus.ERROR
        assert record.error == "LLM provider failed"
        assert record.result.ai_analysis_markdown == ""

    async def test_benign_error_code_is_not_surfaced(self, make_controller, request_payload, meta):
        body = sse_body(
            {"type": "error", "message": "'str' object has no attribute 'get'", "code": "STEP_OUTPUT_SHAPE"},
            {"type": "result", "step": "core_skills", "data": [SQL]},
            {"type": "complete", "data": {}},
        )
        controller = make_controller(StreamingBackend([body]), benign_error_codes=frozenset({"STEP_OUTPUT_SHAPE"}))

        record = await controller.run(request_payload, meta)

        assert record.status == RunStatus.COMPLETE
        assert controller.generation_error is None

    async def test_idle_timeout(self, make_controller, request_payload, meta):
        body = sse({"type": "status", "step": "core_skills", "message": "Analyzing..."})
        backend = StreamingBackend([body], hang=True)
        controller = make_controller(backend, idle_timeout_seconds=0.05)

        record = await asyncio.wait_for(controller.run(request_payload, meta), 2)

        assert record.status == RunStatus.ERROR
        assert record.error.startswith("No workflow events received")
        assert backend.closed.is_set()

    async def test_keepalives_alone_still_time_out(self, make_controller, request_payload, meta):
        backend = StreamingBackend([b": keep-alive\n\n"] * 3, hang=True)
        controller = make_controller(backend, idle_timeout_seconds=0.05)

        record = await asyncio.wait_for(controller.run(request_payload, meta), 2)

        assert record.status == RunStatus.ERROR


class TestCancellation:
    async def test_cancel_mid_stream(self, make_controller, request_payload, meta):
        body = sse({"type": "result", "step": "core_skills", "data": [SQL]})
        backend = StreamingBackend([body], hang=True)
        controller = make_controller(backend)
        got_result = wait_for_kind(controller, UpdateKind.RESULT)

        task = asyncio.create_task(controller.run(request_payload, meta))
        await asyncio.wait_for(got_result.wait(), 2)
        assert controller.is_generating

        assert controller.cancel() is True
        record = await asyncio.wait_for(task, 2)

        assert record.status == RunStatus.CANCELLED
        assert record.result.core_skills == [SQL]
        assert controller.analysis_history == (record,)
        assert controller.is_generating is False
        assert controller.generation_error == "Workflow cancelled"
        assert backend.closed.is_set()

    async def test_cancel_when_idle(self, make_controller):
        controller = make_controller(StreamingBackend())
        assert controller.cancel() is False

    async def test_cancelling_the_caller_still_records_the_run(self, make_controller, request_payload, meta):
        backend = StreamingBackend([sse({"type": "status", "step": "loading", "message": "go"})], hang=True)
        controller = make_controller(backend)
        started = wait_for_kind(controller, UpdateKind.STATUS)

        task = asyncio.create_task(controller.run(request_payload, meta))
        await asyncio.wait_for(started.wait(), 2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(controller.analysis_history) == 1
        assert controller.analysis_history[0].status == RunStatus.CANCELLED
        assert controller.is_generating is False


class TestSingleFlight:
    async def test_second_run_is_rejected(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend(hang=True))

        token, task = controller.launch(request_payload, meta)
        with pytest.raises(WorkflowAlreadyRunningError):
            await controller.run(request_payload, meta)
        with pytest.raises(WorkflowAlreadyRunningError):
            controller.launch(request_payload, meta)

        controller.cancel()
        record = await asyncio.wait_for(task, 2)
        assert record.id == token.run_id
        assert len(controller.analysis_history) == 1

    def test_launch_without_event_loop_leaves_controller_idle(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend())

        with pytest.raises(RuntimeError):
            controller.launch(request_payload, meta)

        assert controller.is_generating is False
        assert controller.live_result is None
        assert controller.analysis_history == ()

    async def test_runs_back_to_back(self, make_controller, request_payload, meta):
        backend = StreamingBackend([end_to_end_body()])
        controller = make_controller(backend)
        first = await controller.run(request_payload, meta)
        second = await controller.run(request_payload, meta)

        assert len(backend.requests) == 2
        assert first.id != second.id
        assert controller.analysis_history == (second, first)


class TestHistoryView:
    async def test_starting_a_run_returns_to_live(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend([end_to_end_body()]))
        old = await controller.run(request_payload, meta)

        controller.set_viewing_history_id(old.id)
        assert controller.workflow_result is old.result

        controller.client = WorkflowClient(
            controller.config,
            transport=httpx.MockTransport(StreamingBackend(
                [sse({"type": "result", "step": "engagement_plan", "data": [{"label": "a", "value": "b"}]})],
                hang=True,
            )),
        )
        got_result = wait_for_kind(controller, UpdateKind.RESULT)
        token, task = controller.launch(request_payload, meta)

        assert controller.viewing_history_id is None
        assert controller.workflow_result is controller.live_result
        assert controller.workflow_result.core_skills == []

        await asyncio.wait_for(got_result.wait(), 2)
        assert controller.workflow_result.engagement_plan == [{"label": "a", "value": "b"}]

        controller.cancel()
        await asyncio.wait_for(task, 2)

    async def test_viewing_history_does_not_touch_live(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend([end_to_end_body()]))
        record = await controller.run(request_payload, meta)
        live = controller.live_result

        controller.set_viewing_history_id(record.id)
        assert controller.live_result is live
        controller.set_viewing_history_id(None)
        assert controller.workflow_result is live

    async def test_clear_result(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend(status_code=500))
        record = await controller.run(request_payload, meta)
        controller.set_viewing_history_id(record.id)

        controller.clear_result()

        assert controller.workflow_result is None
        assert controller.generation_error is None
        assert controller.viewing_history_id is None
        assert controller.analysis_history == (record,)

    async def test_step_statuses(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend([end_to_end_body()]))
        await controller.run(request_payload, meta)
        statuses = {s["step"]: s["status"] for s in controller.step_statuses()}
        assert statuses["core_skills"] == "complete"
        assert statuses["ai_analysis"] == "complete"
        assert statuses["interview_preparation"] == "waiting"


class TestSaveResult:
    async def test_completed_result_is_saved(self, make_controller, request_payload, meta):
        backend = StreamingBackend([end_to_end_body()])
        controller = make_controller(backend, save_path="/recruiter-workflow/results")

        await controller.run(request_payload, meta)

        assert len(backend.saved) == 1
        assert backend.saved[0]["ai_analysis_markdown"] == "# Summary"

    async def test_failed_run_is_not_saved(self, make_controller, request_payload, meta):
        backend = StreamingBackend([sse({"type": "error", "message": "boom"})])
        controller = make_controller(backend, save_path="/recruiter-workflow/results")
        await controller.run(request_payload, meta)
        assert backend.saved == []

    async def test_save_failure_does_not_fail_the_run(self, make_controller, request_payload, meta):
        controller = make_controller(StreamingBackend([end_to_end_body()]), save_path="/missing")
        record = await controller.run(request_payload, meta)
        assert record.status == RunStatus.COMPLETE


def test_controller_uses_client_config():
    config = StreamConfig(max_history=3)
    controller = WorkflowRunController(WorkflowClient(config))
    assert controller.ledger.max_runs == 3
