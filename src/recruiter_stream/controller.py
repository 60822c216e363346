"""
Workflow Run Controller

Drives one workflow run end to end:

    POST -> bytes -> lines -> events -> accumulator -> run record

and holds the live/historical state the UI reads. Create one controller
for the lifetime of the application; runs are single-flight.
"""

import asyncio
from contextlib import aclosing
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Union

import structlog

from .accumulator import (
    STEP_ORDER,
    Observer,
    RunState,
    UpdateKind,
    WorkflowAccumulator,
    WorkflowResult,
)
from .client import WorkflowClient
from .config import StreamConfig
from .exceptions import WorkflowAlreadyRunningError, WorkflowTransportError
from .ledger import RunLedger, RunRecord, RunStatus, SessionToken
from .models import RunMeta, WorkflowRequest
from .stream import StreamEvent, decode_events, frame_lines

logger = structlog.get_logger()


async def with_idle_timeout(
    events: AsyncIterator[StreamEvent],
    seconds: Optional[float],
) -> AsyncIterator[StreamEvent]:
    """Re-yield events, raising asyncio.TimeoutError if none arrives within `seconds`."""
    iterator = events.__aiter__()
    while True:
        try:
            if seconds is None:
                event = await iterator.__anext__()
            else:
                event = await asyncio.wait_for(iterator.__anext__(), seconds)
        except StopAsyncIteration:
            return
        yield event


class WorkflowRunController:
    """
    Single-flight workflow runner with run history.

    UI-facing state (is_generating, streaming_step, workflow_result, ...) is
    exposed as properties; subscribe() delivers every change synchronously.
    """

    def __init__(
        self,
        client: WorkflowClient,
        config: Optional[StreamConfig] = None,
        accumulator: Optional[WorkflowAccumulator] = None,
        ledger: Optional[RunLedger] = None,
    ):
        self.client = client
        self.config = config or client.config
        self.accumulator = accumulator or WorkflowAccumulator(self.config.benign_error_codes)
        self.ledger = ledger or RunLedger(max_runs=self.config.max_history)
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    # --------------------------------------------------------
    # Reactive state
    # --------------------------------------------------------

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        return self.accumulator.subscribe(observer)

    @property
    def is_generating(self) -> bool:
        return self.ledger.live_token is not None

    @property
    def streaming_step(self) -> Optional[str]:
        return self.accumulator.current_step

    @property
    def streaming_message(self) -> Optional[str]:
        return self.accumulator.status_message

    @property
    def live_result(self) -> Optional[WorkflowResult]:
        if self.accumulator.state == RunState.IDLE:
            return None
        return self.accumulator.result

    @property
    def workflow_result(self) -> Optional[WorkflowResult]:
        """The result the UI should show: the viewed run, else the live one."""
        return self.ledger.active_result(self.live_result)

    @property
    def generation_error(self) -> Optional[str]:
        return self.accumulator.error

    @property
    def analysis_history(self) -> tuple[RunRecord, ...]:
        return self.ledger.history

    @property
    def viewing_history_id(self) -> Optional[str]:
        return self.ledger.viewing_history_id

    @property
    def last_analyzed_at(self) -> Optional[datetime]:
        return self.ledger.last_completed_at

    def is_step_complete(self, step: str) -> bool:
        return self.accumulator.is_step_complete(step)

    def is_step_before(self, step: str) -> bool:
        return self.accumulator.is_step_before(step)

    def step_statuses(self) -> list[dict[str, str]]:
        return [{"step": step, "status": self.accumulator.step_status(step)} for step in STEP_ORDER]

    def to_dict(self) -> dict[str, Any]:
        result = self.workflow_result
        return {
            "is_generating": self.is_generating,
            "streaming_step": self.streaming_step,
            "streaming_message": self.streaming_message,
            "generation_error": self.generation_error,
            "workflow_result": result.to_dict() if result is not None else None,
            "viewing_history_id": self.viewing_history_id,
            "last_analyzed_at": self.last_analyzed_at.isoformat() if self.last_analyzed_at else None,
            "history_ids": [record.id for record in self.ledger.history],
        }

    # --------------------------------------------------------
    # Controls
    # --------------------------------------------------------

    def clear_result(self) -> None:
        """Return to an empty live view. A running session keeps streaming."""
        self.ledger.view(None)
        if self.is_generating:
            self.accumulator.publish(UpdateKind.VIEW_CHANGED)
            return
        self.accumulator.clear()

    def set_viewing_history_id(self, run_id: Optional[str]) -> None:
        self.ledger.view(run_id)
        self.accumulator.publish(UpdateKind.VIEW_CHANGED)

    def cancel(self) -> bool:
        """Abort the live run. Returns False if nothing was running."""
        if self._task is None or self._task.done():
            return False
        self._cancel_requested = True
        self._task.cancel()
        logger.info("workflow_cancel_requested", run_id=self.ledger.live_token.run_id if self.ledger.live_token else None)
        return True

    async def start_workflow(
        self,
        payload: Union[WorkflowRequest, Mapping[str, Any]],
        meta: RunMeta,
    ) -> RunRecord:
        return await self.run(payload, meta)

    async def run(
        self,
        payload: Union[WorkflowRequest, Mapping[str, Any]],
        meta: RunMeta,
    ) -> RunRecord:
        """
        Execute one workflow run and record it.

        Args:
            payload: Request body, passed to the backend as-is
            meta: Display metadata stored on the run record

        Returns:
            The RunRecord created for this run (complete, error or cancelled)

        Raises:
            WorkflowAlreadyRunningError: another run is still generating
        """
        token = self._begin(payload, meta)
        return await self._drive(token)

    def launch(
        self,
        payload: Union[WorkflowRequest, Mapping[str, Any]],
        meta: RunMeta,
    ) -> tuple[SessionToken, asyncio.Task]:
        """
        Start a run in the background.

        The run is live (and the single-flight check done) before this
        returns, so a second launch fails immediately.
        """
        token = self._begin(payload, meta)
        return token, asyncio.create_task(self._drive(token))

    # --------------------------------------------------------
    # Internals
    # --------------------------------------------------------

    def _begin(self, payload: Union[WorkflowRequest, Mapping[str, Any]], meta: RunMeta) -> SessionToken:
        if self.is_generating:
            raise WorkflowAlreadyRunningError("A workflow run is already in progress")

        # Raises before any state changes when there is no running loop
        loop = asyncio.get_running_loop()
        body = payload.to_payload() if isinstance(payload, WorkflowRequest) else dict(payload)
        token = self.ledger.start(meta)
        self._cancel_requested = False
        self.accumulator.start(job=body.get("job_metadata"))
        self._task = loop.create_task(self._pipe(body))
        return token

    async def _drive(self, token: SessionToken) -> RunRecord:
        try:
            await self._task
        except asyncio.CancelledError:
            self.accumulator.fail("Workflow cancelled", cancelled=True)
            record = self._finalize(token)
            if not self._cancel_requested:
                # The caller itself was cancelled (e.g. shutdown)
                raise
            return record
        finally:
            self._task = None

        record = self._finalize(token)
        if record.status == RunStatus.COMPLETE:
            await self._save(record)
        return record

    async def _pipe(self, body: dict[str, Any]) -> None:
        """Feed the response stream into the accumulator until a terminal state."""
        acc = self.accumulator
        try:
            async with self.client.stream_workflow(body) as response:
                events = decode_events(frame_lines(response.aiter_bytes()))
                async with aclosing(with_idle_timeout(events, self.config.idle_timeout_seconds)) as guarded:
                    async for event in guarded:
                        acc.apply(event)
                        if acc.is_terminal:
                            break
        except WorkflowTransportError as e:
            acc.fail(str(e))
            return
        except asyncio.TimeoutError:
            acc.fail(f"No workflow events received for {self.config.idle_timeout_seconds:g} seconds")
            return
        except Exception as e:
            logger.error("workflow_stream_failed", error=str(e))
            acc.fail(str(e) or "Failed to generate recruiter workflow")
            return

        if not acc.is_terminal:
            acc.fail("Stream closed before the workflow completed")

    def _finalize(self, token: SessionToken) -> RunRecord:
        acc = self.accumulator
        if acc.state == RunState.RUNNING:
            acc.fail("Workflow ended unexpectedly")

        state = acc.snapshot()
        if state.run_state == RunState.COMPLETED:
            status = RunStatus.COMPLETE
        elif state.cancelled:
            status = RunStatus.CANCELLED
        else:
            status = RunStatus.ERROR

        record = self.ledger.finalize(token, status, state.live_result, error=state.error)
        acc.publish(UpdateKind.FINALIZED)
        return record

    async def _save(self, record: RunRecord) -> None:
        try:
            await self.client.save_result(record.result.to_dict())
        except WorkflowTransportError as e:
            logger.error("workflow_result_save_failed", run_id=record.id, error=str(e))
