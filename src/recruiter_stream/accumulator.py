"""
Workflow Accumulator

Merges streamed step events into one WorkflowResult while the backend
pipeline is still running.

State machine: IDLE -> RUNNING -> COMPLETED | FAILED

Every update builds a new WorkflowResult; observers always receive a
complete snapshot and never an object that is being modified.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

import structlog

from .stream import EventType, StreamEvent

logger = structlog.get_logger()


# Published step sequence, in the order the backend runs them
STEP_ORDER = (
    "loading",
    "core_skills",
    "ai_analysis",
    "ranked_shortlist",
    "detailed_readout",
    "engagement_plan",
    "fairness_guidance",
    "interview_preparation",
)

RESULT_FIELDS = (
    "core_skills",
    "ai_analysis_markdown",
    "candidate_analysis",
    "ranked_shortlist",
    "detailed_readout",
    "engagement_plan",
    "fairness_guidance",
    "interview_preparation",
)

TEXT_FIELDS = frozenset({"ai_analysis_markdown"})

# Steps that fill fields under a different name
STEP_FIELDS = {
    "ai_analysis": ("ai_analysis_markdown", "candidate_analysis"),
}


class RunState(str, Enum):
    """Accumulator lifecycle."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class UpdateKind(str, Enum):
    """What changed in an update delivered to observers."""
    STARTED = "started"
    STATUS = "status"
    PARTIAL = "partial"
    RESULT = "result"
    STEP_ERROR = "step_error"
    COMPLETED = "completed"
    FAILED = "failed"
    FINALIZED = "finalized"
    VIEW_CHANGED = "view_changed"
    CLEARED = "cleared"


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def _coerce(name: str, value: Any) -> Any:
    """Normalize a payload for a named field (fresh containers, never shared)."""
    if name in TEXT_FIELDS:
        return "" if value is None else str(value)
    if isinstance(value, (list, tuple)):
        return list(value)
    return value


@dataclass(frozen=True)
class WorkflowResult:
    """Aggregate of all step outputs received so far."""
    job: dict = field(default_factory=dict)
    core_skills: list = field(default_factory=list)
    ai_analysis_markdown: str = ""
    candidate_analysis: list = field(default_factory=list)
    ranked_shortlist: list = field(default_factory=list)
    detailed_readout: list = field(default_factory=list)
    engagement_plan: list = field(default_factory=list)
    fairness_guidance: list = field(default_factory=list)
    interview_preparation: list = field(default_factory=list)
    steps: dict = field(default_factory=dict)  # step name -> raw payload

    def is_empty(self, name: str) -> bool:
        return _is_empty(getattr(self, name))

    def with_updates(self, fields: Mapping[str, Any], steps: Optional[Mapping[str, Any]] = None) -> "WorkflowResult":
        """Copy with some fields (and step payloads) replaced."""
        new_steps = {**self.steps, **steps} if steps else dict(self.steps)
        return dataclasses.replace(self, steps=new_steps, **fields)

    def to_dict(self) -> dict:
        """JSON-ready representation (steps omitted)."""
        data = {"job": dict(self.job)}
        for name in RESULT_FIELDS:
            value = getattr(self, name)
            data[name] = list(value) if isinstance(value, list) else value
        return data


def fields_for_step(step: str, data: Any) -> dict[str, Any]:
    """Map one step payload onto WorkflowResult fields."""
    if step == "ai_analysis":
        if isinstance(data, str):
            return {"ai_analysis_markdown": data}
        if isinstance(data, Mapping):
            fields: dict[str, Any] = {}
            if "markdown" in data:
                fields["ai_analysis_markdown"] = _coerce("ai_analysis_markdown", data["markdown"])
            if data.get("candidates") is not None:
                fields["candidate_analysis"] = _coerce("candidate_analysis", data["candidates"])
            return fields
        return {}
    if step in RESULT_FIELDS:
        return {step: _coerce(step, data)}
    return {}


@dataclass(frozen=True)
class SessionState:
    """Snapshot of the live session."""
    run_state: RunState = RunState.IDLE
    current_step: Optional[str] = None
    status_message: Optional[str] = None
    live_result: WorkflowResult = field(default_factory=WorkflowResult)
    error: Optional[str] = None
    step_errors: dict = field(default_factory=dict)
    cancelled: bool = False

    @property
    def is_generating(self) -> bool:
        return self.run_state == RunState.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self.run_state in (RunState.COMPLETED, RunState.FAILED)


@dataclass(frozen=True)
class WorkflowUpdate:
    """An update delivered to observers."""
    kind: UpdateKind
    state: SessionState
    step: Optional[str] = None
    event: Optional[StreamEvent] = None


Observer = Callable[[WorkflowUpdate], None]


class WorkflowAccumulator:
    """
    Incremental merge of workflow events.

    Observers registered with subscribe() are called synchronously on every
    change, status events included.
    """

    def __init__(self, benign_error_codes: Iterable[str] = ()):
        self.benign_error_codes = frozenset(benign_error_codes)
        self._state = SessionState()
        self._finalized: set[str] = set()
        self._observers: list[Observer] = []

    # --------------------------------------------------------
    # Observation
    # --------------------------------------------------------

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, kind: UpdateKind, step: Optional[str] = None, event: Optional[StreamEvent] = None) -> None:
        """Deliver the current state to every observer."""
        update = WorkflowUpdate(kind=kind, state=self._state, step=step, event=event)
        for observer in list(self._observers):
            try:
                observer(update)
            except Exception as e:
                logger.error("workflow_observer_failed", kind=kind.value, error=str(e))

    # --------------------------------------------------------
    # Read access
    # --------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state.run_state

    @property
    def current_step(self) -> Optional[str]:
        return self._state.current_step

    @property
    def status_message(self) -> Optional[str]:
        return self._state.status_message

    @property
    def result(self) -> WorkflowResult:
        return self._state.live_result

    @property
    def error(self) -> Optional[str]:
        return self._state.error

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def snapshot(self) -> SessionState:
        return self._state

    def is_step_before(self, step: str) -> bool:
        """True while `step` has not been reached yet (it comes after the current step)."""
        current = self._state.current_step
        if current not in STEP_ORDER or step not in STEP_ORDER:
            return False
        return STEP_ORDER.index(current) < STEP_ORDER.index(step)

    def is_step_complete(self, step: str) -> bool:
        """True once the step has delivered its final data."""
        if step in self._finalized:
            return True
        fields = STEP_FIELDS.get(step, (step,) if step in RESULT_FIELDS else ())
        if any(name in self._finalized for name in fields):
            return True
        if self._state.run_state == RunState.COMPLETED:
            return any(not self._state.live_result.is_empty(name) for name in fields)
        return False

    def step_status(self, step: str) -> str:
        """One of 'complete', 'in_progress', 'waiting' for progress displays."""
        if self.is_step_complete(step):
            return "complete"
        if self._state.current_step == step and self._state.is_generating:
            return "in_progress"
        return "waiting"

    # --------------------------------------------------------
    # Transitions
    # --------------------------------------------------------

    def _set(self, **changes) -> None:
        self._state = dataclasses.replace(self._state, **changes)

    def start(self, job: Optional[Mapping[str, Any]] = None) -> None:
        """Enter RUNNING with an empty result."""
        self._finalized = set()
        self._state = SessionState(
            run_state=RunState.RUNNING,
            live_result=WorkflowResult(job=dict(job or {})),
        )
        self.publish(UpdateKind.STARTED)

    def clear(self) -> None:
        """Drop the live result and error. Ignored while a run is active."""
        if self._state.is_generating:
            return
        self._finalized = set()
        self._state = SessionState()
        self.publish(UpdateKind.CLEARED)

    def apply(self, event: StreamEvent) -> bool:
        """
        Merge one event. Returns False when the event was ignored.

        Events arriving when no run is active (idle or already terminal)
        never change state.
        """
        if self._state.run_state != RunState.RUNNING:
            logger.debug("workflow_event_ignored", event_type=event.type.value, state=self.state.value)
            return False

        handler = {
            EventType.STATUS: self._on_status,
            EventType.PARTIAL: self._on_partial,
            EventType.RESULT: self._on_result,
            EventType.ERROR: self._on_error,
            EventType.COMPLETE: self._on_complete,
            EventType.DONE: self._on_done,
        }[event.type]
        return handler(event)

    def _on_status(self, event: StreamEvent) -> bool:
        self._set(current_step=event.step, status_message=event.message)
        self.publish(UpdateKind.STATUS, step=event.step, event=event)
        return True

    def _on_partial(self, event: StreamEvent) -> bool:
        result = self._state.live_result
        fields = {
            name: value
            for name, value in fields_for_step(event.step, event.data).items()
            if name not in self._finalized
            and not (_is_empty(value) and not result.is_empty(name))
        }
        steps = {} if event.step in self._finalized else {event.step: event.data}
        if not fields and not steps:
            logger.debug("workflow_partial_skipped", step=event.step)
            return False

        self._set(live_result=result.with_updates(fields, steps))
        self.publish(UpdateKind.PARTIAL, step=event.step, event=event)
        return True

    def _on_result(self, event: StreamEvent) -> bool:
        fields = fields_for_step(event.step, event.data)
        self._finalized.update(fields)
        self._finalized.add(event.step)
        self._set(live_result=self._state.live_result.with_updates(fields, {event.step: event.data}))
        logger.info("workflow_step_result", step=event.step, fields=sorted(fields))
        self.publish(UpdateKind.RESULT, step=event.step, event=event)
        return True

    def _on_error(self, event: StreamEvent) -> bool:
        if event.code and event.code in self.benign_error_codes:
            logger.info("workflow_error_ignored", step=event.step, code=event.code, message=event.message)
            return False

        if not event.fatal:
            step_errors = {**self._state.step_errors, event.step or "": event.message}
            self._set(step_errors=step_errors)
            logger.warning("workflow_step_error", step=event.step, code=event.code, message=event.message)
            self.publish(UpdateKind.STEP_ERROR, step=event.step, event=event)
            return True

        self._finish_failed(event.message, step=event.step, event=event)
        return True

    def _on_complete(self, event: StreamEvent) -> bool:
        terminal = event.data if isinstance(event.data, Mapping) else {}
        result = self._state.live_result

        fields = {
            name: _coerce(name, terminal[name])
            for name in RESULT_FIELDS
            if not _is_empty(terminal.get(name))
        }
        if isinstance(terminal.get("job"), Mapping) and terminal["job"]:
            fields["job"] = dict(terminal["job"])
        steps = {name: terminal[name] for name in fields if name != "job" and name not in result.steps}

        self._finalized.update(name for name in fields if name != "job")
        self._set(
            run_state=RunState.COMPLETED,
            live_result=result.with_updates(fields, steps),
            current_step=None,
            status_message=None,
        )
        logger.info("workflow_completed", terminal_fields=sorted(fields))
        self.publish(UpdateKind.COMPLETED, event=event)
        return True

    def _on_done(self, event: StreamEvent) -> bool:
        self._set(run_state=RunState.COMPLETED, current_step=None, status_message=None)
        logger.info("workflow_done_without_complete")
        self.publish(UpdateKind.COMPLETED, event=event)
        return True

    def fail(self, message: str, cancelled: bool = False) -> bool:
        """Fail the running session from outside the stream (transport, timeout, cancel)."""
        if self._state.run_state != RunState.RUNNING:
            return False
        self._finish_failed(message, cancelled=cancelled)
        return True

    def _finish_failed(
        self,
        message: Optional[str],
        step: Optional[str] = None,
        event: Optional[StreamEvent] = None,
        cancelled: bool = False,
    ) -> None:
        self._set(
            run_state=RunState.FAILED,
            error=message or "Workflow failed",
            current_step=None,
            status_message=None,
            cancelled=cancelled,
        )
        logger.warning("workflow_failed", step=step, error=message, cancelled=cancelled)
        self.publish(UpdateKind.FAILED, step=step, event=event)
