"""
Run History

In-memory ledger of finished workflow runs, newest first, with a viewing
pointer that lets the UI show an older run without touching the live one.
"""

import itertools
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from .accumulator import WorkflowResult
from .config import DEFAULT_MAX_HISTORY
from .exceptions import SessionStateError, UnknownRunError
from .models import RunMeta

logger = structlog.get_logger()


class RunStatus(str, Enum):
    """Outcome recorded for a finished run."""
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SessionToken:
    """Handle for a run that has started but not been recorded yet."""
    run_id: str
    started_at: datetime
    meta: RunMeta


@dataclass(frozen=True)
class RunRecord:
    """One finished workflow run."""
    id: str
    timestamp: datetime
    meta: RunMeta
    result: WorkflowResult
    status: RunStatus
    error: Optional[str] = None
    finished_at: Optional[datetime] = None

    @property
    def candidate_name(self) -> str:
        return self.meta.candidate_name

    @property
    def job_title(self) -> str:
        return self.meta.job_title

    @property
    def resume_ids(self) -> tuple[str, ...]:
        return self.meta.resume_ids

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "candidate_name": self.meta.candidate_name,
            "candidate": self.meta.candidate.model_dump() if self.meta.candidate else None,
            "job_title": self.meta.job_title,
            "resume_ids": list(self.meta.resume_ids),
            "status": self.status.value,
            "error": self.error,
            "result": self.result.to_dict(),
        }


class RunLedger:
    """
    Bounded run history.

    Only one run is live at a time. A RunRecord is created exactly once per
    token, when the run is finalized.
    """

    def __init__(self, max_runs: int = DEFAULT_MAX_HISTORY, clock: Optional[Callable[[], datetime]] = None):
        if max_runs < 1:
            raise ValueError("max_runs must be at least 1")
        self.max_runs = max_runs
        self._clock = clock or datetime.now
        self._seq = itertools.count(1)
        self._history: list[RunRecord] = []
        self._live: Optional[SessionToken] = None
        self._viewing_id: Optional[str] = None
        self._last_completed_at: Optional[datetime] = None

    @property
    def history(self) -> tuple[RunRecord, ...]:
        return tuple(self._history)

    @property
    def live_token(self) -> Optional[SessionToken]:
        return self._live

    @property
    def viewing_history_id(self) -> Optional[str]:
        return self._viewing_id

    @property
    def last_completed_at(self) -> Optional[datetime]:
        """When the most recent successful run finished."""
        return self._last_completed_at

    def _new_id(self, started_at: datetime) -> str:
        # Start time alone collides under rapid restarts; the counter never does
        return f"run_{int(started_at.timestamp() * 1000)}_{next(self._seq)}"

    def start(self, meta: RunMeta) -> SessionToken:
        """Begin tracking a live run and return focus to it."""
        if self._live is not None:
            raise SessionStateError(f"Run {self._live.run_id} is still live")

        started_at = self._clock()
        token = SessionToken(run_id=self._new_id(started_at), started_at=started_at, meta=meta)
        self._live = token
        self._viewing_id = None
        logger.info("run_started", run_id=token.run_id, candidate=meta.candidate_name, job=meta.job_title)
        return token

    def finalize(
        self,
        token: SessionToken,
        status: RunStatus,
        result: WorkflowResult,
        error: Optional[str] = None,
    ) -> RunRecord:
        """Record the live run and trim history to the retention bound."""
        if self._live is None or self._live.run_id != token.run_id:
            raise SessionStateError(f"Run {token.run_id} is not live")

        finished_at = self._clock()
        record = RunRecord(
            id=token.run_id,
            timestamp=token.started_at,
            meta=token.meta,
            result=result,
            status=status,
            error=error,
            finished_at=finished_at,
        )
        self._history = [record, *self._history][: self.max_runs]
        self._live = None
        if status == RunStatus.COMPLETE:
            self._last_completed_at = finished_at

        if self._viewing_id is not None and self.get(self._viewing_id) is None:
            # The viewed run fell off the end of the history
            self._viewing_id = None

        logger.info("run_finalized", run_id=record.id, status=status.value, retained=len(self._history))
        return record

    def get(self, run_id: str) -> Optional[RunRecord]:
        for record in self._history:
            if record.id == run_id:
                return record
        return None

    def view(self, run_id: Optional[str]) -> None:
        """Point reads at a retained run, or back at the live run with None."""
        if run_id is not None and self.get(run_id) is None:
            raise UnknownRunError(run_id)
        self._viewing_id = run_id

    def active_result(self, live_result: Optional[WorkflowResult]) -> Optional[WorkflowResult]:
        """The viewed run's result if one is selected, else the live result."""
        if self._viewing_id is not None:
            record = self.get(self._viewing_id)
            if record is not None:
                return record.result
        return live_result
