"""
Recruiter Workflow Stream

Client-side consumer for the recruiter AI workflow event stream.

Features:
- SSE framing and event decoding that survives split reads and bad events
- Incremental merge of step results into one workflow result
- Bounded run history with a live/historical view switch
- Single-flight run controller with cancellation and idle timeout
"""

from .accumulator import (
    STEP_ORDER,
    RESULT_FIELDS,
    RunState,
    SessionState,
    UpdateKind,
    WorkflowAccumulator,
    WorkflowResult,
    WorkflowUpdate,
)
from .client import WorkflowClient
from .config import StreamConfig, resolve_api_base_url
from .controller import WorkflowRunController
from .exceptions import (
    RecruiterStreamError,
    SessionStateError,
    UnknownRunError,
    WorkflowAlreadyRunningError,
    WorkflowTransportError,
)
from .ledger import RunLedger, RunRecord, RunStatus, SessionToken
from .models import (
    CandidateRecord,
    JobMetadata,
    ResumeReference,
    RunMeta,
    StandaloneResume,
    WorkflowRequest,
    WorkflowResponse,
)
from .stream import EventType, LineFramer, StreamEvent, decode_line, frame_lines

__all__ = [
    # Stream protocol
    "EventType",
    "StreamEvent",
    "LineFramer",
    "frame_lines",
    "decode_line",
    # Accumulator
    "STEP_ORDER",
    "RESULT_FIELDS",
    "RunState",
    "SessionState",
    "UpdateKind",
    "WorkflowAccumulator",
    "WorkflowResult",
    "WorkflowUpdate",
    # History
    "RunLedger",
    "RunRecord",
    "RunStatus",
    "SessionToken",
    # Controller
    "WorkflowClient",
    "WorkflowRunController",
    "StreamConfig",
    "resolve_api_base_url",
    # Models
    "CandidateRecord",
    "StandaloneResume",
    "JobMetadata",
    "ResumeReference",
    "RunMeta",
    "WorkflowRequest",
    "WorkflowResponse",
    # Errors
    "RecruiterStreamError",
    "SessionStateError",
    "UnknownRunError",
    "WorkflowAlreadyRunningError",
    "WorkflowTransportError",
]
