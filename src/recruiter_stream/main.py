"""
Recruiter Workflow Stream - Application Shell

Owns the single WorkflowRunController for the lifetime of the process and
exposes it to the recruiter UI:

- Start / cancel / clear workflow runs
- Switch between the live run and retained history
- SSE feed of every state change for progressive rendering

Run locally:
    uvicorn recruiter_stream.main:app --reload
"""

import os
import json
import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
import structlog

# Load environment variables
load_dotenv()

from .accumulator import WorkflowUpdate
from .client import WorkflowClient
from .config import StreamConfig
from .controller import WorkflowRunController
from .exceptions import UnknownRunError, WorkflowAlreadyRunningError, WorkflowTransportError
from .models import RunMeta, WorkflowRequest, WorkflowResponse

__version__ = "0.3.0"

HEARTBEAT_SECONDS = 15.0
EVENT_QUEUE_SIZE = 64  # pending updates per /workflow/events client


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog to render JSON through the stdlib logging tree."""
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger().setLevel(level)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging(getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO))
logger = structlog.get_logger()

# Controller (lazy initialized, lives until shutdown)
_controller: Optional[WorkflowRunController] = None
_run_tasks: set[asyncio.Task] = set()


def get_controller() -> WorkflowRunController:
    """Get or initialize the workflow run controller."""
    global _controller
    if _controller is None:
        config = StreamConfig.from_env()
        _controller = WorkflowRunController(client=WorkflowClient(config), config=config)
        logger.info("controller_initialized",
                    api_base_url=config.api_base_url,
                    max_history=config.max_history,
                    idle_timeout=config.idle_timeout_seconds)
    return _controller


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    controller = get_controller()
    logger.info("starting_recruiter_stream", version=__version__)

    yield

    controller.cancel()
    for task in list(_run_tasks):
        try:
            await task
        except asyncio.CancelledError:
            pass
    await controller.client.aclose()
    logger.info("shutting_down")


app = FastAPI(
    title="Recruiter Workflow Stream",
    description="Incremental AI workflow results for the recruiter UI",
    version=__version__,
    lifespan=lifespan,
)

CORS_ORIGINS_DEFAULT = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

cors_origins_env = os.environ.get("ALLOWED_ORIGINS", "")
if cors_origins_env:
    allowed_origins = [o.strip() for o in cors_origins_env.split(",") if o.strip()]
else:
    allowed_origins = CORS_ORIGINS_DEFAULT

# If "*" is in the list, we can't use credentials
allow_credentials = "*" not in allowed_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with timing and status."""
    request_id = str(uuid.uuid4())[:8]
    start_time = time.time()
    path = request.url.path

    # SSE responses stay open; only log the start
    skip_completion = path in ["/health", "/workflow/events"]

    response = await call_next(request)
    if not skip_completion:
        logger.info("request_completed",
                    request_id=request_id,
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    duration_ms=round((time.time() - start_time) * 1000, 2))
    return response


# ============================================================
# MODELS
# ============================================================

class StartRunRequest(BaseModel):
    """Start a workflow run."""
    request: WorkflowRequest
    meta: RunMeta


class StartRunResponse(BaseModel):
    run_id: str
    status: str


class ViewRequest(BaseModel):
    run_id: Optional[str] = None


# ============================================================
# ENDPOINTS
# ============================================================

@app.get("/health")
async def health():
    controller = get_controller()
    return {
        "status": "healthy",
        "version": __version__,
        "is_generating": controller.is_generating,
    }


@app.get("/workflow/state")
async def workflow_state():
    """Current reactive state (live or viewed result, progress, error)."""
    return get_controller().to_dict()


@app.get("/workflow/steps")
async def workflow_steps():
    """Published step order with waiting / in_progress / complete status."""
    controller = get_controller()
    return {
        "current_step": controller.streaming_step,
        "steps": controller.step_statuses(),
    }


@app.post("/workflow/runs", response_model=StartRunResponse, status_code=202)
async def start_run(body: StartRunRequest):
    """Start a run in the background. Only one run may be active."""
    controller = get_controller()
    try:
        token, task = controller.launch(body.request, body.meta)
    except WorkflowAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))

    _run_tasks.add(task)

    def on_done(t: asyncio.Task):
        _run_tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.error("workflow_run_crashed", run_id=token.run_id, error=str(t.exception()))

    task.add_done_callback(on_done)
    return StartRunResponse(run_id=token.run_id, status="started")


@app.post("/workflow/cancel")
async def cancel_run():
    cancelled = get_controller().cancel()
    return {"cancelled": cancelled}


@app.delete("/workflow/result")
async def clear_result():
    controller = get_controller()
    controller.clear_result()
    return controller.to_dict()


@app.put("/workflow/view")
async def set_view(body: ViewRequest):
    """Show a retained run, or the live run when run_id is null."""
    controller = get_controller()
    try:
        controller.set_viewing_history_id(body.run_id)
    except UnknownRunError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return controller.to_dict()


@app.get("/workflow/history")
async def history():
    controller = get_controller()
    return {
        "runs": [record.to_dict() for record in controller.analysis_history],
        "viewing_history_id": controller.viewing_history_id,
    }


@app.get("/workflow/history/{run_id}")
async def history_run(run_id: str):
    record = get_controller().ledger.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return record.to_dict()


@app.post("/workflow/generate", response_model=WorkflowResponse)
async def generate(request: WorkflowRequest):
    """Run the workflow without streaming (blocks until the backend answers)."""
    try:
        return await get_controller().client.generate(request.to_payload())
    except WorkflowTransportError as e:
        raise HTTPException(status_code=502, detail=str(e))


def subscribe_queue(
    controller: WorkflowRunController,
    maxsize: int = EVENT_QUEUE_SIZE,
) -> tuple[asyncio.Queue, Callable[[], None]]:
    """
    Subscribe a bounded queue to controller updates.

    When a slow client lets the queue fill up, the oldest update is dropped.
    Every SSE frame re-reads the full state, so the newest update is enough.
    """
    queue: asyncio.Queue[WorkflowUpdate] = asyncio.Queue(maxsize=maxsize)

    def enqueue(update: WorkflowUpdate) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(update)

    return queue, controller.subscribe(enqueue)


def update_to_sse(update: WorkflowUpdate, controller: WorkflowRunController) -> str:
    """Format a controller update as a Server-Sent Event."""
    event_data = {
        "type": update.kind.value,
        "step": update.step,
        "state": controller.to_dict(),
    }
    return f"data: {json.dumps(event_data)}\n\n"


@app.get("/workflow/events")
async def workflow_events():
    """
    SSE feed of state changes.

    Emits the current state first, then one event per update, with a
    heartbeat every 15s while nothing changes.
    """
    controller = get_controller()
    queue, unsubscribe = subscribe_queue(controller)

    async def event_generator():
        try:
            yield f"data: {json.dumps({'type': 'snapshot', 'state': controller.to_dict()})}\n\n"
            while True:
                try:
                    update = await asyncio.wait_for(queue.get(), HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
                    continue
                yield update_to_sse(update, controller)
        finally:
            unsubscribe()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )
