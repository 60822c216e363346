from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable, Generator, Iterable
from typing import Any, Optional

import httpx
import pytest

from recruiter_stream import (
    RunMeta,
    StreamConfig,
    WorkflowClient,
    WorkflowRequest,
    WorkflowRunController,
)


@pytest.fixture(autouse=True)
def configure_test_logging() -> Generator[None, None, None]:
    """Keep structlog quiet during tests."""
    from recruiter_stream.main import configure_logging

    configure_logging(level=logging.WARNING)
    yield


def sse(event: dict[str, Any]) -> bytes:
    """Encode one event the way the backend does."""
    return f"data: {json.dumps(event)}\n\n".encode("utf-8")


def sse_body(*events: dict[str, Any]) -> bytes:
    return b"".join(sse(e) for e in events)


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


class StreamingBackend:
    """
    Fake workflow backend for httpx.MockTransport.

    Serves `chunks` on the stream endpoint. Optionally raises `fail_with`
    after the chunks, or blocks forever (until cancelled) when `hang` is set.
    """

    def __init__(
        self,
        chunks: Iterable[bytes] = (),
        status_code: int = 200,
        fail_with: Optional[Exception] = None,
        hang: bool = False,
    ):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.fail_with = fail_with
        self.hang = hang
        self.requests: list[httpx.Request] = []
        self.saved: list[dict] = []
        self.closed = asyncio.Event()

    async def _body(self) -> AsyncIterator[bytes]:
        try:
            for chunk in self.chunks:
                yield chunk
                await asyncio.sleep(0)
            if self.fail_with is not None:
                raise self.fail_with
            if self.hang:
                await asyncio.Event().wait()
        finally:
            self.closed.set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/generate-stream"):
            if self.status_code != 200:
                return httpx.Response(self.status_code, text="backend unavailable")
            return httpx.Response(
                200,
                content=self._body(),
                headers={"content-type": "text/event-stream"},
            )
        if request.url.path == "/recruiter-workflow/results":
            self.saved.append(json.loads(request.content))
            return httpx.Response(201, json={"ok": True})
        return httpx.Response(404)


@pytest.fixture
def config() -> StreamConfig:
    return StreamConfig(api_base_url="http://backend.test", idle_timeout_seconds=5.0, max_history=20)


@pytest.fixture
def make_controller(config: StreamConfig) -> Callable[..., WorkflowRunController]:
    def factory(backend: StreamingBackend, **overrides: Any) -> WorkflowRunController:
        cfg = StreamConfig(**{**config.__dict__, **overrides})
        client = WorkflowClient(cfg, transport=httpx.MockTransport(backend))
        return WorkflowRunController(client, cfg)

    return factory


@pytest.fixture
def request_payload() -> WorkflowRequest:
    return WorkflowRequest(
        job_description="Senior data engineer, SQL and Python",
        resumes=[{"resume_id": "r-1", "candidate_id": "c-1"}],
        job_metadata={"title": "Data Engineer", "code": "DE-2"},
    )


@pytest.fixture
def meta() -> RunMeta:
    return RunMeta(
        candidate_name="Ada Example",
        job_title="Data Engineer",
        resume_ids=("r-1",),
        candidate={"kind": "candidate", "candidate_id": "c-1"},
    )
