"""
Recruiter Workflow Backend Client

Thin httpx wrapper around the backend workflow endpoints.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx
import structlog

from .config import StreamConfig
from .exceptions import WorkflowTransportError
from .models import WorkflowResponse

logger = structlog.get_logger()


class WorkflowClient:
    """
    HTTP access to the recruiter workflow backend.

    The streaming call keeps the read timeout disabled: steps can be silent
    for a long time and idle detection is done on decoded events instead.
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or StreamConfig()
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    def _client(self) -> httpx.AsyncClient:
        """Get or create the shared AsyncClient."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.config.api_base_url,
                timeout=httpx.Timeout(self.config.request_timeout, read=None),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    @asynccontextmanager
    async def stream_workflow(self, payload: dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """
        Open the workflow event stream.

        Raises WorkflowTransportError if the request fails, the status is not
        2xx, or there is no body to read.
        """
        path = self.config.stream_path
        try:
            async with self._client().stream("POST", path, json=payload) as response:
                if not response.is_success:
                    detail = (await response.aread()).decode("utf-8", errors="replace")[:200]
                    logger.warning("workflow_stream_rejected", status=response.status_code, detail=detail)
                    raise WorkflowTransportError(
                        f"Stream request failed with status {response.status_code}",
                        status_code=response.status_code,
                    )
                if response.status_code == 204:
                    raise WorkflowTransportError("Response body is empty", status_code=204)

                logger.info("workflow_stream_opened", path=path, status=response.status_code)
                yield response
        except httpx.HTTPError as e:
            raise WorkflowTransportError(f"Connection to workflow backend failed: {e}") from e

    async def generate(self, payload: dict[str, Any]) -> WorkflowResponse:
        """Run the workflow without streaming and return the full response."""
        try:
            response = await self._client().post(
                self.config.generate_path,
                json=payload,
                timeout=httpx.Timeout(self.config.request_timeout, read=None),
            )
        except httpx.HTTPError as e:
            raise WorkflowTransportError(f"Connection to workflow backend failed: {e}") from e

        if not response.is_success:
            message = response.text or f"Request to {self.config.generate_path} failed with status {response.status_code}"
            raise WorkflowTransportError(message, status_code=response.status_code)

        try:
            return WorkflowResponse.model_validate(response.json())
        except ValueError as e:
            raise WorkflowTransportError(
                f"Failed to parse response from {self.config.generate_path}: {e}"
            ) from e

    async def save_result(self, result: dict[str, Any]) -> bool:
        """Persist a completed result. Returns False when saving is not configured."""
        if not self.config.save_path:
            return False

        try:
            response = await self._client().post(self.config.save_path, json=result)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise WorkflowTransportError(f"Failed to save workflow result: {e}") from e

        logger.info("workflow_result_saved", path=self.config.save_path, status=response.status_code)
        return True
