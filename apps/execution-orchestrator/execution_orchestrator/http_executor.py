"""Async HTTP transport used by the orchestrator workers."""

from __future__ import annotations

import time
from types import TracebackType
from typing import Optional

import httpx

from .models import CapturedResponse, TargetConfig
from .request_builder import PreparedRequest


class HttpExecutor:
    """Sends prepared requests through one shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        target: TargetConfig,
        *,
        max_connections: int = 4,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._target = target
        self._limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "HttpExecutor":
        self._client = httpx.AsyncClient(
            verify=self._target.verify,
            limits=self._limits,
            transport=self._transport,
            follow_redirects=False,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, prepared: PreparedRequest, timeout: float) -> CapturedResponse:
        """Perform one request; transport problems surface as ``httpx`` exceptions."""

        if self._client is None:
            raise RuntimeError("HttpExecutor must be used as an async context manager")
        start = time.perf_counter()
        response = await self._client.request(
            prepared.method,
            prepared.url,
            headers=prepared.headers,
            params=prepared.params or None,
            content=prepared.content,
            timeout=timeout,
        )
        elapsed_ms = (time.perf_counter() - start) * 1000
        return CapturedResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.text,
            elapsed_ms=round(elapsed_ms, 3),
        )
