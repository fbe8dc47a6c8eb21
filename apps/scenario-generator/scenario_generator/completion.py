"""Client side of the completion-service boundary."""

from __future__ import annotations

import json
import re
from types import TracebackType
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from .models import CompletionRequest, CompletionResponse

logger = structlog.get_logger("scenario_generator.completion")

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class CompletionTransportError(RuntimeError):
    """One completion call could not be completed."""


class CompletionServiceUnavailableError(RuntimeError):
    """No completion call succeeded during the whole run."""

    @property
    def tag(self) -> str:
        return type(self).__name__


class CompletionClient(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...


@runtime_checkable
class ClosableClient(Protocol):
    async def aclose(self) -> None: ...


def extract_candidates(text: str) -> list[Any]:
    """Pull the JSON array of candidates out of a model reply.

    Accepts a bare array, an array inside a fenced code block, or an object
    carrying the array under ``scenarios``.
    """

    attempts = [text.strip()]
    attempts.extend(match.strip() for match in _FENCE.findall(text))
    start, end = text.find("["), text.rfind("]")
    if 0 <= start < end:
        attempts.append(text[start : end + 1])

    for candidate in attempts:
        if not candidate:
            continue
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and isinstance(payload.get("scenarios"), list):
            return payload["scenarios"]
        if isinstance(payload, list):
            return payload
    raise ValueError("Reply does not contain a JSON array of scenarios")


class OpenAICompatibleClient:
    """Talks to any server exposing the OpenAI ``/chat/completions`` API.

    Calls share one ``httpx.AsyncClient``, opened on first use and released by
    ``aclose()`` (or leaving an ``async with`` block); a closed client reopens
    on the next call.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        temperature: float = 0.2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "OpenAICompatibleClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.prompt},
            ],
        }

        try:
            response = await self._http().post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise CompletionTransportError(f"Completion request failed: {exc}") from exc

        if response.status_code >= 400:
            raise CompletionTransportError(
                f"Completion service answered HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            body = response.json()
            text = body["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise CompletionTransportError(f"Unexpected completion payload: {exc}") from exc

        try:
            candidates = extract_candidates(text)
        except ValueError as exc:
            logger.warning("completion_reply_unparsable", operation_id=request.operation_id)
            return CompletionResponse(raw=text, model=body.get("model"), notes=[str(exc)])
        return CompletionResponse(candidates=candidates, raw=text, model=body.get("model"))
