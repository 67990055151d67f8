from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from runengine.core.config import get_settings
from runengine.core.errors import NetworkError

logger = logging.getLogger(__name__)

AGENT_CHAT = "/api/ai/agent-chat"
PLAN_PROJECT = "/api/ai/plan-project"
EXECUTE_PROJECT = "/api/ai/execute-project"
RUN_TESTS = "/api/tests/run"
FIX_TESTS = "/api/tests/fix"
RISK_DECISION = "/api/ai/agent/risk-decision"


def _error_message(resp: httpx.Response, body: bytes | None = None) -> str:
    raw = body if body is not None else resp.content
    try:
        payload = json.loads(raw or b"{}")
    except (ValueError, UnicodeDecodeError):
        payload = None
    if isinstance(payload, dict):
        msg = payload.get("message") or payload.get("detail")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    text = (raw or b"").decode("utf-8", errors="replace").strip()
    return text[:500] if text else f"HTTP {resp.status_code}"


def _wrap_transport_error(exc: httpx.HTTPError, endpoint: str) -> NetworkError:
    if isinstance(exc, httpx.TimeoutException):
        message = f"Request to {endpoint} timed out"
    else:
        message = str(exc) or exc.__class__.__name__
    return NetworkError(message, endpoint=endpoint)


class ChatReply:
    """Open agent-chat response: either an NDJSON stream or one JSON object."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response

    @property
    def is_stream(self) -> bool:
        ctype = self.response.headers.get("content-type", "")
        return "ndjson" in ctype or "jsonl" in ctype

    def chunks(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()

    async def json(self) -> Any:
        body = await self.response.aread()
        try:
            return json.loads(body or b"{}")
        except ValueError as e:
            raise NetworkError("agent-chat returned invalid JSON", endpoint=AGENT_CHAT) from e


class BackendClient:
    """
    Thin async client for the IDE backend. Every failure surfaces as
    NetworkError; retry policy, if any, belongs to the caller.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 60.0,
        stream_read_timeout_s: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )
        self._stream_timeout = httpx.Timeout(timeout_s, read=stream_read_timeout_s)

    @classmethod
    def from_settings(cls, transport: httpx.AsyncBaseTransport | None = None) -> "BackendClient":
        s = get_settings()
        return cls(
            s.BACKEND_BASE_URL,
            timeout_s=s.BACKEND_TIMEOUT_S,
            stream_read_timeout_s=s.BACKEND_STREAM_READ_TIMEOUT_S,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, endpoint: str, body: dict) -> Any:
        try:
            resp = await self._client.post(endpoint, json=body)
        except httpx.HTTPError as e:
            raise _wrap_transport_error(e, endpoint) from e

        if resp.status_code >= 400:
            raise NetworkError(_error_message(resp), endpoint=endpoint, status_code=resp.status_code)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"{endpoint} returned invalid JSON", endpoint=endpoint, status_code=resp.status_code) from e

    @asynccontextmanager
    async def agent_chat(self, message: str, history: list[dict], mode: str) -> AsyncIterator[ChatReply]:
        body = {"message": message, "history": history, "mode": mode}
        try:
            async with self._client.stream(
                "POST",
                AGENT_CHAT,
                params={"stream": "1"},
                json=body,
                timeout=self._stream_timeout,
            ) as resp:
                if resp.status_code >= 400:
                    raw = await resp.aread()
                    raise NetworkError(_error_message(resp, raw), endpoint=AGENT_CHAT, status_code=resp.status_code)
                yield ChatReply(resp)
        except httpx.HTTPError as e:
            raise _wrap_transport_error(e, AGENT_CHAT) from e

    async def plan_project(self, prompt: str) -> dict:
        data = await self._post(PLAN_PROJECT, {"prompt": prompt})
        return data if isinstance(data, dict) else {}

    async def execute_project(self, plan: dict) -> dict:
        data = await self._post(EXECUTE_PROJECT, {"plan": plan})
        if isinstance(data, dict) and data.get("success") is False:
            raise NetworkError(
                str(data.get("message") or "Project execution failed"),
                endpoint=EXECUTE_PROJECT,
            )
        return data if isinstance(data, dict) else {}

    async def run_tests(self) -> dict:
        data = await self._post(RUN_TESTS, {})
        return data if isinstance(data, dict) else {}

    async def fix_tests(self, failures: list[dict]) -> dict:
        data = await self._post(FIX_TESTS, {"failures": failures})
        return data if isinstance(data, dict) else {}

    async def risk_decision(self, request_id: str, allow: bool) -> dict:
        logger.info("Submitting risk decision %s allow=%s", request_id, allow)
        data = await self._post(RISK_DECISION, {"requestId": request_id, "allow": allow})
        return data if isinstance(data, dict) else {}
