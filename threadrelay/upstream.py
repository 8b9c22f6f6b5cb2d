"""Client wrapper for the upstream OpenAI-compatible completion API."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncGenerator, Awaitable, Callable

import httpx

from .config import GatewayConfig
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"
STREAM_END_MARKER = "[DONE]"


class UpstreamClient:
    """Thin async HTTP client for the completion endpoint."""

    def __init__(self, cfg: GatewayConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.cfg = cfg
        self._base_url = cfg.upstream_base_url.rstrip("/")
        self._timeout = httpx.Timeout(connect=10.0, read=300.0, write=120.0, pool=10.0)
        self._transport = transport
        self._client = self._build_client()

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        """Build authorization headers; raises `ConfigurationError` without a key."""
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.cfg.require_upstream_api_key()}",
        }

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh upstream HTTP client instance."""
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport)

    def _upstream_connect_retries(self) -> int:
        """Return configured number of retries after the first failed request."""
        retries = self.cfg.upstream_connect_retries
        if retries is None:
            return 0
        return int(retries)

    def _upstream_retry_interval_seconds(self) -> float:
        interval_ms = int(self.cfg.upstream_retry_interval_ms or 0)
        return max(0.0, interval_ms / 1000.0)

    @staticmethod
    def _is_incomplete_payload_error(exc: Exception) -> bool:
        """Detect truncated/incomplete upstream response payload errors."""
        lowered = str(exc).lower()
        return (
            "response payload is not completed" in lowered
            or "transferencodingerror" in lowered
            or "not enough data to satisfy transfer length header" in lowered
        )

    @classmethod
    def _is_retryable_connect_error(cls, exc: Exception) -> bool:
        """Decide whether one upstream error should trigger a retry."""
        if isinstance(exc, httpx.TransportError):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code if exc.response is not None else None
            if status is None:
                return False
            return status == 429 or status >= 500
        return cls._is_incomplete_payload_error(exc)

    def _can_retry(self, exc: Exception, attempt: int) -> bool:
        retries = self._upstream_connect_retries()
        return self._is_retryable_connect_error(exc) and (retries < 0 or attempt <= retries)

    async def chat_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Run a non-streaming chat completion."""
        req_payload = dict(payload)
        req_payload["stream"] = False
        headers = self._headers()
        retry_delay = self._upstream_retry_interval_seconds()
        attempt = 1
        while True:
            try:
                LOG.debug(
                    "forwarding upstream request method=POST path=%s stream=false attempt=%s payload=%s",
                    CHAT_COMPLETIONS_PATH,
                    attempt,
                    to_bounded_json(req_payload),
                )
                response = await self._client.post(CHAT_COMPLETIONS_PATH, headers=headers, json=req_payload)
                response.raise_for_status()
                return response.json()
            except Exception as exc:
                if not self._can_retry(exc, attempt):
                    raise
                LOG.warning(
                    "upstream chat request failed attempt=%s retry_in=%.3fs error=%s",
                    attempt,
                    retry_delay,
                    exc,
                )
                if retry_delay > 0:
                    await asyncio.sleep(retry_delay)
                attempt += 1

    @staticmethod
    def _decode_event_line(line: str) -> dict[str, Any] | str | None:
        """Decode one SSE line into a chunk, the end marker, or None for lines to skip."""
        if not line.startswith("data:"):
            return None
        data = line[5:].strip()
        if data == STREAM_END_MARKER:
            return STREAM_END_MARKER
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            # Tolerate occasional non-JSON lines in malformed streams.
            return None
        return chunk if isinstance(chunk, dict) else None

    @staticmethod
    async def _release(tag: str, *closers: Callable[[], Awaitable[None]]) -> bool:
        """Run close callbacks shielded from cancellation; return whether one was cancelled."""
        cancelled = False
        for close in closers:
            try:
                await asyncio.shield(close())
            except asyncio.CancelledError:
                cancelled = True
            except Exception:
                LOG.debug("upstream stream close failed trace=%s", tag, exc_info=True)
        return cancelled

    async def stream_chat_completion(
        self,
        payload: dict[str, Any],
        *,
        trace_id: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Run a streaming chat completion and yield decoded chunk objects.

        Connect failures are retried only while no chunk has been yielded.
        """
        req_payload = {**payload, "stream": True}
        headers = {**self._headers(), "Connection": "close"}
        started = time.monotonic()
        tag = trace_id or "-"
        LOG.debug(
            "upstream stream start trace=%s method=POST path=%s payload=%s",
            tag,
            CHAT_COMPLETIONS_PATH,
            to_bounded_json(req_payload),
        )
        retry_delay = self._upstream_retry_interval_seconds()

        attempt = 1
        while True:
            stream_client = self._build_client()
            response: httpx.Response | None = None
            chunk_count = 0
            try:
                request = stream_client.build_request("POST", CHAT_COMPLETIONS_PATH, headers=headers, json=req_payload)
                response = await stream_client.send(request, stream=True)
                response.raise_for_status()
                async for line in response.aiter_lines():
                    decoded = self._decode_event_line(line)
                    if decoded is None:
                        continue
                    if decoded == STREAM_END_MARKER:
                        break
                    chunk_count += 1
                    yield decoded
                return
            except asyncio.CancelledError:
                LOG.debug("upstream stream cancelled trace=%s chunks=%s", tag, chunk_count)
                raise
            except Exception as exc:
                if chunk_count > 0 or not self._can_retry(exc, attempt):
                    raise
                LOG.warning(
                    "upstream stream connect failed trace=%s attempt=%s retry_in=%.3fs error=%s",
                    tag,
                    attempt,
                    retry_delay,
                    exc,
                )
                if retry_delay > 0:
                    await asyncio.sleep(retry_delay)
                attempt += 1
            finally:
                closers = [response.aclose] if response is not None else []
                cleanup_cancelled = await self._release(tag, *closers, stream_client.aclose)
                LOG.debug(
                    "upstream stream closed trace=%s attempt=%s elapsed=%.3fs chunks=%s",
                    tag,
                    attempt,
                    time.monotonic() - started,
                    chunk_count,
                )
                if cleanup_cancelled:
                    raise asyncio.CancelledError
