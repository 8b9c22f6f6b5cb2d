"""MCP client for the streamable HTTP transport."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

import httpx

from .config import RemoteCapabilityConfig

LOG = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
CLIENT_INFO = {"name": "threadrelay", "version": "0.1.0"}


class MCPError(Exception):
    """Raised for MCP protocol and transport errors."""


class _SessionExpiredError(MCPError):
    """Server no longer knows our `mcp-session-id`; a fresh initialize is required."""


class HTTPMCPClient:
    """JSON-RPC client for one MCP server over streamable HTTP.

    Replies may arrive as a plain JSON body or as an SSE stream; both are
    accepted. `headers` carry the caller's credentials on every request and are
    fixed for the lifetime of the client.
    """

    def __init__(
        self,
        cfg: RemoteCapabilityConfig,
        *,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cfg = cfg
        self._extra_headers = dict(headers or {})
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._id = 0
        self._session_id: str | None = None
        self._initialized = False
        self._initialize_lock = asyncio.Lock()
        self.server_info: dict[str, Any] = {}

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def start(self) -> None:
        """Open HTTP client resources."""
        if self._client is not None:
            return
        if not self.cfg.url:
            raise MCPError(f"Missing url for MCP server '{self.cfg.server_id}'")
        timeout = httpx.Timeout(
            connect=self.cfg.connect_timeout_seconds,
            read=self.cfg.read_timeout_seconds,
            write=self.cfg.read_timeout_seconds,
            pool=self.cfg.connect_timeout_seconds,
        )
        self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self._transport)

    async def close(self) -> None:
        """Terminate the server-side session (best effort) and close HTTP resources."""
        client = self._client
        self._client = None
        if client is None:
            return
        try:
            if self._session_id and self.cfg.url:
                with contextlib.suppress(httpx.HTTPError):
                    await client.delete(self.cfg.url, headers=self._headers())
        finally:
            self._session_id = None
            self._initialized = False
            await client.aclose()

    def _headers(self) -> dict[str, str]:
        """Build MCP HTTP headers.

        Accept always advertises both JSON and SSE to satisfy strict servers.
        """
        headers = {
            **self._extra_headers,
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "MCP-Protocol-Version": PROTOCOL_VERSION,
        }
        if self._session_id:
            headers["mcp-session-id"] = self._session_id
        return headers

    @staticmethod
    def _extract_rpc_envelope(payload: Any, req_id: int | None) -> dict[str, Any] | None:
        """Find the JSON-RPC reply for `req_id`, also inside wrapped payloads."""
        if not isinstance(payload, dict):
            return None

        if "id" in payload and ("result" in payload or "error" in payload):
            if req_id is None or str(payload["id"]) == str(req_id):
                return payload

        for key in ("response", "message", "data"):
            found = HTTPMCPClient._extract_rpc_envelope(payload.get(key), req_id)
            if found is not None:
                return found
        return None

    async def _read_sse_response(self, response: httpx.Response, req_id: int) -> dict[str, Any]:
        """Read SSE events until the JSON-RPC reply for `req_id` arrives."""
        event_name = "message"
        data_lines: list[str] = []

        def flush_event() -> dict[str, Any] | None:
            nonlocal event_name, data_lines
            current_event, data = event_name, "\n".join(data_lines).strip()
            event_name, data_lines = "message", []
            if not data or data == "[DONE]":
                return None
            try:
                obj = json.loads(data)
            except json.JSONDecodeError:
                return None
            found = self._extract_rpc_envelope(obj, req_id)
            if found is not None:
                return found
            if current_event == "error" and isinstance(obj, dict):
                return {"jsonrpc": "2.0", "id": req_id, "error": obj}
            # Server-initiated requests and notifications are ignored.
            return None

        async for line in response.aiter_lines():
            if line == "":
                found = flush_event()
                if found is not None:
                    return found
                continue
            if line.startswith(":"):
                continue
            if line.startswith("event:"):
                event_name = line[6:].strip() or "message"
            elif line.startswith("data:"):
                data_lines.append(line[5:].lstrip())

        found = flush_event()
        if found is not None:
            return found
        raise MCPError("SSE response did not contain a JSON-RPC reply")

    @staticmethod
    def _body_preview(raw: str, limit: int = 1000) -> str:
        if len(raw) > limit:
            return raw[:limit] + "...<truncated>"
        return raw

    def _capture_session_id(self, response: httpx.Response) -> None:
        new_session = response.headers.get("mcp-session-id")
        if new_session and new_session != self._session_id:
            self._session_id = new_session
            LOG.info("MCP HTTP session id updated server_id=%s session_id=%s", self.cfg.server_id, new_session)

    async def _post(self, req: dict[str, Any]) -> dict[str, Any] | None:
        """POST one JSON-RPC message; return the reply envelope (None for notifications)."""
        if self._client is None:
            await self.start()
        assert self._client is not None and self.cfg.url is not None
        url = self.cfg.url
        req_id = req.get("id")

        try:
            async with self._client.stream("POST", url, json=req, headers=self._headers()) as response:
                self._capture_session_id(response)
                if response.status_code == 404 and self._session_id and req.get("method") != "initialize":
                    raise _SessionExpiredError(f"MCP session expired on {url}")
                if response.status_code >= 400:
                    raw = (await response.aread()).decode("utf-8", errors="replace")
                    raise MCPError(
                        f"MCP POST {url} returned HTTP {response.status_code} body={self._body_preview(raw)!r}"
                    )
                if req_id is None:
                    return None

                content_type = response.headers.get("content-type", "").lower()
                if "text/event-stream" in content_type:
                    return await self._read_sse_response(response, req_id)

                raw_bytes = await response.aread()
        except httpx.HTTPError as exc:
            raise MCPError(f"MCP POST {url} failed: {exc}") from exc

        try:
            payload = json.loads(raw_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MCPError("MCP response body is not JSON") from exc
        found = self._extract_rpc_envelope(payload, req_id)
        if found is None:
            raise MCPError("MCP response is not a JSON-RPC envelope")
        return found

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._post({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def initialize(self) -> dict[str, Any]:
        """Run the MCP initialize handshake once per session."""
        if self._initialized:
            return self.server_info

        async with self._initialize_lock:
            if self._initialized:
                return self.server_info
            result = await self._rpc(
                "initialize",
                {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO},
                _allow_reinit_retry=False,
            )
            try:
                await self._notify("notifications/initialized")
            except MCPError as exc:
                LOG.debug("MCP notifications/initialized failed server_id=%s error=%s", self.cfg.server_id, exc)

            self.server_info = result.get("serverInfo") or {}
            self._initialized = True
            LOG.info(
                "MCP HTTP session initialized server_id=%s session_id=%s server=%s",
                self.cfg.server_id,
                self._session_id,
                self.server_info.get("name"),
            )
            return self.server_info

    async def _rpc(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        _allow_reinit_retry: bool = True,
    ) -> dict[str, Any]:
        """Execute one JSON-RPC request, re-initializing once if the session expired."""
        if method != "initialize":
            await self.initialize()

        self._id += 1
        req = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params or {}}
        try:
            envelope = await self._post(req)
        except _SessionExpiredError:
            if not _allow_reinit_retry:
                raise
            LOG.info("MCP HTTP session reset and reinitialize server_id=%s method=%s", self.cfg.server_id, method)
            self._session_id = None
            self._initialized = False
            return await self._rpc(method, params, _allow_reinit_retry=False)

        assert envelope is not None
        if "error" in envelope:
            raise MCPError(json.dumps(envelope["error"], ensure_ascii=False))
        result = envelope.get("result")
        return result if isinstance(result, dict) else {}

    async def tools_list(self, cursor: str | None = None) -> dict[str, Any]:
        """List one page of tools."""
        params: dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        return await self._rpc("tools/list", params)

    async def list_all_tools(self) -> list[dict[str, Any]]:
        """Load all tools with cursor-based pagination."""
        all_tools: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            result = await self.tools_list(cursor=cursor)
            tools = result.get("tools", [])
            if isinstance(tools, list):
                all_tools.extend(tool for tool in tools if isinstance(tool, dict))
            cursor = result.get("nextCursor")
            if not cursor:
                return all_tools

    async def tools_call(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Execute one tool call and return the MCP result payload."""
        return await self._rpc("tools/call", {"name": name, "arguments": arguments})
