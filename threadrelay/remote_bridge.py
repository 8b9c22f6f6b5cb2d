"""Bridge to the remote capability (MCP) server.

Sessions are pooled per credential tuple (bearer token, data source). A
different tuple always means a different session with its own transport, so
updated credentials never depend on mutating headers of a live connection.
Concurrent first users of one tuple share a single in-flight connect.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import httpx

from .config import RemoteCapabilityConfig
from .mcp_client import HTTPMCPClient, MCPError
from .tool_registry import ToolDefinition
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)


class RemoteConnectionError(Exception):
    """Raised when the bridge cannot connect to or discover tools on the remote server."""


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class RemoteCredentials:
    """Credential context forwarded to the remote server as headers."""

    bearer_token: str | None = None
    data_source: str | None = None

    def describe(self) -> dict[str, Any]:
        """Return a loggable view without the token itself."""
        return {"has_token": bool(self.bearer_token), "data_source": self.data_source}


@dataclass(frozen=True)
class RemoteCallResult:
    """Outcome of one remote tool call; errors are values, not exceptions."""

    content: Any
    is_error: bool = False


ClientFactory = Callable[[RemoteCapabilityConfig, dict[str, str]], HTTPMCPClient]


def _default_client_factory(cfg: RemoteCapabilityConfig, headers: dict[str, str]) -> HTTPMCPClient:
    return HTTPMCPClient(cfg, headers=headers)


class RemoteSession:
    """One connection to the remote server for one credential tuple."""

    def __init__(self, credentials: RemoteCredentials, client: HTTPMCPClient, clock: Callable[[], float]) -> None:
        self.credentials = credentials
        self.client = client
        self.state = SessionState.DISCONNECTED
        self.catalogue: tuple[ToolDefinition, ...] = ()
        self._clock = clock
        self.last_used_at = clock()

    def touch(self) -> None:
        self.last_used_at = self._clock()


def catalogue_from_mcp_tools(tools: list[dict[str, Any]]) -> tuple[ToolDefinition, ...]:
    """Convert MCP `tools/list` entries to remote tool definitions."""
    definitions: list[ToolDefinition] = []
    for tool in tools:
        name = str(tool.get("name", "")).strip()
        if not name:
            continue
        schema = tool.get("inputSchema")
        if not isinstance(schema, dict):
            schema = {"type": "object", "properties": {}}
        definitions.append(
            ToolDefinition(
                name=name,
                description=str(tool.get("description") or "").strip(),
                parameters=schema,
                origin="remote",
                remote_name=name,
            )
        )
    return tuple(definitions)


def _error_result(message: str) -> RemoteCallResult:
    return RemoteCallResult(content={"error": f"Tool call failed: {message}"}, is_error=True)


class RemoteCapabilityBridge:
    """Pool of remote sessions with memoized connects and error-contained invocation."""

    def __init__(
        self,
        cfg: RemoteCapabilityConfig,
        *,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg
        self._client_factory = client_factory or _default_client_factory
        self._clock = clock
        self._sessions: OrderedDict[RemoteCredentials, RemoteSession] = OrderedDict()
        self._connecting: dict[RemoteCredentials, asyncio.Task[RemoteSession]] = {}

    def _headers_for(self, credentials: RemoteCredentials) -> dict[str, str]:
        headers: dict[str, str] = {}
        if credentials.bearer_token:
            token = credentials.bearer_token
            if self.cfg.token_header.lower() == "authorization":
                token = f"Bearer {token}"
            headers[self.cfg.token_header] = token
        if credentials.data_source:
            headers[self.cfg.data_source_header] = credentials.data_source
        return headers

    async def ensure_connected(self, credentials: RemoteCredentials) -> RemoteSession:
        """Return a connected session for `credentials`, connecting on first use.

        Raises `RemoteConnectionError` when connect or discovery fails; the
        failed attempt is not cached.
        """
        await self._evict_idle()

        session = self._sessions.get(credentials)
        if session is not None and session.state is SessionState.CONNECTED:
            self._sessions.move_to_end(credentials)
            session.touch()
            return session

        task = self._connecting.get(credentials)
        if task is None:
            task = asyncio.create_task(self._connect(credentials))
            self._connecting[credentials] = task
            task.add_done_callback(lambda done, key=credentials: self._forget_connect(key, done))
        # Shielded so one cancelled waiter does not abort the connect other requests are waiting on.
        return await asyncio.shield(task)

    def _forget_connect(self, key: RemoteCredentials, task: asyncio.Task[RemoteSession]) -> None:
        if self._connecting.get(key) is task:
            del self._connecting[key]
        if not task.cancelled():
            task.exception()

    async def _connect(self, credentials: RemoteCredentials) -> RemoteSession:
        client = self._client_factory(self.cfg, self._headers_for(credentials))
        session = RemoteSession(credentials, client, self._clock)
        session.state = SessionState.CONNECTING
        LOG.info("remote session connecting server_id=%s credentials=%s", self.cfg.server_id, credentials.describe())

        try:
            await client.start()
            await client.initialize()
            tools = await client.list_all_tools()
        except Exception as exc:
            session.state = SessionState.DISCONNECTED
            with contextlib.suppress(Exception):
                await client.close()
            LOG.warning("remote session connect failed server_id=%s error=%s", self.cfg.server_id, exc)
            raise RemoteConnectionError(f"Failed to connect to remote server '{self.cfg.server_id}': {exc}") from exc

        session.catalogue = catalogue_from_mcp_tools(tools)
        session.state = SessionState.CONNECTED
        session.touch()
        self._sessions[credentials] = session
        self._sessions.move_to_end(credentials)

        names = sorted(tool.name for tool in session.catalogue)
        LOG.info(
            "remote tools discovered server_id=%s count=%s tools=%s",
            self.cfg.server_id,
            len(names),
            ", ".join(names) if names else "(none)",
        )
        await self._evict_overflow()
        return session

    async def invoke(self, session: RemoteSession, name: str, arguments: dict[str, Any]) -> RemoteCallResult:
        """Call one remote tool and wait for its result. Never raises for tool or transport errors."""
        if session.state is not SessionState.CONNECTED:
            return _error_result(f"remote session is {session.state.value}")

        session.touch()
        timeout = self.cfg.tool_call_timeout_seconds
        LOG.info("dispatching remote tool call server_id=%s tool=%s timeout=%s", self.cfg.server_id, name, timeout)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("remote tool call args tool=%s args=%s", name, to_bounded_json(arguments))

        try:
            result = await asyncio.wait_for(session.client.tools_call(name, arguments), timeout=timeout)
        except asyncio.TimeoutError:
            LOG.warning("remote tool call timeout server_id=%s tool=%s timeout=%s", self.cfg.server_id, name, timeout)
            return _error_result(f"timeout after {timeout}s")
        except (MCPError, httpx.HTTPError) as exc:
            LOG.warning("remote tool call failed server_id=%s tool=%s error=%s", self.cfg.server_id, name, exc)
            return _error_result(str(exc))

        content = result.get("content")
        if content is None:
            content = result.get("structuredContent", result)
        if result.get("isError"):
            LOG.info("remote tool reported error server_id=%s tool=%s", self.cfg.server_id, name)
            return RemoteCallResult(content={"error": "Tool call failed", "details": content}, is_error=True)

        LOG.info("remote tool call finished server_id=%s tool=%s", self.cfg.server_id, name)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("remote tool call result tool=%s result=%s", name, to_bounded_json(content))
        return RemoteCallResult(content=content)

    async def disconnect(self, session: RemoteSession) -> None:
        """Close the session transport. Calling it on a disconnected session is a no-op."""
        if session.state is SessionState.DISCONNECTED:
            return
        session.state = SessionState.DISCONNECTED
        if self._sessions.get(session.credentials) is session:
            del self._sessions[session.credentials]
        with contextlib.suppress(Exception):
            await session.client.close()
        LOG.info("remote session disconnected server_id=%s credentials=%s", self.cfg.server_id, session.credentials.describe())

    async def close(self) -> None:
        """Cancel pending connects and disconnect every pooled session."""
        for task in list(self._connecting.values()):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        for session in list(self._sessions.values()):
            await self.disconnect(session)

    async def _evict_idle(self) -> None:
        idle = self.cfg.session_idle_seconds
        if idle is None:
            return
        cutoff = self._clock() - idle
        for session in [s for s in self._sessions.values() if s.last_used_at < cutoff]:
            LOG.info("remote session idle, closing credentials=%s", session.credentials.describe())
            await self.disconnect(session)

    async def _evict_overflow(self) -> None:
        while len(self._sessions) > max(1, self.cfg.max_sessions):
            _, session = next(iter(self._sessions.items()))
            LOG.info("remote session pool full, closing credentials=%s", session.credentials.describe())
            await self.disconnect(session)

    def health(self) -> dict[str, Any]:
        """Summarize pooled sessions for the health endpoint."""
        return {
            "server_id": self.cfg.server_id,
            "sessions": [
                {**session.credentials.describe(), "state": session.state.value, "tools": len(session.catalogue)}
                for session in self._sessions.values()
            ],
            "connecting": len(self._connecting),
        }
