"""Tool declaration, per-turn visibility and dispatch.

The registry merges statically declared local tools with the catalogue of a
remote session into the tool set offered for one request, and runs tool calls
inside a failure boundary: whatever goes wrong becomes `role=tool` error
content for the model, never an exception for the HTTP caller.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Literal

from pydantic import ValidationError

from .config import ToolPolicyConfig
from .conversation_store import Message, Thread, ThreadPhase
from .local_tools import LocalTool, LocalToolError
from .prompts import ConversationMode, RequestContext
from .utils import to_bounded_json

if TYPE_CHECKING:
    from .remote_bridge import RemoteCapabilityBridge, RemoteSession

LOG = logging.getLogger(__name__)


class ToolExecutionError(Exception):
    """Raised by tool handlers; `content` optionally carries a structured error payload."""

    def __init__(self, message: str, *, content: Any = None) -> None:
        super().__init__(message)
        self.content = content


@dataclass(frozen=True)
class ToolDefinition:
    """A tool as offered to the model."""

    name: str
    description: str
    parameters: dict[str, Any]
    origin: Literal["local", "remote"]
    remote_name: str | None = None

    def to_openai(self) -> dict[str, Any]:
        """Render the OpenAI function-calling declaration."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ToolSet:
    """Tools frozen for one request, plus the remote session that serves remote ones."""

    definitions: tuple[ToolDefinition, ...] = ()
    session: "RemoteSession | None" = None

    def __len__(self) -> int:
        return len(self.definitions)

    def names(self) -> list[str]:
        return [definition.name for definition in self.definitions]

    def get(self, name: str) -> ToolDefinition | None:
        for definition in self.definitions:
            if definition.name == name:
                return definition
        return None

    def openai_tools(self) -> list[dict[str, Any]]:
        return [definition.to_openai() for definition in self.definitions]


@dataclass
class ToolInvocation:
    """One tool call of a round and, once dispatched, its outcome."""

    call_id: str
    name: str
    arguments: str = "{}"
    result: Any = None
    is_error: bool = False
    done: bool = field(default=False, repr=False)

    def succeed(self, result: Any) -> None:
        self.result, self.is_error, self.done = result, False, True

    def fail(self, message: str, content: Any = None) -> None:
        self.result = content if content is not None else {"error": f"Tool call failed: {message}"}
        self.is_error, self.done = True, True

    def content(self) -> str:
        """Render the result as tool message text."""
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, ensure_ascii=False, default=str)

    def to_message(self) -> Message:
        return Message(role="tool", content=self.content(), tool_call_id=self.call_id, name=self.name)


ToolHandler = Callable[[str, RequestContext], Awaitable[Any]]


class ToolPolicy:
    """Visibility rules of one conversation mode."""

    def __init__(self, cfg: ToolPolicyConfig) -> None:
        self.cfg = cfg

    @staticmethod
    def _matches(name: str, patterns: Iterable[str]) -> bool:
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)

    @property
    def include_remote(self) -> bool:
        return self.cfg.include_remote

    def allows(self, name: str) -> bool:
        return self._matches(name, self.cfg.allow)

    def is_first_turn_only(self, name: str) -> bool:
        return self._matches(name, self.cfg.first_turn_only)

    def visible(self, name: str, phase: ThreadPhase) -> bool:
        if not self.allows(name):
            return False
        return phase is ThreadPhase.NEW or not self.is_first_turn_only(name)


def _sanitize(name: str) -> str:
    return "".join(char if char.isalnum() or char in {"_", "-"} else "_" for char in name)


def _parse_json_object(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(f"arguments are not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ToolExecutionError("arguments must be a JSON object")
    return parsed


class ToolRegistry:
    """Owns local tool declarations, the mode policy table and call dispatch."""

    def __init__(
        self,
        local_tools: Iterable[LocalTool],
        policies: dict[str, ToolPolicyConfig] | None = None,
        *,
        bridge: "RemoteCapabilityBridge | None" = None,
        remote_server_id: str = "remote",
        max_concurrency: int = 4,
        tool_call_timeout_seconds: float = 60.0,
    ) -> None:
        self._local: dict[str, LocalTool] = {}
        for tool in local_tools:
            if tool.name in self._local:
                raise ValueError(f"Duplicate local tool '{tool.name}'")
            self._local[tool.name] = tool
        self._policies = {mode: ToolPolicy(cfg) for mode, cfg in (policies or {}).items()}
        self._default_policy = ToolPolicy(ToolPolicyConfig())
        self.bridge = bridge
        self._remote_server_id = remote_server_id
        self._max_concurrency = max(1, max_concurrency)
        self._tool_call_timeout = tool_call_timeout_seconds

    @property
    def local_names(self) -> list[str]:
        return list(self._local)

    def policy_for(self, mode: ConversationMode) -> ToolPolicy:
        return self._policies.get(mode.value, self._default_policy)

    @staticmethod
    def _map_tool_name(server_id: str, tool_name: str) -> str:
        """Map server/tool IDs to a collision-free exposed tool name."""
        return f"{_sanitize(server_id)}__{_sanitize(tool_name)}"

    def list_for(
        self,
        thread: Thread,
        mode: ConversationMode,
        remote_catalogue: Iterable[ToolDefinition] = (),
    ) -> list[ToolDefinition]:
        """Return the tools visible for `thread` in `mode`.

        Depends only on the local declarations, the given catalogue, the thread
        phase and the mode. Local tools come first; a remote name clashing with
        an earlier one is re-exposed with the server id prefix.
        """
        policy = self.policy_for(mode)
        phase = thread.phase
        visible: list[ToolDefinition] = []
        taken = set(self._local)

        for tool in self._local.values():
            if policy.visible(tool.name, phase):
                visible.append(
                    ToolDefinition(
                        name=tool.name,
                        description=tool.description,
                        parameters=tool.parameters(),
                        origin="local",
                    )
                )

        if not policy.include_remote:
            return visible

        for remote in remote_catalogue:
            source_name = remote.remote_name or remote.name
            exposed = _sanitize(source_name)
            if exposed in taken:
                exposed = self._map_tool_name(self._remote_server_id, source_name)
            if exposed in taken:
                LOG.warning("skipping remote tool with conflicting name tool=%s", source_name)
                continue
            taken.add(exposed)
            if policy.visible(exposed, phase):
                visible.append(replace(remote, name=exposed, origin="remote", remote_name=source_name))
        return visible

    def build_tool_set(
        self,
        thread: Thread,
        mode: ConversationMode,
        session: "RemoteSession | None" = None,
    ) -> ToolSet:
        """Freeze the visible tools for one request."""
        catalogue = session.catalogue if session is not None else ()
        return ToolSet(definitions=tuple(self.list_for(thread, mode, catalogue)), session=session)

    def resolve(self, name: str, tool_set: ToolSet | None = None) -> ToolHandler | None:
        """Resolve an exposed tool name to a handler, or None when unknown.

        Without a tool set only local tools resolve.
        """
        if tool_set is None:
            tool = self._local.get(name)
            return (lambda raw, ctx: self._run_local(tool, raw, ctx)) if tool is not None else None

        definition = tool_set.get(name)
        if definition is None:
            return None
        if definition.origin == "local":
            tool = self._local.get(definition.name)
            if tool is None:
                return None
            return lambda raw, ctx: self._run_local(tool, raw, ctx)

        session = tool_set.session
        if session is None or self.bridge is None:
            return None
        return lambda raw, ctx: self._run_remote(definition, session, raw)

    async def _run_local(self, tool: LocalTool, raw: str, context: RequestContext) -> Any:
        try:
            args = tool.parse_arguments(raw)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(part) for part in err.get('loc', ())) or '<root>'}: {err.get('msg')}"
                for err in exc.errors()
            )
            raise ToolExecutionError(f"invalid arguments for '{tool.name}': {details}") from exc
        try:
            return await tool.handler(args, context)
        except LocalToolError as exc:
            raise ToolExecutionError(str(exc)) from exc

    async def _run_remote(self, definition: ToolDefinition, session: "RemoteSession", raw: str) -> Any:
        assert self.bridge is not None
        args = _parse_json_object(raw)
        result = await self.bridge.invoke(session, definition.remote_name or definition.name, args)
        if result.is_error:
            raise ToolExecutionError("remote tool returned an error", content=result.content)
        return result.content

    async def dispatch(
        self,
        invocation: ToolInvocation,
        tool_set: ToolSet | None = None,
        context: RequestContext | None = None,
    ) -> ToolInvocation:
        """Run one tool call; every failure is recorded on the invocation instead of raised."""
        ctx = context or RequestContext()
        handler = self.resolve(invocation.name, tool_set)
        if handler is None:
            LOG.warning("tool call for unknown tool name=%s call_id=%s", invocation.name, invocation.call_id)
            invocation.fail(f"unknown tool '{invocation.name}'")
            return invocation

        LOG.info("dispatching tool call name=%s call_id=%s", invocation.name, invocation.call_id)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("tool call args name=%s args=%s", invocation.name, to_bounded_json(invocation.arguments))

        try:
            result = await asyncio.wait_for(handler(invocation.arguments, ctx), timeout=self._tool_call_timeout)
        except asyncio.TimeoutError:
            LOG.warning("tool call timeout name=%s timeout=%s", invocation.name, self._tool_call_timeout)
            invocation.fail(f"timeout after {self._tool_call_timeout}s")
        except ToolExecutionError as exc:
            LOG.info("tool call failed name=%s error=%s", invocation.name, exc)
            invocation.fail(str(exc), exc.content)
        except Exception as exc:
            LOG.warning("tool call raised name=%s", invocation.name, exc_info=True)
            invocation.fail(f"unexpected error: {exc}")
        else:
            invocation.succeed(result)
            LOG.info("tool call finished name=%s call_id=%s", invocation.name, invocation.call_id)
            if LOG.isEnabledFor(logging.DEBUG):
                LOG.debug("tool call result name=%s result=%s", invocation.name, to_bounded_json(result))
        return invocation

    async def dispatch_many(
        self,
        invocations: list[ToolInvocation],
        tool_set: ToolSet | None = None,
        context: RequestContext | None = None,
    ) -> list[ToolInvocation]:
        """Dispatch calls with bounded concurrency; results keep call order."""
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run_one(invocation: ToolInvocation) -> ToolInvocation:
            async with semaphore:
                return await self.dispatch(invocation, tool_set, context)

        return list(await asyncio.gather(*(run_one(invocation) for invocation in invocations)))
