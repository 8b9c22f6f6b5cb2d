"""Multi-round completion loop with tool dispatch."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, TypeVar

from .config import GatewayConfig
from .conversation_store import Message, Thread
from .prompts import RequestContext
from .stream_chunks import append_tool_call_delta, delta_text, normalized_tool_calls, pick_primary_choice
from .tool_registry import ToolInvocation, ToolRegistry, ToolSet
from .upstream import UpstreamClient
from .utils import content_to_text

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class OrchestrationError(Exception):
    """Raised when a completion run cannot reach a final answer."""


class ToolLoopLimitError(OrchestrationError):
    """The model still requested tools after the last allowed round."""


class OrchestrationTimeoutError(OrchestrationError):
    """The run exceeded its wall-clock budget."""


class _Round:
    """Accumulated state of one completion round."""

    def __init__(self) -> None:
        self.tool_calls_by_index: dict[int, dict[str, Any]] = {}
        self.finish_reason: str | None = None
        self.chunk_count = 0


class CompletionOrchestrator:
    """Drives `ask model -> maybe call tools -> continue` until a final text answer."""

    def __init__(
        self,
        upstream: UpstreamClient,
        registry: ToolRegistry,
        *,
        model: str,
        temperature: float | None = None,
        max_tool_rounds: int = 8,
        request_timeout_seconds: float | None = None,
    ) -> None:
        self.upstream = upstream
        self.registry = registry
        self.model = model
        self.temperature = temperature
        self.max_tool_rounds = max(1, max_tool_rounds)
        self.request_timeout_seconds = request_timeout_seconds
        self._inflight: set[asyncio.Future[None]] = set()

    @classmethod
    def from_config(cls, cfg: GatewayConfig, upstream: UpstreamClient, registry: ToolRegistry) -> "CompletionOrchestrator":
        return cls(
            upstream,
            registry,
            model=cfg.upstream_model,
            temperature=cfg.upstream_temperature,
            max_tool_rounds=int(cfg.max_tool_rounds or 8),
            request_timeout_seconds=cfg.request_timeout_seconds,
        )

    def _payload(self, thread: Thread, tool_set: ToolSet | None) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model, "messages": thread.snapshot()}
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if tool_set:
            payload["tools"] = tool_set.openai_tools()
            payload["tool_choice"] = "auto"
        return payload

    async def _bounded(self, awaitable: Awaitable[T], deadline: float | None) -> T:
        if deadline is None:
            return await awaitable
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OrchestrationTimeoutError(f"completion exceeded {self.request_timeout_seconds}s")
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise OrchestrationTimeoutError(f"completion exceeded {self.request_timeout_seconds}s") from exc

    def run(
        self,
        thread: Thread,
        tool_set: ToolSet,
        context: RequestContext | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments of the final answer as they arrive.

        Tool rounds append the assistant tool-call message and all tool results
        to `thread` as one block. Each call is an independent run.
        """
        return self._run(thread, tool_set, context or RequestContext(mode=thread.mode), cancel_event)

    async def _run(
        self,
        thread: Thread,
        tool_set: ToolSet,
        context: RequestContext,
        cancel_event: asyncio.Event | None,
    ) -> AsyncGenerator[str, None]:
        run_id = uuid.uuid4().hex[:12]
        started = time.monotonic()
        deadline = started + self.request_timeout_seconds if self.request_timeout_seconds else None
        LOG.info(
            "completion run start run=%s thread_id=%s tools=%s max_rounds=%s",
            run_id,
            thread.thread_id,
            len(tool_set),
            self.max_tool_rounds,
        )

        for round_number in range(1, self.max_tool_rounds + 1):
            if cancel_event is not None and cancel_event.is_set():
                LOG.info("completion run cancelled before round run=%s round=%s", run_id, round_number)
                return

            last_round = round_number == self.max_tool_rounds
            # No tools on the last allowed round.
            payload = self._payload(thread, None if last_round else tool_set)
            state = _Round()
            trace_id = f"{run_id}:round{round_number}"

            stream = self.upstream.stream_chat_completion(payload, trace_id=trace_id)
            try:
                while True:
                    try:
                        chunk = await self._bounded(stream.__anext__(), deadline)
                    except StopAsyncIteration:
                        break
                    state.chunk_count += 1
                    choice = pick_primary_choice(chunk) or {}
                    state.finish_reason = choice.get("finish_reason") or state.finish_reason
                    delta = choice.get("delta") or {}
                    text = delta_text(delta)
                    if text:
                        yield text
                    delta_tool_calls = delta.get("tool_calls")
                    if isinstance(delta_tool_calls, list):
                        append_tool_call_delta(state.tool_calls_by_index, delta_tool_calls)
            finally:
                await stream.aclose()

            if state.chunk_count == 0:
                # Upstream ignored streaming; resolve this round without it.
                LOG.info("upstream stream returned no chunks, falling back run=%s round=%s", run_id, round_number)
                response = await self._bounded(self.upstream.chat_completion(payload), deadline)
                message = ((response.get("choices") or [{}])[0]).get("message") or {}
                text = content_to_text(message.get("content"))
                if text:
                    yield text
                raw_calls = message.get("tool_calls") or []
                state.tool_calls_by_index = {
                    index: call for index, call in enumerate(raw_calls) if isinstance(call, dict)
                }

            tool_calls = normalized_tool_calls(state.tool_calls_by_index)
            if state.finish_reason == "tool_calls" and not tool_calls:
                raise OrchestrationError("upstream indicated tool_calls but sent no tool call payloads")

            if not tool_calls:
                LOG.info(
                    "completion run done run=%s rounds=%s elapsed=%.3fs",
                    run_id,
                    round_number,
                    time.monotonic() - started,
                )
                return

            if last_round:
                raise ToolLoopLimitError(f"model requested tools after {self.max_tool_rounds} rounds")

            await self._dispatch_round(thread, tool_calls, tool_set, context, deadline, run_id)

        raise ToolLoopLimitError(f"model requested tools after {self.max_tool_rounds} rounds")

    async def _dispatch_round(
        self,
        thread: Thread,
        tool_calls: list[dict[str, Any]],
        tool_set: ToolSet,
        context: RequestContext,
        deadline: float | None,
        run_id: str,
    ) -> None:
        invocations = [
            ToolInvocation(
                call_id=call["id"],
                name=call["function"]["name"],
                arguments=call["function"]["arguments"],
            )
            for call in tool_calls
        ]
        LOG.info(
            "tool round run=%s thread_id=%s calls=%s",
            run_id,
            thread.thread_id,
            ", ".join(invocation.name for invocation in invocations),
        )

        async def dispatch_and_record() -> None:
            await self.registry.dispatch_many(invocations, tool_set, context)
            await thread.extend(
                [
                    Message(role="assistant", content=None, tool_calls=tuple(tool_calls)),
                    *(invocation.to_message() for invocation in invocations),
                ]
            )

        # Shielded: a dispatched round is still recorded if the run is cancelled or times out.
        task = asyncio.ensure_future(dispatch_and_record())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        await self._bounded(asyncio.shield(task), deadline)
