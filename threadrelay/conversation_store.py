"""Per-thread conversation history.

Threads live in process memory. Each thread starts with exactly one system
message, is append-only afterwards, and serialises appends with its own lock so
concurrent requests on the same thread id never lose updates.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Literal

from .prompts import ConversationMode, RequestContext, render_system_prompt

LOG = logging.getLogger(__name__)

Role = Literal["system", "user", "assistant", "tool"]
_ROLES = {"system", "user", "assistant", "tool"}


@dataclass(frozen=True)
class Message:
    """One stored chat message.

    `id` is bookkeeping for the client and never leaves the gateway.
    """

    role: Role
    content: Any = None
    id: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[dict[str, Any], ...] | None = None
    name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Return the OpenAI-compatible message dict without bookkeeping fields."""
        payload: dict[str, Any] = {"role": self.role, "content": copy.deepcopy(self.content)}
        if self.tool_calls:
            payload["tool_calls"] = [copy.deepcopy(call) for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            payload["name"] = self.name
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Message":
        """Build a message from an OpenAI-style dict, keeping its `id`."""
        role = str(payload.get("role") or "")
        if role not in _ROLES:
            raise ValueError(f"Unsupported message role '{role}'")
        tool_calls = payload.get("tool_calls")
        return cls(
            role=role,  # type: ignore[arg-type]
            content=copy.deepcopy(payload.get("content")),
            id=payload.get("id"),
            tool_call_id=payload.get("tool_call_id"),
            tool_calls=tuple(copy.deepcopy(tool_calls)) if tool_calls else None,
            name=payload.get("name"),
        )


class ThreadPhase(str, Enum):
    """Lifecycle phase used by first-turn-only tool visibility."""

    NEW = "new"
    ACTIVE = "active"


class Thread:
    """Append-only message history for one thread id."""

    def __init__(
        self,
        thread_id: str,
        mode: ConversationMode,
        system_prompt: str,
        *,
        history_window: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.thread_id = thread_id
        self.mode = mode
        self.phase = ThreadPhase.NEW
        self._messages: list[Message] = [Message(role="system", content=system_prompt)]
        self._history_window = history_window
        self._clock = clock
        self._lock = asyncio.Lock()
        self.created_at = clock()
        self.last_used_at = self.created_at

    @property
    def messages(self) -> tuple[Message, ...]:
        """Return an immutable view of the stored messages."""
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def touch(self) -> None:
        self.last_used_at = self._clock()

    async def append(self, message: Message) -> None:
        """Append one message under the thread lock."""
        await self.extend([message])

    async def extend(self, messages: Iterable[Message]) -> None:
        """Append several messages as one contiguous block."""
        batch = list(messages)
        for message in batch:
            if message.role == "system":
                raise ValueError("system messages are only seeded when a thread is created")
        async with self._lock:
            for message in batch:
                self._messages.append(message)
                if message.role == "assistant" and self.phase is ThreadPhase.NEW:
                    self.phase = ThreadPhase.ACTIVE
                    LOG.debug("thread became active thread_id=%s", self.thread_id)
            self.touch()

    def snapshot(self) -> list[dict[str, Any]]:
        """Return the history as upstream payload dicts, bookkeeping ids stripped.

        With a history window only the most recent messages follow the system
        prompt, and the window never opens on a `tool` reply whose call was cut off.
        """
        system, rest = self._messages[0], self._messages[1:]
        window = self._history_window
        if window is not None and len(rest) > window:
            rest = rest[-window:]
            while rest and rest[0].role == "tool":
                rest = rest[1:]
        return [message.to_payload() for message in (system, *rest)]


class ConversationStore:
    """In-memory thread store with idle-TTL and LRU eviction of whole threads."""

    def __init__(
        self,
        system_prompts: dict[str, str] | None = None,
        *,
        idle_ttl_seconds: float | None = None,
        max_threads: int | None = None,
        history_window: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._system_prompts = dict(system_prompts or {})
        self._idle_ttl_seconds = idle_ttl_seconds
        self._max_threads = max_threads
        self._history_window = history_window
        self._clock = clock
        self._threads: OrderedDict[str, Thread] = OrderedDict()

    def __len__(self) -> int:
        return len(self._threads)

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._threads

    def reconfigure(
        self,
        system_prompts: dict[str, str] | None = None,
        *,
        idle_ttl_seconds: float | None = None,
        max_threads: int | None = None,
        history_window: int | None = None,
    ) -> None:
        """Apply new settings without dropping stored threads.

        Prompts and the history window apply to threads created afterwards.
        """
        self._system_prompts = dict(system_prompts or {})
        self._idle_ttl_seconds = idle_ttl_seconds
        self._max_threads = max_threads
        self._history_window = history_window
        self.evict_expired()
        self._evict_overflow()

    def get(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    def get_or_create(self, thread_id: str, context: RequestContext | None = None) -> Thread:
        """Return the thread for `thread_id`, creating and seeding it on first use.

        There is no await between lookup and insert, so concurrent first
        requests on one event loop always share a single seeded thread.
        """
        ctx = context or RequestContext()
        self.evict_expired()

        thread = self._threads.get(thread_id)
        if thread is not None:
            self._threads.move_to_end(thread_id)
            thread.touch()
            return thread

        prompt = render_system_prompt(ctx.mode, ctx, self._system_prompts)
        thread = Thread(
            thread_id,
            ctx.mode,
            prompt,
            history_window=self._history_window,
            clock=self._clock,
        )
        self._threads[thread_id] = thread
        LOG.info("thread created thread_id=%s mode=%s", thread_id, ctx.mode.value)
        self._evict_overflow()
        return thread

    def evict_expired(self) -> int:
        """Drop threads idle for longer than the TTL. Returns the number removed."""
        if self._idle_ttl_seconds is None:
            return 0
        cutoff = self._clock() - self._idle_ttl_seconds
        expired = [tid for tid, thread in self._threads.items() if thread.last_used_at < cutoff]
        for tid in expired:
            del self._threads[tid]
        if expired:
            LOG.info("evicted idle threads count=%s", len(expired))
        return len(expired)

    def _evict_overflow(self) -> None:
        if self._max_threads is None:
            return
        while len(self._threads) > self._max_threads:
            tid, _ = self._threads.popitem(last=False)
            LOG.info("evicted least recently used thread thread_id=%s", tid)
