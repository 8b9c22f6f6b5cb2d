"""Relay of answer fragments to the client over an event-stream response.

Fragments are written as raw UTF-8 text, exactly as the model produced them;
only keepalive heartbeats use SSE comment framing.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import AsyncGenerator, AsyncIterator, Awaitable, Callable

from .conversation_store import Message, Thread

LOG = logging.getLogger(__name__)


class StreamTransportError(Exception):
    """Raised when relaying fails after the response has started."""


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat event."""
    return f": {text}\n\n".encode("utf-8")


class StreamRelay:
    """Writes fragments to the client and persists the full answer once complete."""

    def relay(
        self,
        fragments: AsyncIterator[str],
        response_id: str,
        thread: Thread,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """Stream `fragments` to the client as raw text chunks.

        On natural completion exactly one assistant message holding the
        concatenation (id = `response_id`) is appended to `thread`. A failing source raises
        `StreamTransportError` and a cancelled or abandoned stream sets
        `cancel_event`; neither persists anything.
        """
        return self._relay(fragments, response_id, thread, cancel_event)

    async def _relay(
        self,
        fragments: AsyncIterator[str],
        response_id: str,
        thread: Thread,
        cancel_event: asyncio.Event | None,
    ) -> AsyncGenerator[bytes, None]:
        parts: list[str] = []
        started = time.monotonic()
        try:
            async for fragment in fragments:
                if cancel_event is not None and cancel_event.is_set():
                    break
                parts.append(fragment)
                yield fragment.encode("utf-8")
        except (asyncio.CancelledError, GeneratorExit):
            if cancel_event is not None:
                cancel_event.set()
            LOG.info(
                "relay stopped before completion thread_id=%s response_id=%s fragments=%s",
                thread.thread_id,
                response_id,
                len(parts),
            )
            raise
        except Exception as exc:
            LOG.warning(
                "relay source failed thread_id=%s response_id=%s error=%s",
                thread.thread_id,
                response_id,
                exc,
                exc_info=True,
            )
            raise StreamTransportError(f"fragment source failed: {exc}") from exc
        finally:
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()

        if cancel_event is not None and cancel_event.is_set():
            LOG.info("relay cancelled, answer not stored thread_id=%s response_id=%s", thread.thread_id, response_id)
            return

        await thread.append(Message(role="assistant", content="".join(parts), id=response_id))
        LOG.info(
            "relay finished thread_id=%s response_id=%s fragments=%s elapsed=%.3fs",
            thread.thread_id,
            response_id,
            len(parts),
            time.monotonic() - started,
        )


async def with_keepalive(
    source: AsyncGenerator[bytes, None],
    *,
    keepalive_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncGenerator[bytes, None]:
    """Forward stream chunks and emit periodic SSE heartbeats while waiting.

    When `is_disconnected` reports the client gone, the pending read is
    cancelled and the stream ends.
    """
    started = time.monotonic()
    try:
        emit_keepalive = keepalive_seconds > 0
        poll_seconds = keepalive_seconds if emit_keepalive else 0.5

        iterator = source.__aiter__()
        while True:
            next_item = asyncio.ensure_future(iterator.__anext__())
            try:
                while not next_item.done():
                    done, _ = await asyncio.wait({next_item}, timeout=poll_seconds)
                    if done:
                        break
                    if is_disconnected is not None and await is_disconnected():
                        LOG.debug("client disconnected, stopping stream elapsed=%.3fs", time.monotonic() - started)
                        next_item.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await next_item
                        return
                    if emit_keepalive:
                        yield sse_comment("keepalive")
                yield next_item.result()
            except StopAsyncIteration:
                return
            except BaseException:
                if not next_item.done():
                    next_item.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await next_item
                raise
    finally:
        cleanup_cancelled = False
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception:
            LOG.debug("stream source close failed", exc_info=True)
        LOG.debug("stream wrapper closed elapsed=%.3fs", time.monotonic() - started)
        if cleanup_cancelled:
            raise asyncio.CancelledError
