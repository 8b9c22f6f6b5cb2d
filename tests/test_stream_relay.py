import asyncio

import pytest

from threadrelay.conversation_store import Thread
from threadrelay.prompts import ConversationMode
from threadrelay.stream_relay import StreamRelay, StreamTransportError, with_keepalive


async def _fragments(*parts: str, fail: bool = False, delay: float = 0.0):
    for part in parts:
        if delay:
            await asyncio.sleep(delay)
        yield part
    if fail:
        raise RuntimeError("upstream reset")


def _thread() -> Thread:
    return Thread("t1", ConversationMode.GENERAL, "sys")


def test_completed_stream_writes_raw_fragments_and_persists_one_message() -> None:
    thread = _thread()

    async def _run() -> list[bytes]:
        return [event async for event in StreamRelay().relay(_fragments("Hel", "lo"), "r1", thread)]

    events = asyncio.run(_run())

    assert events == [b"Hel", b"lo"]
    stored = thread.messages[-1]
    assert (stored.role, stored.content, stored.id) == ("assistant", "Hello", "r1")
    assert len(thread) == 2


def test_failing_source_raises_and_persists_nothing() -> None:
    thread = _thread()
    received: list[bytes] = []

    async def _run() -> None:
        async for event in StreamRelay().relay(_fragments("partial", fail=True), "r2", thread):
            received.append(event)

    with pytest.raises(StreamTransportError):
        asyncio.run(_run())

    assert received == [b"partial"]
    assert len(thread) == 1


def test_abandoned_stream_signals_cancel_and_persists_nothing() -> None:
    thread = _thread()
    cancel_event = asyncio.Event()

    async def _run() -> bytes:
        stream = StreamRelay().relay(_fragments("a", "b", "c"), "r3", thread, cancel_event)
        first = await stream.__anext__()
        await stream.aclose()
        return first

    first = asyncio.run(_run())

    assert first == b"a"
    assert cancel_event.is_set()
    assert len(thread) == 1


def test_cancel_event_stops_relay_without_storing() -> None:
    thread = _thread()
    cancel_event = asyncio.Event()

    async def _run() -> list[bytes]:
        events = []
        async for event in StreamRelay().relay(_fragments("a", "b"), "r4", thread, cancel_event):
            events.append(event)
            cancel_event.set()
        return events

    events = asyncio.run(_run())

    assert events == [b"a"]
    assert len(thread) == 1


def test_keepalive_comments_fill_idle_gaps() -> None:
    async def _source():
        await asyncio.sleep(0.1)
        yield b"data: 1\n\n"

    async def _run() -> list[bytes]:
        return [event async for event in with_keepalive(_source(), keepalive_seconds=0.02)]

    events = asyncio.run(_run())

    assert events[-1] == b"data: 1\n\n"
    assert b": keepalive\n\n" in events[:-1]


def test_disconnected_client_ends_stream() -> None:
    closed = []

    async def _source():
        try:
            await asyncio.sleep(5)
            yield b"data: late\n\n"
        finally:
            closed.append(True)

    async def _gone() -> bool:
        return True

    async def _run() -> list[bytes]:
        return [event async for event in with_keepalive(_source(), keepalive_seconds=0.01, is_disconnected=_gone)]

    assert asyncio.run(_run()) == []
    assert closed == [True]
