import asyncio
from datetime import datetime, timezone

import pytest

from threadrelay.conversation_store import ConversationStore, Message, Thread, ThreadPhase
from threadrelay.prompts import ConversationMode, RequestContext, render_system_prompt


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_new_thread_is_seeded_with_one_system_message() -> None:
    store = ConversationStore()
    thread = store.get_or_create("t1", RequestContext(mode=ConversationMode.GENERAL))

    assert len(thread) == 1
    assert thread.messages[0].role == "system"
    assert thread.phase is ThreadPhase.NEW
    assert store.get_or_create("t1") is thread
    assert len(thread) == 1


def test_concurrent_first_requests_share_one_seeded_thread() -> None:
    store = ConversationStore()

    async def first_request(text: str) -> Thread:
        thread = store.get_or_create("race")
        await asyncio.sleep(0)
        await thread.append(Message(role="user", content=text))
        return thread

    async def _run() -> list[Thread]:
        return await asyncio.gather(*(first_request(f"msg-{i}") for i in range(10)))

    threads = asyncio.run(_run())

    assert all(thread is threads[0] for thread in threads)
    roles = [message.role for message in threads[0].messages]
    assert roles.count("system") == 1
    assert roles[0] == "system"
    assert sorted(m.content for m in threads[0].messages[1:]) == sorted(f"msg-{i}" for i in range(10))


def test_concurrent_appends_are_not_lost() -> None:
    async def _run() -> Thread:
        thread = Thread("t", ConversationMode.GENERAL, "sys")
        await asyncio.gather(
            thread.append(Message(role="user", content="a")),
            thread.append(Message(role="user", content="b")),
        )
        return thread

    thread = asyncio.run(_run())

    assert len(thread) == 3
    assert {m.content for m in thread.messages[1:]} == {"a", "b"}


def test_extend_keeps_block_contiguous() -> None:
    async def _run() -> Thread:
        thread = Thread("t", ConversationMode.GENERAL, "sys")
        block = [
            Message(role="assistant", content=None, tool_calls=({"id": "c1", "type": "function"},)),
            Message(role="tool", content="{}", tool_call_id="c1"),
        ]
        await asyncio.gather(thread.extend(block), thread.append(Message(role="user", content="x")))
        return thread

    thread = asyncio.run(_run())

    roles = [m.role for m in thread.messages]
    index = roles.index("assistant")
    assert roles[index + 1] == "tool"


def test_snapshot_strips_bookkeeping_ids() -> None:
    async def _run() -> Thread:
        thread = Thread("t", ConversationMode.GENERAL, "sys")
        await thread.append(Message(role="user", content="hi", id="u1"))
        await thread.append(Message(role="assistant", content="hello", id="r1"))
        return thread

    thread = asyncio.run(_run())
    snapshot = thread.snapshot()

    assert [m["role"] for m in snapshot] == ["system", "user", "assistant"]
    assert all("id" not in m for m in snapshot)
    assert thread.messages[2].id == "r1"


def test_snapshot_is_a_copy() -> None:
    async def _run() -> Thread:
        thread = Thread("t", ConversationMode.GENERAL, "sys")
        await thread.append(Message(role="user", content=[{"type": "text", "text": "hi"}]))
        return thread

    thread = asyncio.run(_run())
    snapshot = thread.snapshot()
    snapshot[1]["content"][0]["text"] = "changed"

    assert thread.messages[1].content[0]["text"] == "hi"


def test_system_messages_cannot_be_appended() -> None:
    thread = Thread("t", ConversationMode.GENERAL, "sys")

    with pytest.raises(ValueError):
        asyncio.run(thread.append(Message(role="system", content="again")))


def test_phase_flips_when_first_assistant_message_is_stored() -> None:
    async def _run() -> list[ThreadPhase]:
        thread = Thread("t", ConversationMode.COPILOT, "sys")
        phases = [thread.phase]
        await thread.append(Message(role="user", content="hi"))
        phases.append(thread.phase)
        await thread.append(Message(role="assistant", content="hello"))
        phases.append(thread.phase)
        return phases

    assert asyncio.run(_run()) == [ThreadPhase.NEW, ThreadPhase.NEW, ThreadPhase.ACTIVE]


def test_history_window_never_opens_on_tool_message() -> None:
    async def _run() -> Thread:
        thread = Thread("t", ConversationMode.GENERAL, "sys", history_window=3)
        await thread.extend(
            [
                Message(role="user", content="q"),
                Message(role="assistant", content=None, tool_calls=({"id": "c1"},)),
                Message(role="tool", content="r1", tool_call_id="c1"),
                Message(role="tool", content="r2", tool_call_id="c2"),
                Message(role="assistant", content="answer"),
            ]
        )
        return thread

    snapshot = asyncio.run(_run()).snapshot()

    assert [m["role"] for m in snapshot] == ["system", "assistant"]
    assert snapshot[1]["content"] == "answer"


def test_idle_threads_are_evicted() -> None:
    clock = _Clock()
    store = ConversationStore(idle_ttl_seconds=60, clock=clock)
    store.get_or_create("old")
    clock.now += 30
    store.get_or_create("fresh")
    clock.now += 40

    store.get_or_create("fresh")

    assert "old" not in store
    assert "fresh" in store


def test_least_recently_used_thread_is_evicted_over_capacity() -> None:
    store = ConversationStore(max_threads=2)
    store.get_or_create("a")
    store.get_or_create("b")
    store.get_or_create("a")
    store.get_or_create("c")

    assert "b" not in store
    assert "a" in store and "c" in store
    assert len(store) == 2


def test_copilot_prompt_includes_request_identity() -> None:
    store = ConversationStore()
    context = RequestContext(mode=ConversationMode.COPILOT, user_id="u-7", entity_id="deal-3", data_source="live")

    thread = store.get_or_create("t", context)

    prompt = thread.messages[0].content
    assert "Current user: u-7" in prompt
    assert "Related record: deal-3" in prompt
    assert "Data source: live" in prompt
    assert thread.mode is ConversationMode.COPILOT


def test_configured_prompt_overrides_default_and_keeps_unknown_braces() -> None:
    rendered = render_system_prompt(
        ConversationMode.GENERAL,
        RequestContext(),
        {"general": "Today: {today}. Literal {braces} stay."},
        now=datetime(2026, 3, 2, tzinfo=timezone.utc),
    )

    assert rendered == "Today: Monday, 02 March 2026. Literal {braces} stay."


def test_message_from_payload_rejects_unknown_role() -> None:
    with pytest.raises(ValueError):
        Message.from_payload({"role": "developer", "content": "x"})

    message = Message.from_payload({"role": "user", "content": "x", "id": "m1"})
    assert message.id == "m1"
    assert message.to_payload() == {"role": "user", "content": "x"}
