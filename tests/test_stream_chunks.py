from threadrelay.stream_chunks import (
    append_tool_call_delta,
    delta_text,
    normalized_tool_calls,
    pick_primary_choice,
)


def test_split_tool_call_deltas_are_merged_per_index() -> None:
    collected: dict[int, dict] = {}
    append_tool_call_delta(
        collected,
        [{"index": 0, "id": "call_a", "type": "function", "function": {"name": "lookup", "arguments": '{"id"'}}],
    )
    append_tool_call_delta(collected, [{"index": 1, "id": "call_b", "function": {"name": "other", "arguments": ""}}])
    append_tool_call_delta(collected, [{"index": 0, "function": {"arguments": ': "7"}'}}])

    calls = normalized_tool_calls(collected)

    assert calls == [
        {"id": "call_a", "type": "function", "function": {"name": "lookup", "arguments": '{"id": "7"}'}},
        {"id": "call_b", "type": "function", "function": {"name": "other", "arguments": "{}"}},
    ]


def test_delta_without_index_continues_latest_call() -> None:
    collected: dict[int, dict] = {}
    append_tool_call_delta(collected, [{"id": "c1", "function": {"name": "a", "arguments": "{"}}])
    append_tool_call_delta(collected, [{"function": {"arguments": "}"}}])

    assert list(collected) == [0]
    assert collected[0]["function"]["arguments"] == "{}"


def test_nameless_calls_are_dropped_and_ids_made_unique() -> None:
    collected = {
        0: {"id": "dup", "function": {"name": "a", "arguments": "{}"}},
        1: {"id": "dup", "function": {"name": "b", "arguments": "{}"}},
        2: {"id": None, "function": {"name": "c", "arguments": ""}},
        3: {"id": "x", "function": {"name": " ", "arguments": "{}"}},
    }

    calls = normalized_tool_calls(collected)

    assert [call["function"]["name"] for call in calls] == ["a", "b", "c"]
    ids = [call["id"] for call in calls]
    assert ids[0] == "dup"
    assert len(set(ids)) == 3
    assert all(call_id.startswith("call_") for call_id in ids[1:])


def test_pick_primary_choice_prefers_index_zero() -> None:
    chunk = {"choices": [{"index": 1, "delta": {}}, {"index": 0, "delta": {"content": "x"}}]}

    assert pick_primary_choice(chunk) == {"index": 0, "delta": {"content": "x"}}
    assert pick_primary_choice({"choices": []}) is None
    assert pick_primary_choice({}) is None


def test_delta_text_handles_strings_and_parts() -> None:
    assert delta_text({"content": "Hel"}) == "Hel"
    assert delta_text({"content": [{"type": "text", "text": "a"}, {"type": "image"}, {"text": "b"}]}) == "ab"
    assert delta_text({"content": None}) == ""
    assert delta_text({}) == ""
