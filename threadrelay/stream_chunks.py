"""Helpers for reading OpenAI-compatible streaming chunks."""

from __future__ import annotations

import uuid
from typing import Any


def append_tool_call_delta(
    tool_calls_by_index: dict[int, dict[str, Any]],
    delta_tool_calls: list[dict[str, Any]],
) -> None:
    """Merge tool-call streaming deltas into complete per-index objects."""
    for tc_delta in delta_tool_calls:
        if not isinstance(tc_delta, dict):
            continue

        index = tc_delta.get("index")
        if not isinstance(index, int):
            # Some providers omit the index when a round has a single call.
            index = 0 if not tool_calls_by_index else max(tool_calls_by_index)

        entry = tool_calls_by_index.setdefault(
            index,
            {"id": None, "type": "function", "function": {"name": "", "arguments": ""}},
        )
        if tc_delta.get("id"):
            entry["id"] = tc_delta["id"]

        fn_delta = tc_delta.get("function")
        if isinstance(fn_delta, dict):
            fn = entry["function"]
            if fn_delta.get("name"):
                fn["name"] = fn_delta["name"]
            if isinstance(fn_delta.get("arguments"), str):
                fn["arguments"] += fn_delta["arguments"]


def normalized_tool_calls(tool_calls_by_index: dict[int, dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert collected per-index deltas to OpenAI-style tool call objects.

    Calls without a name are dropped. Missing or repeated call ids are replaced
    so every call of one round has a unique id.
    """
    normalized: list[dict[str, Any]] = []
    seen_ids: set[str] = set()
    for index in sorted(tool_calls_by_index):
        tc = tool_calls_by_index[index]
        fn = tc.get("function") or {}
        name = str(fn.get("name") or "").strip()
        if not name:
            continue

        call_id = tc.get("id")
        if not call_id or call_id in seen_ids:
            call_id = f"call_{uuid.uuid4().hex}"
        seen_ids.add(call_id)

        normalized.append(
            {
                "id": call_id,
                "type": "function",
                "function": {
                    "name": name,
                    "arguments": str(fn.get("arguments") or "{}"),
                },
            }
        )
    return normalized


def pick_primary_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return the primary choice (index 0 if present) from an upstream chunk."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    for choice in choices:
        if isinstance(choice, dict) and choice.get("index") == 0:
            return choice

    first = choices[0]
    return first if isinstance(first, dict) else None


def delta_text(delta: dict[str, Any]) -> str:
    """Return the text carried by one `delta.content` value."""
    content = delta.get("content")
    if isinstance(content, list):
        return "".join(
            item["text"] for item in content if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    return content if isinstance(content, str) else ""
