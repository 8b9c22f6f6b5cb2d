"""Mock OpenAI-compatible completion service.

A user message of the form `use <tool> <json-args>` makes the model call that
tool (streamed as split tool-call deltas) when it was offered. After a tool
result the model answers with `Tool said: <content>`; otherwise it echoes the
prompt. Run with `uvicorn examples.mock_upstream_server:app --port 8766` and set
`upstream_base_url: http://127.0.0.1:8766/v1`.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse


def _text(content: Any) -> str:
    if isinstance(content, list):
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return content or ""


def _plan_reply(messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> dict[str, Any]:
    last = messages[-1] if messages else {}
    offered = {tool.get("function", {}).get("name") for tool in tools}

    if last.get("role") == "tool":
        return {"role": "assistant", "content": f"Tool said: {_text(last.get('content'))}"}

    text = _text(last.get("content")).strip()
    if text.startswith("use "):
        _, _, rest = text.partition(" ")
        name, _, raw_args = rest.partition(" ")
        if name in offered:
            return {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": f"call_{uuid.uuid4().hex}",
                        "type": "function",
                        "function": {"name": name, "arguments": raw_args.strip() or "{}"},
                    }
                ],
            }
    return {"role": "assistant", "content": f"You said: {text}"}


def create_mock_upstream_app() -> FastAPI:
    """Build a fresh server; `app.state.requests` records received payloads."""
    app = FastAPI(title="mock-upstream")
    app.state.requests = []

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        payload = await request.json()
        app.state.requests.append(payload)
        if request.headers.get("authorization") != "Bearer test-key":
            return JSONResponse({"error": {"message": "invalid api key"}}, status_code=401)

        messages: list[dict[str, Any]] = payload.get("messages") or []
        msg = _plan_reply(messages, payload.get("tools") or [])
        completion_id = f"chatcmpl-{uuid.uuid4().hex}"
        created = int(datetime.now(timezone.utc).timestamp())
        finish_reason = "tool_calls" if msg.get("tool_calls") else "stop"

        if not payload.get("stream"):
            return JSONResponse(
                {
                    "id": completion_id,
                    "object": "chat.completion",
                    "created": created,
                    "model": payload.get("model"),
                    "choices": [{"index": 0, "message": msg, "finish_reason": finish_reason}],
                }
            )

        def chunk(delta: dict[str, Any], finish: str | None = None) -> str:
            body = {
                "id": completion_id,
                "object": "chat.completion.chunk",
                "created": created,
                "model": payload.get("model"),
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish}],
            }
            return f"data: {json.dumps(body)}\n\n"

        async def gen():
            yield chunk({"role": "assistant"})
            for call_index, call in enumerate(msg.get("tool_calls") or []):
                arguments = call["function"]["arguments"]
                middle = len(arguments) // 2
                yield chunk(
                    {
                        "tool_calls": [
                            {
                                "index": call_index,
                                "id": call["id"],
                                "type": "function",
                                "function": {"name": call["function"]["name"], "arguments": arguments[:middle]},
                            }
                        ]
                    }
                )
                yield chunk({"tool_calls": [{"index": call_index, "function": {"arguments": arguments[middle:]}}]})
            content = msg.get("content") or ""
            for start in range(0, len(content), 8):
                yield chunk({"content": content[start : start + 8]})
            yield chunk({}, finish_reason)
            yield "data: [DONE]\n\n"

        return StreamingResponse(gen(), media_type="text/event-stream")

    return app


app = create_mock_upstream_app()
