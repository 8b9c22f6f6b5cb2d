"""Mock remote capability server speaking MCP over streamable HTTP.

Run locally with `uvicorn examples.mock_mcp_server:app --port 8765` and point
`remote.url` at `http://127.0.0.1:8765/mcp`.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

TOOLS: list[dict[str, Any]] = [
    {
        "name": "lookup_record",
        "description": "Look up one record by id in the active data source",
        "inputSchema": {
            "type": "object",
            "properties": {"record_id": {"type": "string"}},
            "required": ["record_id"],
        },
    },
    {
        "name": "get_weather",
        "description": "Remote weather lookup that shadows the local tool name",
        "inputSchema": {"type": "object", "properties": {"location": {"type": "string"}}},
    },
    {
        "name": "always_fails",
        "description": "Returns a tool-level error",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


def _rpc_result(req_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def _rpc_error(req_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def create_mock_mcp_app() -> FastAPI:
    """Build a fresh server; `app.state` exposes sessions and seen headers for tests."""
    app = FastAPI(title="mock-mcp")
    app.state.sessions = {}
    app.state.initialize_count = 0
    app.state.deleted_sessions = []

    def _call_tool(name: str, args: dict[str, Any], session: dict[str, Any]) -> dict[str, Any]:
        if name == "lookup_record":
            record = {
                "record_id": args.get("record_id"),
                "data_source": session["data_source"],
                "authorized": session["authorization"] is not None,
            }
            return {"content": [{"type": "text", "text": json.dumps(record)}], "isError": False}
        if name == "get_weather":
            return {"content": [{"type": "text", "text": f"remote weather for {args.get('location')}"}]}
        return {"content": [{"type": "text", "text": "this tool always fails"}], "isError": True}

    @app.post("/mcp")
    async def mcp(request: Request) -> Response:
        payload = await request.json()
        method = payload.get("method")
        req_id = payload.get("id")
        params: dict[str, Any] = payload.get("params") or {}

        if method == "initialize":
            session_id = uuid.uuid4().hex
            app.state.initialize_count += 1
            app.state.sessions[session_id] = {
                "authorization": request.headers.get("authorization"),
                "data_source": request.headers.get("x-data-source"),
            }
            result = {
                "protocolVersion": params.get("protocolVersion"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "mock-mcp", "version": "0.1.0"},
            }
            return JSONResponse(_rpc_result(req_id, result), headers={"mcp-session-id": session_id})

        session = app.state.sessions.get(request.headers.get("mcp-session-id") or "")
        if session is None:
            return JSONResponse(_rpc_error(req_id, -32001, "unknown session"), status_code=404)

        if req_id is None:
            return Response(status_code=202)

        if method == "tools/list":
            cursor = params.get("cursor")
            if cursor is None:
                return JSONResponse(_rpc_result(req_id, {"tools": TOOLS[:2], "nextCursor": "page-2"}))
            return JSONResponse(_rpc_result(req_id, {"tools": TOOLS[2:]}))

        if method == "tools/call":
            name = params.get("name")
            if name not in {tool["name"] for tool in TOOLS}:
                return JSONResponse(_rpc_error(req_id, -32602, f"unknown tool {name}"))
            envelope = _rpc_result(req_id, _call_tool(name, params.get("arguments") or {}, session))

            async def events():
                yield ": processing\n\n"
                yield f"event: message\ndata: {json.dumps(envelope)}\n\n"

            return StreamingResponse(events(), media_type="text/event-stream")

        return JSONResponse(_rpc_error(req_id, -32601, "method not found"))

    @app.delete("/mcp")
    async def end_session(request: Request) -> Response:
        session_id = request.headers.get("mcp-session-id") or ""
        if app.state.sessions.pop(session_id, None) is None:
            return Response(status_code=404)
        app.state.deleted_sessions.append(session_id)
        return Response(status_code=204)

    return app


app = create_mock_mcp_app()
