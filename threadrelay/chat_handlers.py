"""Request model and response helpers for the `/api/chat` endpoint."""

from __future__ import annotations

from typing import Any, AsyncGenerator, Literal

from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .conversation_store import Message
from .prompts import ConversationMode, RequestContext


class PromptMessage(BaseModel):
    """The message sent with a chat request; `system` is reserved for the gateway."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: Literal["user", "assistant", "tool"] = "user"
    content: str | list[dict[str, Any]]
    id: str | None = None
    tool_call_id: str | None = Field(default=None, alias="toolCallId")


class ChatRequest(BaseModel):
    """Body of `POST /api/chat`."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    prompt: PromptMessage
    thread_id: str = Field(alias="threadId", min_length=1)
    response_id: str = Field(alias="responseId", min_length=1)
    context: ConversationMode = ConversationMode.GENERAL
    user_id: str | None = Field(default=None, alias="userId")
    entity_id: str | None = Field(default=None, alias="entityId")
    data_source: str | None = Field(default=None, alias="dataSource")

    def request_context(self) -> RequestContext:
        return RequestContext(
            mode=self.context,
            user_id=self.user_id,
            entity_id=self.entity_id,
            data_source=self.data_source,
        )

    def prompt_message(self) -> Message:
        return Message(
            role=self.prompt.role,
            content=self.prompt.content,
            id=self.prompt.id,
            tool_call_id=self.prompt.tool_call_id,
        )


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def build_error_response(message: str = "Internal server error", *, status_code: int = 500) -> JSONResponse:
    """Build the single error response sent when a request fails before streaming."""
    return JSONResponse({"error": message}, status_code=status_code)
