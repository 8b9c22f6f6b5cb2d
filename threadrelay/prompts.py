"""Conversation modes and system prompt rendering."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

LOG = logging.getLogger(__name__)


class ConversationMode(str, Enum):
    """Prompt and tool-visibility variant selected by the request `context` field."""

    GENERAL = "general"
    COPILOT = "copilot"


@dataclass(frozen=True)
class RequestContext:
    """Per-request identity fields that prompts and tools may reference."""

    mode: ConversationMode = ConversationMode.GENERAL
    user_id: str | None = None
    entity_id: str | None = None
    data_source: str | None = None


GENERAL_PROMPT = """\
You are a helpful and friendly AI assistant. Here are some rules you must follow:

Rules:
- Be concise, accurate, and helpful in your responses.
- Use the available tools (web search, weather) when you need current information.
- When using web search, provide sources for the information you find.
- Format your responses clearly using markdown when appropriate.

Today is {today}.
"""

COPILOT_PROMPT = """\
You are a concise AI assistant for Orbiter.

CRITICAL RULES - Follow these strictly:
1. Keep responses SHORT (2-4 sentences max for simple questions).
2. Use ONLY plain markdown: headers, bold, bullet lists, links.
3. NEVER use these components: Chart, Graph, Table, Tabs, Carousel, Accordion, Timeline, Layout, Section, DataTable, Kanban, Calendar.
4. For data, use simple bullet points - never tables or charts.
5. Avoid nested structures or complex formatting.
6. Get straight to the point - no unnecessary preamble.

You may use: simple text, headers, bullet lists, numbered lists, bold, links.
Be helpful but brief.

Current user: {user_id}
Related record: {entity_id}
Data source: {data_source}
Today is {today}.
"""

DEFAULT_PROMPTS: dict[ConversationMode, str] = {
    ConversationMode.GENERAL: GENERAL_PROMPT,
    ConversationMode.COPILOT: COPILOT_PROMPT,
}

_PLACEHOLDER_RE = re.compile(r"\{\s*(today|user_id|entity_id|data_source)\s*\}")


def prompt_template(mode: ConversationMode, overrides: dict[str, str] | None = None) -> str:
    """Return the configured template for `mode`, falling back to the built-in one."""
    if overrides:
        custom = overrides.get(mode.value)
        if custom:
            return custom
    return DEFAULT_PROMPTS[mode]


def render_system_prompt(
    mode: ConversationMode,
    context: RequestContext,
    overrides: dict[str, str] | None = None,
    *,
    now: datetime | None = None,
) -> str:
    """Render the mode's system prompt, substituting `{today}` and request identity tokens.

    Unknown `{...}` sequences are left untouched so prompts may contain literal braces.
    """
    moment = now or datetime.now(timezone.utc)
    values = {
        "today": moment.strftime("%A, %d %B %Y"),
        "user_id": context.user_id or "unknown",
        "entity_id": context.entity_id or "none",
        "data_source": context.data_source or "default",
    }
    rendered = _PLACEHOLDER_RE.sub(lambda match: values[match.group(1)], prompt_template(mode, overrides))
    LOG.debug("rendered system prompt mode=%s length=%s", mode.value, len(rendered))
    return rendered
