"""Local tools exposed to the model next to remotely discovered ones.

Each tool pairs a pydantic argument model (its JSON Schema is what the model
sees) with an async handler receiving the parsed arguments and the request
context.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .config import GatewayConfig
from .prompts import RequestContext

LOG = logging.getLogger(__name__)


class LocalToolError(Exception):
    """Raised when a local tool cannot produce a result."""


Handler = Callable[[Any, RequestContext], Awaitable[Any]]


@dataclass(frozen=True)
class LocalTool:
    """Static declaration of one in-process tool."""

    name: str
    description: str
    args_model: type[BaseModel]
    handler: Handler

    def parameters(self) -> dict[str, Any]:
        """Return the JSON Schema of the tool arguments."""
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return schema

    def parse_arguments(self, raw: str | dict[str, Any] | None) -> BaseModel:
        """Validate raw model-provided arguments; raises on malformed input."""
        if raw is None or raw == "":
            return self.args_model.model_validate({})
        if isinstance(raw, str):
            return self.args_model.model_validate_json(raw)
        return self.args_model.model_validate(raw)


class WebSearchArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    searchQuery: str = Field(description="The search query to look up on the web")


class WeatherArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    location: str = Field(description="City or place name, e.g. 'Berlin' or 'San Francisco'")


class ConversationContextArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


# WMO weather interpretation codes used by Open-Meteo.
_WEATHER_CODES = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Drizzle",
    55: "Dense drizzle",
    61: "Slight rain",
    63: "Rain",
    65: "Heavy rain",
    71: "Slight snow",
    73: "Snow",
    75: "Heavy snow",
    80: "Rain showers",
    81: "Heavy rain showers",
    82: "Violent rain showers",
    95: "Thunderstorm",
    96: "Thunderstorm with hail",
    99: "Thunderstorm with heavy hail",
}


class LocalToolbox:
    """Owns the HTTP client used by local tools and builds their declarations."""

    def __init__(self, cfg: GatewayConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.cfg = cfg
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(15.0), transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def tools(self) -> list[LocalTool]:
        """Return declared local tools in a stable order.

        `web_search` is only declared when a Tavily key is configured.
        """
        declared: list[LocalTool] = []
        if (self.cfg.web_search.api_key or "").strip():
            declared.append(
                LocalTool(
                    name="web_search",
                    description=(
                        "Search the web for a given query. Use this tool when you need the most current "
                        "information from the internet, such as breaking news, recent articles, product updates, "
                        "company information, or the latest documentation. Returns titles, URLs, and content snippets."
                    ),
                    args_model=WebSearchArgs,
                    handler=self.web_search,
                )
            )
        else:
            LOG.warning("web_search tool disabled: no Tavily API key configured")

        declared.append(
            LocalTool(
                name="get_weather",
                description="Get the current weather conditions for a location.",
                args_model=WeatherArgs,
                handler=self.get_weather,
            )
        )
        declared.append(
            LocalTool(
                name="get_conversation_context",
                description=(
                    "Return who the user is, which record they opened this conversation from, and which data "
                    "source is active. Call this once at the start of a conversation."
                ),
                args_model=ConversationContextArgs,
                handler=self.get_conversation_context,
            )
        )
        return declared

    async def web_search(self, args: WebSearchArgs, context: RequestContext) -> dict[str, Any]:
        settings = self.cfg.web_search
        api_key = (settings.api_key or "").strip()
        if not api_key:
            raise LocalToolError("web search is not configured")

        try:
            response = await self._client.post(
                f"{settings.base_url.rstrip('/')}/search",
                headers={"Authorization": f"Bearer {api_key}"},
                json={"query": args.searchQuery, "max_results": settings.max_results},
                timeout=settings.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise LocalToolError(f"Failed to perform web search: {exc}") from exc

        results = [
            {"title": item.get("title"), "url": item.get("url"), "content": item.get("content")}
            for item in payload.get("results") or []
            if isinstance(item, dict)
        ]
        LOG.info("web search finished results=%s", len(results))
        return {"query": args.searchQuery, "answer": payload.get("answer"), "results": results}

    async def get_weather(self, args: WeatherArgs, context: RequestContext) -> dict[str, Any]:
        settings = self.cfg.weather
        try:
            geo = await self._client.get(
                settings.geocoding_url,
                params={"name": args.location, "count": 1},
                timeout=settings.timeout_seconds,
            )
            geo.raise_for_status()
            places = geo.json().get("results") or []
            if not places:
                raise LocalToolError(f"Unknown location '{args.location}'")
            place = places[0]

            forecast = await self._client.get(
                settings.forecast_url,
                params={
                    "latitude": place["latitude"],
                    "longitude": place["longitude"],
                    "current": "temperature_2m,relative_humidity_2m,wind_speed_10m,weather_code",
                },
                timeout=settings.timeout_seconds,
            )
            forecast.raise_for_status()
            current = forecast.json().get("current") or {}
        except (httpx.HTTPError, json.JSONDecodeError, KeyError) as exc:
            raise LocalToolError(f"Failed to fetch weather: {exc}") from exc

        code = current.get("weather_code")
        return {
            "location": ", ".join(str(part) for part in (place.get("name"), place.get("country")) if part),
            "conditions": _WEATHER_CODES.get(code, "Unknown"),
            "temperature_c": current.get("temperature_2m"),
            "humidity_percent": current.get("relative_humidity_2m"),
            "wind_speed_kmh": current.get("wind_speed_10m"),
            "observed_at": current.get("time"),
        }

    async def get_conversation_context(self, args: ConversationContextArgs, context: RequestContext) -> dict[str, Any]:
        return {
            "mode": context.mode.value,
            "user_id": context.user_id,
            "entity_id": context.entity_id,
            "data_source": context.data_source,
        }
