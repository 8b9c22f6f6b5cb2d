import asyncio
import json

import httpx
import pytest

from threadrelay.config import GatewayConfig
from threadrelay.local_tools import LocalToolbox, LocalToolError, WeatherArgs, WebSearchArgs
from threadrelay.prompts import ConversationMode, RequestContext


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "geocoding-api.open-meteo.com":
        if request.url.params["name"] == "Nowhere":
            return httpx.Response(200, json={"results": []})
        return httpx.Response(
            200, json={"results": [{"name": "Berlin", "country": "Germany", "latitude": 52.5, "longitude": 13.4}]}
        )
    if request.url.host == "api.open-meteo.com":
        assert request.url.params["latitude"] == "52.5"
        return httpx.Response(
            200,
            json={
                "current": {
                    "time": "2026-03-02T10:00",
                    "temperature_2m": 4.5,
                    "relative_humidity_2m": 80,
                    "wind_speed_10m": 12.0,
                    "weather_code": 3,
                }
            },
        )
    if request.url.host == "api.tavily.com":
        body = json.loads(request.content)
        if request.headers["authorization"] != "Bearer tvly-key":
            return httpx.Response(401, json={"detail": "bad key"})
        return httpx.Response(
            200,
            json={
                "answer": "short answer",
                "results": [{"title": "T", "url": "https://example.org", "content": body["query"], "score": 0.9}],
            },
        )
    return httpx.Response(404)


def _toolbox(**cfg: object) -> LocalToolbox:
    return LocalToolbox(GatewayConfig.model_validate(cfg), transport=httpx.MockTransport(_handler))


def test_web_search_is_declared_only_with_a_key() -> None:
    assert [tool.name for tool in _toolbox().tools()] == ["get_weather", "get_conversation_context"]
    keyed = _toolbox(web_search={"api_key": "tvly-key"})
    assert [tool.name for tool in keyed.tools()][0] == "web_search"


def test_weather_combines_geocoding_and_forecast() -> None:
    toolbox = _toolbox()

    result = asyncio.run(toolbox.get_weather(WeatherArgs(location="Berlin"), RequestContext()))

    assert result == {
        "location": "Berlin, Germany",
        "conditions": "Overcast",
        "temperature_c": 4.5,
        "humidity_percent": 80,
        "wind_speed_kmh": 12.0,
        "observed_at": "2026-03-02T10:00",
    }


def test_weather_for_unknown_place_fails() -> None:
    with pytest.raises(LocalToolError, match="Unknown location"):
        asyncio.run(_toolbox().get_weather(WeatherArgs(location="Nowhere"), RequestContext()))


def test_web_search_returns_trimmed_results() -> None:
    toolbox = _toolbox(web_search={"api_key": "tvly-key"})

    result = asyncio.run(toolbox.web_search(WebSearchArgs(searchQuery="threadrelay"), RequestContext()))

    assert result["answer"] == "short answer"
    assert result["results"] == [{"title": "T", "url": "https://example.org", "content": "threadrelay"}]


def test_web_search_http_error_becomes_tool_error() -> None:
    toolbox = _toolbox(web_search={"api_key": "wrong"})

    with pytest.raises(LocalToolError, match="Failed to perform web search"):
        asyncio.run(toolbox.web_search(WebSearchArgs(searchQuery="x"), RequestContext()))


def test_conversation_context_reports_request_identity() -> None:
    context = RequestContext(mode=ConversationMode.COPILOT, user_id="u", entity_id="e", data_source="live")

    result = asyncio.run(_toolbox().get_conversation_context(None, context))

    assert result == {"mode": "copilot", "user_id": "u", "entity_id": "e", "data_source": "live"}


def test_argument_schema_forbids_unknown_fields() -> None:
    weather = next(tool for tool in _toolbox().tools() if tool.name == "get_weather")

    assert weather.parameters()["required"] == ["location"]
    with pytest.raises(ValueError):
        weather.parse_arguments('{"location": "Berlin", "unit": "F"}')
