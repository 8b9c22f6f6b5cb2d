import asyncio

import httpx
import pytest

from examples.mock_upstream_server import create_mock_upstream_app
from threadrelay.config import ConfigurationError, GatewayConfig
from threadrelay.upstream import UpstreamClient


def _make_cfg(**overrides: object) -> GatewayConfig:
    raw = {
        "service_base_url": "http://127.0.0.1:10001",
        "upstream_base_url": "http://127.0.0.1:10000",
        "upstream_api_key": "test-key",
    }
    raw.update(overrides)
    return GatewayConfig.model_validate(raw)


def _request() -> httpx.Request:
    return httpx.Request("POST", "http://127.0.0.1:10000/chat/completions")


class _FakeResponse:
    def raise_for_status(self) -> None:
        return None

    def json(self) -> dict[str, object]:
        return {"ok": True}


class _FakeClient:
    def __init__(self, failures_before_success: int) -> None:
        self.failures_before_success = failures_before_success
        self.calls = 0

    async def post(self, *_args, **_kwargs) -> _FakeResponse:
        self.calls += 1
        if self.calls <= self.failures_before_success:
            raise httpx.ConnectError("upstream down", request=_request())
        return _FakeResponse()

    async def aclose(self) -> None:
        return None


class _FakeStreamResponse:
    def __init__(self, fail_after_first: bool = False) -> None:
        self.fail_after_first = fail_after_first

    def raise_for_status(self) -> None:
        return None

    async def aiter_lines(self):
        yield ": keepalive"
        yield 'data: {"id":"x","choices":[{"index":0,"delta":{"content":"ok"},"finish_reason":null}]}'
        if self.fail_after_first:
            raise httpx.ReadError("connection reset", request=_request())
        yield "data: not-json"
        yield 'data: {"id":"x","choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}'
        yield "data: [DONE]"

    async def aclose(self) -> None:
        return None


class _StreamClient:
    def __init__(self, first_error: Exception | None = None, fail_after_first: bool = False) -> None:
        self.first_error = first_error
        self.fail_after_first = fail_after_first
        self.calls = 0
        self.closed = 0

    def build_request(self, *_args, **_kwargs) -> object:
        return object()

    async def send(self, *_args, **_kwargs):
        self.calls += 1
        if self.calls == 1 and self.first_error is not None:
            raise self.first_error
        return _FakeStreamResponse(self.fail_after_first)

    async def aclose(self) -> None:
        self.closed += 1


def _collect(client: UpstreamClient) -> list[dict[str, object]]:
    async def _run() -> list[dict[str, object]]:
        return [chunk async for chunk in client.stream_chat_completion({"model": "x", "messages": []})]

    return asyncio.run(_run())


def test_upstream_connect_retries_defaults_to_zero() -> None:
    assert _make_cfg().upstream_connect_retries == 0


def test_chat_completion_no_retry_when_upstream_connect_retries_is_zero() -> None:
    client = UpstreamClient(_make_cfg(upstream_connect_retries=0, upstream_retry_interval_ms=0))
    fake = _FakeClient(failures_before_success=1)
    client._client = fake
    with pytest.raises(httpx.ConnectError):
        asyncio.run(client.chat_completion({"model": "x", "messages": []}))
    assert fake.calls == 1


def test_chat_completion_retries_infinitely_when_upstream_connect_retries_is_negative() -> None:
    client = UpstreamClient(_make_cfg(upstream_connect_retries=-1, upstream_retry_interval_ms=0))
    fake = _FakeClient(failures_before_success=5)
    client._client = fake

    response = asyncio.run(client.chat_completion({"model": "x", "messages": []}))

    assert response == {"ok": True}
    assert fake.calls == 6


def test_missing_api_key_fails_before_any_request() -> None:
    client = UpstreamClient(_make_cfg(upstream_api_key=None))
    fake = _FakeClient(failures_before_success=0)
    client._client = fake

    with pytest.raises(ConfigurationError):
        asyncio.run(client.chat_completion({"model": "x", "messages": []}))
    assert fake.calls == 0


def test_stream_retries_connect_failure_before_first_chunk() -> None:
    client = UpstreamClient(_make_cfg(upstream_connect_retries=1, upstream_retry_interval_ms=0))
    stream_client = _StreamClient(first_error=httpx.ConnectError("upstream down", request=_request()))
    client._build_client = lambda: stream_client  # type: ignore[method-assign]

    chunks = _collect(client)

    assert stream_client.calls == 2
    assert stream_client.closed == 2
    assert [c["choices"][0]["finish_reason"] for c in chunks] == [None, "stop"]


def test_stream_retries_incomplete_payload_error() -> None:
    client = UpstreamClient(_make_cfg(upstream_connect_retries=1, upstream_retry_interval_ms=0))
    stream_client = _StreamClient(
        first_error=RuntimeError(
            "Response payload is not completed: <TransferEncodingError: 400, "
            "message='Not enough data to satisfy transfer length header.'>"
        )
    )
    client._build_client = lambda: stream_client  # type: ignore[method-assign]

    chunks = _collect(client)

    assert stream_client.calls == 2
    assert len(chunks) == 2


def test_stream_does_not_retry_http_404() -> None:
    client = UpstreamClient(_make_cfg(upstream_connect_retries=3, upstream_retry_interval_ms=0))
    req = _request()
    resp = httpx.Response(404, request=req, json={"error": {"message": "Model not found"}})
    stream_client = _StreamClient(first_error=httpx.HTTPStatusError("Model not found", request=req, response=resp))
    client._build_client = lambda: stream_client  # type: ignore[method-assign]

    with pytest.raises(httpx.HTTPStatusError):
        _collect(client)
    assert stream_client.calls == 1


def test_stream_failure_after_first_chunk_is_not_retried() -> None:
    client = UpstreamClient(_make_cfg(upstream_connect_retries=3, upstream_retry_interval_ms=0))
    stream_client = _StreamClient(fail_after_first=True)
    client._build_client = lambda: stream_client  # type: ignore[method-assign]
    received: list[dict[str, object]] = []

    async def _run() -> None:
        async for chunk in client.stream_chat_completion({"model": "x", "messages": []}):
            received.append(chunk)

    with pytest.raises(httpx.ReadError):
        asyncio.run(_run())
    assert len(received) == 1
    assert stream_client.calls == 1
    assert stream_client.closed == 1


def test_stream_against_mock_upstream_sends_bearer_key() -> None:
    app = create_mock_upstream_app()
    client = UpstreamClient(
        _make_cfg(upstream_base_url="http://mock-upstream/v1"),
        transport=httpx.ASGITransport(app=app),
    )

    async def _run() -> list[dict[str, object]]:
        try:
            payload = {"model": "m", "messages": [{"role": "user", "content": "hello there"}]}
            return [chunk async for chunk in client.stream_chat_completion(payload)]
        finally:
            await client.close()

    chunks = asyncio.run(_run())

    text = "".join(c["choices"][0]["delta"].get("content") or "" for c in chunks)
    assert text == "You said: hello there"
    assert app.state.requests[0]["stream"] is True
