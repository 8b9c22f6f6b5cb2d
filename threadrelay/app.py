"""HTTP application for the threadrelay chat gateway.

This module exposes:
- `POST /api/chat`: appends the prompt to its thread and streams the answer as SSE,
- `GET /health`: store and remote bridge status,
and the `threadrelay` command that serves the app with uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .chat_handlers import ChatRequest, build_error_response, build_sse_response
from .config import DEFAULT_CONFIG_PATH, ConfigurationError, load_config
from .config_reload import ConfigReloadWatcher
from .gateway_service import GatewayService
from .logging_utils import setup_logging
from .stream_relay import with_keepalive
from .utils import extract_bearer_token, to_bounded_json

LOG = logging.getLogger(__name__)


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:3001")
    return parsed.hostname, parsed.port


def create_app(
    config_path: str | None = None,
    *,
    service: GatewayService | None = None,
    watch_config: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    config_file = Path(config_path or os.getenv("THREADRELAY_CONFIG") or DEFAULT_CONFIG_PATH)
    if service is None:
        cfg = load_config(str(config_file))
        setup_logging(cfg.logging)
        service = GatewayService(cfg)
    gateway = service

    async def reload_from_file(path: Path) -> None:
        new_cfg = load_config(str(path))
        setup_logging(new_cfg.logging)
        await gateway.reload(new_cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        await gateway.start()
        reload_task: asyncio.Task[None] | None = None
        if watch_config and config_file.parent.is_dir():
            watcher = ConfigReloadWatcher(config_file, reload_from_file)
            reload_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            if reload_task is not None:
                reload_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reload_task
            await gateway.close()

    app = FastAPI(title="threadrelay", version="0.1.0", lifespan=lifespan)
    app.state.service = gateway
    app.add_middleware(
        CORSMiddleware,
        allow_origins=gateway.cfg.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse(gateway.health())

    @app.post("/api/chat")
    async def chat(body: ChatRequest, request: Request):
        """Answer one prompt of a thread as a server-sent event stream."""
        client_host = getattr(getattr(request, "client", None), "host", None)
        LOG.debug(
            "incoming chat request client=%s payload=%s",
            client_host,
            to_bounded_json(body.model_dump(by_alias=True)),
        )
        bearer_token = extract_bearer_token(request.headers.get("authorization"))
        try:
            stream = await gateway.open_chat(body, bearer_token)
        except ConfigurationError as exc:
            LOG.error("chat request rejected thread_id=%s: %s", body.thread_id, exc)
            return build_error_response()
        except Exception:
            LOG.exception("chat request failed before streaming thread_id=%s", body.thread_id)
            return build_error_response()

        return build_sse_response(
            with_keepalive(
                stream,
                keepalive_seconds=float(gateway.cfg.stream_keepalive_seconds or 0.0),
                is_disconnected=request.is_disconnected,
            )
        )

    return app


def main() -> None:
    """CLI entry point that validates configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="threadrelay chat gateway")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    try:
        app = create_app(args.config)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    if not (cfg.upstream_api_key or "").strip():
        LOG.warning("upstream_api_key is not set; chat requests will fail until it is configured")

    try:
        host, port = _service_bind_addr(cfg.service_base_url)
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
