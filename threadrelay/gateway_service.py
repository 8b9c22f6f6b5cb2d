"""Gateway service runtime: wires store, tools, remote bridge and completion loop."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable

import httpx

from .chat_handlers import ChatRequest
from .config import GatewayConfig
from .conversation_store import ConversationStore
from .local_tools import LocalToolbox
from .orchestrator import CompletionOrchestrator
from .prompts import ConversationMode, RequestContext
from .remote_bridge import ClientFactory, RemoteCapabilityBridge, RemoteConnectionError, RemoteCredentials, RemoteSession
from .stream_relay import StreamRelay
from .tool_registry import ToolRegistry
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)


@dataclass
class _Integrations:
    """Config-bound components swapped as one unit on reload."""

    toolbox: LocalToolbox
    bridge: RemoteCapabilityBridge | None
    registry: ToolRegistry
    upstream: UpstreamClient
    orchestrator: CompletionOrchestrator

    async def close(self) -> None:
        if self.bridge is not None:
            await self.bridge.close()
        await self.toolbox.close()
        await self.upstream.close()


class GatewayService:
    """Runtime container for the conversation store and config-bound integrations."""

    def __init__(
        self,
        cfg: GatewayConfig,
        *,
        upstream_transport: httpx.AsyncBaseTransport | None = None,
        tools_transport: httpx.AsyncBaseTransport | None = None,
        remote_client_factory: ClientFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg
        self._upstream_transport = upstream_transport
        self._tools_transport = tools_transport
        self._remote_client_factory = remote_client_factory
        self._clock = clock
        self.store = ConversationStore(
            cfg.system_prompts,
            idle_ttl_seconds=cfg.thread_idle_ttl_seconds,
            max_threads=cfg.max_threads,
            history_window=cfg.history_window,
            clock=clock,
        )
        self.relay = StreamRelay()
        self._integrations = self._build_integrations(cfg)

    def _build_integrations(self, cfg: GatewayConfig) -> _Integrations:
        toolbox = LocalToolbox(cfg, transport=self._tools_transport)
        bridge: RemoteCapabilityBridge | None = None
        if cfg.remote.enabled:
            bridge = RemoteCapabilityBridge(cfg.remote, client_factory=self._remote_client_factory, clock=self._clock)
        else:
            LOG.info("remote capability server not configured, remote tools disabled")
        registry = ToolRegistry(
            toolbox.tools(),
            cfg.tool_policies,
            bridge=bridge,
            remote_server_id=cfg.remote.server_id,
            max_concurrency=int(cfg.max_tool_concurrency or 4),
            tool_call_timeout_seconds=float(cfg.tool_call_timeout_seconds or 60.0),
        )
        upstream = UpstreamClient(cfg, transport=self._upstream_transport)
        orchestrator = CompletionOrchestrator.from_config(cfg, upstream, registry)
        return _Integrations(toolbox, bridge, registry, upstream, orchestrator)

    @property
    def registry(self) -> ToolRegistry:
        return self._integrations.registry

    @property
    def bridge(self) -> RemoteCapabilityBridge | None:
        return self._integrations.bridge

    @property
    def upstream(self) -> UpstreamClient:
        return self._integrations.upstream

    @property
    def orchestrator(self) -> CompletionOrchestrator:
        return self._integrations.orchestrator

    async def start(self) -> None:
        LOG.info(
            "gateway service started upstream=%s model=%s local_tools=%s remote=%s",
            self.cfg.upstream_base_url,
            self.cfg.upstream_model,
            ", ".join(self.registry.local_names) or "(none)",
            self.cfg.remote.url if self.cfg.remote.enabled else "(disabled)",
        )

    async def close(self) -> None:
        """Shut down clients and pooled remote sessions."""
        await self._integrations.close()

    async def reload(self, new_cfg: GatewayConfig) -> None:
        """Hot-reload configuration by swapping integrations; stored threads are kept."""
        old = self._integrations
        self._integrations = self._build_integrations(new_cfg)
        self.cfg = new_cfg
        self.store.reconfigure(
            new_cfg.system_prompts,
            idle_ttl_seconds=new_cfg.thread_idle_ttl_seconds,
            max_threads=new_cfg.max_threads,
            history_window=new_cfg.history_window,
        )
        await old.close()

    @staticmethod
    async def _remote_session(
        integrations: _Integrations, context: RequestContext, bearer_token: str | None
    ) -> RemoteSession | None:
        bridge = integrations.bridge
        if bridge is None or not integrations.registry.policy_for(context.mode).include_remote:
            return None
        credentials = RemoteCredentials(bearer_token=bearer_token, data_source=context.data_source)
        try:
            return await bridge.ensure_connected(credentials)
        except RemoteConnectionError as exc:
            LOG.warning("continuing without remote tools mode=%s error=%s", context.mode.value, exc)
            return None

    async def open_chat(self, request: ChatRequest, bearer_token: str | None = None) -> AsyncGenerator[bytes, None]:
        """Record the prompt and return the SSE byte stream answering it.

        Raises `ConfigurationError` before touching the thread when the
        completion service credential is missing.
        """
        self.cfg.require_upstream_api_key()
        integrations = self._integrations
        context = request.request_context()

        thread = self.store.get_or_create(request.thread_id, context)
        await thread.append(request.prompt_message())
        session = await self._remote_session(integrations, context, bearer_token)
        tool_set = integrations.registry.build_tool_set(thread, context.mode, session)
        LOG.info(
            "chat request thread_id=%s response_id=%s mode=%s phase=%s tools=%s",
            thread.thread_id,
            request.response_id,
            context.mode.value,
            thread.phase.value,
            ", ".join(tool_set.names()) or "(none)",
        )

        cancel_event = asyncio.Event()
        fragments = integrations.orchestrator.run(thread, tool_set, context, cancel_event)
        return self.relay.relay(fragments, request.response_id, thread, cancel_event)

    def health(self) -> dict[str, Any]:
        """Return service, store and remote bridge status."""
        bridge = self.bridge
        return {
            "status": "ok",
            "threads": len(self.store),
            "local_tools": self.registry.local_names,
            "modes": [mode.value for mode in ConversationMode],
            "remote": {"enabled": True, **bridge.health()} if bridge is not None else {"enabled": False},
        }
