"""API routes for the sanitizer with cancellation support."""
import json
import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from sanitizer.core.config import config
from sanitizer.core.models import ProviderSettings, SanitizeRequest
from sanitizer.core.sessions import SessionCoordinator
from sanitizer.services.prompts import build_prompt
from sanitizer.services.providers import DEFAULT_PROVIDER, PROVIDERS
from sanitizer.services.sanitize import STRATEGIES, SanitizeService
from sanitizer.tools import SEARCH_PROVIDERS, create_web_search_tool, resolve_search_provider

logger = logging.getLogger(__name__)


class SanitizeBody(BaseModel):
    """Request body for POST /api/sanitize."""
    session_id: str = Field(min_length=1)
    text: str
    provider: str = DEFAULT_PROVIDER
    prompt: Optional[str] = None
    language: Optional[str] = None
    browser_language: str = ""
    verbosity: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    model: Optional[str] = None
    context_length: Optional[int] = Field(default=None, gt=0)
    model_path: Optional[str] = None
    search: dict[str, str] = Field(default_factory=dict)
    keepalive: bool = False
    strategy: str = "sequential"


class AppState:
    """Application state holder with session management."""

    def __init__(self, service: SanitizeService):
        self.service = service

    @property
    def coordinator(self) -> SessionCoordinator:
        return self.service.coordinator

    def build_request(self, body: SanitizeBody) -> SanitizeRequest:
        """Translate an HTTP body into a sanitize request."""
        tools = ()
        match = resolve_search_provider(body.search)
        if match is not None:
            tools = (create_web_search_tool(match.provider.id, match.api_key, match.extra),)
            logger.info("Web search enabled via %s", match.provider.label)

        settings = ProviderSettings(
            base_url=body.base_url or config.default_base_url,
            api_key=body.api_key or config.default_api_key,
            model=body.model or config.default_model,
            context_length=body.context_length,
            model_path=body.model_path,
            verbosity=body.verbosity or "medium",
            tools=tools,
        )
        prompt = build_prompt(
            base_prompt=body.prompt,
            language=body.language,
            browser_language=body.browser_language,
            verbosity=body.verbosity,
            fact_check=bool(tools),
        )
        return SanitizeRequest(
            session_id=body.session_id,
            text=body.text,
            prompt=prompt,
            provider_id=body.provider,
            settings=settings,
            strategy=body.strategy,
        )


def create_router(state: AppState) -> APIRouter:
    """Create API router with application state."""

    router = APIRouter(prefix="/api")

    @router.get("/providers")
    async def list_providers():
        """List backends with their availability, plus search providers."""
        providers = []
        for provider_id, provider_cls in PROVIDERS.items():
            availability = await provider_cls.check_availability()
            providers.append({
                "id": provider_id,
                "label": provider_cls.label,
                **availability.to_dict(),
            })
        return JSONResponse({
            "providers": providers,
            "default": DEFAULT_PROVIDER,
            "strategies": list(STRATEGIES),
            "search_providers": [
                {
                    "id": p.id,
                    "label": p.label,
                    "settings_keys": [p.settings_key, *p.extra_keys],
                    "free_quota": p.free_quota,
                    "docs_url": p.docs_url,
                }
                for p in SEARCH_PROVIDERS
            ],
        })

    @router.post("/sanitize")
    async def sanitize(body: SanitizeBody):
        """
        Sanitize an article.
        Returns Server-Sent Events stream of status and content events.
        Dropping the stream cancels the session.
        """
        if body.provider not in PROVIDERS:
            raise HTTPException(status_code=400, detail=f"Unknown provider: {body.provider}")
        if body.strategy not in STRATEGIES:
            raise HTTPException(status_code=400, detail=f"Unknown strategy: {body.strategy}")

        request = state.build_request(body)

        async def event_stream() -> AsyncGenerator[str, None]:
            events = state.service.stream(request, keepalive=body.keepalive)
            try:
                async for event in events:
                    yield f"data: {json.dumps(event)}\n\n"
            finally:
                await events.aclose()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @router.post("/sessions/{session_id}/stop")
    async def stop_session(session_id: str):
        """Stop the session of one context."""
        cancelled = await state.coordinator.cancel(session_id)
        return JSONResponse({
            "status": "ok",
            "cancelled": cancelled,
        })

    @router.post("/sessions/{session_id}/navigated")
    async def context_navigated(session_id: str):
        """The context navigated away or closed; its session is abandoned."""
        cancelled = await state.coordinator.context_gone(session_id)
        return JSONResponse({
            "status": "ok",
            "cancelled": cancelled,
        })

    @router.get("/sessions")
    async def list_sessions():
        """List active sessions."""
        return JSONResponse({
            "sessions": [s.to_dict() for s in state.coordinator.active_sessions]
        })

    @router.websocket("/sessions/{session_id}/keepalive")
    async def keepalive(websocket: WebSocket, session_id: str):
        """
        Liveness heartbeat for one context.
        The session is cancelled when the socket drops.
        """
        await websocket.accept()
        await state.coordinator.heartbeat_connected(session_id)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            await state.coordinator.heartbeat_lost(session_id)

    return router
