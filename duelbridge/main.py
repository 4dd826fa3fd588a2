import asyncio
import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from starlette.responses import StreamingResponse

from . import constants
from . import config as _config_module
from .catalog import ModelCatalog
from .events import StreamEndEvent, format_sse
from .host import SessionHost
from .models import InteractionRequest
from .orchestrator import InteractionOrchestrator
from .pool import SessionPool
from .proxy import StaticProxyProvider
from .registry import RetrySignalRegistry
from .solver import build_solver
from .utils import debug_print, safe_print

PORT = constants.PORT

# Ensure all module-level `print(...)` calls are resilient to console encoding issues.
print = safe_print  # type: ignore[assignment]


class BridgeServices:
    """Process-scoped services, built once at startup and shared by every request."""

    def __init__(
        self,
        config: dict,
        *,
        host: SessionHost,
        pool: SessionPool,
        registry: RetrySignalRegistry,
        orchestrator: InteractionOrchestrator,
        catalog: Optional[ModelCatalog] = None,
    ) -> None:
        self.config = config
        self.host = host
        self.pool = pool
        self.registry = registry
        self.orchestrator = orchestrator
        self.catalog = catalog if catalog is not None else ModelCatalog.from_config(config, pool)

    @classmethod
    def build(cls, config: dict) -> "BridgeServices":
        host = SessionHost(config, proxy_provider=StaticProxyProvider.from_config(config))
        pool = SessionPool.from_config(host, config)
        registry = RetrySignalRegistry()
        orchestrator = InteractionOrchestrator.from_config(config, pool, host, registry, solver=build_solver(config))
        return cls(config, host=host, pool=pool, registry=registry, orchestrator=orchestrator)

    async def shutdown(self) -> None:
        self.registry.cancel_all()
        await self.pool.close_all()
        await self.host.close()


def _consume_background_task_exception(task: "asyncio.Task") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        debug_print(f"❌ Interaction task failed: {type(exc).__name__}: {exc}")


async def startup_event(services: BridgeServices) -> None:
    # Unit tests (ASGITransport) must never launch a real browser.
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return
    try:
        await services.host.get_host()
    except Exception as e:
        debug_print(f"❌ Browser warm-up failed: {e}")
        # Continue anyway - the host is launched again on first demand


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Optional[BridgeServices] = getattr(app.state, "services", None)
    if services is None:
        services = BridgeServices.build(_config_module.get_config())
        app.state.services = services
    await startup_event(services)
    yield
    await services.shutdown()


app = FastAPI(lifespan=lifespan)


def get_services(request: Request) -> BridgeServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = BridgeServices.build(_config_module.get_config())
        request.app.state.services = services
    return services


async def _read_json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON in request body: {str(e)}")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _require_request_id(body: dict) -> str:
    request_id = str(body.get("requestId") or "").strip()
    if not request_id:
        raise HTTPException(status_code=400, detail="requestId is required")
    return request_id


@app.post("/api/chat")
async def api_chat(request: Request):
    body = await _read_json_body(request)
    try:
        interaction = InteractionRequest.from_payload(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    services = get_services(request)
    debug_print(
        f"📨 Request {interaction.request_id}: {interaction.target_model_a} vs {interaction.target_model_b} "
        f"(conversation {interaction.conversation_id}, {len(interaction.history)} prior messages)"
    )

    events: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(services.orchestrator.run(interaction, events.put))
    task.add_done_callback(_consume_background_task_exception)

    async def event_stream():
        ended = False
        try:
            while True:
                event = await events.get()
                yield format_sse(event)
                if isinstance(event, StreamEndEvent):
                    ended = True
                    break
        finally:
            # Client went away before the stream ended
            if not ended and not task.done():
                services.orchestrator.cancel(interaction.request_id)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Request-Id": interaction.request_id},
    )


@app.post("/api/trigger-retry")
async def trigger_retry(request: Request):
    body = await _read_json_body(request)
    request_id = _require_request_id(body)
    services = get_services(request)
    if services.registry.resume(request_id):
        return {"status": "OK", "message": f"Retry signal sent for request {request_id}"}
    raise HTTPException(status_code=404, detail="No active action waiting for retry")


@app.post("/api/cancel")
async def cancel_request(request: Request):
    body = await _read_json_body(request)
    request_id = _require_request_id(body)
    services = get_services(request)
    if services.orchestrator.cancel(request_id):
        return {"status": "OK", "message": f"Request {request_id} cancelled"}
    raise HTTPException(status_code=404, detail="No active request with this id")


@app.get("/api/models")
async def list_models(request: Request, refresh: bool = False):
    services = get_services(request)
    models = await services.catalog.get_models(force_refresh=refresh)
    return {
        "models": models,
        "metadata": {
            "count": len(models),
            "source": services.catalog.source,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@app.get("/api/health")
async def health_check(request: Request):
    """Health check endpoint for monitoring"""
    services = get_services(request)
    host_info = services.host.info()
    status = "healthy" if host_info.get("connected") else "idle"
    return {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "host": host_info,
        "pool": services.pool.info(),
        "models": services.catalog.info(),
        "waiting_for_retry": services.registry.waiting_request_ids(),
    }


if __name__ == "__main__":
    # Avoid crashes on Windows consoles with non-UTF8 code pages when printing emojis.
    try:
        import sys

        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        sys.stderr.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, ValueError):
        pass

    print("=" * 60)
    print("🚀 LMArena Duel Bridge Server Starting...")
    print("=" * 60)
    print(f"📨 Chat stream: POST http://localhost:{PORT}/api/chat")
    print(f"🔁 Resume after challenge: POST http://localhost:{PORT}/api/trigger-retry")
    print(f"📋 Models: GET http://localhost:{PORT}/api/models")
    print(f"❤️ Health: GET http://localhost:{PORT}/api/health")
    print("=" * 60)
    uvicorn.run(app, host="0.0.0.0", port=PORT)
