"""FastAPI application for the multi-provider web chat gateway."""

import logging
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import Depends, FastAPI, Request
from starlette.responses import JSONResponse, Response

from webchat_gateway.admin import admin_router
from webchat_gateway.config import load_config
from webchat_gateway.dependencies import get_dispatcher, verify_api_key
from webchat_gateway.dispatcher import Dispatcher
from webchat_gateway.errors import GatewayError
from webchat_gateway.proxy import handle_chat_completion
from webchat_gateway.refresher import CredentialRefresher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))

    dispatcher = Dispatcher.from_config(config)
    refresher = CredentialRefresher(
        dispatcher.adapters,
        lead_minutes=config.refresh_lead_minutes,
        interval_seconds=config.refresh_interval_seconds,
    )
    if config.auto_refresh_enabled:
        refresher.start()

    app.state.config = config
    app.state.dispatcher = dispatcher
    app.state.refresher = refresher

    logger.info(
        "Gateway started on %s:%d with providers: %s",
        config.host,
        config.port,
        ", ".join(adapter.id for adapter in dispatcher.adapters),
    )

    yield

    refresher.stop()
    await dispatcher.aclose()
    logger.info("Gateway stopped")


app = FastAPI(title="Web Chat Gateway", lifespan=lifespan)

app.include_router(admin_router)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": {"message": str(exc), "type": "server_error", "code": 500}},
    )


@app.get("/health")
async def health_check(
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> Dict[str, object]:
    """Health check with per-provider pool and queue status."""
    return dispatcher.health()


@app.get("/v1/models", dependencies=[Depends(verify_api_key)])
async def list_models(
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> Dict[str, object]:
    return {"object": "list", "data": dispatcher.list_models()}


@app.post("/v1/chat/completions", dependencies=[Depends(verify_api_key)])
async def chat_completions(
    request: Request, dispatcher: Dispatcher = Depends(get_dispatcher)
) -> Response:
    return await handle_chat_completion(request, dispatcher)
