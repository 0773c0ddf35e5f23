"""Admin endpoints for credential pools, queues and sessions."""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.responses import JSONResponse, Response

from webchat_gateway.dependencies import get_dispatcher, verify_api_key
from webchat_gateway.dispatcher import Dispatcher
from webchat_gateway.providers.base import Capability, ProviderAdapter

admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(verify_api_key)]
)


def _get_adapter(dispatcher: Dispatcher, provider_id: str) -> ProviderAdapter:
    adapter = dispatcher.get_adapter(provider_id)
    if adapter is None:
        raise HTTPException(status_code=404, detail=f"Provider {provider_id} not found")
    return adapter


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


@admin_router.get("/providers")
async def list_providers(
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> List[Dict[str, object]]:
    """List registered providers with their pool summaries."""
    return [
        {
            "id": adapter.id,
            "name": adapter.name,
            "models": [model.id for model in adapter.get_models()],
            "capabilities": [
                cap.name.lower()
                for cap in Capability
                if cap.name != "NONE" and adapter.supports(cap)
            ],
            "credentials": adapter.credentials_summary(),
            "expiry": adapter.check_expiry(),
        }
        for adapter in dispatcher.adapters
    ]


@admin_router.get("/credentials/{provider_id}")
async def get_credentials(
    provider_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)
) -> Dict[str, object]:
    return _get_adapter(dispatcher, provider_id).credentials_summary()


@admin_router.post("/credentials/{provider_id}")
async def add_credentials(
    provider_id: str, request: Request, dispatcher: Dispatcher = Depends(get_dispatcher)
) -> JSONResponse:
    """Add a captured credential payload to a provider's pool."""
    adapter = _get_adapter(dispatcher, provider_id)
    body = await _json_body(request)
    entry_id = adapter.add_credentials(body)
    return JSONResponse(content={"id": entry_id}, status_code=201)


@admin_router.delete("/credentials/{provider_id}/{entry_id}")
async def remove_credentials(
    provider_id: str, entry_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)
) -> Response:
    adapter = _get_adapter(dispatcher, provider_id)
    if not await adapter.remove_credentials(entry_id):
        raise HTTPException(status_code=404, detail=f"Credential {entry_id} not found")
    return Response(status_code=204)


@admin_router.post("/credentials/{provider_id}/reorder")
async def reorder_credentials(
    provider_id: str, request: Request, dispatcher: Dispatcher = Depends(get_dispatcher)
) -> Dict[str, object]:
    adapter = _get_adapter(dispatcher, provider_id)
    body = await _json_body(request)
    ids = body.get("ids")
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        raise HTTPException(status_code=400, detail="ids must be a list of strings")
    adapter.pool.reorder(ids)
    return adapter.pool.get_summary()


@admin_router.post("/credentials/{provider_id}/strategy")
async def set_strategy(
    provider_id: str, request: Request, dispatcher: Dispatcher = Depends(get_dispatcher)
) -> Dict[str, object]:
    adapter = _get_adapter(dispatcher, provider_id)
    body = await _json_body(request)
    try:
        adapter.pool.set_strategy(str(body.get("strategy", "")))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"strategy": adapter.pool.get_strategy()}


@admin_router.post("/credentials/{provider_id}/{entry_id}/reset")
async def reset_credential(
    provider_id: str, entry_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)
) -> Dict[str, str]:
    """Restore a failed or expired credential to active."""
    adapter = _get_adapter(dispatcher, provider_id)
    if not adapter.reset_credential_status(entry_id):
        raise HTTPException(status_code=404, detail=f"Credential {entry_id} not found")
    return {"message": "Credential reset successfully"}


@admin_router.get("/queue")
async def queue_status(
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> List[Dict[str, object]]:
    return dispatcher.queue.get_status()


@admin_router.get("/stats")
async def stats(
    request: Request, dispatcher: Dispatcher = Depends(get_dispatcher)
) -> Dict[str, object]:
    result: Dict[str, object] = {"metrics": dispatcher.metrics.snapshot()}
    refresher = getattr(request.app.state, "refresher", None)
    if refresher is not None:
        result["refresher"] = refresher.status()
    return result


@admin_router.post("/sessions/reset")
async def reset_sessions(
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> Dict[str, str]:
    """Drop cached conversations for every provider."""
    await dispatcher.reset_sessions()
    return {"message": "Sessions reset successfully"}
