"""FastAPI dependencies shared by the API and admin routers."""

from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader

from webchat_gateway.dispatcher import Dispatcher

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


async def verify_api_key(
    request: Request, auth: Optional[str] = Depends(api_key_header)
) -> Optional[str]:
    """Check ``Authorization: Bearer <PROXY_API_KEY>``.

    With no key configured every request is let through.
    """
    config = request.app.state.config
    if not config.auth_enabled:
        return auth
    if not auth or auth != f"Bearer {config.api_key}":
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return auth
