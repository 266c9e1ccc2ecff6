"""FastAPI dependencies shared by the routers."""
from typing import Optional

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from api.auth import verify_api_key
from core.services import Services

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_api_key(request: Request, api_key: Optional[str] = Security(api_key_header)) -> bool:
    """Enforce ``X-API-Key`` when an API key is configured."""
    expected = request.app.state.settings.api_key
    if not expected:
        return True
    if not verify_api_key(api_key, expected):
        raise HTTPException(status_code=403, detail="Invalid API Key")
    return True
