from typing import Annotated

from fastapi import APIRouter, Depends, Response

from sessionguard.api.deps import get_settings
from sessionguard.config import Settings
from sessionguard.core.cookies import set_csrf_cookie
from sessionguard.core.csrf import generate_secret

router = APIRouter(tags=["csrf"])


@router.get("/csrf-token", summary="Issue a fresh CSRF secret")
async def get_csrf_token(response: Response, settings: Annotated[Settings, Depends(get_settings)]) -> dict:
    """Rotate the double-submit secret. The client echoes it in `X-CSRF-Token`."""
    secret = generate_secret()
    set_csrf_cookie(response, secret, settings)
    return {"success": True, "data": {"csrfToken": secret}}
