"""Service-to-service routes. Authenticated by the shared API key, not by user cookies."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.api.deps import get_credential_store, require_api_key
from sessionguard.core.errors import NotFoundError
from sessionguard.db.session import get_db
from sessionguard.services.credentials import CredentialStore
from sessionguard.services.session_ledger import SessionLedger

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_api_key)])


@router.get("/users/{user_id}/sessions", summary="Count a user's live sessions")
async def live_sessions(
    user_id: int,
    session: Annotated[AsyncSession, Depends(get_db)],
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
) -> dict:
    if await credentials.get_by_id(user_id) is None:
        raise NotFoundError("User not found")
    count = await SessionLedger(session).count_for_subject(user_id)
    return {"success": True, "data": {"userId": user_id, "activeSessions": count}}
