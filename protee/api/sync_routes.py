"""
Sync API routes.

GET    /api/sync/status          — Sync engine snapshot
POST   /api/sync                 — Run a sync pass now (joins a running one)
POST   /api/sync/force-resync    — Forget cursors, then sync
POST   /api/sync/sign-in         — Sign in to the remote backend
POST   /api/sync/sign-out        — Sign out and clear sync bookkeeping
DELETE /api/sync/remote          — Administrative wipe of remote rows
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from protee.sync.engine import SyncCoordinator, SyncResult, SyncSnapshot, get_sync_coordinator
from protee.sync.errors import AuthorizationError, SyncError, SyncNotConfiguredError
from protee.sync.records import EntityType
from protee.sync.remote import DeleteScope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


# ── Request/Response Models ─────────────────────────────────────────────

class SignInRequest(BaseModel):
    email: str
    password: str


class SignInResponse(BaseModel):
    user_id: str
    email: Optional[str] = None


class ResetResponse(BaseModel):
    scope: DeleteScope
    deleted: dict[str, Optional[int]]


def _http_error(e: SyncError) -> HTTPException:
    if isinstance(e, AuthorizationError):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, SyncNotConfiguredError):
        return HTTPException(status_code=409, detail=str(e))
    if e.retryable:
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


# ── Routes ──────────────────────────────────────────────────────────────

@router.get("/status", response_model=SyncSnapshot)
def get_status(coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Get current sync engine status."""
    coordinator.refresh_pending()
    return coordinator.snapshot()


@router.post("", response_model=SyncResult)
async def sync_now(coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Run an immediate sync pass."""
    return await coordinator.sync_data()


@router.post("/force-resync", response_model=SyncResult)
async def force_resync(coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Drop all pull cursors and re-pull everything. Records are untouched."""
    await coordinator.clear_sync_meta()
    return await coordinator.sync_data()


@router.post("/sign-in", response_model=SignInResponse)
async def sign_in(req: SignInRequest, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    try:
        session = await coordinator.sign_in(req.email, req.password)
    except SyncError as e:
        raise _http_error(e)
    return SignInResponse(user_id=session.user_id, email=session.email)


@router.post("/sign-out", response_model=SyncSnapshot)
async def sign_out(coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    try:
        await coordinator.sign_out()
    except SyncError as e:
        raise _http_error(e)
    return coordinator.snapshot()


@router.delete("/remote", response_model=ResetResponse)
async def reset_remote(
    entity_type: Optional[EntityType] = None,
    scope: DeleteScope = DeleteScope.OWN,
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
):
    """Hard-delete remote rows (own account by default, ``scope=all`` for every row)."""
    try:
        deleted = await coordinator.reset_remote(entity_type, scope)
    except SyncError as e:
        raise _http_error(e)
    return ResetResponse(scope=scope, deleted=deleted)
