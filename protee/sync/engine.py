"""
Sync coordinator — run state machine, pass coalescing, auto-sync loop and
the status surface the UI layer observes.

Lifecycle: init_sync_coordinator → start_auto_sync → sync_data ... →
shutdown_sync_coordinator
"""

import asyncio
import enum
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from protee.config.settings import settings
from protee.storage.database import SessionLocal, utcnow
from protee.sync.auth import AuthManager, AuthSession
from protee.sync.errors import (
    AuthorizationError,
    LocalStorageError,
    MalformedDataError,
    RemoteRejectedError,
    SyncError,
    SyncNotConfiguredError,
    TransientTransportError,
)
from protee.sync.local_store import LocalStore
from protee.sync.protocol import SyncProtocol
from protee.sync.records import ENTITY_ORDER, EntityType
from protee.sync.remote import DeleteScope, RemoteClient, RestRemoteClient
from protee.sync.state import SyncStateStore

logger = logging.getLogger(__name__)


class EngineState(str, enum.Enum):
    not_configured = "not_configured"
    idle = "idle"
    syncing = "syncing"
    error = "error"


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, AuthorizationError):
        return "authorization"
    if isinstance(exc, TransientTransportError):
        return "transient"
    if isinstance(exc, RemoteRejectedError):
        return "remote_rejected"
    if isinstance(exc, MalformedDataError):
        return "malformed_data"
    if isinstance(exc, LocalStorageError):
        return "local_storage"
    return "internal"


class SyncSnapshot(BaseModel):
    """Read-only view of the sync engine for the UI layer."""

    configured: bool
    state: EngineState
    user_id: Optional[str] = None
    email: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    in_progress: bool = False
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None
    pending_count: int = 0
    online: bool = True


class SyncResult(BaseModel):
    success: bool
    skipped: Optional[str] = None          # not_configured | signed_out | offline
    error: Optional[str] = None
    error_kind: Optional[str] = None
    types: dict[str, dict] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class SyncCoordinator:
    """Orchestrates sync passes. At most one pass runs at a time."""

    def __init__(
        self,
        local: LocalStore,
        state: SyncStateStore,
        remote: Optional[RemoteClient] = None,
        auth: Optional[AuthManager] = None,
        pull_overlap: timedelta = timedelta(seconds=5),
        chat_window: Optional[timedelta] = timedelta(days=14),
        interval_seconds: float = 300,
        debounce_seconds: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._local = local
        self._state = state
        self._remote = remote
        self._auth = auth
        self._configured = remote is not None and auth is not None
        self._clock = clock
        self._interval = interval_seconds
        self._debounce = debounce_seconds
        self._protocol = (
            SyncProtocol(local, remote, state, pull_overlap=pull_overlap, chat_window=chat_window, clock=clock)
            if remote is not None else None
        )

        self._sync_lock = asyncio.Lock()
        self._current: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._auto_sync_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscribers: list[Callable[[SyncSnapshot], None]] = []
        self._snapshot = self._initial_snapshot()

    @property
    def is_configured(self) -> bool:
        return self._configured

    @property
    def local(self) -> LocalStore:
        return self._local

    # ── Status surface ──────────────────────────────────────────────

    def _initial_snapshot(self) -> SyncSnapshot:
        if not self._configured:
            return SyncSnapshot(configured=False, state=EngineState.not_configured)
        session = self._auth.session
        return SyncSnapshot(
            configured=True,
            state=EngineState.idle,
            user_id=session.user_id if session else None,
            email=session.email if session else None,
            last_sync_at=self._state.last_sync_at(),
            pending_count=self._local.count_pending(),
        )

    def snapshot(self) -> SyncSnapshot:
        return self._snapshot

    def subscribe(self, callback: Callable[[SyncSnapshot], None]) -> Callable[[], None]:
        """Register for status changes. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _update(self, **changes) -> None:
        self._snapshot = self._snapshot.model_copy(update=changes)
        for callback in list(self._subscribers):
            try:
                callback(self._snapshot)
            except Exception:
                logger.exception("Sync status subscriber failed")

    def _identity(self) -> dict:
        session = self._auth.session if self._auth else None
        return {
            "user_id": session.user_id if session else None,
            "email": session.email if session else None,
        }

    def _pending_count(self) -> int:
        try:
            return self._local.count_pending()
        except LocalStorageError:
            logger.warning("Could not count pending records")
            return self._snapshot.pending_count

    def refresh_pending(self) -> None:
        self._update(pending_count=self._pending_count())

    # ── Sync ────────────────────────────────────────────────────────

    async def sync_data(self) -> SyncResult:
        """Run a pass, or join the one already running."""
        if not self._configured:
            return SyncResult(success=False, skipped="not_configured")
        if self._current is None or self._current.done():
            self._current = asyncio.get_running_loop().create_task(self._run())
        else:
            logger.debug("Sync already in progress; joining it")
        return await asyncio.shield(self._current)

    async def _run(self) -> SyncResult:
        async with self._sync_lock:
            if not self._auth.is_signed_in:
                self._update(**self._identity())
                return SyncResult(success=False, skipped="signed_out")

            online = await self._remote.ping()
            self._update(online=online)
            if not online:
                self._update(pending_count=self._pending_count())
                return SyncResult(success=False, skipped="offline")

            result = SyncResult(success=False, started_at=self._clock())
            self._update(state=EngineState.syncing, in_progress=True)
            logger.info("Sync pass started")
            try:
                for entity_type in ENTITY_ORDER:
                    stats = await self._protocol.sync_type(entity_type)
                    result.types[entity_type.value] = stats.to_dict()
            except asyncio.CancelledError:
                logger.warning("Sync pass abandoned")
                self._update(state=EngineState.idle, in_progress=False)
                raise
            except (SyncError, SQLAlchemyError) as e:
                if isinstance(e, SQLAlchemyError):
                    e = LocalStorageError(str(e))
                result.error = str(e)
                result.error_kind = error_kind(e)
                result.finished_at = self._clock()
                logger.error("Sync pass aborted (%s): %s", result.error_kind, e)
                self._update(
                    state=EngineState.error,
                    in_progress=False,
                    last_error=result.error,
                    last_error_kind=result.error_kind,
                    pending_count=self._pending_count(),
                    **self._identity(),
                )
                return result
            except Exception as e:
                logger.exception("Unexpected sync failure")
                self._update(
                    state=EngineState.error,
                    in_progress=False,
                    last_error=str(e),
                    last_error_kind="internal",
                )
                raise

            result.success = True
            result.finished_at = self._clock()
            self._update(
                state=EngineState.idle,
                in_progress=False,
                last_sync_at=result.finished_at,
                last_error=None,
                last_error_kind=None,
                pending_count=self._pending_count(),
                **self._identity(),
            )
            logger.info("Sync pass complete")
            return result

    async def cancel(self) -> None:
        """Abandon the running pass. Cursors of unfinished types stay put."""
        task = self._current
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def clear_sync_meta(self) -> None:
        """Force resync: drop cursors once any running pass has finished."""
        async with self._sync_lock:
            self._state.clear()

    # ── Identity ────────────────────────────────────────────────────

    def _require_configured(self) -> None:
        if not self._configured:
            raise SyncNotConfiguredError("Remote sync is not configured")

    async def sign_in(self, email: str, password: str) -> AuthSession:
        self._require_configured()
        session = await self._auth.sign_in(email, password)
        self._update(last_error=None, last_error_kind=None, **self._identity())
        self.trigger_sync()
        return session

    async def sign_out(self) -> None:
        self._require_configured()
        await self.cancel()
        await self._auth.sign_out()
        await self.clear_sync_meta()
        self._update(state=EngineState.idle, last_error=None, last_error_kind=None, **self._identity())

    async def reset_remote(
        self,
        entity_type: Optional[EntityType] = None,
        scope: DeleteScope = DeleteScope.OWN,
    ) -> dict[str, Optional[int]]:
        """Administrative wipe of remote rows; local data and sync ids are kept."""
        self._require_configured()
        types = [EntityType(entity_type)] if entity_type else list(ENTITY_ORDER)
        deleted: dict[str, Optional[int]] = {}
        async with self._sync_lock:
            for et in types:
                deleted[et.value] = await self._remote.delete_scope(et, scope)
            self._state.clear()
        logger.warning("Remote reset (%s): %s", DeleteScope(scope).value, deleted)
        return deleted

    # ── Triggers ────────────────────────────────────────────────────

    def trigger_sync(self) -> None:
        """Debounced sync after a local change. Safe to call from any thread."""
        if not self._configured or self._loop is None or not self._auth.is_signed_in:
            return
        self._loop.call_soon_threadsafe(self._schedule_debounced)

    def _schedule_debounced(self) -> None:
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounced_sync())

    async def _debounced_sync(self) -> None:
        try:
            await asyncio.sleep(self._debounce)
            await self.sync_data()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Triggered sync failed")

    async def start_auto_sync(self) -> None:
        """Start the background auto-sync loop."""
        self._loop = asyncio.get_running_loop()
        if not self._configured:
            return
        if self._auto_sync_task and not self._auto_sync_task.done():
            return
        self._auto_sync_task = asyncio.create_task(self._auto_sync_loop())
        logger.info("Auto-sync started (interval: %ds)", self._interval)

    async def stop_auto_sync(self) -> None:
        """Stop the background auto-sync loop."""
        if self._auto_sync_task:
            self._auto_sync_task.cancel()
            try:
                await self._auto_sync_task
            except asyncio.CancelledError:
                pass
            self._auto_sync_task = None
            logger.info("Auto-sync stopped")

    async def _auto_sync_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                # Each pass pings first, so an offline device recovers here.
                if self._auth.is_signed_in:
                    await self.sync_data()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Auto-sync error")

    async def set_online(self, online: bool) -> None:
        """Update connectivity state. Triggers sync on reconnect."""
        was_offline = not self._snapshot.online
        self._update(online=online)

        if online and was_offline and self._configured and self._auth.is_signed_in:
            logger.info("Back online — triggering sync")
            await self.sync_data()

    async def aclose(self) -> None:
        await self.stop_auto_sync()
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
        await self.cancel()
        if self._remote is not None:
            await self._remote.aclose()
        if self._auth is not None:
            await self._auth.aclose()


# ── Process-wide handle ─────────────────────────────────────────────────

_coordinator: Optional[SyncCoordinator] = None


def build_sync_coordinator(session_factory: sessionmaker = SessionLocal) -> SyncCoordinator:
    local = LocalStore(session_factory)
    state = SyncStateStore(session_factory)
    auth = remote = None
    if settings.sync_configured:
        auth = AuthManager(
            settings.supabase_url,
            settings.supabase_anon_key,
            session_path=settings.session_path,
            timeout=settings.sync_request_timeout,
        )
        remote = RestRemoteClient(
            settings.supabase_url,
            settings.supabase_anon_key,
            auth,
            page_size=settings.sync_page_size,
            timeout=settings.sync_request_timeout,
        )
    elif settings.sync_enabled:
        logger.warning("sync_enabled is set but SUPABASE_URL / SUPABASE_ANON_KEY are missing")
    return SyncCoordinator(
        local,
        state,
        remote=remote,
        auth=auth,
        pull_overlap=timedelta(seconds=settings.sync_pull_overlap_seconds),
        chat_window=timedelta(days=settings.chat_sync_days),
        interval_seconds=settings.sync_interval_seconds,
        debounce_seconds=settings.sync_debounce_seconds,
    )


def init_sync_coordinator(session_factory: sessionmaker = SessionLocal) -> SyncCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = build_sync_coordinator(session_factory)
    return _coordinator


def get_sync_coordinator() -> SyncCoordinator:
    return init_sync_coordinator()


async def shutdown_sync_coordinator() -> None:
    global _coordinator
    if _coordinator is not None:
        await _coordinator.aclose()
        _coordinator = None
