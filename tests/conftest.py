"""Shared pytest fixtures: in-memory databases, a manual clock and a fake backend."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy.pool import StaticPool

from protee.models.tracking import Confidence, EntrySource
from protee.storage.database import init_db, make_engine, make_session_factory
from protee.sync.auth import AuthSession
from protee.sync.engine import SyncCoordinator
from protee.sync.errors import AuthorizationError, RemoteRejectedError
from protee.sync.local_store import LocalStore
from protee.sync.protocol import SyncProtocol
from protee.sync.records import EntityType, SyncRecord, spec_for
from protee.sync.remote import DeleteScope, PullBatch, RemoteClient
from protee.sync.state import SyncStateStore

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


class Clock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def memory_session_factory():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    return make_session_factory(engine)


# ── Fake backend ──────────────────────────────────────────────────────────────

class FakeBackend:
    """In-memory shared store, keyed by (entity type, user id, sync id)."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.rows: dict[tuple[EntityType, str, str], dict] = {}
        self.online = True
        self.reject: set[str] = set()               # sync ids refused on push
        self.push_error: Optional[Exception] = None
        self.pull_error: Optional[Exception] = None
        self.pull_gate: Optional[asyncio.Event] = None
        self.push_log: list[tuple[EntityType, str]] = []
        self.pull_log: list[tuple[EntityType, Optional[datetime], Optional[datetime]]] = []
        self.active = 0
        self.max_active = 0

    def records(self, entity_type: EntityType, user_id: str) -> list[SyncRecord]:
        spec = spec_for(entity_type)
        return [
            spec.parse_remote(row)
            for (et, uid, _), row in self.rows.items()
            if et == entity_type and uid == user_id
        ]

    def put(self, entity_type: EntityType, user_id: str, record: SyncRecord, pushed_at: datetime = None):
        """Write a row directly, as another device would."""
        row = record.to_remote(user_id)
        row["pushed_at"] = pushed_at or self.clock()
        self.rows[(entity_type, user_id, record.sync_id)] = row


class FakeAuth:
    def __init__(self, user_id: Optional[str] = "user-1", email: str = "me@example.com"):
        self.session = None
        if user_id:
            self.session = AuthSession(user_id=user_id, email=email, access_token="token")

    @property
    def is_signed_in(self) -> bool:
        return self.session is not None

    async def ensure_session(self) -> AuthSession:
        if self.session is None:
            raise AuthorizationError("Not signed in")
        return self.session

    async def sign_in(self, email: str, password: str) -> AuthSession:
        if password == "wrong":
            raise AuthorizationError("Invalid login credentials")
        self.session = AuthSession(user_id=f"user-{email}", email=email, access_token="token")
        return self.session

    async def sign_out(self) -> None:
        self.session = None

    async def aclose(self) -> None:
        pass


class FakeRemote(RemoteClient):
    def __init__(self, backend: FakeBackend, auth: FakeAuth):
        self.backend = backend
        self.auth = auth

    async def push(self, entity_type: EntityType, record: SyncRecord) -> None:
        session = await self.auth.ensure_session()
        await asyncio.sleep(0)
        if self.backend.push_error is not None:
            raise self.backend.push_error
        if record.sync_id in self.backend.reject:
            raise RemoteRejectedError(f"violates check constraint ({record.sync_id})", status_code=400)
        self.backend.push_log.append((entity_type, record.sync_id))
        self.backend.put(entity_type, session.user_id, record)

    async def pull(self, entity_type, since=None, created_after=None) -> PullBatch:
        session = await self.auth.ensure_session()
        backend = self.backend
        backend.active += 1
        backend.max_active = max(backend.max_active, backend.active)
        try:
            backend.pull_log.append((entity_type, since, created_after))
            if backend.pull_gate is not None:
                await backend.pull_gate.wait()
            if backend.pull_error is not None:
                raise backend.pull_error
            spec = spec_for(entity_type)
            rows = sorted(
                (row for (et, uid, _), row in backend.rows.items() if et == entity_type and uid == session.user_id),
                key=lambda r: (r["pushed_at"], r["sync_id"]),
            )
            batch = PullBatch()
            for row in rows:
                if since is not None and row["pushed_at"] < since:
                    continue
                record = spec.parse_remote(row)
                if created_after is not None and record.created_at < created_after:
                    continue
                batch.add(record, row["pushed_at"])
            return batch
        finally:
            backend.active -= 1

    async def delete_scope(self, entity_type, scope=DeleteScope.OWN) -> Optional[int]:
        if scope == DeleteScope.OWN:
            session = await self.auth.ensure_session()
            keys = [k for k in self.backend.rows if k[0] == entity_type and k[1] == session.user_id]
        else:
            keys = [k for k in self.backend.rows if k[0] == entity_type]
        for key in keys:
            del self.backend.rows[key]
        return len(keys)

    async def ping(self) -> bool:
        return self.backend.online


@dataclass
class Device:
    local: LocalStore
    state: SyncStateStore
    auth: FakeAuth
    remote: FakeRemote
    protocol: SyncProtocol
    coordinator: SyncCoordinator

    async def sync(self):
        return await self.coordinator.sync_data()


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def session_factory():
    return memory_session_factory()


@pytest.fixture
def local(session_factory, clock) -> LocalStore:
    return LocalStore(session_factory, clock=clock)


@pytest.fixture
def state(session_factory) -> SyncStateStore:
    return SyncStateStore(session_factory)


@pytest.fixture
def backend(clock) -> FakeBackend:
    return FakeBackend(clock)


@pytest.fixture
def make_device(backend, clock):
    """Factory for devices that share one backend but each own a database."""

    def factory(user_id: Optional[str] = "user-1") -> Device:
        factory_ = memory_session_factory()
        local = LocalStore(factory_, clock=clock)
        state = SyncStateStore(factory_)
        auth = FakeAuth(user_id)
        remote = FakeRemote(backend, auth)
        coordinator = SyncCoordinator(local, state, remote=remote, auth=auth, debounce_seconds=0.01, clock=clock)
        return Device(local, state, auth, remote, coordinator._protocol, coordinator)

    return factory


@pytest.fixture
def add_food(clock):
    """Create a food entry in the given store."""

    def add(local: LocalStore, name: str = "Chicken breast", protein: int = 31, **extra):
        fields = dict(
            date="2026-03-01",
            source=EntrySource.manual,
            food_name=name,
            protein=protein,
            confidence=Confidence.high,
            created_at=clock(),
        )
        fields.update(extra)
        return local.create(EntityType.food_entry, **fields)

    return add
