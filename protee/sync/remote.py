"""
Remote client for the shared backend (Supabase-compatible PostgREST API).

Table layout (one row per record, unique on (user_id, sync_id)):
  food_entries  : sync envelope + food entry columns
  daily_goals   : sync envelope + goal columns
  chat_messages : sync envelope + message columns (role stored as ``type``)

Every row also carries ``pushed_at``, stamped by the server on each insert or
update (see ``supabase/schema.sql``). Pulls page by ``pushed_at`` rather than
``updated_at`` so an edit made offline hours ago is still seen by peers whose
cursor has moved past its edit time; ``updated_at`` stays the
conflict-resolution signal. Pages are keyed on ``(pushed_at, sync_id)`` so a
row re-pushed mid-pull cannot shift the rows behind it out of view.

Every scoped call resolves the signed-in identity first and fails closed
without one. Rows are never hard-deleted by sync; deletion travels as a
``deleted_at`` tombstone. ``delete_scope`` is the separate administrative
wipe.
"""

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

import httpx
from pydantic import AwareDatetime, TypeAdapter, ValidationError

from protee.sync.errors import (
    AuthorizationError,
    MalformedDataError,
    RemoteRejectedError,
    TransientTransportError,
)
from protee.sync.records import EntityType, SyncRecord, spec_for

if TYPE_CHECKING:
    from protee.sync.auth import AuthManager

logger = logging.getLogger(__name__)

NIL_UUID = "00000000-0000-0000-0000-000000000000"

_timestamp = TypeAdapter(AwareDatetime)


@dataclass
class PullBatch:
    """Records returned by one pull plus the newest push time among them."""

    records: list[SyncRecord] = field(default_factory=list)
    watermark: Optional[datetime] = None

    def add(self, record: SyncRecord, pushed_at: Optional[datetime] = None) -> None:
        self.records.append(record)
        # Rows written without a push stamp fall back to their edit time.
        seen = pushed_at or record.updated_at
        if self.watermark is None or seen > self.watermark:
            self.watermark = seen

    def __len__(self) -> int:
        return len(self.records)


class DeleteScope(str, enum.Enum):
    OWN = "own"      # rows of the signed-in user
    ALL = "all"      # every row the backend lets this key delete


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "msg", "error_description", "error"):
            if body.get(key):
                return str(body[key])
    return response.text or response.reason_phrase


def raise_for_response(response: httpx.Response) -> None:
    """Map an HTTP error status onto the sync error kinds."""
    status = response.status_code
    if status < 400:
        return
    message = f"{response.request.method} {response.request.url.path} -> {status}: {_error_message(response)}"
    if status in (401, 403):
        raise AuthorizationError(message)
    if status == 429 or status >= 500:
        raise TransientTransportError(message)
    raise RemoteRejectedError(message, status_code=status)


def _after_key(pushed_at: datetime, sync_id: str) -> str:
    """PostgREST filter for rows ordered after (pushed_at, sync_id)."""
    stamp = pushed_at.isoformat()
    return f'(pushed_at.gt."{stamp}",and(pushed_at.eq."{stamp}",sync_id.gt."{sync_id}"))'


async def send(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientTransportError(f"{method} {url} timed out") from e
    except httpx.TransportError as e:
        raise TransientTransportError(f"{method} {url} failed: {e}") from e
    raise_for_response(response)
    return response


class RemoteClient(ABC):
    """Network boundary to the shared store, scoped to the signed-in identity."""

    @abstractmethod
    async def push(self, entity_type: EntityType, record: SyncRecord) -> None:
        """Upsert one record by sync id."""

    @abstractmethod
    async def pull(
        self,
        entity_type: EntityType,
        since: Optional[datetime] = None,
        created_after: Optional[datetime] = None,
    ) -> PullBatch:
        """Records pushed at or after ``since`` (all records when ``since`` is None)."""

    @abstractmethod
    async def delete_scope(self, entity_type: EntityType, scope: DeleteScope = DeleteScope.OWN) -> Optional[int]:
        """Hard-delete rows for an account reset. Returns the count when known."""

    @abstractmethod
    async def ping(self) -> bool:
        """True when the backend is reachable."""

    async def aclose(self) -> None:
        pass


class RestRemoteClient(RemoteClient):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        auth: "AuthManager",
        http: Optional[httpx.AsyncClient] = None,
        page_size: int = 500,
        timeout: float = 15.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._auth = auth
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._page_size = page_size

    def _url(self, entity_type: EntityType) -> str:
        return f"{self._base_url}/rest/v1/{spec_for(entity_type).table}"

    def _headers(self, token: str, prefer: Optional[str] = None) -> dict:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    # ── Push ─────────────────────────────────────────────────────────

    async def push(self, entity_type: EntityType, record: SyncRecord) -> None:
        session = await self._auth.ensure_session()
        await send(
            self._http,
            "POST",
            self._url(entity_type),
            params={"on_conflict": "user_id,sync_id"},
            json=record.to_remote(session.user_id),
            headers=self._headers(
                session.access_token,
                prefer="resolution=merge-duplicates,return=minimal",
            ),
        )
        logger.debug("Pushed %s %s", entity_type.value, record.sync_id)

    # ── Pull ─────────────────────────────────────────────────────────

    async def pull(
        self,
        entity_type: EntityType,
        since: Optional[datetime] = None,
        created_after: Optional[datetime] = None,
    ) -> PullBatch:
        session = await self._auth.ensure_session()
        spec = spec_for(entity_type)

        base_params = [
            ("select", "*"),
            ("user_id", f"eq.{session.user_id}"),
            ("order", "pushed_at.asc,sync_id.asc"),
        ]
        if since is not None:
            base_params.append(("pushed_at", f"gte.{since.isoformat()}"))
        if created_after is not None:
            base_params.append(("created_at", f"gte.{created_after.isoformat()}"))

        batch = PullBatch()
        after: Optional[tuple[datetime, str]] = None
        while True:
            params = base_params + [("limit", str(self._page_size))]
            if after is not None:
                params.append(("or", _after_key(*after)))
            response = await send(
                self._http,
                "GET",
                self._url(entity_type),
                params=params,
                headers=self._headers(session.access_token),
            )
            try:
                rows = response.json()
            except ValueError as e:
                raise MalformedDataError(f"Non-JSON response from {spec.table}") from e
            if not isinstance(rows, list):
                raise MalformedDataError(f"Expected a list of rows from {spec.table}")

            for row in rows:
                record = spec.parse_remote(row)
                pushed_at = self._pushed_at(row)
                batch.add(record, pushed_at)
                after = (pushed_at or record.updated_at, record.sync_id)
            if len(rows) < self._page_size:
                break

        logger.debug("Pulled %d %s records since %s", len(batch), entity_type.value, since)
        return batch

    @staticmethod
    def _pushed_at(row: dict) -> Optional[datetime]:
        if not row.get("pushed_at"):
            return None
        try:
            return _timestamp.validate_python(row["pushed_at"])
        except ValidationError as e:
            raise MalformedDataError(f"Bad pushed_at on {row.get('sync_id')!r}") from e

    # ── Administrative reset ─────────────────────────────────────────

    async def delete_scope(self, entity_type: EntityType, scope: DeleteScope = DeleteScope.OWN) -> Optional[int]:
        scope = DeleteScope(scope)
        if scope == DeleteScope.OWN:
            session = await self._auth.ensure_session()
            token = session.access_token
            params = {"user_id": f"eq.{session.user_id}"}
            logger.info("Deleting %s rows for user %s", entity_type.value, session.user_id)
        else:
            session = self._auth.session
            token = session.access_token if session else self._api_key
            params = {"id": f"neq.{NIL_UUID}"}
            logger.warning("Deleting ALL %s rows visible to this key", entity_type.value)

        response = await send(
            self._http,
            "DELETE",
            self._url(entity_type),
            params=params,
            headers=self._headers(token, prefer="return=minimal,count=exact"),
        )
        content_range = response.headers.get("Content-Range", "")
        total = content_range.rsplit("/", 1)[-1]
        return int(total) if total.isdigit() else None

    # ── Connectivity ─────────────────────────────────────────────────

    async def ping(self) -> bool:
        try:
            await send(
                self._http,
                "GET",
                f"{self._base_url}/auth/v1/health",
                headers={"apikey": self._api_key},
            )
        except (TransientTransportError, AuthorizationError, RemoteRejectedError) as e:
            logger.info("Backend unreachable: %s", e)
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
