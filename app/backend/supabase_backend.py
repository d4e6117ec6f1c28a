from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
from loguru import logger
from postgrest.exceptions import APIError
from storage3.utils import StorageException
from supabase import AsyncClient, AuthError, AuthRetryableError, acreate_client
from supabase.lib.client_options import AsyncClientOptions

from app.backend.base import (
    AuthSession,
    AuthUser,
    ChangeCallback,
    ChangeEvent,
    DataBackend,
    Query,
    Subscription,
    deliver,
    matches,
)
from app.core.errors import AuthRequired, BackendUnavailable, Conflict, InvalidRequest

UNIQUE_VIOLATION = "23505"


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def build_select(q: Query) -> str:
    """PostgREST select string, e.g. ``id,status,partner:profiles!mentor_id(full_name)``."""
    parts = list(q.columns) or ["*"]
    for embed in q.embeds:
        parts.append(f"{embed.alias}:{embed.table}!{embed.foreign_key}({','.join(embed.columns)})")
    return ",".join(parts)


def _ilike_term(value: str) -> str:
    # commas and parens are structural inside or=(...)
    cleaned = "".join(ch for ch in value if ch not in ",()")
    return f"*{cleaned}*"


def apply_filters(builder, q: Query):
    for key, value in q.eq.items():
        builder = builder.eq(key, _jsonable(value))
    for key, values in q.in_.items():
        builder = builder.in_(key, [_jsonable(v) for v in values])
    for key, value in q.gt.items():
        builder = builder.gt(key, _jsonable(value))
    for key in q.is_null:
        builder = builder.is_(key, "null")
    if q.contains_any:
        builder = builder.or_(
            ",".join(f"{key}.ilike.{_ilike_term(value)}" for key, value in q.contains_any.items())
        )
    return builder


def parse_change(payload: Dict[str, Any], table: str) -> ChangeEvent:
    data = payload.get("data", payload)
    return ChangeEvent(
        table=data.get("table", table),
        kind=(data.get("type") or data.get("eventType") or "").upper(),
        record=data.get("record") or data.get("new") or {},
        old_record=data.get("old_record") or data.get("old") or None,
    )


class RealtimeSubscription(Subscription):
    def __init__(self, backend: "SupabaseBackend", channel, table, events, eq):
        super().__init__(table, events, eq)
        self._backend = backend
        self.channel = channel

    async def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._backend.client.remove_channel(self.channel)
        logger.debug(f"[supabase] channel removed table={self.table} eq={self.eq}")


class SupabaseBackend(DataBackend):
    """
    Backend Data Service on a hosted Supabase project.

    ``client`` uses the service key for tables, storage and realtime.
    ``auth_client`` (anon key) handles sign-in flows so that a user session
    never leaks into the service client's headers.
    """

    name = "supabase"

    def __init__(self, client: AsyncClient, auth_client: AsyncClient, url: str, timeout: float = 10.0):
        super().__init__(timeout=timeout)
        self.client = client
        self.auth_client = auth_client
        self.url = url.rstrip("/")
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    async def connect(
        cls, url: str, key: str, anon_key: Optional[str] = None, timeout: float = 10.0
    ) -> "SupabaseBackend":
        if not url or not key:
            raise RuntimeError("Missing SUPABASE_URL or SUPABASE_KEY")
        options = AsyncClientOptions(auto_refresh_token=False, persist_session=False)
        client = await acreate_client(url, key, options=options)
        auth_client = await acreate_client(url, anon_key or key, options=options)
        logger.info(f"[supabase] connected to {url}")
        return cls(client, auth_client, url, timeout=timeout)

    async def _execute(self, op: str, builder) -> List[Dict[str, Any]]:
        try:
            resp = await self._bounded(op, builder.execute())
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise Conflict(f"{op}: {e.message}")
            logger.error(f"[supabase] {op} failed: code={e.code} message={e.message}")
            raise BackendUnavailable(f"{op} failed: {e.message}")
        except httpx.HTTPError as e:
            logger.error(f"[supabase] {op} transport error: {e}")
            raise BackendUnavailable(f"{op} failed")
        return resp.data or []

    # ---------- tables ----------

    async def query(self, query: Query) -> List[Dict[str, Any]]:
        builder = apply_filters(self.client.table(query.table).select(build_select(query)), query)
        for column, descending in query.order:
            builder = builder.order(column, desc=descending)
        if query.limit is not None:
            builder = builder.limit(query.limit)
        return await self._execute(f"query {query.table}", builder)

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._execute(f"insert {table}", self.client.table(table).insert(_jsonable(record)))
        if not rows:
            raise BackendUnavailable(f"insert {table} returned no row")
        return rows[0]

    async def update(self, query: Query, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        builder = apply_filters(self.client.table(query.table).update(_jsonable(patch)), query)
        return await self._execute(f"update {query.table}", builder)

    # ---------- realtime ----------

    async def subscribe(
        self,
        table: str,
        events: Iterable[str],
        callback: ChangeCallback,
        eq: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        events = [e.upper() for e in events]
        eq = dict(eq or {})
        # realtime filters accept a single column; the rest is checked on receipt
        server_filter = None
        if eq:
            key, value = next(iter(eq.items()))
            server_filter = f"{key}=eq.{value}"

        def on_change(payload: Dict[str, Any]) -> None:
            event = parse_change(payload, table)
            if not matches(event.record, eq):
                return
            task = asyncio.ensure_future(deliver(callback, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        channel = self.client.channel(f"{table}:{server_filter or 'all'}:{uuid.uuid4().hex[:8]}")
        for event in events:
            channel.on_postgres_changes(
                event, callback=on_change, table=table, schema="public", filter=server_filter
            )
        await self._bounded(f"subscribe {table}", channel.subscribe())
        logger.debug(f"[supabase] channel open table={table} filter={server_filter}")
        return RealtimeSubscription(self, channel, table, events, eq)

    # ---------- storage ----------

    async def upload_object(
        self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None
    ) -> str:
        options = {"upsert": "true"}
        if content_type:
            options["content-type"] = content_type
        try:
            await self._bounded(
                f"upload {bucket}",
                self.client.storage.from_(bucket).upload(path, data, options),
            )
        except (StorageException, httpx.HTTPError) as e:
            logger.error(f"[supabase] upload {bucket}/{path} failed: {e}")
            raise BackendUnavailable("Object upload failed")
        return path

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{bucket}/{path.lstrip('/')}"

    # ---------- auth ----------

    @staticmethod
    def _to_user(user) -> AuthUser:
        return AuthUser(
            user_id=str(user.id),
            email=getattr(user, "email", None),
            attributes=dict(getattr(user, "user_metadata", None) or {}),
        )

    async def _auth(self, op: str, awaitable):
        """Run an auth client call; network trouble becomes ``BackendUnavailable``.

        Rejections (``AuthError``) are left to the caller, which knows what
        they mean for its flow.
        """
        try:
            return await self._bounded(op, awaitable)
        except (AuthRetryableError, httpx.HTTPError) as e:
            logger.error(f"[supabase] {op} transport error: {e}")
            raise BackendUnavailable("Auth service unavailable")

    async def authenticate(self, token: Optional[str]) -> AuthUser:
        if not token:
            raise AuthRequired("Missing bearer token")
        try:
            resp = await self._auth("auth get_user", self.auth_client.auth.get_user(token))
        except AuthError as e:
            logger.debug(f"[supabase] token rejected: {e}")
            raise AuthRequired("Invalid or expired token")
        if not resp or not resp.user:
            raise AuthRequired("Invalid or expired token")
        return self._to_user(resp.user)

    async def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> AuthUser:
        try:
            resp = await self._auth(
                "auth sign_up",
                self.auth_client.auth.sign_up(
                    {"email": email, "password": password, "options": {"data": metadata}}
                ),
            )
        except AuthError as e:
            logger.warning(f"[supabase] signup rejected for {email}: {e}")
            if "already" in str(e).lower():
                raise Conflict(str(e))
            raise InvalidRequest(str(e) or "Signup failed")
        if not resp.user:
            raise BackendUnavailable("Signup returned no user")
        return self._to_user(resp.user)

    async def sign_in(self, email: str, password: str) -> AuthSession:
        try:
            resp = await self._auth(
                "auth sign_in",
                self.auth_client.auth.sign_in_with_password({"email": email, "password": password}),
            )
        except AuthError as e:
            raise AuthRequired(str(e) or "Invalid login credentials")
        token = resp.session.access_token if resp.session else None
        return AuthSession(user=self._to_user(resp.user), access_token=token)

    async def send_otp(self, email: str) -> None:
        try:
            await self._auth(
                "auth send_otp",
                self.auth_client.auth.sign_in_with_otp(
                    {"email": email, "options": {"should_create_user": False}}
                ),
            )
        except AuthError as e:
            logger.warning(f"[supabase] otp not sent to {email}: {e}")
            raise InvalidRequest(str(e) or "Failed to send OTP")

    async def verify_otp(self, email: str, code: str) -> bool:
        try:
            resp = await self._auth(
                "auth verify_otp",
                self.auth_client.auth.verify_otp({"email": email, "token": code, "type": "email"}),
            )
        except AuthError as e:
            logger.debug(f"[supabase] otp rejected for {email}: {e}")
            return False
        return bool(resp and resp.user)

    async def close(self) -> None:
        await self.client.remove_all_channels()
