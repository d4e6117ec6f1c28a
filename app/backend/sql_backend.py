from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Optional

from jose import jwt, JWTError
from loguru import logger
from passlib.context import CryptContext
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.backend.base import (
    AuthSession,
    AuthUser,
    ChangeCallback,
    ChangeEvent,
    DataBackend,
    Query,
    Subscription,
)
from app.backend.feed import ChangeFeed
from app.core.errors import AuthRequired, BackendUnavailable, Conflict, InvalidRequest
from app.core.init_db import TABLES
from app.schemas.base import as_utc

JWT_ALGO = "HS256"

# pbkdf2_sha256 is pure python, no native backend needed
pwd = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _row_to_dict(obj) -> Dict[str, Any]:
    out = {}
    for col in obj.__table__.columns:
        value = getattr(obj, col.key)
        out[col.name] = as_utc(value) if isinstance(value, datetime) else value
    return out


def _normalize(value: Any) -> Any:
    return as_utc(value) if isinstance(value, datetime) else value


class SqlBackend(DataBackend):
    """
    Backend Data Service on top of a SQLAlchemy database.

    Tables are the models registered in ``app.core.init_db.TABLES``.
    Auth is HS256 tokens over the ``accounts`` table, storage is the local
    upload directory, and realtime is the in-process ``ChangeFeed``.
    """

    name = "sql"

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        jwt_secret: str,
        jwt_expires_minutes: int = 60 * 24 * 7,
        otp_ttl_minutes: int = 15,
        upload_dir: str = "static/uploads",
        public_base_url: str = "http://localhost:5000",
        timeout: float = 10.0,
    ):
        super().__init__(timeout=timeout)
        self._sessions = session_factory
        self._jwt_secret = jwt_secret
        self._jwt_expires = timedelta(minutes=jwt_expires_minutes)
        self._otp_ttl = timedelta(minutes=otp_ttl_minutes)
        self._upload_dir = Path(upload_dir)
        self._public_base_url = public_base_url.rstrip("/")
        self.feed = ChangeFeed()

    # ---------- plumbing ----------

    async def _run(self, op: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await self._bounded(op, asyncio.to_thread(fn, *args))
        except IntegrityError as e:
            logger.warning(f"[sql] {op} violated a constraint: {e.orig}")
            raise Conflict(f"{op}: conflicting record")
        except SQLAlchemyError as e:
            logger.error(f"[sql] {op} failed: {e}")
            raise BackendUnavailable(f"{op} failed")

    @staticmethod
    def _model(table: str):
        try:
            return TABLES[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}")

    def _where(self, table, q: Query) -> list:
        c = table.c
        clauses = [c[k] == v for k, v in q.eq.items()]
        clauses += [c[k].in_(list(v)) for k, v in q.in_.items()]
        clauses += [c[k] > v for k, v in q.gt.items()]
        clauses += [c[k].is_(None) for k in q.is_null]
        if q.contains_any:
            clauses.append(or_(*[c[k].ilike(f"%{v}%") for k, v in q.contains_any.items()]))
        return clauses

    # ---------- tables ----------

    def _query_sync(self, q: Query) -> List[Dict[str, Any]]:
        table = self._model(q.table).__table__
        selected = [table]
        source = table
        embeds = []
        for embed in q.embeds:
            target = self._model(embed.table).__table__.alias(embed.alias)
            cols = tuple(dict.fromkeys(("id",) + embed.columns))
            selected += [target.c[col].label(f"{embed.alias}__{col}") for col in cols]
            source = source.outerjoin(target, target.c.id == table.c[embed.foreign_key])
            embeds.append(embed)

        stmt = select(*selected).select_from(source).where(*self._where(table, q))
        for col, descending in q.order:
            stmt = stmt.order_by(table.c[col].desc() if descending else table.c[col].asc())
        if q.limit is not None:
            stmt = stmt.limit(q.limit)

        with self._sessions() as db:
            rows = db.execute(stmt).mappings().all()

        out = []
        for row in rows:
            names = q.columns or tuple(col.name for col in table.c)
            rec = {name: _normalize(row[name]) for name in names}
            for embed in embeds:
                if row[f"{embed.alias}__id"] is None:
                    rec[embed.alias] = None
                else:
                    rec[embed.alias] = {
                        col: _normalize(row[f"{embed.alias}__{col}"]) for col in embed.columns
                    }
            out.append(rec)
        return out

    async def query(self, query: Query) -> List[Dict[str, Any]]:
        return await self._run(f"query {query.table}", self._query_sync, query)

    def _insert_sync(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        model = self._model(table)
        with self._sessions() as db:
            obj = model(**record)
            db.add(obj)
            db.commit()
            db.refresh(obj)
            return _row_to_dict(obj)

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row = await self._run(f"insert {table}", self._insert_sync, table, record)
        await self.feed.publish(ChangeEvent(table=table, kind="INSERT", record=row))
        return row

    def _update_sync(self, q: Query, patch: Dict[str, Any]) -> List[tuple]:
        model = self._model(q.table)
        with self._sessions() as db:
            objs = db.execute(select(model).where(*self._where(model.__table__, q))).scalars().all()
            changes = []
            for obj in objs:
                old = _row_to_dict(obj)
                for key, value in patch.items():
                    setattr(obj, key, value)
                changes.append((old, obj))
            db.commit()
            return [(old, _row_to_dict(obj)) for old, obj in changes]

    async def update(self, query: Query, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        changes = await self._run(f"update {query.table}", self._update_sync, query, patch)
        for old, new in changes:
            await self.feed.publish(
                ChangeEvent(table=query.table, kind="UPDATE", record=new, old_record=old)
            )
        return [new for _, new in changes]

    # ---------- realtime ----------

    async def subscribe(
        self,
        table: str,
        events: Iterable[str],
        callback: ChangeCallback,
        eq: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        return self.feed.add(table, events, callback, eq)

    # ---------- storage ----------

    def _object_path(self, bucket: str, path: str) -> Path:
        parts = PurePosixPath(path).parts
        if not parts or PurePosixPath(path).is_absolute() or ".." in parts or "/" in bucket:
            raise InvalidRequest(f"Invalid object path: {path}")
        return self._upload_dir.joinpath(bucket, *parts)

    @staticmethod
    def _write_file(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as buffer:
            buffer.write(data)

    async def upload_object(
        self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None
    ) -> str:
        target = self._object_path(bucket, path)
        try:
            await self._bounded(f"upload {bucket}", asyncio.to_thread(self._write_file, target, data))
        except OSError as e:
            logger.error(f"[sql] upload to {target} failed: {e}")
            raise BackendUnavailable("Object upload failed")
        logger.info(f"[sql] stored {len(data)} bytes at {bucket}/{path}")
        return path

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self._public_base_url}/uploads/{bucket}/{path}"

    # ---------- auth ----------

    def _issue_token(self, user: AuthUser) -> str:
        payload = {
            "sub": user.user_id,
            "email": user.email,
            "user_metadata": user.attributes,
            "exp": datetime.now(timezone.utc) + self._jwt_expires,
        }
        return jwt.encode(payload, self._jwt_secret, algorithm=JWT_ALGO)

    async def authenticate(self, token: Optional[str]) -> AuthUser:
        if not token:
            raise AuthRequired("Missing bearer token")
        try:
            payload = jwt.decode(
                token,
                self._jwt_secret,
                algorithms=[JWT_ALGO],
                options={"verify_aud": False},
            )
        except JWTError:
            raise AuthRequired("Invalid or expired token")

        sub = payload.get("sub")
        if not sub:
            raise AuthRequired("Token missing sub claim")
        return AuthUser(
            user_id=sub,
            email=payload.get("email"),
            attributes=payload.get("user_metadata") or {},
        )

    async def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> AuthUser:
        existing = await self.fetch_one(Query("accounts", eq={"email": email}))
        if existing:
            raise Conflict("Email already registered")
        row = await self.insert(
            "accounts",
            {"email": email, "password_hash": pwd.hash(password), "user_metadata": metadata},
        )
        logger.info(f"[sql] account created user_id={row['id']}")
        return AuthUser(user_id=row["id"], email=email, attributes=metadata)

    async def sign_in(self, email: str, password: str) -> AuthSession:
        row = await self.fetch_one(Query("accounts", eq={"email": email}))
        if not row or not pwd.verify(password, row["password_hash"]):
            raise AuthRequired("Invalid login credentials")
        user = AuthUser(user_id=row["id"], email=email, attributes=row["user_metadata"] or {})
        return AuthSession(user=user, access_token=self._issue_token(user))

    async def send_otp(self, email: str) -> None:
        code = str(100000 + secrets.randbelow(900000))
        await self.insert(
            "otps",
            {
                "email": email,
                "code": code,
                "verified": False,
                "expires_at": datetime.now(timezone.utc) + self._otp_ttl,
            },
        )
        # no mail transport locally; the code is only visible in the logs
        logger.debug(f"[sql] otp for {email}: {code}")

    async def verify_otp(self, email: str, code: str) -> bool:
        row = await self.fetch_one(
            Query(
                "otps",
                eq={"email": email, "code": code, "verified": False},
                gt={"expires_at": datetime.now(timezone.utc)},
            )
        )
        if not row:
            return False
        await self.update(Query("otps", eq={"id": row["id"]}), {"verified": True})
        return True
