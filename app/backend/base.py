"""
Contract for the Backend Data Service.

The connection and messaging code only ever talks to a ``DataBackend``:
hosted auth, relational tables, object storage and realtime change feeds.
Two adapters implement it, one for a Supabase project and one for a plain
SQL database (used for local runs and the test suite).
"""
from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from app.core.errors import BackendTimeout


@dataclass(frozen=True)
class Embed:
    """Foreign-key join: attach ``table`` rows referenced by ``foreign_key`` under ``alias``."""

    table: str
    foreign_key: str
    columns: Tuple[str, ...]
    alias: str


@dataclass
class Query:
    table: str
    eq: Dict[str, Any] = field(default_factory=dict)
    in_: Dict[str, Sequence[Any]] = field(default_factory=dict)
    gt: Dict[str, Any] = field(default_factory=dict)
    is_null: Tuple[str, ...] = ()
    # case-insensitive substring match, OR-ed together
    contains_any: Dict[str, str] = field(default_factory=dict)
    order: List[Tuple[str, bool]] = field(default_factory=list)  # (column, descending)
    limit: Optional[int] = None
    columns: Tuple[str, ...] = ()
    embeds: Tuple[Embed, ...] = ()

    def order_by(self, column: str, descending: bool = False) -> "Query":
        self.order.append((column, descending))
        return self


@dataclass
class ChangeEvent:
    table: str
    kind: str  # INSERT | UPDATE | DELETE
    record: Dict[str, Any]
    old_record: Optional[Dict[str, Any]] = None


ChangeCallback = Callable[[ChangeEvent], Optional[Awaitable[None]]]


@dataclass
class AuthUser:
    user_id: str
    email: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_type(self) -> Optional[str]:
        return self.attributes.get("user_type")


@dataclass
class AuthSession:
    user: AuthUser
    access_token: Optional[str]


def matches(record: Dict[str, Any], eq: Optional[Dict[str, Any]]) -> bool:
    if not eq:
        return True
    return all(str(record.get(k)) == str(v) for k, v in eq.items())


async def deliver(callback: ChangeCallback, event: ChangeEvent) -> None:
    result = callback(event)
    if inspect.isawaitable(result):
        await result


class Subscription(ABC):
    """Handle for one open change feed. Release it with ``unsubscribe``."""

    def __init__(self, table: str, events: Iterable[str], eq: Optional[Dict[str, Any]]):
        self.table = table
        self.events = tuple(e.upper() for e in events)
        self.eq = dict(eq or {})
        self.closed = False

    @abstractmethod
    async def unsubscribe(self) -> None:
        ...


class DataBackend(ABC):
    name = "abstract"

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def _bounded(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] {op} timed out after {self.timeout}s")
            raise BackendTimeout(f"{op} timed out after {self.timeout:g}s")

    # ---------- auth ----------

    @abstractmethod
    async def authenticate(self, token: Optional[str]) -> AuthUser:
        ...

    @abstractmethod
    async def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> AuthUser:
        ...

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthSession:
        ...

    @abstractmethod
    async def send_otp(self, email: str) -> None:
        ...

    @abstractmethod
    async def verify_otp(self, email: str, code: str) -> bool:
        ...

    # ---------- tables ----------

    @abstractmethod
    async def query(self, query: Query) -> List[Dict[str, Any]]:
        ...

    async def fetch_one(self, query: Query) -> Optional[Dict[str, Any]]:
        query.limit = 1
        rows = await self.query(query)
        return rows[0] if rows else None

    @abstractmethod
    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(self, query: Query, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        ...

    # ---------- realtime ----------

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        events: Iterable[str],
        callback: ChangeCallback,
        eq: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        ...

    # ---------- storage ----------

    @abstractmethod
    async def upload_object(
        self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None
    ) -> str:
        ...

    @abstractmethod
    def get_public_url(self, bucket: str, path: str) -> str:
        ...

    async def close(self) -> None:
        return None
