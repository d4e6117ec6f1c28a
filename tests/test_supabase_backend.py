"""Supabase adapter against in-memory fakes of the async client."""

import asyncio
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient
from postgrest.exceptions import APIError
from supabase import AuthApiError

from app.backend.base import Query
from app.backend.supabase_backend import SupabaseBackend
from app.core.errors import AuthRequired, BackendTimeout, BackendUnavailable, Conflict, InvalidRequest
from app.main import create_app


class FakeRequest:
    """Chained postgrest request; every builder call is recorded."""

    def __init__(self, data=None, error=None, delay=0):
        self.data = data if data is not None else []
        self.error = error
        self.delay = delay
        self.calls = []

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return method

    async def execute(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(data=self.data)


class FakeChannel:
    def __init__(self, name):
        self.name = name
        self.handlers = []
        self.subscribed = False

    def on_postgres_changes(self, event, callback, table="*", schema="public", filter=None):
        self.handlers.append({"event": event, "callback": callback, "table": table, "filter": filter})
        return self

    async def subscribe(self):
        self.subscribed = True
        return self


class FakeAuth:
    def __init__(self):
        self.errors = {}
        self.user = SimpleNamespace(id="u1", email="kid@example.com", user_metadata={"user_type": "student"})

    async def _call(self, name):
        if name in self.errors:
            raise self.errors[name]
        return SimpleNamespace(user=self.user, session=SimpleNamespace(access_token="tok"))

    async def get_user(self, token):
        return await self._call("get_user")

    async def sign_up(self, credentials):
        return await self._call("sign_up")

    async def sign_in_with_password(self, credentials):
        return await self._call("sign_in")

    async def sign_in_with_otp(self, credentials):
        return await self._call("send_otp")

    async def verify_otp(self, params):
        return await self._call("verify_otp")


class FakeClient:
    def __init__(self):
        self.request = FakeRequest()
        self.tables = []
        self.channels = []
        self.removed = []
        self.auth = FakeAuth()

    def table(self, name):
        self.tables.append(name)
        return self.request

    def channel(self, name):
        channel = FakeChannel(name)
        self.channels.append(channel)
        return channel

    async def remove_channel(self, channel):
        self.removed.append(channel)

    async def remove_all_channels(self):
        self.removed.extend(self.channels)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def supabase(client):
    return SupabaseBackend(client, client, "https://proj.supabase.co/", timeout=1)


def _api_error(code, message):
    return APIError({"code": code, "message": message, "details": None, "hint": None})


# ---------- tables ----------

@pytest.mark.asyncio
async def test_query_builds_the_request(supabase, client):
    client.request.data = [{"id": "c1"}]
    rows = await supabase.query(
        Query("connections", eq={"mentor_id": "m1"}, limit=5).order_by("created_at", descending=True)
    )

    assert rows == [{"id": "c1"}]
    assert client.tables == ["connections"]
    assert client.request.calls == [
        ("select", ("*",), {}),
        ("eq", ("mentor_id", "m1"), {}),
        ("order", ("created_at",), {"desc": True}),
        ("limit", (5,), {}),
    ]


@pytest.mark.asyncio
async def test_unique_violation_maps_to_conflict(supabase, client):
    client.request.error = _api_error("23505", "duplicate key value violates unique constraint")
    with pytest.raises(Conflict):
        await supabase.insert("connections", {"student_id": "s", "mentor_id": "m"})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [_api_error("42501", "permission denied"), httpx.ConnectError("connection refused")],
)
async def test_other_store_errors_map_to_unavailable(supabase, client, error):
    client.request.error = error
    with pytest.raises(BackendUnavailable) as exc:
        await supabase.query(Query("messages"))
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_insert_without_returned_row_is_an_error(supabase, client):
    client.request.data = []
    with pytest.raises(BackendUnavailable):
        await supabase.insert("messages", {"content": "hi"})


@pytest.mark.asyncio
async def test_slow_request_times_out(client):
    slow = SupabaseBackend(client, client, "https://proj.supabase.co", timeout=0.05)
    client.request.delay = 0.5
    with pytest.raises(BackendTimeout):
        await slow.query(Query("messages"))


def test_public_url(supabase):
    assert (
        supabase.get_public_url("message-images", "/c1/a.png")
        == "https://proj.supabase.co/storage/v1/object/public/message-images/c1/a.png"
    )


# ---------- realtime ----------

@pytest.mark.asyncio
async def test_subscription_filters_on_server_and_on_receipt(supabase, client):
    received = []
    sub = await supabase.subscribe(
        "messages", ["insert"], received.append, eq={"connection_id": "c1", "sender_id": "s1"}
    )

    channel = client.channels[0]
    assert channel.subscribed
    [handler] = channel.handlers
    assert handler["event"] == "INSERT"
    assert handler["filter"] == "connection_id=eq.c1"

    def payload(sender):
        record = {"id": f"m-{sender}", "connection_id": "c1", "sender_id": sender}
        return {"data": {"table": "messages", "type": "INSERT", "record": record}}

    handler["callback"](payload("s1"))
    handler["callback"](payload("someone-else"))
    for _ in range(3):
        await asyncio.sleep(0)

    assert [e.record["id"] for e in received] == ["m-s1"]

    await sub.unsubscribe()
    await sub.unsubscribe()
    assert client.removed == [channel]


# ---------- auth ----------

@pytest.mark.asyncio
async def test_signup_errors_are_mapped(supabase, client):
    client.auth.errors["sign_up"] = AuthApiError("User already registered", 422, "user_already_exists")
    with pytest.raises(Conflict):
        await supabase.sign_up("kid@example.com", "secret1", {})

    client.auth.errors["sign_up"] = AuthApiError("Password should be at least 6 characters", 422, "weak_password")
    with pytest.raises(InvalidRequest):
        await supabase.sign_up("kid@example.com", "123", {})

    client.auth.errors["sign_up"] = httpx.ConnectError("connection refused")
    with pytest.raises(BackendUnavailable):
        await supabase.sign_up("kid@example.com", "secret1", {})


@pytest.mark.asyncio
async def test_otp_and_token_errors_are_mapped(supabase, client):
    client.auth.errors["send_otp"] = AuthApiError("Signups not allowed for otp", 422, "otp_disabled")
    with pytest.raises(InvalidRequest):
        await supabase.send_otp("kid@example.com")

    client.auth.errors["verify_otp"] = AuthApiError("Token has expired or is invalid", 403, "otp_expired")
    assert await supabase.verify_otp("kid@example.com", "123456") is False

    client.auth.errors["get_user"] = AuthApiError("invalid JWT", 401, "bad_jwt")
    with pytest.raises(AuthRequired):
        await supabase.authenticate("expired-token")


@pytest.mark.asyncio
async def test_successful_auth_calls(supabase):
    user = await supabase.sign_up("kid@example.com", "secret1", {"user_type": "student"})
    assert user.user_id == "u1"
    assert user.user_type == "student"

    session = await supabase.sign_in("kid@example.com", "secret1")
    assert session.access_token == "tok"
    assert (await supabase.authenticate("tok")).email == "kid@example.com"
    assert await supabase.verify_otp("kid@example.com", "123456") is True


def test_signup_rejection_is_a_400_over_http(supabase, client):
    client.auth.errors["sign_up"] = AuthApiError("User already registered", 422, "user_already_exists")
    client.auth.errors["send_otp"] = AuthApiError("Signups not allowed for otp", 422, "otp_disabled")

    with TestClient(create_app(supabase)) as http:
        resp = http.post(
            "/api/auth/signup",
            json={"email": "kid@example.com", "password": "secret1", "fullName": "Kid", "userType": "student"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "User already registered"

        otp = http.post("/api/auth/send-otp", json={"email": "kid@example.com"})
        assert otp.status_code == 400
        assert otp.json()["detail"] == "Failed to send OTP"
