import time
from datetime import datetime, timedelta, timezone

import pytest
from loguru import logger

from app.backend.base import Embed, Query
from app.core.errors import AuthRequired, BackendTimeout, Conflict, InvalidRequest


@pytest.mark.asyncio
async def test_filters_order_and_limit(backend):
    for name, rating in [("Ada", 4.9), ("Bob", 3.2), ("Cy", None)]:
        await backend.insert("profiles", {"id": name.lower(), "full_name": name, "user_type": "mentor", "rating": rating})
    await backend.insert("profiles", {"id": "stu", "full_name": "Stu", "user_type": "student"})

    mentors = await backend.query(Query("profiles", eq={"user_type": "mentor"}).order_by("full_name", descending=True))
    assert [r["full_name"] for r in mentors] == ["Cy", "Bob", "Ada"]

    rated = await backend.query(Query("profiles", gt={"rating": 4.0}))
    assert [r["id"] for r in rated] == ["ada"]

    unrated = await backend.query(Query("profiles", eq={"user_type": "mentor"}, is_null=("rating",)))
    assert [r["id"] for r in unrated] == ["cy"]

    some = await backend.query(Query("profiles", in_={"id": ["ada", "stu"]}, columns=("id",)).order_by("id"))
    assert some == [{"id": "ada"}, {"id": "stu"}]

    found = await backend.query(Query("profiles", contains_any={"full_name": "BO", "expertise": "BO"}))
    assert [r["id"] for r in found] == ["bob"]

    first = await backend.fetch_one(Query("profiles").order_by("id"))
    assert first["id"] == "ada"
    assert await backend.fetch_one(Query("profiles", eq={"id": "nobody"})) is None


@pytest.mark.asyncio
async def test_embed_joins_partner_row(backend):
    await backend.insert("profiles", {"id": "m1", "full_name": "Mentor One", "user_type": "mentor"})
    await backend.insert("connections", {"student_id": "s1", "mentor_id": "m1"})
    await backend.insert("connections", {"student_id": "s1", "mentor_id": "ghost"})

    rows = await backend.query(
        Query(
            "connections",
            eq={"student_id": "s1"},
            embeds=(Embed("profiles", "mentor_id", ("full_name",), "partner"),),
        ).order_by("mentor_id")
    )
    by_mentor = {r["mentor_id"]: r["partner"] for r in rows}
    assert by_mentor == {"ghost": None, "m1": {"full_name": "Mentor One"}}


@pytest.mark.asyncio
async def test_timestamps_come_back_timezone_aware(backend):
    row = await backend.insert("connections", {"student_id": "s", "mentor_id": "m"})
    assert row["created_at"].tzinfo is not None

    fetched = await backend.fetch_one(Query("connections", eq={"id": row["id"]}))
    assert fetched["created_at"] == row["created_at"]


@pytest.mark.asyncio
async def test_active_pair_is_unique_at_the_store(backend):
    await backend.insert("connections", {"student_id": "s", "mentor_id": "m"})
    with pytest.raises(Conflict):
        await backend.insert("connections", {"student_id": "s", "mentor_id": "m", "status": "accepted"})
    # terminal rows do not count
    await backend.insert("connections", {"student_id": "s", "mentor_id": "m", "status": "rejected"})


@pytest.mark.asyncio
async def test_update_returns_changed_rows_and_publishes(backend):
    events = []
    await backend.subscribe("connections", ["UPDATE"], events.append)
    row = await backend.insert("connections", {"student_id": "s", "mentor_id": "m"})

    changed = await backend.update(Query("connections", eq={"id": row["id"], "status": "pending"}), {"status": "accepted"})
    assert [r["status"] for r in changed] == ["accepted"]
    assert await backend.update(Query("connections", eq={"id": row["id"], "status": "pending"}), {"status": "rejected"}) == []

    assert len(events) == 1
    assert events[0].old_record["status"] == "pending"
    assert events[0].record["status"] == "accepted"


@pytest.mark.asyncio
async def test_subscriptions_are_scoped_and_released(backend):
    seen_a, seen_b = [], []

    async def on_b(event):
        seen_b.append(event.record["content"])

    sub_a = await backend.subscribe("messages", ["INSERT"], lambda e: seen_a.append(e.record["content"]), eq={"connection_id": "a"})
    await backend.subscribe("messages", ["INSERT"], on_b, eq={"connection_id": "b"})

    base = {"sender_id": "x", "receiver_id": "y"}
    await backend.insert("messages", {**base, "connection_id": "a", "content": "to a"})
    await backend.insert("messages", {**base, "connection_id": "b", "content": "to b"})
    assert seen_a == ["to a"]
    assert seen_b == ["to b"]

    await sub_a.unsubscribe()
    assert sub_a.closed
    assert len(backend.feed) == 1
    await backend.insert("messages", {**base, "connection_id": "a", "content": "missed"})
    assert seen_a == ["to a"]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_fail_the_write(backend):
    def boom(event):
        raise RuntimeError("listener bug")

    await backend.subscribe("profiles", ["*"], boom)
    row = await backend.insert("profiles", {"id": "p", "user_type": "student"})
    assert row["id"] == "p"


@pytest.mark.asyncio
async def test_slow_backend_call_times_out(backend, monkeypatch):
    def slow_query(q):
        time.sleep(0.3)
        return []

    backend.timeout = 0.05
    monkeypatch.setattr(backend, "_query_sync", slow_query)
    with pytest.raises(BackendTimeout) as exc:
        await backend.query(Query("profiles"))
    assert exc.value.status_code == 504


@pytest.mark.asyncio
async def test_sign_up_sign_in_and_authenticate(backend):
    user = await backend.sign_up("sam@example.com", "secret1", {"full_name": "Sam", "user_type": "mentor"})
    with pytest.raises(Conflict):
        await backend.sign_up("sam@example.com", "other", {})

    with pytest.raises(AuthRequired):
        await backend.sign_in("sam@example.com", "wrong")

    session = await backend.sign_in("sam@example.com", "secret1")
    assert session.user.user_id == user.user_id

    who = await backend.authenticate(session.access_token)
    assert who.user_id == user.user_id
    assert who.email == "sam@example.com"
    assert who.user_type == "mentor"

    for bad in (None, "", "not-a-token"):
        with pytest.raises(AuthRequired):
            await backend.authenticate(bad)


@pytest.mark.asyncio
async def test_otp_is_single_use_and_expires(backend):
    await backend.send_otp("otp@example.com")
    row = await backend.fetch_one(Query("otps", eq={"email": "otp@example.com"}))
    assert len(row["code"]) == 6

    assert not await backend.verify_otp("otp@example.com", "000000" if row["code"] != "000000" else "111111")
    assert await backend.verify_otp("otp@example.com", row["code"])
    assert not await backend.verify_otp("otp@example.com", row["code"])

    await backend.insert(
        "otps",
        {
            "email": "late@example.com",
            "code": "123456",
            "verified": False,
            "expires_at": datetime.now(timezone.utc) - timedelta(minutes=1),
        },
    )
    assert not await backend.verify_otp("late@example.com", "123456")


@pytest.mark.asyncio
async def test_upload_and_public_url(backend, tmp_path):
    path = await backend.upload_object("profile-images", "u1/profile.png", b"\x89PNG", "image/png")
    assert path == "u1/profile.png"
    assert (tmp_path / "uploads" / "profile-images" / "u1" / "profile.png").read_bytes() == b"\x89PNG"
    assert backend.get_public_url("profile-images", path) == "http://test/uploads/profile-images/u1/profile.png"

    for bad in ("../escape.png", "/etc/passwd", ""):
        with pytest.raises(InvalidRequest):
            await backend.upload_object("profile-images", bad, b"x")


@pytest.mark.asyncio
async def test_otp_code_goes_to_the_debug_log(backend):
    lines = []
    sink = logger.add(lines.append, level="DEBUG", format="{message}")
    try:
        await backend.send_otp("log@example.com")
    finally:
        logger.remove(sink)

    row = await backend.fetch_one(Query("otps", eq={"email": "log@example.com"}))
    assert any(f"otp for log@example.com: {row['code']}" in line for line in lines)
