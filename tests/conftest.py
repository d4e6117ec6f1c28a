import pytest

from app.backend.base import AuthUser
from app.backend.sql_backend import SqlBackend
from app.core.db import make_engine, make_session_factory
from app.core.init_db import init_db
from app.modules.connections.models import new_id
from app.modules.connections.service import ConnectionLifecycle


@pytest.fixture
def backend(tmp_path):
    """SQL backend on a private in-memory SQLite database."""
    engine = make_engine("sqlite://")
    init_db(engine)
    yield SqlBackend(
        make_session_factory(engine),
        jwt_secret="test-secret",
        upload_dir=str(tmp_path / "uploads"),
        public_base_url="http://test",
        timeout=5,
    )
    engine.dispose()


@pytest.fixture
def lifecycle(backend):
    return ConnectionLifecycle(backend)


@pytest.fixture
def make_user(backend):
    """Create a profile row and return the matching authenticated actor."""

    async def _make(user_type: str = "student", **fields) -> AuthUser:
        user_id = new_id()
        await backend.insert(
            "profiles",
            {
                "id": user_id,
                "email": f"{user_id[:8]}@example.com",
                "full_name": fields.pop("full_name", f"{user_type} {user_id[:4]}"),
                "user_type": user_type,
                **fields,
            },
        )
        return AuthUser(user_id=user_id, email=f"{user_id[:8]}@example.com", attributes={"user_type": user_type})

    return _make
