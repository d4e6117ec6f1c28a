from loguru import logger

from app.backend.base import DataBackend
from app.backend.sql_backend import SqlBackend
from app.backend.supabase_backend import SupabaseBackend
from app.core import config
from app.core.db import SessionLocal, engine
from app.core.init_db import init_db


async def build_backend() -> DataBackend:
    """Construct the one backend client the process talks to."""
    if config.BACKEND_MODE == "supabase":
        return await SupabaseBackend.connect(
            config.SUPABASE_URL,
            config.SUPABASE_KEY,
            config.SUPABASE_ANON_KEY,
            timeout=config.REQUEST_TIMEOUT_SECONDS,
        )

    if config.BACKEND_MODE == "sql":
        init_db(engine)
        logger.info(f"[backend] sql backend on {engine.url.render_as_string(hide_password=True)}")
        return SqlBackend(
            SessionLocal,
            jwt_secret=config.JWT_SECRET,
            jwt_expires_minutes=config.JWT_EXPIRES_MINUTES,
            otp_ttl_minutes=config.OTP_TTL_MINUTES,
            upload_dir=config.UPLOAD_DIR,
            public_base_url=config.PUBLIC_BASE_URL,
            timeout=config.REQUEST_TIMEOUT_SECONDS,
        )

    raise RuntimeError(f"Invalid BACKEND_MODE: {config.BACKEND_MODE}")
