import os
from dotenv import load_dotenv
from loguru import logger

load_dotenv()

def _get_env(key: str, default: str | None = None) -> str:
    val = os.getenv(key, default)
    if val is None:
        raise RuntimeError(f"Missing required env var: {key}")
    return val

APP_ENV = _get_env("APP_ENV", "local")
LOG_LEVEL = _get_env("LOG_LEVEL", "DEBUG")
PORT = int(_get_env("PORT", "5000"))

# "sql" runs against DATABASE_URL with local auth/storage, "supabase" uses the hosted project
BACKEND_MODE = _get_env("BACKEND_MODE", "sql").lower()
DATABASE_URL = _get_env("DATABASE_URL", "sqlite:///./mentorlink.db")

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY")

JWT_SECRET = _get_env("JWT_SECRET", "change-me-in-production")
JWT_EXPIRES_MINUTES = int(_get_env("JWT_EXPIRES_MINUTES", str(60 * 24 * 7)))
OTP_TTL_MINUTES = int(_get_env("OTP_TTL_MINUTES", "15"))

REQUEST_TIMEOUT_SECONDS = float(_get_env("REQUEST_TIMEOUT_SECONDS", "10"))

UPLOAD_DIR = _get_env("UPLOAD_DIR", "static/uploads")
PUBLIC_BASE_URL = _get_env("PUBLIC_BASE_URL", f"http://localhost:{PORT}")
CORS_ORIGINS = [o.strip() for o in _get_env("CORS_ORIGINS", "*").split(",") if o.strip()]

logger.debug(
    f"Config loaded: APP_ENV={APP_ENV}, BACKEND_MODE={BACKEND_MODE}, "
    f"DATABASE_URL={DATABASE_URL}, LOG_LEVEL={LOG_LEVEL}"
)
