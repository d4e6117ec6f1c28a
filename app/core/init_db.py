from loguru import logger
from sqlalchemy.engine import Engine

from app.core.db import Base

# Import all models so SQLAlchemy registers them
from app.modules.accounts.models import Account, Otp
from app.modules.connections.models import Connection
from app.modules.messaging.models import Message
from app.modules.profiles.models import Profile

TABLES = {
    "accounts": Account,
    "otps": Otp,
    "connections": Connection,
    "messages": Message,
    "profiles": Profile,
}


def init_db(engine: Engine) -> None:
    logger.info("Creating database tables")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")
