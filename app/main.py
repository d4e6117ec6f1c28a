import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from loguru import logger

from app.backend.base import DataBackend
from app.backend.provider import build_backend
from app.core.config import CORS_ORIGINS, PORT, UPLOAD_DIR
from app.core.logging import setup_logging
from app.modules.accounts.routes import router as accounts_router
from app.modules.connections.routes import router as connections_router
from app.modules.messaging.routes import router as messaging_router
from app.modules.profiles.routes import router as profiles_router

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # a backend handed in by the caller (tests) is theirs to close
    owned = getattr(app.state, "backend", None) is None
    if owned:
        app.state.backend = await build_backend()
    logger.info(f"MentorLink backend ready ({app.state.backend.name})")
    try:
        yield
    finally:
        if owned:
            await app.state.backend.close()
            logger.info("Backend closed")


def create_app(backend: Optional[DataBackend] = None) -> FastAPI:
    logger.info("Starting MentorLink backend")

    app = FastAPI(
        title="MentorLink Backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.backend = backend

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    os.makedirs(UPLOAD_DIR, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")

    app.include_router(accounts_router)
    app.include_router(profiles_router)
    # Connections module
    app.include_router(connections_router)
    app.include_router(messaging_router)

    @app.get("/health")
    def health():
        logger.debug("Health check hit")
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=PORT)
