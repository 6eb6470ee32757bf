"""
Main entry point for the FastAPI application.
Configures lifespan events and mounts routers.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dmchat.api.routes import router as api_router
from dmchat.config.settings import Settings, settings
from dmchat.services.runtime import ChatRuntime

# Setup Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(config: Optional[Settings] = None, runtime: Optional[ChatRuntime] = None) -> FastAPI:
    """Factory to create the app."""
    config = config or settings
    chat_runtime = runtime or ChatRuntime.from_settings(config)

    # pylint: disable=unused-argument
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application Lifecycle Manager.
        Tears down the active chat session and the change feed on shutdown.
        """
        logger.info("Starting %s...", config.app_name)
        yield
        logger.info("Shutting down %s...", config.app_name)
        await chat_runtime.shutdown()

    application = FastAPI(
        title=config.app_name,
        description="Direct messaging API",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.state.chat_runtime = chat_runtime

    # Middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict this
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    application.include_router(api_router, prefix="/api")

    return application
