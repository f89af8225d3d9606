"""
Main entry point for the FastAPI application.
Configures lifespan events and mounts routers.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ledgerchat.api.routes import router as api_router
from ledgerchat.config.settings import settings
from ledgerchat.services.session import chat_service
from ledgerchat.services.wallet import current_wallet_provider

# Setup Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# pylint: disable=redefined-outer-name
# pylint: disable=unused-argument
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application Lifecycle Manager.
    Connects the configured wallet, if any, and shuts the chat session down
    (sync loops, push channel) on exit.
    """
    logger.info("Starting %s (program %s)...", settings.app_name, settings.program_id or "<unset>")

    # Auto-connect when a wallet is fixed by configuration
    if settings.wallet_public_key:
        logger.info("Auto-connecting wallet: %s", settings.wallet_public_key)
        try:
            wallet = await current_wallet_provider.connect(settings.wallet_public_key)
            await chat_service.initialize(wallet)
        except ValueError as e:
            logger.warning("Initialization skipped: %s", e)

    yield

    logger.info("Shutting down %s...", settings.app_name)
    await chat_service.shutdown()


def create_app() -> FastAPI:
    """Factory to create the app."""
    application = FastAPI(
        title=settings.app_name,
        description="Ledger-backed chat client API",
        version="0.1.0",
        lifespan=lifespan,
    )

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


app = create_app()
