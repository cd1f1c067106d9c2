"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from smartcomm.api.v1.routes import api_router
from smartcomm.core.config import get_settings
from smartcomm.core.tenant_middleware import TenantMiddleware
from smartcomm.core.validation import validate_providers_on_startup
from smartcomm.infrastructure.llm.factory import create_llm_provider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - startup and shutdown events.

    Startup:
    - Validates provider configurations (strict in production)
    - Creates the LLM provider for the fallback evaluator

    Shutdown:
    - Releases the LLM provider
    """
    settings = get_settings()
    logger.info("Starting SmartComm...")

    strict_validation = settings.environment == "production"
    try:
        validate_providers_on_startup(strict=strict_validation, sms_provider=settings.sms_provider)
    except RuntimeError as e:
        if strict_validation:
            logger.error(f"Startup failed: {e}")
            raise
        logger.warning(f"Configuration warnings (non-fatal in {settings.environment}): {e}")

    app.state.llm_provider = await create_llm_provider(settings.llm_provider)

    logger.info("SmartComm started successfully")

    yield

    logger.info("Shutting down SmartComm...")
    if app.state.llm_provider is not None:
        await app.state.llm_provider.cleanup()
    logger.info("SmartComm shutdown complete")


settings = get_settings()

app = FastAPI(
    title="SmartComm",
    description="Automated customer outreach decisions for service businesses",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(TenantMiddleware)

app.include_router(api_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {"message": "SmartComm API", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
