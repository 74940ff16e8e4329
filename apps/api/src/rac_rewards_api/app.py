from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from rac_rewards_api.core.settings import settings
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.membership import get_event_publisher
from .services.notifications import HttpMemberDirectory, NotificationService


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    publisher = get_event_publisher()
    notification_service: NotificationService | None = None

    if settings.membership_notifications_enabled and settings.member_directory_url:
        notification_service = NotificationService(
            HttpMemberDirectory(
                settings.member_directory_url,
                api_key=settings.member_directory_api_key,
            )
        )
        publisher.subscribe(notification_service)
        logger.info("Membership notifications enabled", directory_url=settings.member_directory_url)
    elif settings.membership_notifications_enabled:
        logger.warning(
            "Membership notifications disabled",
            reason="member_directory_url is not configured",
        )
    else:
        logger.info(
            "Membership notifications disabled",
            reason="membership_notifications_enabled is false",
        )

    app.state.lifecycle_publisher = publisher
    app.state.notification_service = notification_service

    try:
        yield
    finally:
        await publisher.drain()
        if notification_service is not None:
            publisher.unsubscribe(notification_service)


def create_app() -> FastAPI:
    """Application factory for the RAC Rewards membership service."""
    configure_logging(
        service_name="rac-rewards-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        json_output=settings.log_json,
    )

    app = FastAPI(
        title="RAC Rewards Membership API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="rac-rewards-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
