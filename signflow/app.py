from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from signflow.application import configure_signing_service
from signflow.core.logging import configure_logging, get_logger
from signflow.core.settings import Settings
from signflow.infrastructure import configure_signing_provider, provider_from_settings
from signflow.routes import cron, sheets, webhooks
from signflow.routes.errors import register_error_handlers

logger = get_logger("app")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(level=settings.log_level, format="json" if settings.log_format == "json" else "console")

    app = FastAPI(title="Signflow Signing Lifecycle API", version="0.1.0")
    app.state.settings = settings

    configure_signing_service(settings)
    provider = provider_from_settings(settings)
    if provider is not None:
        configure_signing_provider(provider)
        logger.info("signing_provider_configured", provider="http", api_base=settings.provider_api_base)
    else:
        configure_signing_provider(None)
        logger.info("signing_provider_configured", provider="mock")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(webhooks.router, prefix="/api")
    app.include_router(sheets.router, prefix="/api")
    app.include_router(cron.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Signflow Signing Lifecycle API",
                "docs": "/docs",
                "health": "/api/sheets",
            }
        )

    return app


app = create_app()
