"""
FastAPI Application Factory
===========================

Entry point for the authentication broker service.

Routers:
    - {AUTH_BASE_PATH}/*  : Auth actions (signin, callback, signout, session, csrf, providers, error)
    - /health             : Health check endpoint

Environment Variables Required:
    - AUTH_SECRET: Comma-separated signing secrets, newest first
    - AUTH_URL: Public origin of the service (e.g., "https://app.example.com")
    - AUTH_GITHUB_ID / AUTH_GITHUB_SECRET, AUTH_GOOGLE_ID / AUTH_GOOGLE_SECRET,
      AUTH_OIDC_ISSUER / AUTH_OIDC_ID / AUTH_OIDC_SECRET: Provider credentials
    - ALLOWED_ORIGINS: Comma-separated CORS origins (optional)
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn authbroker.main:create_app --factory --reload --host 0.0.0.0 --port 8080

    Production:
        uvicorn authbroker.main:create_app --factory --host 0.0.0.0 --port 8080 --workers 4
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .adapters import Adapter
from .auth.routes import auth_router
from .config import Settings, get_settings, validate_configuration
from .options import Callbacks, Events, build_options
from .providers import Provider


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Report configuration warnings
        - Log service startup information

    Shutdown tasks:
        - Log shutdown information
    """
    logger = logging.getLogger("authbroker.main")
    settings: Settings = app.state.settings
    options = app.state.auth_options

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(warning)

    logger.info(
        "Auth broker started",
        extra={
            "service": "authbroker",
            "version": __version__,
            "base_path": options.base_path,
            "providers": [p.id for p in options.providers],
            "session_strategy": options.session.strategy,
        }
    )

    yield

    logger.info("Auth broker shutdown complete")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    providers: Optional[List[Provider]] = None,
    adapter: Optional[Adapter] = None,
    callbacks: Optional[Callbacks] = None,
    events: Optional[Events] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory function.

    Resolves the auth options before the app is returned, so configuration
    errors (missing secret, database strategy without an adapter) stop the
    process before any request is served.

    Args:
        settings: Settings to use instead of the environment
        providers: Provider descriptors (defaults to the ones configured by env)
        adapter: Storage adapter
        callbacks: Policy callbacks
        events: Event hooks
        http_transport: httpx transport for outbound provider calls

    Returns:
        FastAPI: Configured application instance

    Raises:
        ConfigurationError: If the configuration cannot serve requests
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    options = build_options(
        settings,
        providers=providers,
        adapter=adapter,
        callbacks=callbacks,
        events=events,
        http_transport=http_transport,
    )

    app = FastAPI(
        title="Auth Broker",
        description="OAuth2/OIDC login-session broker",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.settings = settings
    app.state.auth_options = options

    # Configure CORS
    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(
        auth_router,
        prefix=options.base_path,
        tags=["Authentication"]
    )

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        """
        Health check endpoint.

        Returns:
            dict: Service health information
        """
        return {
            "status": "ok",
            "service": "authbroker",
            "version": __version__
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("authbroker.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None
            }
        )

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "authbroker.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level=settings.LOG_LEVEL.lower()
    )
