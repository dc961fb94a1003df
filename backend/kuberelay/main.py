import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.router import api_router
from .config import Settings, get_settings
from .core.logging import get_logger, setup_logging
from .core.request_context import request_id_var
from .dependencies import get_upstream_client
from .exceptions import register_exception_handlers
from .services.upstream import UpstreamClient


def create_app(settings: Optional[Settings] = None, upstream: Optional[UpstreamClient] = None) -> FastAPI:
    """Build the application. ``upstream`` replaces the client built from settings."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = get_logger(__name__)
        setup_logging(settings)

        owns_client = upstream is None
        app.state.upstream = upstream or UpstreamClient.from_settings(settings)
        logger.info("Upstream client ready: %s", app.state.upstream.base_url)

        yield

        logger.info("Shutting down relay backend...")
        if owns_client:
            await app.state.upstream.aclose()
            logger.info("Upstream client closed")

    app = FastAPI(
        title="kuberelay",
        description="List-then-watch relay between the cluster API and the dashboard",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/ready")
    async def readiness_check(client: UpstreamClient = Depends(get_upstream_client)):
        # upstream failures surface as the 502 error envelope
        version = await client.get_version()
        return {"status": "ready", "upstream": version.get("gitVersion")}

    return app


app = create_app()
