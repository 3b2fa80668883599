"""
HTTP surface of the operator: health checks and Prometheus metrics.
"""
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from dbuser_operator.api import health
from dbuser_operator.config.settings import settings


def create_app() -> FastAPI:
    """Build the health and metrics application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.mount("/metrics", make_asgi_app())
    return app
