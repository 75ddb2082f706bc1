"""
LedgerMesh - FastAPI Application Entry Point

This is the main entry point for the FastAPI application.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ledgermesh.config import Settings, settings as default_settings
from ledgermesh.database import close_db
from ledgermesh.dependencies import session_repository_scope
from ledgermesh.routers import consolidation
from ledgermesh.services.cache_service import ReportCache
from ledgermesh.services.consolidation_metrics import ConsolidationCacheMetrics, get_cache_metrics
from ledgermesh.services.report_export_service import build_pdf_renderer
from ledgermesh.utils.error_handling import ErrorTrackingMiddleware, setup_exception_handlers

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if default_settings.debug else getattr(logging, default_settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI.
    Handles startup and shutdown events.
    """
    # Startup
    app_settings: Settings = app.state.settings
    logger.info(f"Starting {app_settings.app_name}...")
    logger.info(f"Environment: {app_settings.app_env}")
    logger.info(f"Report cache TTL: {app_settings.consol_cache_ttl_seconds}s")
    logger.info(f"PDF export: {'enabled' if app.state.pdf_renderer.enabled else 'disabled'}")
    
    yield
    
    # Shutdown
    logger.info(f"Shutting down {app_settings.app_name}...")
    app.state.report_cache.bust()
    await close_db()
    logger.info("Database connections closed")


def create_app(
    app_settings: Optional[Settings] = None,
    metrics: Optional[ConsolidationCacheMetrics] = None,
) -> FastAPI:
    """Build the application with its process-wide report cache and PDF renderer."""
    app_settings = app_settings or default_settings
    metrics = metrics or get_cache_metrics()
    
    app = FastAPI(
        title=app_settings.app_name,
        description="Multi-entity financial consolidation engine",
        version="0.1.0",
        docs_url="/api/docs" if app_settings.is_development else None,
        redoc_url="/api/redoc" if app_settings.is_development else None,
        lifespan=lifespan,
    )
    
    app.state.settings = app_settings
    app.state.metrics = metrics
    app.state.report_cache = ReportCache(
        ttl_seconds=app_settings.consol_cache_ttl_seconds,
        metrics=metrics,
    )
    app.state.pdf_renderer = build_pdf_renderer(app_settings)
    app.state.csv_flush_every = app_settings.csv_flush_every
    app.state.repository_scope = session_repository_scope
    
    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[consolidation.WARNING_HEADER, "Content-Disposition"],
    )
    app.add_middleware(ErrorTrackingMiddleware)
    setup_exception_handlers(app)
    
    # ===========================================
    # API ROUTES
    # ===========================================
    
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "report_cache_entries": len(app.state.report_cache),
            "pdf_export": app.state.pdf_renderer.enabled,
        }
    
    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus scrape endpoint."""
        return Response(
            content=generate_latest(app.state.metrics.registry),
            media_type=CONTENT_TYPE_LATEST,
        )
    
    app.include_router(consolidation.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.debug,
    )
