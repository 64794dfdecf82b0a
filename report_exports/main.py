import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from report_exports import __version__
from report_exports.config import ExportSettings
from report_exports.jobs_routes import router as exports_router
from report_exports.service import ExportService

logger = logging.getLogger(__name__)


def build_default_service(settings: Optional[ExportSettings] = None) -> ExportService:
    """Service backed by Supabase when configured, otherwise in memory."""
    settings = settings or ExportSettings.from_env()
    repository = None
    if os.environ.get("SUPABASE_URL"):
        from report_exports.repository import SupabaseExportRepository
        repository = SupabaseExportRepository()
    else:
        logger.warning("SUPABASE_URL not set, using in-memory job storage")
    return ExportService(settings, repository=repository)


def create_app(service: Optional[ExportService] = None) -> FastAPI:
    """Build the API app. The service is started and stopped with the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        export_service = service or build_default_service()
        await export_service.initialize()
        app.state.export_service = export_service
        logger.info(f"Report Exports API started (storage: {export_service.store.base_directory})")
        try:
            yield
        finally:
            await export_service.shutdown()
            app.state.export_service = None

    app = FastAPI(
        title="Report Exports API",
        description="Background report export jobs",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        export_service = getattr(app.state, "export_service", None)
        return {
            "status": "ok" if export_service is not None else "starting",
            "version": __version__,
        }

    app.include_router(exports_router)
    return app
