"""
LedgerMesh - FastAPI Dependencies

The report cache, the PDF renderer and the repository scope used by report
builds are created once at startup and kept on app.state; the repository
behind maintenance endpoints is request-scoped.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ledgermesh.database import async_session_maker, get_db
from ledgermesh.services.cache_service import ReportCache
from ledgermesh.services.consolidation_repository import ConsolidationRepository
from ledgermesh.services.consolidation_service import ConsolidationService
from ledgermesh.services.report_export_service import PDFRenderer
from ledgermesh.services.report_view_service import ConsolidationReportService, RepositoryScope


@asynccontextmanager
async def session_repository_scope() -> AsyncGenerator[ConsolidationRepository, None]:
    """Repository on a session of its own, closed when the scope exits."""
    async with async_session_maker() as session:
        yield ConsolidationRepository(session)


def get_report_cache(request: Request) -> ReportCache:
    return request.app.state.report_cache


def get_pdf_renderer(request: Request) -> PDFRenderer:
    return request.app.state.pdf_renderer


def get_csv_flush_every(request: Request) -> int:
    return request.app.state.csv_flush_every


def get_repository_scope(request: Request) -> RepositoryScope:
    return request.app.state.repository_scope


async def get_consolidation_repository(db: AsyncSession = Depends(get_db)) -> ConsolidationRepository:
    return ConsolidationRepository(db)


async def get_report_service(
    cache: ReportCache = Depends(get_report_cache),
    repository_scope: RepositoryScope = Depends(get_repository_scope),
) -> ConsolidationReportService:
    return ConsolidationReportService(cache=cache, repository_scope=repository_scope)


async def get_consolidation_service(
    cache: ReportCache = Depends(get_report_cache),
    repository: ConsolidationRepository = Depends(get_consolidation_repository),
) -> ConsolidationService:
    return ConsolidationService(repository, cache=cache)
