"""
LedgerMesh - Consolidated Report View Service

Serves TB/PL/BS view models through the coalescing report cache.

A build may outlive the request that started it (other requests join it),
so it never touches the caller's session: each build opens its own
repository from the app-scoped repository scope.
"""

import logging
from typing import AsyncContextManager, Callable

from ledgermesh.schemas.consolidation import (
    ConsolBSViewModel, ConsolPLViewModel, ConsolTBViewModel, FiltersView,
)
from ledgermesh.services.cache_service import ReportCache, build_cache_key
from ledgermesh.services.consolidation_reports import BalanceSheetService, ProfitLossService
from ledgermesh.services.consolidation_repository import ConsolidationRepository
from ledgermesh.services.consolidation_service import (
    ConsolidationFilters, FilterValidationError, TrialBalanceService, validate_filters,
)

logger = logging.getLogger(__name__)

REPORT_TB = "tb"
REPORT_PL = "pl"
REPORT_BS = "bs"
REPORT_TYPES = (REPORT_TB, REPORT_PL, REPORT_BS)

RepositoryScope = Callable[[], AsyncContextManager[ConsolidationRepository]]

# report -> (builder service, view model)
_BUILDERS = {
    REPORT_TB: (TrialBalanceService, ConsolTBViewModel),
    REPORT_PL: (ProfitLossService, ConsolPLViewModel),
    REPORT_BS: (BalanceSheetService, ConsolBSViewModel),
}


class ConsolidationReportService:
    """Read-through access to consolidated view models."""

    def __init__(self, cache: ReportCache, repository_scope: RepositoryScope):
        self.cache = cache
        self.repository_scope = repository_scope

    async def view(self, report: str, filters: ConsolidationFilters):
        if report not in _BUILDERS:
            raise ValueError(f"unknown consolidation report {report!r}")
        validate_filters(filters)
        service_class, view_model = _BUILDERS[report]

        async def build():
            async with self.repository_scope() as repository:
                built, warnings = await service_class(repository).build(filters)
            return view_model.from_report(built, warnings)

        return await self.cache.get_or_build(
            build_cache_key(report, filters),
            build,
            report=report,
            group_id=filters.group_id,
            period=filters.period,
        )

    async def trial_balance_view(self, filters: ConsolidationFilters) -> ConsolTBViewModel:
        return await self.view(REPORT_TB, filters)

    async def profit_loss_view(self, filters: ConsolidationFilters) -> ConsolPLViewModel:
        return await self.view(REPORT_PL, filters)

    async def balance_sheet_view(self, filters: ConsolidationFilters) -> ConsolBSViewModel:
        return await self.view(REPORT_BS, filters)

    @staticmethod
    def error_view(report: str, filters: ConsolidationFilters, error: FilterValidationError):
        """Empty view model carrying inline validation errors."""
        return _BUILDERS[report][1](
            filters=FiltersView(
                group_id=max(filters.group_id or 0, 0),
                period=filters.period or "",
                entities=filters.sorted_entities(),
                fx_on=filters.fx_on,
            ),
            errors=error.errors,
        )
