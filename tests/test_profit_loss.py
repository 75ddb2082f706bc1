"""
LedgerMesh - Consolidated Profit & Loss Tests
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import ALPHA, BETA, GROUP_ID, PERIOD, FakeConsolidationRepository, profit_loss_rows
from ledgermesh.services.consolidation_reports import (
    ProfitLossService, classify_pl_section, missing_rate_warning,
)
from ledgermesh.services.consolidation_service import ConsolidationFilters, FilterValidationError
from ledgermesh.services.fx_service import FXQuote


class TestSectionClassification:
    
    @pytest.mark.parametrize("account_type,code,expected", [
        ("REVENUE", "4000", "REVENUE"),
        ("income", "7000", "REVENUE"),
        ("EXPENSE", "5100", "COGS"),
        ("EXPENSE", "6100", "OPEX"),
        ("REVENUE", "5000", "REVENUE"),
    ])
    def test_classify(self, account_type, code, expected):
        assert classify_pl_section(account_type, code) == expected


class TestProfitLossService:
    """Test the consolidated P&L build."""
    
    @pytest.mark.asyncio
    async def test_totals_and_sign_convention(self, pl_repository):
        report, warnings = await ProfitLossService(pl_repository).build(
            ConsolidationFilters(GROUP_ID, PERIOD)
        )
        
        assert warnings == []
        assert report.totals.revenue == Decimal("1500")
        assert report.totals.cogs == Decimal("1000")
        assert report.totals.opex == Decimal("350")
        assert report.totals.gross_profit == Decimal("500")
        assert report.totals.net_income == Decimal("150")
        assert report.totals.delta_fx == Decimal("0")
        
        revenue = report.lines[0]
        assert revenue.section == "REVENUE"
        assert revenue.local_amount == Decimal("1500")
        assert revenue.group_amount == Decimal("1500")
        assert [line.section for line in report.lines] == ["REVENUE", "COGS", "OPEX"]
    
    @pytest.mark.asyncio
    async def test_fx_off_group_equals_local(self, pl_repository):
        report, _ = await ProfitLossService(pl_repository).build(ConsolidationFilters(GROUP_ID, PERIOD))
        for line in report.lines:
            assert line.group_amount == line.local_amount
        assert report.filters.fx_on is False
        assert pl_repository.calls["fx_rate_for_period"] == 0
    
    @pytest.mark.asyncio
    async def test_contributions_sum_to_100(self, pl_repository):
        report, _ = await ProfitLossService(pl_repository).build(ConsolidationFilters(GROUP_ID, PERIOD))
        
        assert [c.entity_name for c in report.contributions] == ["Alpha", "Beta"]
        assert report.contributions[0].group_amount == Decimal("1900")
        assert report.contributions[1].group_amount == Decimal("950")
        total = sum(c.percent for c in report.contributions)
        assert abs(total - Decimal("100")) <= Decimal("0.1")
    
    @pytest.mark.asyncio
    async def test_single_entity_filter(self, pl_repository):
        report, _ = await ProfitLossService(pl_repository).build(
            ConsolidationFilters(GROUP_ID, PERIOD, entities=(BETA,))
        )
        assert report.totals.revenue == Decimal("500")
        assert report.totals.cogs == Decimal("300")
        assert report.totals.net_income == Decimal("50")
        assert [c.entity_name for c in report.contributions] == ["Beta"]
        assert report.contributions[0].percent == Decimal("100")
    
    @pytest.mark.asyncio
    async def test_rows_without_matching_members_are_skipped(self, pl_repository):
        report, _ = await ProfitLossService(pl_repository).build(
            ConsolidationFilters(GROUP_ID, PERIOD, entities=(77,))
        )
        assert report.lines == []
        assert report.contributions == []
        assert report.totals.net_income == Decimal("0")
    
    @pytest.mark.asyncio
    async def test_missing_rate_degrades_to_unconverted(self):
        repo = FakeConsolidationRepository(
            currencies={ALPHA: "USD", BETA: "IDR"},
            rows=profit_loss_rows(),
        )
        report, warnings = await ProfitLossService(repo).build(
            ConsolidationFilters(GROUP_ID, PERIOD, fx_on=True)
        )
        
        assert warnings == ["FX rate missing for IDRUSD at 2024-01"]
        assert report.filters.fx_on is False
        assert report.totals.revenue == Decimal("1500")
        assert report.totals.delta_fx == Decimal("0")
    
    @pytest.mark.asyncio
    async def test_zero_average_rate_counts_as_missing(self):
        repo = FakeConsolidationRepository(
            currencies={ALPHA: "USD", BETA: "SGD"},
            rows=profit_loss_rows(),
            quotes={(date(2024, 1, 1), "SGDUSD"): FXQuote("SGDUSD", Decimal("0"), Decimal("0.75"))},
        )
        report, warnings = await ProfitLossService(repo).build(
            ConsolidationFilters(GROUP_ID, PERIOD, fx_on=True)
        )
        assert warnings == [missing_rate_warning("SGDUSD", PERIOD)]
        assert report.filters.fx_on is False
    
    @pytest.mark.asyncio
    async def test_average_rate_applied(self):
        repo = FakeConsolidationRepository(
            currencies={ALPHA: "USD", BETA: "SGD"},
            rows=profit_loss_rows(),
            quotes={(date(2024, 1, 1), "SGDUSD"): FXQuote("SGDUSD", Decimal("0.5"), Decimal("0.75"))},
        )
        report, warnings = await ProfitLossService(repo).build(
            ConsolidationFilters(GROUP_ID, PERIOD, fx_on=True)
        )
        
        assert warnings == []
        assert report.filters.fx_on is True
        # Beta's SGD amounts translate at 0.5
        assert report.totals.revenue == Decimal("1250")
        assert report.totals.cogs == Decimal("850")
        assert report.totals.opex == Decimal("275")
        assert report.totals.net_income == Decimal("125")
        revenue = report.lines[0]
        assert revenue.local_amount == Decimal("1500")
        assert revenue.group_amount == Decimal("1250")
        # converted minus naive, in ledger sign: +250 - 150 - 75
        assert report.totals.delta_fx == Decimal("25")
    
    @pytest.mark.asyncio
    async def test_fx_limited_to_filtered_entities(self):
        repo = FakeConsolidationRepository(
            currencies={ALPHA: "USD", BETA: "IDR"},
            rows=profit_loss_rows(),
        )
        report, warnings = await ProfitLossService(repo).build(
            ConsolidationFilters(GROUP_ID, PERIOD, entities=(ALPHA,), fx_on=True)
        )
        assert warnings == []
        assert report.filters.fx_on is True
        assert report.totals.revenue == Decimal("1000")
    
    @pytest.mark.asyncio
    async def test_invalid_filters(self, pl_repository):
        with pytest.raises(FilterValidationError):
            await ProfitLossService(pl_repository).build(ConsolidationFilters(0, PERIOD))
        assert pl_repository.calls["consol_balances_by_type"] == 0
