"""
LedgerMesh - Consolidated Balance Sheet Tests
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import (
    ALPHA, BETA, GROUP_ID, PERIOD, FakeConsolidationRepository, balance_row,
    balance_sheet_rows, member,
)
from ledgermesh.services.consolidation_reports import BalanceSheetService
from ledgermesh.services.consolidation_service import ConsolidationFilters
from ledgermesh.services.fx_service import FXQuote


def sgd_repository(**quotes) -> FakeConsolidationRepository:
    return FakeConsolidationRepository(
        currencies={ALPHA: "USD", BETA: "SGD"},
        rows=balance_sheet_rows(),
        quotes=quotes.get("quotes"),
    )


class TestBalanceSheetService:
    """Test the consolidated balance sheet build."""
    
    @pytest.mark.asyncio
    async def test_balanced_without_fx(self, bs_repository):
        report, warnings = await BalanceSheetService(bs_repository).build(
            ConsolidationFilters(GROUP_ID, PERIOD)
        )
        
        assert warnings == []
        assert report.totals.assets == Decimal("150")
        assert report.totals.liabilities_equity == Decimal("150")
        assert report.totals.balanced is True
        assert report.totals.delta_fx == Decimal("0")
        assert [line.account_code for line in report.assets] == ["1000"]
        assert [line.account_code for line in report.liabilities_equity] == ["2000", "3000"]
        # credit balances display as positive amounts
        assert report.liabilities_equity[0].local_amount == Decimal("90")
        assert report.liabilities_equity[0].section == "LIABILITY"
    
    @pytest.mark.asyncio
    async def test_entity_filter(self, bs_repository):
        report, _ = await BalanceSheetService(bs_repository).build(
            ConsolidationFilters(GROUP_ID, PERIOD, entities=(BETA,))
        )
        assert report.totals.assets == Decimal("50")
        assert report.totals.liabilities_equity == Decimal("50")
        assert report.totals.balanced is True
        assert [c.entity_name for c in report.contributions] == ["Beta"]
    
    @pytest.mark.asyncio
    async def test_contributions_weighted_by_member_balances(self, bs_repository):
        report, _ = await BalanceSheetService(bs_repository).build(
            ConsolidationFilters(GROUP_ID, PERIOD)
        )
        alpha, beta = report.contributions
        assert alpha.entity_name == "Alpha"
        assert alpha.group_amount == Decimal("200")
        assert beta.group_amount == Decimal("100")
        assert abs(alpha.percent + beta.percent - Decimal("100")) <= Decimal("0.1")
        assert alpha.percent > beta.percent
    
    @pytest.mark.asyncio
    async def test_closing_rate_applied(self):
        quote = FXQuote("SGDUSD", Decimal("0.5"), Decimal("0.75"))
        repo = sgd_repository(quotes={(date(2024, 1, 1), "SGDUSD"): quote})
        
        report, warnings = await BalanceSheetService(repo).build(
            ConsolidationFilters(GROUP_ID, PERIOD, fx_on=True)
        )
        
        assert warnings == []
        assert report.filters.fx_on is True
        assert report.totals.assets == Decimal("137.5")
        assert report.totals.liabilities_equity == Decimal("137.5")
        assert report.totals.balanced is True
        assert report.totals.delta_fx == Decimal("0")
        cash = report.assets[0]
        assert cash.local_amount == Decimal("150")
        assert cash.group_amount == Decimal("137.5")
    
    @pytest.mark.asyncio
    async def test_missing_closing_rate(self):
        quote = FXQuote("SGDUSD", Decimal("0.5"), Decimal("0"))
        repo = sgd_repository(quotes={(date(2024, 1, 1), "SGDUSD"): quote})
        
        report, warnings = await BalanceSheetService(repo).build(
            ConsolidationFilters(GROUP_ID, PERIOD, fx_on=True)
        )
        
        assert warnings == ["FX rate missing for SGDUSD at 2024-01"]
        assert report.filters.fx_on is False
        assert report.totals.assets == Decimal("150")
    
    @pytest.mark.asyncio
    async def test_out_of_balance(self):
        rows = balance_sheet_rows() + [
            balance_row(12, "1100", "Receivables", "ASSET", [member(ALPHA, "Alpha", 5)]),
        ]
        repo = FakeConsolidationRepository(rows=rows)
        report, _ = await BalanceSheetService(repo).build(ConsolidationFilters(GROUP_ID, PERIOD))
        
        assert report.totals.assets == Decimal("155")
        assert report.totals.balanced is False
        assert [line.account_code for line in report.assets] == ["1000", "1100"]
    
    @pytest.mark.asyncio
    async def test_lines_sorted_by_code(self):
        rows = list(reversed(balance_sheet_rows()))
        rows.insert(0, balance_row(13, "1500", "Inventory", "ASSET", [member(BETA, "Beta", 0)]))
        repo = FakeConsolidationRepository(rows=rows)
        report, _ = await BalanceSheetService(repo).build(ConsolidationFilters(GROUP_ID, PERIOD))
        
        assert [line.account_code for line in report.assets] == ["1000", "1500"]
        assert [line.account_code for line in report.liabilities_equity] == ["2000", "3000"]
