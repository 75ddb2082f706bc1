"""
LedgerMesh - Test Configuration

Pytest fixtures and an in-memory consolidation repository.
"""

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from prometheus_client import CollectorRegistry

from ledgermesh.services.cache_service import ReportCache
from ledgermesh.services.consolidation_metrics import ConsolidationCacheMetrics
from ledgermesh.services.consolidation_repository import (
    BalanceRow, ConsolidationGroup, FxRateInput, FxRateNotFoundError,
    GroupMember, GroupNotFoundError, MemberShare, PeriodNotFoundError,
)
from ledgermesh.services.fx_service import FXQuote, first_of_month, normalize_currency


PERIOD = "2024-01"
GROUP_ID = 1
ALPHA = 1
BETA = 2
FIXED_NOW = datetime(2024, 2, 1, 9, 30, tzinfo=timezone.utc)


def member(company_id: int, name: str, amount) -> MemberShare:
    return MemberShare(company_id=company_id, company_name=name, local_amount=Decimal(str(amount)))


def balance_row(account_id: int, code: str, name: str, account_type: str, members: List[MemberShare]) -> BalanceRow:
    total = sum((m.local_amount for m in members), Decimal("0"))
    return BalanceRow(
        group_account_id=account_id,
        code=code,
        name=name,
        account_type=account_type,
        local_amount=total,
        group_amount=total,
        members=list(members),
    )


class FakeConsolidationRepository:
    """In-memory repository with call counters and an optional delay."""
    
    def __init__(
        self,
        reporting_currency: str = "USD",
        currencies: Optional[Dict[int, str]] = None,
        rows: Optional[List[BalanceRow]] = None,
        quotes: Optional[Dict[Tuple[date, str], FXQuote]] = None,
        delay: float = 0.0,
    ):
        self.groups = {GROUP_ID: ConsolidationGroup(GROUP_ID, "Holding Group", reporting_currency)}
        self.group_members = {
            GROUP_ID: [GroupMember(ALPHA, "Alpha", True), GroupMember(BETA, "Beta", True)],
        }
        self.currencies = {GROUP_ID: currencies or {ALPHA: reporting_currency, BETA: reporting_currency}}
        self.rows = {(GROUP_ID, PERIOD): list(rows or [])}
        self.periods = {PERIOD: 10}
        self.quotes = dict(quotes or {})
        self.delay = delay
        self.calls = Counter()
        self.rebuilt: List[Tuple[int, int]] = []
        self.failing_groups: set = set()
        self.active_period: Optional[str] = PERIOD
        self.closed = False
    
    async def consol_balances_by_type(self, group_id: int, period_code: str, entities: Sequence[int] = ()):
        self.calls["consol_balances_by_type"] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.closed:
            raise RuntimeError("session closed")
        if period_code not in self.periods:
            raise PeriodNotFoundError(period_code)
        return list(self.rows.get((group_id, period_code), []))
    
    async def group_reporting_currency(self, group_id: int) -> str:
        self.calls["group_reporting_currency"] += 1
        return (await self.get_group(group_id)).reporting_currency
    
    async def member_currencies(self, group_id: int) -> Dict[int, str]:
        self.calls["member_currencies"] += 1
        return dict(self.currencies.get(group_id, {}))
    
    async def fx_rate_for_period(self, as_of: date, pair: str) -> FXQuote:
        self.calls["fx_rate_for_period"] += 1
        quote = await self.quote_for_period(as_of, pair)
        if quote is None:
            raise FxRateNotFoundError(pair, first_of_month(as_of))
        return quote
    
    async def quote_for_period(self, as_of: date, pair: str) -> Optional[FXQuote]:
        return self.quotes.get((first_of_month(as_of), normalize_currency(pair)))
    
    async def get_group(self, group_id: int) -> ConsolidationGroup:
        self.calls["get_group"] += 1
        if group_id not in self.groups:
            raise GroupNotFoundError(group_id)
        return self.groups[group_id]
    
    async def members(self, group_id: int) -> List[GroupMember]:
        self.calls["members"] += 1
        return list(self.group_members.get(group_id, []))
    
    async def find_period_id(self, period_code: str) -> int:
        if period_code not in self.periods:
            raise PeriodNotFoundError(period_code)
        return self.periods[period_code]
    
    async def rebuild_consolidation(self, group_id: int, period_id: int) -> None:
        self.calls["rebuild_consolidation"] += 1
        if group_id in self.failing_groups:
            raise RuntimeError(f"rebuild failed for group {group_id}")
        self.rebuilt.append((group_id, period_id))
    
    async def upsert_fx_rate(self, rate: FxRateInput) -> FxRateInput:
        self.calls["upsert_fx_rate"] += 1
        rate = rate.normalized()
        self.quotes[(rate.as_of, rate.pair)] = FXQuote(
            pair=rate.pair, average=rate.average_rate, closing=rate.closing_rate, as_of=rate.as_of,
        )
        return rate
    
    async def list_group_ids(self) -> List[int]:
        return sorted(self.groups)
    
    async def active_consolidation_period(self) -> Optional[str]:
        return self.active_period


class FakeRepositoryScope:
    """
    Stands in for a session factory: every scope hands out a repository
    built by `factory` and marks it closed on exit.
    """

    def __init__(self, factory):
        self.factory = factory
        self.opened: List[FakeConsolidationRepository] = []

    @asynccontextmanager
    async def __call__(self):
        repository = self.factory()
        self.opened.append(repository)
        try:
            yield repository
        finally:
            repository.closed = True


def shared_scope(repository: FakeConsolidationRepository):
    """Scope that always yields the same repository and leaves it open."""

    @asynccontextmanager
    async def open_scope():
        yield repository

    return open_scope


def balance_sheet_rows() -> List[BalanceRow]:
    """Assets 150 (Alpha 100 + Beta 50), liabilities 90, equity 60."""
    return [
        balance_row(11, "1000", "Cash", "ASSET", [member(ALPHA, "Alpha", 100), member(BETA, "Beta", 50)]),
        balance_row(21, "2000", "Payables", "LIABILITY", [member(ALPHA, "Alpha", -60), member(BETA, "Beta", -30)]),
        balance_row(31, "3000", "Share Capital", "EQUITY", [member(ALPHA, "Alpha", -40), member(BETA, "Beta", -20)]),
    ]


def profit_loss_rows() -> List[BalanceRow]:
    """Revenue -1500 (ledger sign), COGS 1000, Opex 350."""
    return [
        balance_row(41, "4000", "Sales", "REVENUE", [member(ALPHA, "Alpha", -1000), member(BETA, "Beta", -500)]),
        balance_row(51, "5000", "Cost of Sales", "EXPENSE", [member(ALPHA, "Alpha", 700), member(BETA, "Beta", 300)]),
        balance_row(61, "6100", "Salaries", "EXPENSE", [member(ALPHA, "Alpha", 200), member(BETA, "Beta", 150)]),
    ]


@pytest.fixture
def bs_repository() -> FakeConsolidationRepository:
    return FakeConsolidationRepository(rows=balance_sheet_rows())


@pytest.fixture
def pl_repository() -> FakeConsolidationRepository:
    return FakeConsolidationRepository(rows=profit_loss_rows())


@pytest.fixture
def metrics() -> ConsolidationCacheMetrics:
    """Metrics on a private registry so tests never share counters."""
    return ConsolidationCacheMetrics(registry=CollectorRegistry())


@pytest.fixture
def report_cache(metrics) -> ReportCache:
    return ReportCache(ttl_seconds=300, metrics=metrics)
