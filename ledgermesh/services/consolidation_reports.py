"""
LedgerMesh - Consolidated Profit & Loss and Balance Sheet

Both statements share one pipeline per balance row: entity filtering,
proportional rescaling, optional currency translation and contribution
weighting. They differ in the rate method (average for P&L, closing for
the balance sheet), section classification and sign convention.

If any required FX quote is missing the statement degrades to
unconverted figures, carries one warning per missing pair and reports
`fx_on = False` on its filters.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from ledgermesh.services.consolidation_repository import (
    BalanceRepository, BalanceRow, FxRateNotFoundError, MemberShare,
)
from ledgermesh.services.consolidation_service import (
    BALANCE_TOLERANCE, ZERO, ConsolidationFilters, Contribution, ContributionAccumulator,
    filter_members, member_totals, scale_amount, validate_filters,
)
from ledgermesh.services.fx_service import (
    FXConverter, FXLine, FXMethod, FXPolicy, FXQuote, MissingRateError,
    currency_pair, first_of_month, normalize_currency,
)

logger = logging.getLogger(__name__)


def missing_rate_warning(pair: str, period: str) -> str:
    return f"FX rate missing for {pair} at {period}"


# =============================================================================
# SHARED PIPELINE
# =============================================================================

@dataclass
class ScaledRow:
    """A balance row restricted to the filtered members, in group currency."""
    row: BalanceRow
    members: List[MemberShare]
    local_total: Decimal
    abs_total: Decimal
    group_amount: Decimal


@dataclass
class _Collected:
    rows: List[ScaledRow]
    fx_applied: bool
    delta_fx: Decimal
    warnings: List[str]


class _FXContext:
    """Converter plus member currencies for one statement build."""
    
    def __init__(self, converter: FXConverter, member_currencies: Dict[int, str]):
        self.converter = converter
        self.member_currencies = member_currencies
    
    @property
    def reporting_currency(self) -> str:
        return self.converter.policy.reporting_currency
    
    def currency_of(self, company_id: int) -> str:
        return normalize_currency(self.member_currencies.get(company_id)) or self.reporting_currency
    
    def buckets(
        self,
        account_code: str,
        members: Sequence[MemberShare],
        local_total: Decimal,
        group_amount: Decimal,
    ) -> List[FXLine]:
        """Split a row into per-currency lines carrying their group share."""
        totals: Dict[str, Decimal] = {}
        for member in members:
            currency = self.currency_of(member.company_id)
            totals[currency] = totals.get(currency, ZERO) + member.local_amount
        lines = []
        for currency, amount in totals.items():
            share = ZERO if local_total == 0 else group_amount * amount / local_total
            lines.append(FXLine(
                account_code=account_code,
                local_currency=currency,
                local_amount=amount,
                group_amount=share,
            ))
        return lines


class _StatementService:
    """Common build steps of the translated statements."""
    
    fx_method: FXMethod = FXMethod.AVERAGE
    
    def __init__(self, repository: BalanceRepository):
        self.repository = repository
    
    def _convert(self, converter: FXConverter, lines: List[FXLine]) -> Tuple[List[FXLine], Decimal]:
        raise NotImplementedError
    
    async def _prepare_fx(self, filters: ConsolidationFilters) -> Tuple[Optional[_FXContext], List[str]]:
        """
        Load the reporting currency and every quote the included members
        need. Returns no context when any pair is missing.
        """
        reporting = normalize_currency(
            await self.repository.group_reporting_currency(filters.group_id)
        )
        member_currencies = await self.repository.member_currencies(filters.group_id)
        
        if filters.entities:
            sources = [member_currencies.get(e) for e in set(filters.entities)]
        else:
            sources = list(member_currencies.values())
        required = sorted({
            normalize_currency(c) for c in sources
            if normalize_currency(c) and normalize_currency(c) != reporting
        })
        
        as_of = first_of_month(validate_filters(filters))
        quotes: Dict[str, FXQuote] = {}
        missing: List[str] = []
        for currency in required:
            pair = currency_pair(currency, reporting)
            try:
                quote = await self.repository.fx_rate_for_period(as_of, pair)
            except FxRateNotFoundError:
                missing.append(pair)
                continue
            if not quote.has_rate(self.fx_method):
                missing.append(pair)
                continue
            quotes[pair] = quote
        
        if missing:
            logger.warning(
                f"Missing FX quotes for group {filters.group_id} at {filters.period}: {', '.join(missing)}"
            )
            return None, missing
        
        policy = FXPolicy(
            reporting_currency=reporting,
            profit_loss_method=FXMethod.AVERAGE,
            balance_sheet_method=FXMethod.CLOSING,
        )
        return _FXContext(FXConverter(policy, quotes), member_currencies), []
    
    async def _collect(self, filters: ConsolidationFilters) -> _Collected:
        validate_filters(filters)
        rows = await self.repository.consol_balances_by_type(
            filters.group_id, filters.period, filters.entities
        )
        
        warnings: List[str] = []
        
        def warn(pair: str) -> None:
            message = missing_rate_warning(pair, filters.period)
            if message not in warnings:
                warnings.append(message)
        
        fx_ctx: Optional[_FXContext] = None
        if filters.fx_on:
            fx_ctx, missing = await self._prepare_fx(filters)
            for pair in missing:
                warn(pair)
        fx_applied = fx_ctx is not None
        
        delta_fx = ZERO
        scaled: List[ScaledRow] = []
        for row in rows:
            members = filter_members(row.members, filters.entities)
            if not members:
                continue
            local_total, abs_total = member_totals(members)
            group_amount = scale_amount(row.group_amount, row.local_amount, local_total)
            
            if fx_ctx is not None:
                fx_input = fx_ctx.buckets(row.code, members, local_total, group_amount)
                try:
                    converted, delta = self._convert(fx_ctx.converter, fx_input)
                except MissingRateError as e:
                    for pair in e.pairs:
                        warn(pair)
                    fx_ctx = None
                    fx_applied = False
                else:
                    group_amount = sum((line.group_amount for line in converted), ZERO)
                    delta_fx += delta
            
            scaled.append(ScaledRow(
                row=row,
                members=members,
                local_total=local_total,
                abs_total=abs_total,
                group_amount=group_amount,
            ))
        
        return _Collected(rows=scaled, fx_applied=fx_applied, delta_fx=delta_fx, warnings=warnings)


# =============================================================================
# PROFIT & LOSS
# =============================================================================

SECTION_REVENUE = "REVENUE"
SECTION_COGS = "COGS"
SECTION_OPEX = "OPEX"


@dataclass
class ProfitLossLine:
    account_code: str
    account_name: str
    local_amount: Decimal
    group_amount: Decimal
    section: str


@dataclass
class ProfitLossTotals:
    revenue: Decimal = ZERO
    cogs: Decimal = ZERO
    gross_profit: Decimal = ZERO
    opex: Decimal = ZERO
    net_income: Decimal = ZERO
    delta_fx: Decimal = ZERO


@dataclass
class ProfitLossReport:
    filters: ConsolidationFilters
    lines: List[ProfitLossLine] = field(default_factory=list)
    totals: ProfitLossTotals = field(default_factory=ProfitLossTotals)
    contributions: List[Contribution] = field(default_factory=list)


def classify_pl_section(account_type: str, account_code: str) -> str:
    if (account_type or "").upper() in ("REVENUE", "INCOME"):
        return SECTION_REVENUE
    if (account_code or "").startswith("5"):
        return SECTION_COGS
    return SECTION_OPEX


class ProfitLossService(_StatementService):
    """Consolidated P&L translated at the period's average rate."""
    
    fx_method = FXMethod.AVERAGE
    
    def _convert(self, converter, lines):
        return converter.convert_profit_loss(lines)
    
    async def build(self, filters: ConsolidationFilters) -> Tuple[ProfitLossReport, List[str]]:
        collected = await self._collect(filters)
        
        totals = ProfitLossTotals(delta_fx=collected.delta_fx)
        contributions = ContributionAccumulator()
        lines: List[ProfitLossLine] = []
        for item in collected.rows:
            section = classify_pl_section(item.row.account_type, item.row.code)
            display_local, display_group = item.local_total, item.group_amount
            if section == SECTION_REVENUE:
                # credit-negative in the ledger, shown positive
                display_local, display_group = -display_local, -display_group
            
            lines.append(ProfitLossLine(
                account_code=item.row.code,
                account_name=item.row.name,
                local_amount=display_local,
                group_amount=display_group,
                section=section,
            ))
            if section == SECTION_REVENUE:
                totals.revenue += display_group
            elif section == SECTION_COGS:
                totals.cogs += display_group
            else:
                totals.opex += display_group
            contributions.add_line(item.members, item.abs_total, display_group)
        
        totals.gross_profit = totals.revenue - totals.cogs
        totals.net_income = totals.gross_profit - totals.opex
        
        report = ProfitLossReport(
            filters=filters.with_fx(collected.fx_applied),
            lines=lines,
            totals=totals,
            contributions=contributions.results(),
        )
        return report, collected.warnings


# =============================================================================
# BALANCE SHEET
# =============================================================================

SECTION_ASSET = "ASSET"


@dataclass
class BalanceSheetLine:
    account_code: str
    account_name: str
    local_amount: Decimal
    group_amount: Decimal
    section: str


@dataclass
class BalanceSheetTotals:
    assets: Decimal = ZERO
    liabilities_equity: Decimal = ZERO
    balanced: bool = True
    delta_fx: Decimal = ZERO


@dataclass
class BalanceSheetReport:
    filters: ConsolidationFilters
    assets: List[BalanceSheetLine] = field(default_factory=list)
    liabilities_equity: List[BalanceSheetLine] = field(default_factory=list)
    totals: BalanceSheetTotals = field(default_factory=BalanceSheetTotals)
    contributions: List[Contribution] = field(default_factory=list)


class BalanceSheetService(_StatementService):
    """Consolidated balance sheet translated at the closing rate."""
    
    fx_method = FXMethod.CLOSING
    
    def _convert(self, converter, lines):
        return converter.convert_balance_sheet(lines)
    
    async def build(self, filters: ConsolidationFilters) -> Tuple[BalanceSheetReport, List[str]]:
        collected = await self._collect(filters)
        
        assets: List[BalanceSheetLine] = []
        liabilities_equity: List[BalanceSheetLine] = []
        total_assets = ZERO
        total_le = ZERO
        contributions = ContributionAccumulator()
        for item in collected.rows:
            section = (item.row.account_type or "").upper()
            line = BalanceSheetLine(
                account_code=item.row.code,
                account_name=item.row.name,
                local_amount=abs(item.local_total),
                group_amount=abs(item.group_amount),
                section=section,
            )
            if section == SECTION_ASSET:
                assets.append(line)
                total_assets += line.group_amount
            else:
                liabilities_equity.append(line)
                total_le += line.group_amount
            contributions.add_line(item.members, item.abs_total, line.group_amount)
        
        assets.sort(key=lambda line: line.account_code)
        liabilities_equity.sort(key=lambda line: line.account_code)
        
        report = BalanceSheetReport(
            filters=filters.with_fx(collected.fx_applied),
            assets=assets,
            liabilities_equity=liabilities_equity,
            totals=BalanceSheetTotals(
                assets=total_assets,
                liabilities_equity=total_le,
                balanced=abs(total_assets - total_le) <= BALANCE_TOLERANCE,
                delta_fx=collected.delta_fx,
            ),
            contributions=contributions.results(),
        )
        return report, collected.warnings
