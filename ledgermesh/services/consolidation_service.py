"""
LedgerMesh - Multi-Entity Consolidation Service

Aggregates posted ledger balances of the member companies of a
consolidation group:
- Report filters and their validation
- Entity-subset filtering and proportional rescaling of group amounts
- Per-member contribution weighting
- Consolidated trial balance
- Rebuild of the materialised balances (busts the report cache)
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ledgermesh.services.consolidation_repository import (
    ConsolidationGroup, FxRateInput, GroupMember, MemberShare, TrialBalanceRepository,
)
from ledgermesh.utils.error_handling import ErrorCode, ValidationException

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
BALANCE_TOLERANCE = Decimal("0.01")

_PERIOD_RE = re.compile(r"^\d{4}-\d{2}$")


# =============================================================================
# FILTERS
# =============================================================================

@dataclass(frozen=True)
class ConsolidationFilters:
    """
    Scope of a consolidated report.
    
    An empty `entities` tuple means every member of the group. On a built
    report `fx_on` reports whether translation was actually applied.
    """
    group_id: int
    period: str
    entities: Tuple[int, ...] = ()
    fx_on: bool = False
    
    def sorted_entities(self) -> List[int]:
        return sorted(self.entities)
    
    def entities_label(self) -> str:
        if not self.entities:
            return "All"
        return ",".join(str(e) for e in self.sorted_entities())
    
    def with_fx(self, fx_on: bool) -> "ConsolidationFilters":
        return replace(self, fx_on=fx_on)


class FilterValidationError(ValidationException):
    """Invalid report filters, with one message per offending field."""
    
    def __init__(self, errors: Dict[str, str], status_code: int = 422):
        self.errors = dict(errors)
        first_field = next(iter(self.errors), None)
        super().__init__(
            message="; ".join(self.errors.values()) or "invalid filters",
            field=first_field,
            details={"fields": self.errors},
            code=ErrorCode.INVALID_FILTERS,
            status_code=status_code,
        )


def parse_period(period: str) -> Optional[date]:
    """First day of a YYYY-MM period, or None when unparseable."""
    value = (period or "").strip()
    if not _PERIOD_RE.match(value):
        return None
    try:
        return datetime.strptime(value, "%Y-%m").date()
    except ValueError:
        return None


def validate_filters(filters: ConsolidationFilters) -> date:
    """Fail fast on bad filters; returns the period start date."""
    errors: Dict[str, str] = {}
    if filters.group_id is None or filters.group_id <= 0:
        errors["group"] = "group id is required"
    
    period_start = None
    if not (filters.period or "").strip():
        errors["period"] = "period is required"
    else:
        period_start = parse_period(filters.period)
        if period_start is None:
            errors["period"] = "invalid period format, expected YYYY-MM"
    
    bad = [e for e in filters.entities if e <= 0]
    if bad:
        errors["entities"] = f"invalid entity id {bad[0]}"
    
    if errors:
        raise FilterValidationError(errors)
    return period_start


# =============================================================================
# SHARED AGGREGATION HELPERS
# =============================================================================

def filter_members(members: Sequence[MemberShare], entities: Iterable[int]) -> List[MemberShare]:
    """Members restricted to `entities` (all of them when empty), order kept."""
    include = set(entities)
    if not include:
        return list(members)
    return [m for m in members if m.company_id in include]


def member_totals(members: Sequence[MemberShare]) -> Tuple[Decimal, Decimal]:
    """Signed and absolute sums of member local amounts."""
    local_total = ZERO
    abs_total = ZERO
    for m in members:
        local_total += m.local_amount
        abs_total += abs(m.local_amount)
    return local_total, abs_total


def scale_amount(base: Decimal, original_total: Decimal, filtered_total: Decimal) -> Decimal:
    """
    Rescale a row's group amount to the filtered member subset.
    
    Linear in the filtered local total; a zero original total returns the
    base amount unchanged.
    """
    if original_total == 0:
        return base
    return base * filtered_total / original_total


@dataclass
class Contribution:
    """A member company's weighted share of a consolidated report."""
    company_id: int
    entity_name: str
    group_amount: Decimal = ZERO
    percent: Decimal = ZERO


class ContributionAccumulator:
    """Running per-member shares across all lines of one report."""
    
    def __init__(self):
        self._by_company: Dict[int, Contribution] = {}
    
    def add_line(self, members: Sequence[MemberShare], abs_total: Decimal, display_amount: Decimal) -> None:
        if not members:
            return
        for member in members:
            if abs_total == 0:
                share = display_amount / len(members)
            else:
                share = display_amount * abs(member.local_amount) / abs_total
            contrib = self._by_company.get(member.company_id)
            if contrib is None:
                contrib = Contribution(company_id=member.company_id, entity_name=member.company_name)
                self._by_company[member.company_id] = contrib
            elif not contrib.entity_name:
                contrib.entity_name = member.company_name
            contrib.group_amount += share
    
    def results(self) -> List[Contribution]:
        """Contributions with percentages, largest absolute amount first."""
        contributions = list(self._by_company.values())
        basis = sum((abs(c.group_amount) for c in contributions), ZERO)
        for c in contributions:
            c.percent = abs(c.group_amount) * HUNDRED / basis if basis != 0 else ZERO
        contributions.sort(key=lambda c: abs(c.group_amount), reverse=True)
        return contributions


# =============================================================================
# TRIAL BALANCE
# =============================================================================

@dataclass
class TrialBalanceLine:
    group_account_id: int
    account_code: str
    account_name: str
    local_amount: Decimal
    group_amount: Decimal
    members: List[MemberShare] = field(default_factory=list)


@dataclass
class TrialBalanceTotals:
    local: Decimal = ZERO
    group: Decimal = ZERO
    balanced: bool = True
    refreshed: Optional[datetime] = None


@dataclass
class TrialBalance:
    filters: ConsolidationFilters
    group_name: str
    reporting_currency: str
    period_display: str
    totals: TrialBalanceTotals
    lines: List[TrialBalanceLine] = field(default_factory=list)
    contributions: List[Contribution] = field(default_factory=list)
    members: List[GroupMember] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrialBalanceService:
    """Consolidated trial balance in the members' ledger amounts."""
    
    def __init__(
        self,
        repository: TrialBalanceRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.clock = clock or _utcnow
    
    async def build(self, filters: ConsolidationFilters) -> Tuple[TrialBalance, List[str]]:
        validate_filters(filters)
        
        group: ConsolidationGroup = await self.repository.get_group(filters.group_id)
        members = await self.repository.members(filters.group_id)
        registered = {m.company_id for m in members}
        for entity_id in filters.entities:
            if entity_id not in registered:
                raise FilterValidationError(
                    {"entities": f"entity {entity_id} is not a member of group {filters.group_id}"}
                )
        
        rows = await self.repository.consol_balances_by_type(
            filters.group_id, filters.period, filters.entities
        )
        
        total_local = ZERO
        total_group = ZERO
        contributions = ContributionAccumulator()
        lines: List[TrialBalanceLine] = []
        for row in rows:
            filtered = filter_members(row.members, filters.entities)
            if not filtered:
                continue
            line_total, abs_total = member_totals(filtered)
            total_local += line_total
            total_group += line_total
            lines.append(TrialBalanceLine(
                group_account_id=row.group_account_id,
                account_code=row.code,
                account_name=row.name,
                local_amount=line_total,
                group_amount=line_total,
                members=filtered,
            ))
            # signed member totals net to zero on a trial balance
            contributions.add_line(filtered, abs_total, abs(line_total))
        
        lines.sort(key=lambda line: line.account_code)
        
        report = TrialBalance(
            filters=filters.with_fx(False),
            group_name=group.name,
            reporting_currency=group.reporting_currency,
            period_display=filters.period,
            totals=TrialBalanceTotals(
                local=total_local,
                group=total_group,
                balanced=abs(total_group) <= BALANCE_TOLERANCE,
                refreshed=self.clock(),
            ),
            lines=lines,
            contributions=contributions.results(),
            members=list(members),
        )
        return report, []


# =============================================================================
# REBUILD & FX QUOTE MAINTENANCE
# =============================================================================

class ConsolidationService:
    """Ledger-mutating consolidation operations."""
    
    def __init__(self, repository: Any, cache: Optional[Any] = None):
        self.repository = repository
        self.cache = cache
    
    def _bust_cache(self, reason: str) -> None:
        if self.cache is not None:
            self.cache.bust()
            logger.info(f"Consolidation report cache busted after {reason}")
    
    async def rebuild_consolidation(self, group_id: int, period_code: str) -> None:
        """Re-aggregate the materialised balances of one group and period."""
        errors: Dict[str, str] = {}
        if group_id is None or group_id <= 0:
            errors["group"] = "invalid group id"
        if not (period_code or "").strip():
            errors["period"] = "period code is required"
        elif parse_period(period_code) is None:
            errors["period"] = "invalid period format, expected YYYY-MM"
        if errors:
            raise FilterValidationError(errors)
        
        period_id = await self.repository.find_period_id(period_code)
        await self.repository.rebuild_consolidation(group_id, period_id)
        logger.info(f"Rebuilt consolidation balances for group {group_id} period {period_code}")
        self._bust_cache(f"rebuild of group {group_id} {period_code}")
    
    async def refresh_all(self, period_code: Optional[str] = None) -> Dict[str, Any]:
        """
        Rebuild every group for `period_code` or, when omitted, the active
        consolidation period. Per-group failures are logged and reported,
        not raised.
        """
        if not period_code:
            period_code = await self.repository.active_consolidation_period()
        if not period_code:
            logger.info("No period open for consolidation, nothing to refresh")
            return {"period": None, "rebuilt": [], "failed": {}}
        
        period_id = await self.repository.find_period_id(period_code)
        rebuilt: List[int] = []
        failed: Dict[int, str] = {}
        for group_id in await self.repository.list_group_ids():
            try:
                await self.repository.rebuild_consolidation(group_id, period_id)
                rebuilt.append(group_id)
            except Exception as e:
                logger.error(f"Consolidation refresh failed for group {group_id}: {e}")
                failed[group_id] = str(e)
        
        if rebuilt:
            self._bust_cache(f"refresh of {len(rebuilt)} group(s) for {period_code}")
        return {"period": period_code, "rebuilt": rebuilt, "failed": failed}
    
    async def upsert_fx_rate(self, rate: FxRateInput) -> FxRateInput:
        stored = await self.repository.upsert_fx_rate(rate)
        logger.info(f"Stored FX rate {stored.pair} for {stored.as_of.isoformat()}")
        self._bust_cache(f"FX rate update {stored.pair}")
        return stored
