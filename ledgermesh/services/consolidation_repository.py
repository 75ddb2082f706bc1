"""
LedgerMesh - Consolidation Repository

Read/write access to the consolidation tables:
- Materialised per-account balances with the per-member breakdown
- Group metadata, membership and member functional currencies
- Monthly FX quotes
- Rebuild of the materialised balances from posted journal lines
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import select, delete, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgermesh.models.consolidation import (
    Company, ConsolBalance, ConsolGroup, ConsolGroupAccount, ConsolMember, FxRate, Period,
)
from ledgermesh.services.fx_service import FXQuote, first_of_month, normalize_currency
from ledgermesh.utils.error_handling import (
    AppException, ErrorCode, NotFoundException, ValidationException,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class GroupNotFoundError(NotFoundException):
    def __init__(self, group_id: int):
        super().__init__(
            resource_type="Consolidation group",
            resource_id=group_id,
            code=ErrorCode.GROUP_NOT_FOUND,
        )


class PeriodNotFoundError(NotFoundException):
    def __init__(self, period_code: str):
        super().__init__(
            resource_type="Period",
            resource_id=period_code,
            code=ErrorCode.PERIOD_NOT_FOUND,
        )


class FxRateNotFoundError(NotFoundException):
    """No quote stored for the pair in that month."""
    
    def __init__(self, pair: str, as_of: date):
        self.pair = pair
        self.as_of = as_of
        super().__init__(
            resource_type="FX rate",
            message=f"FX rate for {pair} at {as_of.isoformat()} not found",
            code=ErrorCode.FX_RATE_NOT_FOUND,
        )


class MemberDecodeError(AppException):
    """The member breakdown stored with a balance could not be decoded."""
    
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            code=ErrorCode.MEMBER_DECODE_ERROR,
            message=f"consol: decode members: {message}",
            original_error=original_error,
        )


# =============================================================================
# RECORDS
# =============================================================================

@dataclass(frozen=True)
class MemberShare:
    """Local-currency amount one company contributes to a balance line."""
    company_id: int
    company_name: str
    local_amount: Decimal


@dataclass
class BalanceRow:
    group_account_id: int
    code: str
    name: str
    account_type: str
    local_amount: Decimal
    group_amount: Decimal
    members: List[MemberShare] = field(default_factory=list)


@dataclass(frozen=True)
class ConsolidationGroup:
    id: int
    name: str
    reporting_currency: str


@dataclass(frozen=True)
class GroupMember:
    company_id: int
    name: str
    enabled: bool = True


@dataclass
class FxRateInput:
    as_of: date
    pair: str
    average_rate: Decimal
    closing_rate: Decimal
    
    def normalized(self) -> "FxRateInput":
        pair = normalize_currency(self.pair)
        if len(pair) != 6:
            raise ValidationException("fx pair must be two ISO 4217 codes, e.g. IDRUSD", field="pair")
        if self.average_rate is None or Decimal(self.average_rate) <= 0:
            raise ValidationException("average rate must be positive", field="average_rate")
        if self.closing_rate is None or Decimal(self.closing_rate) <= 0:
            raise ValidationException("closing rate must be positive", field="closing_rate")
        return FxRateInput(
            as_of=first_of_month(self.as_of),
            pair=pair,
            average_rate=Decimal(self.average_rate),
            closing_rate=Decimal(self.closing_rate),
        )


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def parse_members(raw: Any) -> List[MemberShare]:
    """
    Decode the JSON member breakdown of a balance row.
    
    Accepts the raw JSON text/bytes or the already-decoded list returned by
    the JSONB column. Order is preserved.
    """
    if raw is None:
        return []
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        if not raw.strip():
            return []
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MemberDecodeError(str(e), original_error=e)
    if not isinstance(raw, list):
        raise MemberDecodeError(f"expected a list, got {type(raw).__name__}")
    
    members: List[MemberShare] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise MemberDecodeError(f"member {index} is not an object")
        try:
            members.append(MemberShare(
                company_id=int(item.get("company_id") or 0),
                company_name=str(item.get("company_name") or ""),
                local_amount=_to_decimal(item.get("local_ccy_amt")),
            ))
        except (TypeError, ValueError, InvalidOperation) as e:
            raise MemberDecodeError(f"member {index}: {e}", original_error=e)
    return members


# =============================================================================
# PORTS
# =============================================================================

class BalanceRepository(Protocol):
    """What the P&L and balance sheet builders need."""
    
    async def consol_balances_by_type(
        self, group_id: int, period_code: str, entities: Sequence[int] = ()
    ) -> List[BalanceRow]:
        ...
    
    async def group_reporting_currency(self, group_id: int) -> str:
        ...
    
    async def member_currencies(self, group_id: int) -> Dict[int, str]:
        ...
    
    async def fx_rate_for_period(self, as_of: date, pair: str) -> FXQuote:
        ...


class TrialBalanceRepository(Protocol):
    """What the trial balance builder needs."""
    
    async def get_group(self, group_id: int) -> ConsolidationGroup:
        ...
    
    async def members(self, group_id: int) -> List[GroupMember]:
        ...
    
    async def consol_balances_by_type(
        self, group_id: int, period_code: str, entities: Sequence[int] = ()
    ) -> List[BalanceRow]:
        ...


# =============================================================================
# SQLALCHEMY IMPLEMENTATION
# =============================================================================

REBUILD_BALANCES_SQL = text("""
INSERT INTO mv_consol_balances (period_id, group_id, group_account_id, local_ccy_amt, group_ccy_amt, members)
SELECT :period_id AS period_id,
       :group_id AS group_id,
       base.group_account_id,
       SUM(base.local_amt) AS local_ccy_amt,
       SUM(base.local_amt) AS group_ccy_amt,
       jsonb_agg(
           jsonb_build_object(
               'company_id', base.company_id,
               'company_name', base.company_name,
               'local_ccy_amt', base.local_amt
           ) ORDER BY base.company_id
       ) AS members
FROM (
    SELECT
        am.group_account_id,
        cm.company_id,
        c.name AS company_name,
        SUM(jl.debit - jl.credit) AS local_amt
    FROM journal_lines jl
    JOIN journal_entries je ON je.id = jl.je_id AND je.status = 'POSTED' AND je.period_id = :period_id
    JOIN consol_members cm ON cm.company_id = jl.dim_company_id AND cm.group_id = :group_id AND cm.enabled
    JOIN companies c ON c.id = cm.company_id
    JOIN account_map am ON am.group_id = cm.group_id AND am.company_id = cm.company_id
        AND am.local_account_id = jl.account_id
    GROUP BY am.group_account_id, cm.company_id, c.name
) AS base
GROUP BY base.group_account_id
""")


class ConsolidationRepository:
    """SQLAlchemy-backed consolidation repository bound to one session."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def find_period_id(self, period_code: str) -> int:
        result = await self.db.execute(
            select(Period.id).where(Period.code == period_code)
        )
        period_id = result.scalar_one_or_none()
        if period_id is None:
            raise PeriodNotFoundError(period_code)
        return period_id
    
    async def get_group(self, group_id: int) -> ConsolidationGroup:
        result = await self.db.execute(
            select(ConsolGroup.name, ConsolGroup.reporting_currency).where(ConsolGroup.id == group_id)
        )
        row = result.one_or_none()
        if row is None:
            raise GroupNotFoundError(group_id)
        return ConsolidationGroup(
            id=group_id,
            name=row.name,
            reporting_currency=normalize_currency(row.reporting_currency),
        )
    
    async def group_reporting_currency(self, group_id: int) -> str:
        group = await self.get_group(group_id)
        return group.reporting_currency
    
    async def members(self, group_id: int) -> List[GroupMember]:
        """Group members ordered by company name."""
        result = await self.db.execute(
            select(ConsolMember.company_id, Company.name, ConsolMember.enabled)
            .join(Company, Company.id == ConsolMember.company_id)
            .where(ConsolMember.group_id == group_id)
            .order_by(Company.name)
        )
        return [
            GroupMember(company_id=row.company_id, name=row.name, enabled=row.enabled)
            for row in result.all()
        ]
    
    async def member_currencies(self, group_id: int) -> Dict[int, str]:
        result = await self.db.execute(
            select(ConsolMember.company_id, Company.currency)
            .join(Company, Company.id == ConsolMember.company_id)
            .where(ConsolMember.group_id == group_id)
        )
        return {row.company_id: normalize_currency(row.currency) for row in result.all()}
    
    async def consol_balances_by_type(
        self,
        group_id: int,
        period_code: str,
        entities: Sequence[int] = (),
    ) -> List[BalanceRow]:
        """
        Materialised balances for a group and period, ordered by group
        account code. Entity filtering is applied by the report builders on
        the decoded member breakdown, so `entities` does not narrow the query.
        """
        if group_id <= 0:
            raise ValidationException("consol: invalid group id", field="group")
        if not period_code:
            raise ValidationException("consol: period code required", field="period")
        
        period_id = await self.find_period_id(period_code)
        result = await self.db.execute(
            select(
                ConsolBalance.group_account_id,
                ConsolGroupAccount.code,
                ConsolGroupAccount.name,
                ConsolGroupAccount.type,
                ConsolBalance.local_ccy_amt,
                ConsolBalance.group_ccy_amt,
                ConsolBalance.members,
            )
            .join(ConsolGroupAccount, ConsolGroupAccount.id == ConsolBalance.group_account_id)
            .where(
                ConsolBalance.group_id == group_id,
                ConsolBalance.period_id == period_id,
            )
            .order_by(ConsolGroupAccount.code)
        )
        return [
            BalanceRow(
                group_account_id=row.group_account_id,
                code=row.code,
                name=row.name,
                account_type=row.type,
                local_amount=_to_decimal(row.local_ccy_amt),
                group_amount=_to_decimal(row.group_ccy_amt),
                members=parse_members(row.members),
            )
            for row in result.all()
        ]
    
    async def quote_for_period(self, as_of: date, pair: str) -> Optional[FXQuote]:
        """Stored quote for the pair in the month of `as_of`, or None."""
        pair = normalize_currency(pair)
        if not pair:
            raise ValidationException("fx pair required", field="pair")
        as_of = first_of_month(as_of)
        result = await self.db.execute(
            select(FxRate.average_rate, FxRate.closing_rate)
            .where(FxRate.as_of_date == as_of, FxRate.pair == pair)
            .limit(1)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return FXQuote(
            pair=pair,
            average=_to_decimal(row.average_rate),
            closing=_to_decimal(row.closing_rate),
            as_of=as_of,
        )
    
    async def fx_rate_for_period(self, as_of: date, pair: str) -> FXQuote:
        quote = await self.quote_for_period(as_of, pair)
        if quote is None:
            raise FxRateNotFoundError(normalize_currency(pair), first_of_month(as_of))
        return quote
    
    async def upsert_fx_rate(self, rate: FxRateInput) -> FxRateInput:
        rate = rate.normalized()
        stmt = pg_insert(FxRate).values(
            as_of_date=rate.as_of,
            pair=rate.pair,
            average_rate=rate.average_rate,
            closing_rate=rate.closing_rate,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[FxRate.as_of_date, FxRate.pair],
            set_={
                "average_rate": stmt.excluded.average_rate,
                "closing_rate": stmt.excluded.closing_rate,
            },
        )
        await self.db.execute(stmt)
        await self.db.commit()
        return rate
    
    async def rebuild_consolidation(self, group_id: int, period_id: int) -> None:
        """Replace the materialised balances of one group and period."""
        try:
            await self.db.execute(
                delete(ConsolBalance).where(
                    ConsolBalance.period_id == period_id,
                    ConsolBalance.group_id == group_id,
                )
            )
            await self.db.execute(
                REBUILD_BALANCES_SQL, {"period_id": period_id, "group_id": group_id}
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
    
    async def list_group_ids(self) -> List[int]:
        result = await self.db.execute(select(ConsolGroup.id).order_by(ConsolGroup.id))
        return list(result.scalars().all())
    
    async def active_consolidation_period(self) -> Optional[str]:
        """Most recent period open for consolidation."""
        result = await self.db.execute(
            select(Period.code)
            .where(Period.status == "OPEN_CONSOL")
            .order_by(Period.start_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
