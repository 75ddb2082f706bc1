"""
LedgerMesh - Consolidation Schemas

Pydantic view models served by the consolidation API and consumed by the
CSV/PDF exporters, plus request bodies for the mutating endpoints.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ledgermesh.services.consolidation_reports import BalanceSheetReport, ProfitLossReport
from ledgermesh.services.consolidation_service import (
    BALANCE_TOLERANCE, ConsolidationFilters, Contribution, TrialBalance,
)


# =============================================================================
# SHARED
# =============================================================================

class FiltersView(BaseModel):
    group_id: int
    period: str
    entities: List[int] = Field(default_factory=list)
    fx_on: bool = False
    
    @classmethod
    def from_filters(cls, filters: ConsolidationFilters) -> "FiltersView":
        return cls(
            group_id=filters.group_id,
            period=filters.period,
            entities=filters.sorted_entities(),
            fx_on=filters.fx_on,
        )
    
    @property
    def entities_label(self) -> str:
        if not self.entities:
            return "All"
        return ",".join(str(e) for e in sorted(self.entities))


class ContributionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    company_id: int
    entity_name: str
    group_amount: Decimal
    percent: Decimal


def _contributions(items: List[Contribution]) -> List[ContributionView]:
    return [ContributionView.model_validate(c) for c in items]


class ReportViewModel(BaseModel):
    """Fields common to every consolidated view model."""
    filters: FiltersView
    contributions: List[ContributionView] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)
    
    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


# =============================================================================
# TRIAL BALANCE
# =============================================================================

class MemberShareView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    company_id: int
    company_name: str
    local_amount: Decimal


class GroupMemberView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    company_id: int
    name: str
    enabled: bool


class TBLineView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    group_account_id: int
    account_code: str
    account_name: str
    local_amount: Decimal
    group_amount: Decimal
    members: List[MemberShareView] = Field(default_factory=list)


class TBTotalsView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    local: Decimal = Decimal("0")
    group: Decimal = Decimal("0")
    balanced: bool = True
    refreshed: Optional[datetime] = None


class ConsolTBViewModel(ReportViewModel):
    group_name: str = ""
    reporting_currency: str = ""
    period_display: str = ""
    lines: List[TBLineView] = Field(default_factory=list)
    totals: TBTotalsView = Field(default_factory=TBTotalsView)
    members: List[GroupMemberView] = Field(default_factory=list)
    
    @classmethod
    def from_report(cls, report: TrialBalance, warnings: List[str]) -> "ConsolTBViewModel":
        return cls(
            filters=FiltersView.from_filters(report.filters),
            group_name=report.group_name,
            reporting_currency=report.reporting_currency,
            period_display=report.period_display,
            lines=[TBLineView.model_validate(line) for line in report.lines],
            totals=TBTotalsView.model_validate(report.totals),
            members=[GroupMemberView.model_validate(m) for m in report.members],
            contributions=_contributions(report.contributions),
            warnings=list(warnings),
        )
    
    @property
    def balance_message(self) -> str:
        if self.totals.balanced:
            return "Balanced"
        return f"Out of balance by {abs(self.totals.group):.2f}"


# =============================================================================
# PROFIT & LOSS
# =============================================================================

class PLLineView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    account_code: str
    account_name: str
    local_amount: Decimal
    group_amount: Decimal
    section: str


class PLTotalsView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    revenue: Decimal = Decimal("0")
    cogs: Decimal = Decimal("0")
    gross_profit: Decimal = Decimal("0")
    opex: Decimal = Decimal("0")
    net_income: Decimal = Decimal("0")
    delta_fx: Decimal = Decimal("0")


class ConsolPLViewModel(ReportViewModel):
    lines: List[PLLineView] = Field(default_factory=list)
    totals: PLTotalsView = Field(default_factory=PLTotalsView)
    
    @classmethod
    def from_report(cls, report: ProfitLossReport, warnings: List[str]) -> "ConsolPLViewModel":
        return cls(
            filters=FiltersView.from_filters(report.filters),
            lines=[PLLineView.model_validate(line) for line in report.lines],
            totals=PLTotalsView.model_validate(report.totals),
            contributions=_contributions(report.contributions),
            warnings=list(warnings),
        )
    
    def section_lines(self, section: str) -> List[PLLineView]:
        return [line for line in self.lines if line.section == section]


# =============================================================================
# BALANCE SHEET
# =============================================================================

class BSLineView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    account_code: str
    account_name: str
    local_amount: Decimal
    group_amount: Decimal
    section: str


class BSTotalsView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    assets: Decimal = Decimal("0")
    liabilities_equity: Decimal = Decimal("0")
    balanced: bool = True
    delta_fx: Decimal = Decimal("0")


class ConsolBSViewModel(ReportViewModel):
    assets: List[BSLineView] = Field(default_factory=list)
    liabilities_equity: List[BSLineView] = Field(default_factory=list)
    totals: BSTotalsView = Field(default_factory=BSTotalsView)
    
    @classmethod
    def from_report(cls, report: BalanceSheetReport, warnings: List[str]) -> "ConsolBSViewModel":
        return cls(
            filters=FiltersView.from_filters(report.filters),
            assets=[BSLineView.model_validate(line) for line in report.assets],
            liabilities_equity=[BSLineView.model_validate(line) for line in report.liabilities_equity],
            totals=BSTotalsView.model_validate(report.totals),
            contributions=_contributions(report.contributions),
            warnings=list(warnings),
        )
    
    @property
    def balance_message(self) -> str:
        gap = abs(self.totals.assets - self.totals.liabilities_equity)
        if self.totals.balanced or gap <= BALANCE_TOLERANCE:
            return "Balanced"
        return f"Out of balance by {gap:.2f}"


# =============================================================================
# REQUESTS
# =============================================================================

class RebuildRequest(BaseModel):
    group_id: int = Field(..., gt=0)
    period: str = Field(..., pattern=r"^\d{4}-\d{2}$")


class RefreshAllRequest(BaseModel):
    period: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}$")


class FxRateRequest(BaseModel):
    as_of: date
    pair: str = Field(..., min_length=6, max_length=6)
    average_rate: Decimal = Field(..., gt=0)
    closing_rate: Decimal = Field(..., gt=0)


class FxRateResponse(BaseModel):
    as_of: date
    pair: str
    average_rate: Decimal
    closing_rate: Decimal
