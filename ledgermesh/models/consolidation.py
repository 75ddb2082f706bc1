"""
LedgerMesh - Consolidation Models

Tables read by the consolidation engine. Journal entries, journal lines and
the local-to-group account map belong to the accounting schema and are only
referenced from raw SQL in the repository.
"""

from datetime import date
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Date, ForeignKey, Numeric, String, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgermesh.database import Base
from ledgermesh.models.base import BaseModel


class Period(BaseModel):
    """Accounting period identified by a YYYY-MM code."""
    __tablename__ = "periods"
    
    code: Mapped[str] = mapped_column(String(7), nullable=False, unique=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="OPEN",
        comment="OPEN, OPEN_CONSOL, CLOSED"
    )


class Company(BaseModel):
    """Legal entity posting to the ledger."""
    __tablename__ = "companies"
    
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="IDR",
        comment="Functional (local) currency, ISO 4217"
    )


class ConsolGroup(BaseModel):
    """Consolidation group reporting in a single currency."""
    __tablename__ = "consol_groups"
    
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    reporting_currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="ISO 4217 reporting currency"
    )
    
    members: Mapped[List["ConsolMember"]] = relationship(
        back_populates="group", cascade="all, delete-orphan"
    )


class ConsolMember(Base):
    """Company membership in a consolidation group."""
    __tablename__ = "consol_members"
    
    group_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("consol_groups.id", ondelete="CASCADE"), primary_key=True
    )
    company_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("companies.id"), primary_key=True
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    
    group: Mapped[ConsolGroup] = relationship(back_populates="members")
    company: Mapped[Company] = relationship()


class ConsolGroupAccount(BaseModel):
    """Group chart of accounts line that local accounts map onto."""
    __tablename__ = "consol_group_accounts"
    __table_args__ = (UniqueConstraint("group_id", "code"),)
    
    group_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("consol_groups.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="ASSET, LIABILITY, EQUITY, REVENUE, EXPENSE"
    )


class ConsolBalance(Base):
    """
    Materialised consolidated balance per group account and period.
    
    `members` holds the per-company breakdown as a JSON array of
    {company_id, company_name, local_ccy_amt} ordered by company id.
    """
    __tablename__ = "mv_consol_balances"
    
    period_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("periods.id"), primary_key=True
    )
    group_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("consol_groups.id", ondelete="CASCADE"), primary_key=True
    )
    group_account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("consol_group_accounts.id"), primary_key=True
    )
    local_ccy_amt: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False, default=0)
    group_ccy_amt: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False, default=0)
    members: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)


class FxRate(Base):
    """Monthly FX quote for a currency pair such as IDRUSD."""
    __tablename__ = "fx_rates"
    
    as_of_date: Mapped[date] = mapped_column(
        Date, primary_key=True, comment="Always the first day of the month"
    )
    pair: Mapped[str] = mapped_column(String(6), primary_key=True)
    average_rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    closing_rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
