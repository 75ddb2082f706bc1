"""
LedgerMesh - SQLAlchemy Models Package

This package contains the database models read by the consolidation engine.
"""

from ledgermesh.models.base import BaseModel, TimestampMixin
from ledgermesh.models.consolidation import (
    Period,
    Company,
    ConsolGroup,
    ConsolMember,
    ConsolGroupAccount,
    ConsolBalance,
    FxRate,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "Period",
    "Company",
    "ConsolGroup",
    "ConsolMember",
    "ConsolGroupAccount",
    "ConsolBalance",
    "FxRate",
]
