"""
LedgerMesh - Pydantic Schemas
"""

from ledgermesh.schemas.consolidation import (
    ConsolBSViewModel,
    ConsolPLViewModel,
    ConsolTBViewModel,
    FiltersView,
)

__all__ = [
    "ConsolBSViewModel",
    "ConsolPLViewModel",
    "ConsolTBViewModel",
    "FiltersView",
]
