"""
LedgerMesh - API Routers
"""

from ledgermesh.routers import consolidation

__all__ = ["consolidation"]
