"""
LedgerMesh - Multi-Entity Financial Consolidation Engine
"""
