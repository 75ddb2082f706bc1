"""
LedgerMesh - Services
"""
