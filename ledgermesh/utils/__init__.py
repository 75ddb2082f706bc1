"""
LedgerMesh - Utilities Package
"""
