"""Validate FX quote coverage for a consolidation group and period.

Usage:
    python scripts/fx_validate.py --group 1 --period 2024-01 [--pairs IDRUSD,SGDUSD] [--json]
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledgermesh.cli import main


if __name__ == '__main__':
    sys.exit(main())
