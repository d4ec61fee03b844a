"""
Calibrated Bookkeeping - Source Package

A double-entry bookkeeping backend for personal finances. Balances are never
stored; they are reconstructed from user-asserted calibrations plus the
append-only transaction ledger.

DESIGN PRINCIPLES:
1. Calibrations are the only ground truth
2. Everything else is derived, never stored as mutable state
3. Drift is reported, never silently corrected
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Calibrated Bookkeeping Team"
