"""
Community Lending Core

Loan financial engine for a community micro-lending fund: interest and
schedule calculation, loan policy caps, the shared fund ledger, the loan
lifecycle, member contributions and repayments, all with Decimal money
and a hash-chained audit trail.
"""

__version__ = "1.0.0"
