"""
Loan Servicing Engine

Amortization schedules, floating-rate resets, prepayments and an
append-only loan version history with Key Facts Statements, using Decimal
money throughout and a hash-chained audit trail.
"""

__version__ = "1.0.0"
