"""
Cooperative Lending Core

Loan lifecycle and amortization engine: diminishing-balance schedules,
FIFO payment allocation, penalty accrual and exact payment reversal.
All monetary values are integer minor currency units.
"""

__version__ = "1.0.0"
