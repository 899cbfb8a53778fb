"""
Gold Loan Servicing Engine

Loan lifecycle and payment accounting for gold-backed loans: simple interest
over exact elapsed days, installment schedules, payment allocation, early
repayment quotes, collateral return tracking and guarded batch jobs.
"""

__version__ = "1.0.0"
