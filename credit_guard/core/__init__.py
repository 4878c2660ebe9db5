"""
Core modules for Credit Guard.

This package contains the credit ledger, abuse guard, rate limiter,
credential pool and batch orchestrator.
"""
