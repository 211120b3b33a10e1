"""
Core modules for Zenith Credits.

This package contains the credit ledger, usage pricing, provider fallback
execution and balance monitoring.
"""
