"""
Idempotency ledger for multi-item operations.
"""
