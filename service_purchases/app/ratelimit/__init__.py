"""
Rate limiting package for the Purchases service.

Fixed-window counters per (operation, actor) kept in Redis.
"""
