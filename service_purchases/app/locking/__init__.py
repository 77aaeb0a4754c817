"""
Duplicate-request suppression for the Purchases service.

Holds the Redis-backed lock store that lets at most one identical
operation per actor run at a time.
"""
