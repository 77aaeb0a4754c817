"""
Caching package for the Purchases service.

Caches positive access decisions in Redis; the entitlement store stays
authoritative.
"""
