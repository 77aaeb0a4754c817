"""
Persistence package for the Purchases service.

- base: storage contracts and shared constraint names.
- postgres: asyncpg implementation of every contract.
"""
