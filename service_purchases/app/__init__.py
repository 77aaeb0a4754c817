"""
Purchases Service package for the entitlement engine.

The service grants paid access to assets, enforcing:
- Duplicate suppression: a short-lived Redis lock per identical request
- Rate limiting: fixed-window counters per actor and operation
- Idempotency: a durable ledger for bulk purchases
- Consistency: entitlement writes commit atomically or the payment is refunded

Structure:
- app.main: FastAPI app, routes, and lifecycle wiring.
- app.guard: Rate limit plus lock admission for mutating routes.
- app.locking, app.ratelimit, app.idempotency: coordination primitives.
- app.purchases: Single and bulk purchase engines.
- app.access: Access checks, usage and refunds.
- app.payments: Payment collaborator clients.
- app.persistence: Storage contracts and the PostgreSQL store.
- app.cache: Redis access cache.
"""
