"""Business-logic layer.

Core alert lifecycle services live in:
- rule_engine.py (rule index, evaluation, transition application, batch processing)
- scheduler.py (auto-close and rule-evaluation sweeps)
- cache.py (rule cache + view cache invalidation)

HTTP-facing services:
- alerts_service.py (ingestion, listing, manual resolve, history)
- rules_service.py (rule CRUD; every mutation reloads the engine)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
