"""Sync orchestration for the health sync engine.

Modules:
    orchestrator — Single-flight, retrying sync run per user
    scheduler    — Background trigger at fixed local times
    dedup        — Deterministic entry ids and upsert helpers
"""
