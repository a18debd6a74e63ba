"""Wearable sync infrastructure for Fitdash.

Modules:
    orchestrator — Per-user, per-provider sync with isolated failures
    dedup        — Natural-key upsert helpers (provider + date + type + record key)
"""
