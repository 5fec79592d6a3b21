"""
Delayed job engine.

This package provides a database-backed, multi-queue job system with:
- A single delayed_jobs table as the only coordination point
- Lease-based claims that survive worker crashes
- Registry-based pluggable handlers
- Deterministic retry backoff and per-queue concurrency ceilings
"""
