"""Synchronization pipeline: rate limiting, retries, probing, conflict resolution and orchestration."""
