"""
Job engine core.

This package provides a durable job queue with:
- A database ledger as the source of truth for every job
- Lease-based claims with FOR UPDATE SKIP LOCKED and compare-and-swap updates
- A bounded async worker pool with per-job deadlines and lease heartbeats
- Exponential backoff retries and a failure history per attempt
"""
