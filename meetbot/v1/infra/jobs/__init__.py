"""
Jobs infrastructure for background processing of meeting recordings.

This package provides the job system with:
- Durable job store with atomic claims and lease expiry
- Bounded worker pool with registry-based pluggable handlers
- Retry with exponential backoff and jitter
- Cron-style scheduler for maintenance jobs
"""
