"""Longbox core package.

Modules:
- archive: format detection, listings and the listing cache
- pages: page reorder/delete for CBZ archives with backup and rollback
- scanner: filesystem discovery and the diff against the index
- pending: scan results held for confirmation
- job_queue: single-flight job queue with cancellation tokens
- scan_jobs: persisted scan job state, logs and startup recovery
- orchestrator: the five-stage scan pipeline
- service: wiring used by the CLI and the HTTP API
- api: FastAPI endpoints
- config: INI parsing and config object
"""
