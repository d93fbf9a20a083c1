"""
Job Queue — Durable, deduplicated work queues with bounded worker pools.

- Callers ENQUEUE jobs under a deterministic key (one outstanding job per key)
- WorkerPools CLAIM jobs, rate-limit them and run the queue's handler
- Failures that raise are retried with exponential backoff, then fail
- Supports Redis (production) and an in-memory heap (dev/tests)
"""
