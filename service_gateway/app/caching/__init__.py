"""
Gateway caching package.

Provides the in-process TTL cache used by ingestion, with a stale-read path
for degraded mode, and an optional single-flight coalescer for concurrent
misses on the same key.
"""
