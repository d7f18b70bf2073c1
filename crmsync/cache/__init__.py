"""
Redis-backed caches: configuration read-through cache and webhook deduplication
"""
