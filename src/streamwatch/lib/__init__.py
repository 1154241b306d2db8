"""
Cross-cutting building blocks: configuration, logging, errors, health,
retry policy, quota bookkeeping, debouncing, dedup and supervised tasks.
"""
