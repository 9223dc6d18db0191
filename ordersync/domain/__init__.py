"""
                        Domain Module

Pure, I/O-free building blocks of the sync engine:
    - canonical: tolerant value extraction and coercion helpers
    - lookups: menu / modifier / dining option lookup tables
    - normalize: raw order -> NormalizedOrder pipeline
    - modifiers: menu-order sorting and modifier summaries
    - order_cache: fingerprinted order cache with staleness eviction
    - snapshots: freshness-checked menu/config payload cache
    - debug_diff: normalized vs raw order comparison
"""
