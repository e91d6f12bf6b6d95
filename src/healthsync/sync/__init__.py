"""Incremental sync infrastructure.

Modules:
    anchor_store — Persistent per-series sync anchors (in-memory and JSON files)
    dedup        — Identity-based deduplication of aggregate records
    statistics   — Windowed, deduplicated statistics passes
    quantities   — Cursor-based reads of raw samples
    instructions — Historical / daily sync stages
    progress     — Per-resource sync progress history
    handlers     — Metric → resource and resource → handler tables
    scheduler    — Concurrent per-resource sync passes
"""
