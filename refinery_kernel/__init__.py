"""
Refinery Kernel - batch flow execution and analytics.

A graph-driven process engine for refining batches with:
- Versioned, validated process flows (one active flow per pipeline)
- Per-batch serialized step completion with optimistic concurrency
- Append-only batch event log
- Incremental recovery, turnaround and loss/gain analytics
"""

__version__ = "0.1.0"
