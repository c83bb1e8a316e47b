"""
Resilient concurrent batch execution.

Runs independent work items against an unreliable remote service with
bounded parallelism, classified retries, a shared rate limit and per-item
checkpoints that allow an interrupted batch to be resumed.
"""

__version__ = "0.1.0"
