"""
Query synthesis and execution.

Builds list queries with lookup filters and runs them through the data
rate limiter, analyzing failures.
"""

from relmap.query.executor import QueryExecutor
from relmap.query.synthesizer import QuerySynthesizer

__all__ = ["QueryExecutor", "QuerySynthesizer"]
