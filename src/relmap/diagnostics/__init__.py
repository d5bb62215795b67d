"""Diagnostics for failed Web API calls."""

from relmap.diagnostics.error_analyzer import ErrorAnalyzer

__all__ = ["ErrorAnalyzer"]
