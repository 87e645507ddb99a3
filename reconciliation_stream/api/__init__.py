"""API subsystem.

HTTP requests made outside the event stream:
- Result fetcher for the session-scoped final result
- Result shaping into the summary payload handed to the presentation sink
"""

from __future__ import annotations

from .result_fetcher import ResultFetcher, shape_result, summarize_result

__all__ = [
    "ResultFetcher",
    "shape_result",
    "summarize_result",
]
