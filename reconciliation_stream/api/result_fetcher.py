"""Session-scoped result retrieval.

After the completion event the backend persists the full reconciliation
result and serves it from ``GET {BASE_URL}/stream/session/{id}/result``.
The result is always requested for the session that produced it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

import aiohttp

from ..core.config import Valves
from ..core.errors import ResultFetchError, _extract_error_message

LOGGER = logging.getLogger(__name__)

# Result arrays and the summary counts derived from their lengths.
SUMMARY_FIELDS: tuple[tuple[str, str], ...] = (
    ("conciliated_count", "conciliated"),
    ("suggested_count", "suggested"),
    ("pending_count", "pending"),
    ("no_correlation_count", "no_correlation"),
    ("unmatched_mongo_count", "unmatched_mongo"),
)


def summarize_result(raw: Mapping[str, Any]) -> dict[str, int]:
    """Count each result category; a missing or non-list category counts as 0."""
    summary: dict[str, int] = {}
    for count_key, list_key in SUMMARY_FIELDS:
        items = raw.get(list_key)
        summary[count_key] = len(items) if isinstance(items, list) else 0
    return summary


def shape_result(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Build the payload handed to the presentation sink.

    The raw fields stay at the top level, ``summary`` carries the counts and
    ``result`` keeps the untouched backend document.
    """
    payload = dict(raw)
    payload["summary"] = summarize_result(raw)
    payload["result"] = dict(raw)
    return payload


class ResultFetcher:
    """Fetches the final result of a completed session."""

    def __init__(self, session: aiohttp.ClientSession, valves: Valves) -> None:
        self._session = session
        self._valves = valves

    async def fetch_result(self, session_id: str, *, timeout: Optional[aiohttp.ClientTimeout] = None) -> dict[str, Any]:
        """Return the raw result document for ``session_id``.

        Raises:
            ResultFetchError: Non-2xx status, unreadable body or ``success`` not true.
        """
        if not session_id:
            raise ResultFetchError("Cannot fetch results without a session id")

        url = self._valves.result_url(session_id)
        LOGGER.info("Fetching reconciliation result for session %s", session_id)
        try:
            async with self._session.get(url, timeout=timeout) as resp:
                body_text = await resp.text()
                if resp.status < 200 or resp.status >= 300:
                    message = _extract_error_message(body_text) or resp.reason or "Result request failed"
                    raise ResultFetchError(
                        f"HTTP {resp.status}: {message}",
                        session_id=session_id,
                        status=resp.status,
                    )
                try:
                    data = await resp.json(content_type=None)
                except ValueError as exc:
                    raise ResultFetchError(
                        "Result response is not valid JSON",
                        session_id=session_id,
                        status=resp.status,
                    ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ResultFetchError(
                f"Result request failed: {type(exc).__name__}: {exc}",
                session_id=session_id,
            ) from exc

        if not isinstance(data, dict):
            raise ResultFetchError("Result response is not a JSON object", session_id=session_id)
        if data.get("success") is not True:
            message = data.get("error") or data.get("message") or "Backend reported an unsuccessful result"
            raise ResultFetchError(str(message), session_id=session_id, status=resp.status)

        result = data.get("result")
        if not isinstance(result, dict):
            raise ResultFetchError("Result response has no result object", session_id=session_id)
        LOGGER.debug("Result for session %s: %s", session_id, summarize_result(result))
        return result
