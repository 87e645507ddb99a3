"""Shared utility functions for the reconciliation stream client.

This module contains reusable helpers used across the codebase:
- Template rendering (_render_error_template)
- JSON helpers (_safe_json_loads, _pretty_json)
- Type coercion (_coerce_int, _coerce_progress, _first_present)
- Session id generation

These utilities have no dependencies on the rest of the package beyond config.
"""

from __future__ import annotations

import json
import math
import re
import time
from typing import Any, Mapping, Optional

from .config import DEFAULT_BACKEND_ERROR_TEMPLATE, _SESSION_ID_PREFIX

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

_TEMPLATE_IF_TOKEN_RE = re.compile(r"\{\{\s*(#if\s+(\w+)|/if)\s*\}\}")
_FIRST_INT_RE = re.compile(r"(\d+)")

# -----------------------------------------------------------------------------
# Template Rendering
# -----------------------------------------------------------------------------

def _template_value_present(value: Any) -> bool:
    """Return True when a template variable should be treated as set."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return bool(value)
    return True


def _render_error_template(template: str, values: dict[str, Any]) -> str:
    """Render a message template, honoring {{#if}} conditionals.

    Lines whose placeholders resolve to empty values are dropped, so optional
    fields never leave dangling labels behind.
    """
    if not template:
        template = DEFAULT_BACKEND_ERROR_TEMPLATE

    rendered_lines: list[str] = []
    condition_stack: list[bool] = []

    def _conditions_active() -> bool:
        return all(condition_stack) if condition_stack else True

    for raw_line in template.splitlines():
        last_index = 0
        line_parts: list[str] = []

        for match in _TEMPLATE_IF_TOKEN_RE.finditer(raw_line):
            segment = raw_line[last_index:match.start()]
            if segment and _conditions_active():
                line_parts.append(segment)

            token = match.group(1) or ""
            if token.startswith("#if"):
                condition_stack.append(_template_value_present(values.get(match.group(2) or "")))
            elif condition_stack:
                condition_stack.pop()
            last_index = match.end()

        tail_segment = raw_line[last_index:]
        if tail_segment and _conditions_active():
            line_parts.append(tail_segment)

        if not line_parts:
            # Blank template lines survive; lines that were only tokens do not.
            if not raw_line.strip() and _conditions_active():
                rendered_lines.append("")
            continue

        line = "".join(line_parts)
        drop_line = False
        for name, value in values.items():
            placeholder = f"{{{name}}}"
            if placeholder in line:
                if not _template_value_present(value):
                    drop_line = True
                line = line.replace(placeholder, "" if value is None else str(value))
        if not drop_line:
            rendered_lines.append(line)
    return "\n".join(rendered_lines).strip()


# -----------------------------------------------------------------------------
# JSON Helpers
# -----------------------------------------------------------------------------

def _safe_json_loads(payload: Optional[str]) -> Any:
    """Return parsed JSON or None without raising."""
    if not payload:
        return None
    try:
        return json.loads(payload)
    except (TypeError, ValueError):
        return None


def _pretty_json(value: Any) -> str:
    """Return a human-readable JSON string or an empty string when not applicable."""
    if value is None:
        return ""
    if isinstance(value, (str, bytes)):
        text = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
        return text.strip()
    try:
        return json.dumps(value, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


# -----------------------------------------------------------------------------
# Type Coercion
# -----------------------------------------------------------------------------

def _coerce_int(value: Any) -> Optional[int]:
    """Convert numbers and numeric strings into ints; anything else is None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float):
        # json.loads accepts NaN and Infinity.
        if not math.isfinite(value):
            return None
        try:
            return int(value)
        except (OverflowError, ValueError):
            return None
    return None


def _coerce_progress(value: Any) -> Optional[float]:
    """Return ``value`` as a fraction clamped to [0, 1], or None when not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        fraction = float(value)
    except (TypeError, ValueError):
        return None
    if fraction != fraction:  # NaN
        return None
    return min(1.0, max(0.0, fraction))


def _first_present(fields: Mapping[str, Any], *keys: str) -> Any:
    """Return the first value under ``keys`` that is not None."""
    for key in keys:
        value = fields.get(key)
        if value is not None:
            return value
    return None


def _first_int_in_text(text: Any) -> Optional[int]:
    """Return the first integer found in ``text`` (e.g. "106 transactions")."""
    if not isinstance(text, str):
        return None
    match = _FIRST_INT_RE.search(text)
    return int(match.group(1)) if match else None


# -----------------------------------------------------------------------------
# Identifiers
# -----------------------------------------------------------------------------

def _fallback_session_id() -> str:
    """Client-generated session id used when the backend omits the header."""
    return f"{_SESSION_ID_PREFIX}{int(time.time() * 1000)}"
