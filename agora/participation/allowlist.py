"""
Allow-List Builder — spreadsheet rows to a set of participant identities.

The spreadsheet reader is external; it hands over whatever cell values it
found. Header rows, blank cells, numbers and typos are noise, not errors:
they are dropped silently. An empty result is returned as-is; whether an
empty allow-list is acceptable is the create workflow's decision.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from agora.participation.identity import normalize_identity

logger = logging.getLogger(__name__)


def _iter_cells(rows: Any) -> Iterable[Any]:
    """Flatten rows of arbitrary nesting into individual cell values."""
    if isinstance(rows, (str, bytes)):
        yield rows
    elif isinstance(rows, Mapping):
        for value in rows.values():
            yield from _iter_cells(value)
    elif isinstance(rows, Iterable):
        for value in rows:
            yield from _iter_cells(value)
    else:
        yield rows


def build_allow_list(rows: Any) -> list[str]:
    """
    Build a deduplicated allow-list from raw spreadsheet rows.

    Args:
        rows: Sequence of rows; each row may be a scalar, a sequence of
            cells, or a mapping of column name to cell (csv.DictReader).

    Returns:
        Normalized identities in order of first valid occurrence. Callers
        should treat the result as a set.
    """
    seen: dict[str, None] = {}
    discarded = 0

    for cell in _iter_cells(rows):
        if not isinstance(cell, str):
            discarded += 1
            continue
        check = normalize_identity(cell.strip())
        if not check.is_valid:
            discarded += 1
            continue
        seen.setdefault(check.identity, None)

    logger.debug(
        "Allow-list built: %d identities, %d cells discarded", len(seen), discarded
    )
    return list(seen)
