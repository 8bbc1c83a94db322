"""
Cursor-based pagination helpers.

A cursor is the base64url encoding (without padding) of a JSON object
``{"field", "value", "id", "direction"}`` describing the last item of
the previous page.  Lists are always ordered by ``(field, id)`` so the
keyset filter ``field < value OR (field = value AND id < id)`` (or its
ascending mirror) yields the next page without overlap.

Services fetch ``limit + 1`` rows; ``create_pagination_response``
trims the extra row and uses it to decide ``has_more``.
"""

import base64
import binascii
import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import InvalidInputError


DEFAULT_LIMIT = 20
MAX_LIMIT = 100

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_limit(raw: Any, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    """Parse a ``limit`` query value.

    Missing, non-numeric, zero and negative values give ``default``;
    decimals are truncated (``"12.5"`` -> 12) and the result is capped
    at ``maximum``.
    """
    if raw is None:
        return default
    if isinstance(raw, int):
        value = raw
    else:
        match = _LEADING_INT.match(str(raw))
        if not match:
            return default
        value = int(match.group(1))
    if value <= 0:
        return default
    return min(value, maximum)


def encode_cursor(data: Dict[str, Any]) -> str:
    raw = json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_cursor(cursor: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a cursor, returning ``None`` for anything malformed."""
    if not cursor or not isinstance(cursor, str):
        return None
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.b64decode(padded, altchars=b"-_", validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    if not isinstance(data.get("field"), str) or not isinstance(data.get("id"), str):
        return None
    if "value" not in data:
        return None
    if data["value"] is not None and not isinstance(data["value"], (str, int, float)):
        return None
    if data.get("direction") not in ("asc", "desc"):
        return None
    return data


def validate_cursor(cursor: Optional[str]) -> Optional[str]:
    """Return an error message for a supplied cursor that cannot be decoded."""
    if cursor is None or cursor == "":
        return None
    if decode_cursor(cursor) is None:
        return "Invalid cursor format"
    return None


def apply_cursor(
    where: List[str],
    params: List[Any],
    cursor: Optional[str],
    field: str,
    direction: str,
    column: Optional[str] = None,
    id_column: str = "id",
) -> bool:
    """Append the keyset filter for ``cursor`` to ``where``/``params``.

    ``column`` is the SQL expression sorted on (defaults to ``field``).
    The cursor is ignored when it does not decode or was issued for a
    different sort field or direction.  Returns ``True`` when a filter
    was added.
    """
    decoded = decode_cursor(cursor)
    if decoded is None:
        return False
    if decoded["field"] != field or decoded["direction"] != direction:
        return False
    expr = column or field
    op = "<" if direction == "desc" else ">"
    where.append(f"({expr} {op} ? OR ({expr} = ? AND {id_column} {op} ?))")
    params.extend([decoded["value"], decoded["value"], decoded["id"]])
    return True


def order_clause(field_expr: str, direction: str, id_column: str = "id") -> str:
    sql_dir = "ASC" if direction == "asc" else "DESC"
    return f"ORDER BY {field_expr} {sql_dir}, {id_column} {sql_dir}"


def create_pagination_response(
    items: Sequence[Dict[str, Any]],
    limit: int,
    field: str,
    direction: str,
    cursor: Optional[str],
    id_key: str = "id",
    value_key: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """Trim ``items`` to ``limit`` and build the pagination block."""
    has_more = len(items) > limit
    page = list(items[:limit])
    next_cursor = None
    if has_more and page:
        last = page[-1]
        next_cursor = encode_cursor({
            "field": field,
            "value": last.get(value_key or field),
            "id": str(last.get(id_key)),
            "direction": direction,
        })
    return page, {
        "cursor": cursor or None,
        "next_cursor": next_cursor,
        "has_more": has_more,
        "limit": limit,
    }


def ensure_valid_cursor(cursor: Optional[str]) -> Optional[str]:
    """Raise ``INVALID_INPUT`` for a malformed cursor, else return it."""
    error = validate_cursor(cursor)
    if error:
        raise InvalidInputError(error)
    return cursor or None
