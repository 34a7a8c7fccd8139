"""
Small coercion helpers shared by every parse-and-normalize step.

Persisted payloads are plain JSON, possibly written by an older schema or a
crashed writer, so nothing read from storage is trusted to have the right
type. These helpers turn "maybe a value" into "a value or None".
"""

from __future__ import annotations

import math
import re
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def new_id() -> str:
    return str(uuid.uuid4())


def is_record(value: Any) -> bool:
    return isinstance(value, dict)


def as_finite_number(value: Any) -> Optional[float]:
    """Return a finite int/float, or None. Booleans are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def as_id(value: Any) -> Optional[str]:
    """A non-empty, trimmed string id or None."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def unique_ids(values: Iterable[Any]) -> List[str]:
    """De-duplicate ids, keeping first-seen order and skipping junk."""
    ids: List[str] = []
    seen = set()
    for value in values:
        task_id = as_id(value)
        if task_id is None or task_id in seen:
            continue
        seen.add(task_id)
        ids.append(task_id)
    return ids


def is_iso_date(value: Any) -> bool:
    if not isinstance(value, str) or not _ISO_DATE_RE.match(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def parse_iso_datetime(value: Any) -> Optional[float]:
    """Epoch seconds for an ISO-8601 string, or None when unparseable."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text).timestamp()
    except ValueError:
        return None


def as_bool(value: Any, default: bool = False) -> bool:
    return value if isinstance(value, bool) else default


# Anything above this is a millisecond timestamp (1e11 s is the year 5138)
_MS_THRESHOLD = 1e11


def as_epoch_seconds(value: Any) -> Optional[float]:
    """A finite instant in epoch seconds; millisecond stamps are scaled down."""
    number = as_finite_number(value)
    if number is None:
        return None
    if abs(number) >= _MS_THRESHOLD:
        return number / 1000.0
    return float(number)
