"""Shared text coercion helpers: the single place where stored step text becomes typed.

Step answers are persisted as text. Every reader (requirement evaluator,
status deriver, allocation ledger) goes through these helpers so that the
truthy set, number parsing and date parsing never diverge between modules.

is_truthy:      canonical boolean set {1, true, yes, on}
get_string:     trimmed text or ""
get_number:     finite float or 0.0
to_text:        text or number → trimmed text
parse_date:     ISO / DD.MM.YYYY → date, None on bad input
"""
import logging
import math
from datetime import date, datetime

logger = logging.getLogger(__name__)

TRUTHY_VALUES = frozenset({"1", "true", "yes", "on"})


# ── Scalars ──────────────────────────────────────────────────────────────────

def is_truthy(value) -> bool:
    """Return True only for text in the canonical truthy set (case-insensitive)."""
    if not isinstance(value, str):
        return False
    return value.strip().lower() in TRUTHY_VALUES


def get_string(value) -> str:
    """Return trimmed text, or "" for anything that is not text."""
    return value.strip() if isinstance(value, str) else ""


def to_text(value) -> str:
    """Like get_string() but also renders finite numbers (ledger correlation keys)."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)
    return ""


def get_number(value) -> float:
    """Parse a stored number.

    Non-numeric text, blanks, NaN and infinities are treated as absent and
    contribute 0 to aggregates.
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            parsed = float(text)
        except ValueError:
            return 0.0
        return parsed if math.isfinite(parsed) else 0.0
    return 0.0


def get_count(value) -> int:
    """Non-negative whole count from stored text (truncates fractions)."""
    return max(0, int(get_number(value)))


def normalize_choice(value, allowed, default: str) -> str:
    """Upper-case *value* and return it if allowed, otherwise *default*."""
    normalized = get_string(value).upper()
    if normalized in allowed:
        return normalized
    if normalized:
        logger.debug("Unrecognised enum text %r, falling back to %s", normalized, default)
    return default


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


# ── Containers ───────────────────────────────────────────────────────────────

def to_record(value) -> dict:
    """Return *value* if it is a mapping node of the value tree, else {}."""
    return value if isinstance(value, dict) else {}


def as_group_array(values, group_id: str) -> list[dict]:
    """Items of a repeatable group, skipping anything that is not a value object."""
    raw = to_record(values).get(group_id)
    if not isinstance(raw, list):
        return []
    return [entry for entry in raw if isinstance(entry, dict)]


def has_any_value(value) -> bool:
    """Schema-agnostic 'touched' check used by the status deriver.

    True if any leaf is non-blank text or a finite number.
    """
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, list):
        return any(has_any_value(entry) for entry in value)
    if isinstance(value, dict):
        return any(has_any_value(entry) for entry in value.values())
    return False
