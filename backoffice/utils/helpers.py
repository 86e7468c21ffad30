"""Shared utility functions used by services and blueprints.

parse_date:     lenient date parsing (returns None on bad input)
parse_decimal:  money parsing (raises ValueError on bad input)
paginate_query: offset/limit paging for legacy Query objects
page_dict:      standard paged response envelope
"""
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
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


def parse_decimal(value) -> Decimal:
    """Parse a monetary value to Decimal, raising ValueError on bad input.

    Floats go through ``str()`` first so 0.1 stays 0.1.
    """
    if value is None or value == "":
        raise ValueError("amount is required")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid amount: {value!r}")
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"invalid amount: {value!r}") from exc


def paginate_query(query, page: int = 1, per_page: int = 20) -> tuple[list, int]:
    """Apply offset/limit pagination to a SQLAlchemy query.

    Args:
        query: SQLAlchemy query object.
        page: 1-based page number.
        per_page: Items per page (capped at 100).

    Returns:
        Tuple of (items list, total count).
    """
    page, per_page = normalize_page(page, per_page)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return items, total


def normalize_page(page, per_page) -> tuple[int, int]:
    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or 20), 1), MAX_PER_PAGE)
    return page, per_page


def page_dict(items: list, total: int, page: int, per_page: int) -> dict:
    page, per_page = normalize_page(page, per_page)
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": (total + per_page - 1) // per_page if total else 0,
    }
