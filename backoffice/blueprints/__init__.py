"""
Expense Back Office
Blueprint registry and request helpers shared by blueprints.
"""

from flask import request


def page_args(default_per_page: int = 20) -> tuple[int, int]:
    """Read ``page`` / ``per_page`` query params (1-based, per_page capped by services)."""
    page = request.args.get("page", 1, type=int) or 1
    per_page = request.args.get("per_page", default_per_page, type=int) or default_per_page
    return page, per_page


def current_user_id() -> int | None:
    """Acting user from the ``X-User-Id`` header (set by the gateway in front of the API)."""
    raw = (request.headers.get("X-User-Id") or "").strip()
    return int(raw) if raw.isdigit() else None
