"""
TestMaster AI
Blueprint registry and shared request helpers.
"""

from flask import current_app, request


def service(name: str):
    """Per-app service instance built in create_app (see app.extensions)."""
    return current_app.extensions[f"testmaster.{name}"]


def paginate_list(items: list, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to an already ordered list.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_page, total_count)
    """
    total = len(items)
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return items[offset:offset + limit], total


def int_arg(name: str):
    """Optional integer query parameter; ValidationError when malformed."""
    from testmaster.core.exceptions import ValidationError

    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer", {name: "invalid"}) from exc
