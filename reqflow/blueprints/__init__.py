"""
Request Lifecycle Platform
Blueprint registry.
"""

from flask import request

from reqflow.core.exceptions import ValidationError


def get_pagination(default_per_page=20, max_per_page=200):
    """Read page/per_page query params.

    Query params:
        page     — 1-based page number (default 1)
        per_page — items per page (default ``default_per_page``, capped)

    Returns:
        (page, per_page)
    """
    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(max_per_page, max(1, request.args.get("per_page", default_per_page, type=int)))
    return page, per_page


def get_json_body() -> dict:
    """Return the JSON object body or raise ValidationError."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data
