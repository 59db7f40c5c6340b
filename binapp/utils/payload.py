from __future__ import annotations

from typing import Any

from flask import request


def json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object.")
    return payload


def require_int(payload: dict[str, Any], key: str, *, minimum: int | None = None) -> int:
    value = payload.get(key)
    if value is None or value == "" or isinstance(value, bool):
        raise ValueError(f"{key} is required.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer.") from None
    if minimum is not None and number < minimum:
        raise ValueError(f"{key} must be at least {minimum}.")
    return number


def optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None
