from __future__ import annotations

from typing import Any

from binapp.extensions import db
from binapp.models import ChangeLog


def record_change(
    change_type: str,
    message: str,
    *,
    source: str = "system",
    order_id: str | None = None,
    external_id: int | None = None,
    delta_quantity: int | None = None,
    bin_id: int | None = None,
    details: dict[str, Any] | None = None,
) -> ChangeLog:
    """Stage an audit row in the current session; the caller commits."""

    entry = ChangeLog(
        change_type=change_type,
        source=source,
        message=message,
        order_id=order_id,
        external_id=external_id,
        delta_quantity=delta_quantity,
        bin_id=bin_id,
        details=details,
    )
    db.session.add(entry)
    return entry
