from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from binapp.extensions import db


bp = Blueprint("health", __name__, url_prefix="/health")


@bp.get("")
def health():
    try:
        db.session.execute(text("SELECT 1"))
        database_ok = True
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("Health check database ping failed: %s", exc)
        database_ok = False

    scheduler = current_app.extensions.get("binapp.scheduler")
    status_code = 200 if database_ok else 503
    return (
        jsonify(
            {
                "status": "ok" if database_ok else "degraded",
                "database": database_ok,
                "orderSync": scheduler is not None,
            }
        ),
        status_code,
    )
