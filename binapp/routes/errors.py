from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from werkzeug.exceptions import HTTPException

from binapp.marketplace import MarketplaceError, OrderNotFoundError
from binapp.services.allocation_ledger import AllocationConflictError, AllocationNotFoundError
from binapp.services.stock_ledger import (
    BinNotFoundError,
    StockItemNotFoundError,
    StockLedgerError,
)

bp = Blueprint("errors", __name__)


def _error(message: str, status: int):
    return jsonify({"error": message}), status


@bp.app_errorhandler(OrderNotFoundError)
@bp.app_errorhandler(AllocationNotFoundError)
@bp.app_errorhandler(StockItemNotFoundError)
@bp.app_errorhandler(BinNotFoundError)
def handle_not_found(error: Exception):
    return _error(str(error), 404)


@bp.app_errorhandler(StockLedgerError)
@bp.app_errorhandler(AllocationConflictError)
def handle_conflict(error: Exception):
    current_app.logger.warning("Request rejected: %s", error)
    return _error(str(error), 409)


@bp.app_errorhandler(MarketplaceError)
def handle_marketplace_error(error: MarketplaceError):
    current_app.logger.warning("Marketplace call failed: %s", error)
    return _error(str(error), 502)


@bp.app_errorhandler(Exception)
def handle_exception(error: Exception):
    # Allow HTTP errors that are not 500 to propagate to their default handlers.
    if isinstance(error, HTTPException) and error.code != 500:
        return error

    current_app.logger.exception("Unhandled exception", exc_info=error)
    return _error("Internal Server Error", 500)
