"""Interval job that keeps marketplace orders allocated."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import Flask

from binapp.extensions import db
from binapp.marketplace import MarketplaceError
from binapp.services.order_sync import sync_eligible_orders


logger = logging.getLogger(__name__)

ORDER_SYNC_JOB_ID = "order_sync"


class SyncState:
    def __init__(self) -> None:
        self.summary: dict[str, Any] | None = None
        self.last_run_at: str | None = None
        self.last_error: str | None = None
        self.runs = 0
        self.lock = threading.Lock()

    def update(self, summary: dict[str, Any] | None, error: str | None = None) -> None:
        with self.lock:
            self.summary = summary
            self.last_error = error
            self.last_run_at = datetime.now(timezone.utc).isoformat()
            self.runs += 1

    def get(self) -> dict[str, Any]:
        with self.lock:
            return {
                "lastRunAt": self.last_run_at,
                "lastError": self.last_error,
                "runs": self.runs,
                "summary": dict(self.summary) if self.summary else None,
            }


class OrderSyncScheduler:
    def __init__(self, app: Flask, interval_seconds: int) -> None:
        self.app = app
        self.interval_seconds = max(1, int(interval_seconds))
        self.state = SyncState()
        self.scheduler: BackgroundScheduler | None = None

    def run_once(self) -> dict[str, Any] | None:
        config = self.app.config
        with self.app.app_context():
            try:
                summary = sync_eligible_orders(
                    self.app.extensions["binapp.marketplace"],
                    eligible_states=config["ELIGIBLE_ORDER_STATES"],
                    zero_only=config["ORDER_SYNC_ZERO_ONLY"],
                    max_per_run=config["ORDER_SYNC_MAX_PER_RUN"],
                ).to_dict()
            except MarketplaceError as exc:
                logger.warning("Order sync skipped: %s", exc)
                self.state.update(None, str(exc))
                return None
            except Exception as exc:  # noqa: BLE001 - keep the job scheduled
                logger.exception("Order sync run failed")
                self.state.update(None, str(exc))
                return None
            finally:
                db.session.remove()
        self.state.update(summary)
        return summary

    def start(self) -> None:
        if self.scheduler is not None:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        # First run fires immediately, then on the interval.
        scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=ORDER_SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        scheduler.start()
        self.scheduler = scheduler
        logger.info("Order sync scheduler started (every %ss)", self.interval_seconds)

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
