import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import pytest
from flask import Flask, g

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from binapp.utils.logging import LOG_FILENAME, SERVICE_LOGGERS, configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    service_levels = {name: logging.getLogger(name).level for name in SERVICE_LOGGERS}
    scheduler_level = logging.getLogger("apscheduler").level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    for name, value in service_levels.items():
        logging.getLogger(name).setLevel(value)
    logging.getLogger("apscheduler").setLevel(scheduler_level)


def _app(tmp_path, **config):
    app = Flask(__name__)
    app.config.update(LOG_DIR=str(tmp_path), **config)

    @app.get("/whoami")
    def whoami():
        return {"requestId": g.request_id}

    return app


def test_service_loggers_follow_the_configured_level(tmp_path, restore_logging):
    app = _app(tmp_path, LOG_LEVEL="debug")

    log_path = configure_logging(app)

    assert log_path == tmp_path / LOG_FILENAME
    assert logging.getLogger("binapp.services").level == logging.DEBUG
    assert logging.getLogger("binapp.scheduler").level == logging.DEBUG
    assert logging.getLogger("apscheduler").level == logging.WARNING
    assert any(
        isinstance(handler, RotatingFileHandler) and handler.baseFilename == str(log_path)
        for handler in logging.getLogger().handlers
    )


def test_unknown_level_falls_back_to_info(tmp_path, restore_logging):
    configure_logging(_app(tmp_path, LOG_LEVEL="chatty"))

    assert logging.getLogger("binapp.services").level == logging.INFO


def test_request_id_header_is_kept(tmp_path, restore_logging):
    app = _app(tmp_path)
    configure_logging(app)
    client = app.test_client()

    given = client.get("/whoami", headers={"X-Request-ID": "abc123"}).get_json()
    generated = client.get("/whoami").get_json()

    assert given == {"requestId": "abc123"}
    assert len(generated["requestId"]) == 12
