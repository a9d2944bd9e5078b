"""Log formatters and handler setup."""

import json
import logging

import pytest
from flask import Flask

from catering.middleware.logging_config import JSONFormatter, ReadableFormatter, configure_logging


def _record(**extra):
    record = logging.LogRecord("catering.services.change_request_processor", logging.INFO,
                               __file__, 10, "Approving change request %s", (7,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_line_carries_entity_ids():
    line = json.loads(JSONFormatter().format(_record(change_request_id=7, saga_step="load", quote_id=3)))
    assert line["msg"] == "Approving change request 7"
    assert line["level"] == "INFO"
    assert (line["change_request_id"], line["saga_step"], line["quote_id"]) == (7, "load", 3)
    assert "invoice_id" not in line


def test_readable_line_shows_context_and_duration():
    line = ReadableFormatter().format(_record(change_request_id=7, saga_step="notify", duration_ms=12.4))
    assert "[cr=7 step=notify]" in line
    assert line.endswith("(12ms)")


@pytest.fixture()
def bare_app():
    app = Flask(__name__)
    yield app
    restore = Flask(__name__)
    restore.config.update(TESTING=True)
    configure_logging(restore)


def test_configured_level_wins(bare_app):
    bare_app.config.update(TESTING=True, LOG_LEVEL="warning")
    configure_logging(bare_app)
    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, ReadableFormatter)


def test_production_uses_json(bare_app):
    bare_app.config.update(TESTING=False, DEBUG=False, LOG_LEVEL=None)
    configure_logging(bare_app)
    root = logging.getLogger()
    assert root.level == logging.INFO
    assert isinstance(root.handlers[0].formatter, JSONFormatter)
