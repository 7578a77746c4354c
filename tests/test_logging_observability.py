import json

import structlog
from structlog.contextvars import clear_contextvars

from deploy_agent.utils.logging import bind_deploy_context, setup_logging


def test_structured_logs_include_correlation(capsys):
    clear_contextvars()
    setup_logging("INFO", "json")
    bind_deploy_context("Acme/Web", "run-456")

    logger = structlog.get_logger()
    logger.info("test_event", foo="bar")
    out = capsys.readouterr().out.strip().splitlines()[-1]
    data = json.loads(out)
    assert data["event"] == "test_event"
    assert data["repository"] == "Acme/Web"
    assert data["runId"] == "run-456"
    assert data["foo"] == "bar"
    clear_contextvars()


def test_redaction(capsys):
    clear_contextvars()
    setup_logging("INFO", "json")
    logger = structlog.get_logger()
    logger.info("leak_test", secret="hunter2", signature="abc")
    out = capsys.readouterr().out.strip().splitlines()[-1]
    data = json.loads(out)
    assert data["secret"] == "[REDACTED]"
    assert data["signature"] == "[REDACTED]"
