"""Tests for the structlog setup: job log context and client logger levels."""

import pytest
import structlog
from asgi_correlation_id.context import correlation_id

from shopbuilder.core.logging import QUIET_LOGGERS, add_correlation_id, job_context, quiet_loggers

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def clean_context():
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


def test_job_context_binds_job_and_sandbox():
    with job_context("job-1", "sbx-e2b-123"):
        assert structlog.contextvars.get_contextvars() == {"job_id": "job-1", "sandbox_id": "sbx-e2b-123"}

    assert structlog.contextvars.get_contextvars() == {}


def test_job_context_omits_sandbox_before_provisioning():
    with job_context("job-1"):
        assert structlog.contextvars.get_contextvars() == {"job_id": "job-1"}


def test_job_context_restores_outer_binding():
    structlog.contextvars.bind_contextvars(job_id="job-outer")

    with job_context("job-1", "sbx-e2b-123"):
        pass

    assert structlog.contextvars.get_contextvars() == {"job_id": "job-outer"}


def test_sandbox_and_storage_clients_are_quieted():
    levels = quiet_loggers()

    for name in ("e2b", "anthropic", "botocore", "boto3", "urllib3", "httpx"):
        assert levels[name] == {"level": "WARNING"}
    assert set(levels) == set(QUIET_LOGGERS)


def test_debug_mode_keeps_client_traffic_visible():
    assert all(level == {"level": "INFO"} for level in quiet_loggers("INFO").values())


def test_correlation_id_is_added_inside_a_request():
    token = correlation_id.set("req-42")
    try:
        event = add_correlation_id(None, "info", {"event": "job_started"})
    finally:
        correlation_id.reset(token)

    assert event == {"event": "job_started", "correlation_id": "req-42"}


def test_correlation_id_is_absent_for_background_work():
    assert add_correlation_id(None, "info", {"event": "monitor_tick_applied"}) == {"event": "monitor_tick_applied"}
