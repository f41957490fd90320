"""Tests for settings validation and structured logging."""

import json
import logging
import sys

import pytest
from pydantic import ValidationError

from transcoder.core.config import Settings
from transcoder.core.logging import (
    CorrelationIdFilter,
    StructuredFormatter,
    clear_correlation_id,
    job_id_var,
    set_correlation_id,
)


class TestSettings:

    def test_defaults(self) -> None:
        config = Settings(_env_file=None)

        assert config.WORKER_CAPACITY == 2
        assert config.MAX_QUEUE_LENGTH == 0
        assert config.STORAGE_REGION == "ap-southeast-2"
        assert 0 < config.QUEUE_POLL_INTERVAL_SECONDS <= 1.0

    def test_environment_overrides(self, monkeypatch) -> None:
        monkeypatch.setenv("WORKER_CAPACITY", "4")
        monkeypatch.setenv("JOB_STORE_BACKEND", "memory")

        config = Settings(_env_file=None)

        assert config.WORKER_CAPACITY == 4
        assert config.JOB_STORE_BACKEND == "memory"

    @pytest.mark.parametrize("field, value", [
        ("WORKER_CAPACITY", 0),
        ("MAX_QUEUE_LENGTH", -1),
        ("QUEUE_POLL_INTERVAL_SECONDS", 0),
        ("QUEUE_POLL_INTERVAL_SECONDS", 2.5),
        ("ENCODE_TIMEOUT_SECONDS", 0),
    ])
    def test_invalid_values_are_rejected(self, field: str, value) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})


def make_record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="transcoder.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredLogging:

    def setup_method(self) -> None:
        set_correlation_id("corr-1")

    def teardown_method(self) -> None:
        clear_correlation_id()

    def test_record_is_json_with_correlation_id(self) -> None:
        record = make_record()
        CorrelationIdFilter().filter(record)

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["correlation_id"] == "corr-1"
        assert "job_id" not in data

    def test_job_id_from_worker_context(self) -> None:
        token = job_id_var.set("job-42")
        try:
            record = make_record()
            CorrelationIdFilter().filter(record)
            data = json.loads(StructuredFormatter().format(record))
        finally:
            job_id_var.reset(token)

        assert data["job_id"] == "job-42"

    def test_extra_fields_are_kept(self) -> None:
        record = make_record(error_kind="timeout", capacity=2)

        data = json.loads(StructuredFormatter().format(record))

        assert data["extra"] == {"error_kind": "timeout", "capacity": 2}

    def test_exception_details(self) -> None:
        try:
            raise RuntimeError("encoder exploded")
        except RuntimeError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(StructuredFormatter().format(record))

        assert data["exception"]["type"] == "RuntimeError"
        assert data["exception"]["message"] == "encoder exploded"
