import json
import logging

import pytest
from prometheus_client import REGISTRY

from datamover.common.config import Settings
from datamover.common.logging import JsonFormatter, setup_logging
from datamover.infra.storage.client import NotFoundError
from datamover.services.transfer_service import TransferService


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_operation_outcomes_are_counted(store, settings, location):
    service = TransferService(store, settings=settings)
    ok_before = _sample(
        "datamover_operations_total", operation="upload", outcome="success"
    )
    bytes_before = _sample("datamover_bytes_total", direction="upload")

    service.upload("obj", location, b"12345")

    assert (
        _sample("datamover_operations_total", operation="upload", outcome="success")
        == ok_before + 1
    )
    assert _sample("datamover_bytes_total", direction="upload") == bytes_before + 5


def test_failures_are_counted(store, settings, location):
    service = TransferService(store, settings=settings)
    errors_before = _sample(
        "datamover_operations_total", operation="download", outcome="error"
    )

    with pytest.raises(NotFoundError):
        service.download("missing", location, bytearray(4))

    assert (
        _sample("datamover_operations_total", operation="download", outcome="error")
        == errors_before + 1
    )


def test_latency_histogram_present(store, settings, location):
    service = TransferService(store, settings=settings)
    before = _sample("datamover_operation_duration_seconds_count", operation="delete")

    service.delete("obj", location)

    assert (
        _sample("datamover_operation_duration_seconds_count", operation="delete")
        == before + 1
    )


def test_json_formatter_merges_extra():
    record = logging.LogRecord(
        "datamover.transfer", logging.INFO, __file__, 1, "upload_succeeded", None, None
    )
    record.extra = {"key": "obj", "size": 5}

    payload = json.loads(JsonFormatter().format(record))

    assert payload == {
        "level": "INFO",
        "logger": "datamover.transfer",
        "message": "upload_succeeded",
        "key": "obj",
        "size": 5,
    }


def test_setup_logging_applies_level():
    setup_logging(Settings(LOG_LEVEL="DEBUG", LOG_FORMAT="plain"))

    logger = logging.getLogger("datamover")
    assert logger.level == logging.DEBUG
    assert logger.propagate is False

    setup_logging(Settings())
    assert logging.getLogger("datamover").level == logging.INFO
