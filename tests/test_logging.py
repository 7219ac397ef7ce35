from __future__ import annotations

from collections.abc import Iterator
import logging
from pathlib import Path

import pytest

from libra.logging import ContextFormatter, LOG_FORMAT, configure_logging, get_logger
from libra.logging_events import EVENTS, log_event, register_event
from libra.orchestrator.events import emit_job_event


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    previous_handlers = list(root.handlers)
    previous_level = root.level
    try:
        yield
    finally:
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)
        for handler in previous_handlers:
            root.addHandler(handler)
        root.setLevel(previous_level)


def test_log_event_attaches_structured_fields(caplog: pytest.LogCaptureFixture) -> None:
    logger = get_logger("libra.tests")

    with caplog.at_level(logging.INFO, logger="libra.tests"):
        log_event(
            logger,
            "agent.call",
            component="agent",
            status="ok",
            duration_ms=12,
            meta={"errors": [{"code": 503}], "query": None},
        )

    [record] = caplog.records
    assert record.getMessage() == "agent.call"
    assert record.event == "agent.call"
    assert record.component == "agent"
    assert record.duration_ms == 12
    assert record.meta == {"errors": [{"code": 503}], "query": None}


@pytest.mark.parametrize(
    "fields",
    [
        {"nested": {"a": 1}},
        {"meta": {1: "non-string key"}},
        {"meta": {"value": object()}},
        {"meta": ["not", "a", "mapping"]},
    ],
)
def test_log_event_rejects_unstructured_values(fields) -> None:
    with pytest.raises(TypeError):
        log_event(get_logger("libra.tests"), "agent.call", **fields)


@pytest.mark.parametrize("event", ["  ", "agent.unknown"])
def test_log_event_requires_a_registered_name(event: str) -> None:
    with pytest.raises(ValueError):
        log_event(get_logger("libra.tests"), event)


def test_registered_events_can_be_emitted(caplog: pytest.LogCaptureFixture) -> None:
    register_event("tests.custom", "Emitted by the test suite.")
    try:
        with caplog.at_level(logging.INFO, logger="libra.tests"):
            log_event(get_logger("libra.tests"), "tests.custom", status="ok")
    finally:
        EVENTS.pop("tests.custom", None)

    assert [record.event for record in caplog.records] == ["tests.custom"]
    with pytest.raises(ValueError):
        register_event(" ", "blank")


def test_context_formatter_appends_job_fields() -> None:
    formatter = ContextFormatter(LOG_FORMAT)
    record = logging.LogRecord(
        "libra.queue", logging.INFO, __file__, 1, "orchestrator.job", (), None
    )
    record.queue = "mangaImportQueue"
    record.entity_id = "job-1"
    record.status = "completed"
    record.retry_count = 0

    line = formatter.format(record)

    assert line.endswith(
        "libra.queue: orchestrator.job | queue=mangaImportQueue entity_id=job-1 "
        "status=completed retry_count=0"
    )


def test_context_formatter_leaves_plain_records_alone() -> None:
    formatter = ContextFormatter("%(message)s")
    record = logging.LogRecord("libra", logging.INFO, __file__, 1, "plain", (), None)

    assert formatter.format(record) == "plain"


def test_configure_logging_writes_context_to_file(
    tmp_path: Path, restore_root_logger: None
) -> None:
    log_file = tmp_path / "libra.log"

    configure_logging("warning", str(log_file))
    logger = get_logger("libra.tests")
    logger.warning("disk almost full")
    logger.info("not written")
    emit_job_event(
        logger, job_id="job-9", queue_name="imports", status="failed", error="boom"
    )
    assert logging.getLogger().level == logging.WARNING
    for handler in logging.getLogger().handlers:
        handler.flush()

    contents = log_file.read_text(encoding="utf-8")
    assert "[WARNING] libra.tests: disk almost full" in contents
    assert "not written" not in contents
    # job events are INFO, below the configured level
    assert "job-9" not in contents
