from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
import io
import logging
from pathlib import Path
import sys

from hypothesis import given, strategies as st
import pytest

from autopr import observability
from autopr.observability import configure_logging, issue_log_file, log_event


@pytest.fixture(autouse=True)
def restore_autopr_logger_state() -> None:
    logger = logging.getLogger("autopr")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_configure_logging_none_mode_is_quiet_and_idempotent() -> None:
    configure_logging(verbose=None)
    configure_logging(verbose=False)
    logger = logging.getLogger("autopr")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_is_idempotent() -> None:
    configure_logging(verbose=True)
    configure_logging(verbose=True)
    logger = logging.getLogger("autopr")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "%(asctime)s" in handler.formatter._fmt
    assert "%(threadName)s" in handler.formatter._fmt


def test_configure_logging_low_mode_filters_to_lifecycle_events(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("autopr.tests.low")

    logger.info("event=github_read endpoint=issues")
    logger.info("event=worker_spawned issue_number=1")
    logger.info("plain_message=ignored")
    logger.info("event=")
    logger.warning("event=review_poll_failed pr_number=3")

    stderr = capsys.readouterr().err
    assert "event=github_read" not in stderr
    assert "event=worker_spawned issue_number=1" in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "event=review_poll_failed pr_number=3" in stderr


def test_configure_logging_writes_utc_daily_file(tmp_path: Path) -> None:
    configure_logging(verbose="high", state_dir=tmp_path)
    logger = logging.getLogger("autopr.tests.file")
    logger.info("event=worker_spawned issue_number=2")

    date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    log_path = tmp_path / "logs" / f"autopr-{date_key}.log"
    assert log_path.exists()
    assert "event=worker_spawned issue_number=2" in log_path.read_text(encoding="utf-8")


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_issue_log_file_captures_only_the_owning_thread(tmp_path: Path) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("autopr.tests.issue_log")

    def work(issue_number: int) -> None:
        with issue_log_file(tmp_path / f"issue-{issue_number}.log"):
            log_event(logger, "probe", issue_number=issue_number)

    with ThreadPoolExecutor(max_workers=2) as pool:
        list(pool.map(work, [1, 2]))
    logger.info("event=outside")

    first = (tmp_path / "issue-1.log").read_text(encoding="utf-8")
    second = (tmp_path / "issue-2.log").read_text(encoding="utf-8")
    assert "event=probe issue_number=1" in first
    assert "issue_number=2" not in first
    assert "event=probe issue_number=2" in second
    assert "event=outside" not in first + second
    assert len(logging.getLogger("autopr").handlers) == 1


def test_utc_daily_file_handler_handles_emit_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    handler = observability._UtcDailyFileHandler(base_dir=Path("/tmp"))
    called: dict[str, object] = {}

    monkeypatch.setattr(
        handler,
        "_stream_for_current_date",
        lambda: (_ for _ in ()).throw(RuntimeError("boom")),
    )
    monkeypatch.setattr(handler, "handleError", lambda record: called.setdefault("record", record))

    record = logging.LogRecord(
        name="autopr.tests.observability",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="event=worker_spawned issue_number=1",
        args=(),
        exc_info=None,
    )
    handler.emit(record)
    assert "record" in called


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("autopr.tests.observability")
    logger.handlers.clear()
    stream = io.StringIO()
    logger.addHandler(logging.StreamHandler(stream))
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        long_text="x" * 121,
        complex_value={"k": "v"},
        path=Path("/tmp/with space"),
    )

    message = stream.getvalue().strip()
    assert message.startswith("event=test_event ")
    assert message.index("a=") < message.index("b=")
    assert 'a="multi line value"' in message
    assert "b=2" in message
    assert "none_value=null" in message
    assert "bool_value=true" in message
    assert "empty=<empty>" in message
    assert "complex_value=<dict>" in message
    assert "long_text=" in message
    assert "..." in message
    assert 'path="/tmp/with space"' in message
    logger.handlers.clear()


@given(st.text())
def test_normalized_field_values_are_single_tokens(value: str) -> None:
    normalized = observability._normalize_field_value(value)
    assert normalized
    assert "\n" not in normalized
    if normalized[0] != '"':
        assert not any(ch.isspace() for ch in normalized)
        assert "=" not in normalized
