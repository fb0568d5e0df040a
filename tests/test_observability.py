import io
import json
import logging

import pytest

from locus.canonical import content_hash
from locus.observability import (
    AuditLogger,
    LocusLayer,
    configure_logging,
    correlation_id_var,
    get_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
    timed_operation,
)


@pytest.fixture
def stream():
    buf = io.StringIO()
    handler = configure_logging(level="debug", fmt="json", stream=buf)
    yield buf
    logging.getLogger("locus").removeHandler(handler)


def _events(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines() if line.strip()]


def test_structured_json_event(stream):
    token = set_correlation_id("corr-test")
    try:
        get_logger("unit", LocusLayer.LEDGER).info("stored", cell_id="cell_10_0.000000_0.000000")
    finally:
        reset_correlation_id(token)
    event = _events(stream)[-1]
    assert event["message"] == "stored"
    assert event["level"] == "info"
    assert event["layer"] == "ledger"
    assert event["logger"] == "locus.ledger.unit"
    assert event["correlation_id"] == "corr-test"
    assert event["context"] == {"cell_id": "cell_10_0.000000_0.000000"}


def test_error_with_traceback(stream):
    logger = get_logger("unit", LocusLayer.SERVICE)
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        logger.error("failed", error_code="internal_error", exc_info=True)
    event = _events(stream)[-1]
    assert event["error_code"] == "internal_error"
    assert "RuntimeError: boom" in event["exception"]


def test_level_filtering():
    buf = io.StringIO()
    handler = configure_logging(level="warning", fmt="json", stream=buf)
    try:
        logger = get_logger("unit", LocusLayer.CELLS)
        logger.info("hidden")
        logger.warning("shown")
    finally:
        logging.getLogger("locus").removeHandler(handler)
    assert [e["message"] for e in _events(buf)] == ["shown"]


def test_reconfigure_replaces_handler():
    root = logging.getLogger("locus")
    first = configure_logging(stream=io.StringIO())
    second = configure_logging(stream=io.StringIO())
    try:
        assert first not in root.handlers
        assert second in root.handlers
    finally:
        root.removeHandler(second)


def test_text_format_appends_context():
    buf = io.StringIO()
    handler = configure_logging(level="info", fmt="text", stream=buf)
    try:
        get_logger("unit", LocusLayer.CLI).info("hello", b=2, a=1)
    finally:
        logging.getLogger("locus").removeHandler(handler)
    assert buf.getvalue().rstrip().endswith("hello a=1 b=2")


def test_timed_operation(stream):
    logger = get_logger("unit", LocusLayer.LEDGER)

    @timed_operation(logger, "double")
    def double(x):
        return 2 * x

    @timed_operation(logger, "fail")
    def fail():
        raise ValueError("nope")

    assert double(4) == 8
    with pytest.raises(ValueError):
        fail()
    ok, failed = _events(stream)[-2:]
    assert ok["operation"] == "double" and ok["level"] == "info"
    assert ok["duration_ms"] >= 0
    assert failed["operation"] == "fail" and failed["level"] == "warning"
    assert double.__name__ == "double"


def test_correlation_id_generated_once():
    token = set_correlation_id("")
    try:
        cid = get_correlation_id()
        assert cid.startswith("corr-")
        assert get_correlation_id() == cid
    finally:
        reset_correlation_id(token)


def test_audit_chain_links_events():
    audit = AuditLogger()
    first = audit.log("proj", "anchor", "object", "id-1", "success", cell_id="c")
    assert first.previous_hash == AuditLogger.GENESIS
    first_hash = audit.last_hash
    assert first_hash == content_hash(first.to_dict())

    second = audit.log("proj", "supersede", "object", "id-2", "not_found")
    assert second.previous_hash == first_hash
    assert audit.last_hash == AuditLogger.compute_hash(second)


def test_audit_event_is_logged(stream):
    AuditLogger().log("proj", "anchor", "object", "id-1", "success")
    event = _events(stream)[-1]
    assert event["operation"] == "audit"
    assert event["message"] == "AUDIT: anchor on object/id-1 -> success"
    assert len(event["context"]["event_hash"]) == 64


def test_audit_reads_correlation_id_without_setting_one():
    token = set_correlation_id("")
    try:
        event = AuditLogger().log("proj", "anchor", "object", "id-1", "success")
        assert event.correlation_id == ""
        assert correlation_id_var.get() == ""

        set_correlation_id("corr-fixed")
        assert AuditLogger().log("proj", "anchor", "object", "id-2", "success").correlation_id == "corr-fixed"
    finally:
        reset_correlation_id(token)


def test_audit_accepts_unencodable_rejected_input():
    audit = AuditLogger()
    event = audit.log("proj", "anchor", "presence", "\ud800", "rejected", reason="payload_hash")
    assert audit.last_hash == AuditLogger.compute_hash(event)
    assert len(audit.last_hash) == 64
