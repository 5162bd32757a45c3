import json
import logging

from checkpoint.logs import CheckpointLogger
from core.logging_utils import JsonLogFormatter, configure_json_logging, redact_secret


def test_checkpoint_logger_writes_jsonl(tmp_path):
    logger = CheckpointLogger(tmp_path)

    logger.event(event="capture_complete", phase="capture", ok=True, added=2)
    logger.warning("item_failed", path="a.txt", code="EFILE001")

    lines = [json.loads(line) for line in logger.log_path.read_text(encoding="utf-8").splitlines()]
    assert [line["event"] for line in lines] == ["capture_complete", "item_failed"]
    assert lines[0]["added"] == 2 and lines[0]["ok"] is True
    assert lines[1]["ok"] is False
    assert all("ts" in line for line in lines)


def test_configure_json_logging_is_idempotent(tmp_path):
    logger = configure_json_logging(tmp_path, name="checkpoint-test")
    configure_json_logging(tmp_path, name="checkpoint-test")
    try:
        logger.info("hello", extra={"project": "demo"})
        for handler in logger.handlers:
            handler.flush()
        assert len(logger.handlers) == 1
        record = json.loads((tmp_path / "logs" / "checkpoint.log.jsonl").read_text(encoding="utf-8").splitlines()[-1])
        assert record["message"] == "hello"
        assert record["project"] == "demo"
        assert record["level"] == "INFO"
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)


def test_redact_secret():
    assert redact_secret(None) == ""
    assert redact_secret("abc") == "***"
    assert redact_secret("supersecret") == "sup***et"


def test_event_log_masks_credential_fields(tmp_path):
    logger = CheckpointLogger(tmp_path)

    logger.info("destination_added", destination="remote", token="abcdefgh12", headers={"Authorization": "Bearer xyz123456"})

    line = logger.log_path.read_text(encoding="utf-8")
    record = json.loads(line.splitlines()[-1])
    assert "abcdefgh12" not in line and "xyz123456" not in line
    assert record["token"] == "abc***12"
    assert record["headers"]["Authorization"] == "Bea***56"
    assert record["destination"] == "remote"
    assert record["level"] == "INFO"


def test_formatter_masks_credential_extras():
    formatter = JsonLogFormatter()
    record = logging.makeLogRecord({"msg": "upload", "levelname": "INFO", "name": "checkpoint", "api_key": "k-1234567890"})

    payload = json.loads(formatter.format(record))

    assert payload["api_key"] == "k-1***90"
    assert payload["message"] == "upload"
    assert "msg" not in payload and "args" not in payload


def test_two_stores_keep_separate_event_logs(tmp_path):
    first = CheckpointLogger(tmp_path / "one")
    second = CheckpointLogger(tmp_path / "two")

    first.info("capture_start")
    second.info("prune_start")

    assert [json.loads(line)["event"] for line in first.log_path.read_text(encoding="utf-8").splitlines()] == ["capture_start"]
    assert [json.loads(line)["event"] for line in second.log_path.read_text(encoding="utf-8").splitlines()] == ["prune_start"]


def test_unwritable_store_does_not_break_the_caller(tmp_path, monkeypatch):
    monkeypatch.setattr(logging, "raiseExceptions", False)
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    logger = CheckpointLogger(blocker / "backups")

    logger.warning("item_failed", path="a.txt")

    assert not logger.log_path.exists()
