from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from gemini_proxy.audit import AttemptAuditLog, scrub_event


def _read_records(path: Path) -> list[dict[str, Any]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_audit_log_writes_records_by_close(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "proxy_attempts.jsonl"
    audit_log = AttemptAuditLog(path=str(log_path), enabled=True)
    audit_log.record({"event": "proxy_attempt", "request_id": "req-1", "status": 200})
    audit_log.record({"event": "proxy_response", "request_id": "req-1"})
    audit_log.close()

    records = _read_records(log_path)
    assert [record["event"] for record in records] == ["proxy_attempt", "proxy_response"]
    assert records[0]["status"] == 200
    assert isinstance(records[0]["ts"], int)


def test_audit_log_disabled_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "proxy_attempts.jsonl"
    audit_log = AttemptAuditLog(path=str(log_path), enabled=False)
    audit_log.record({"event": "proxy_attempt"})
    audit_log.close()

    assert not log_path.exists()


def test_scrub_event_redacts_message_text_recursively() -> None:
    event = {
        "event": "proxy_attempt",
        "messages": [{"role": "user", "content": "my diagnosis"}],
        "details": {"attempts": [{"raw_text": "upstream echo", "status": 500}]},
    }

    scrubbed = scrub_event(event)

    assert scrubbed["messages"] == "[redacted]"
    assert scrubbed["details"]["attempts"][0]["raw_text"] == "[redacted]"
    assert scrubbed["details"]["attempts"][0]["status"] == 500
    assert event["messages"][0]["content"] == "my diagnosis"


def test_audit_log_never_persists_message_text(tmp_path: Path) -> None:
    log_path = tmp_path / "proxy_attempts.jsonl"
    audit_log = AttemptAuditLog(path=str(log_path), enabled=True)
    audit_log.record({"event": "proxy_attempt", "content": "patient name"})
    audit_log.close()

    assert "patient name" not in log_path.read_text(encoding="utf-8")
