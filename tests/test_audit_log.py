"""Tests for the JSON-lines audit log."""

import pytest

from sirka_agent.audit.log import AuditLog


@pytest.mark.asyncio
async def test_log_and_read_newest_first(tmp_path):
    audit = AuditLog(tmp_path / "logs" / "audit.log")

    await audit.log(action="deploy", siteId="s1", status="success")
    await audit.log(action="restart", siteId="s1", status="failed", error="boom")

    entries = await audit.read()
    assert [e["action"] for e in entries] == ["restart", "deploy"]
    assert entries[0]["error"] == "boom"
    assert "timestamp" in entries[1]


@pytest.mark.asyncio
async def test_read_missing_file(tmp_path):
    assert await AuditLog(tmp_path / "missing.log").read() == []


@pytest.mark.asyncio
async def test_read_skips_corrupt_lines_and_limits(tmp_path):
    path = tmp_path / "audit.log"
    path.write_text('{"action": "a"}\nnot json\n{"action": "b"}\n{"action": "c"}\n')

    entries = await AuditLog(path).read(limit=3)

    assert [e["action"] for e in entries] == ["c", "b"]


@pytest.mark.asyncio
async def test_write_failure_is_not_raised(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")

    # parent path is a regular file, so the write fails
    await AuditLog(blocker / "audit.log").log(action="deploy")
