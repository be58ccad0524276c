"""
Tests for Audit Logging

Tests for the audit log, the audit logger and the audit trail a policy
machine records.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
import structlog

from config.settings import Settings
from policy_machine import PolicyMachine
from policy_machine.log import configure_logging
from policy_machine.security.audit import (
    AuditAction,
    AuditEntry,
    AuditLog,
    AuditLogger,
    AuditSeverity,
)


class TestAuditLog:
    """Tests for AuditLog."""

    def test_max_entries(self):
        """Test the log keeps only the most recent entries."""
        log = AuditLog(max_entries=2)
        for uid in ("a", "b", "c"):
            log.add(AuditEntry(action=AuditAction.ELEMENT_CREATED, resource_id=uid))

        assert len(log) == 2
        assert [e.resource_id for e in log.query()] == ["c", "b"]

    def test_query_filters(self):
        """Test querying by action, subject and time."""
        log = AuditLog()
        log.add(AuditEntry(action=AuditAction.ACCESS_GRANTED, subject_id="u1"))
        log.add(AuditEntry(action=AuditAction.ACCESS_DENIED, subject_id="u1", success=False))
        log.add(AuditEntry(action=AuditAction.ACCESS_DENIED, subject_id="u2", success=False))

        assert len(log.query(action=AuditAction.ACCESS_DENIED)) == 2
        assert len(log.query(subject_id="u1")) == 2
        assert len(log.query(success=True)) == 1
        assert len(log.get_denied_privileges(subject_id="u2")) == 1
        assert log.query(start_time=datetime.now(timezone.utc) + timedelta(minutes=1)) == []
        assert len(log.query(limit=1)) == 1

    def test_file_persistence(self, tmp_path):
        """Test entries are appended to a JSON-lines file."""
        path = tmp_path / "audit" / "audit.jsonl"
        log = AuditLog(storage_path=path)
        log.add(AuditEntry(action=AuditAction.ELEMENT_CREATED, resource_id="u1"))
        log.add(AuditEntry(action=AuditAction.ELEMENT_CREATED, resource_id="u2"))

        lines = path.read_text().splitlines()
        assert [json.loads(line)["resource_id"] for line in lines] == ["u1", "u2"]


class TestAuditLogger:
    """Tests for AuditLogger."""

    def test_privilege_check(self):
        """Test granted and denied checks map to actions and severities."""
        audit = AuditLogger(enable_console=False)

        granted = audit.log_privilege_check("pm", "u1", "read", "object", "o1", True)
        denied = audit.log_privilege_check("pm", "u1", "write", "object", "o1", False)

        assert granted.action == AuditAction.ACCESS_GRANTED
        assert denied.action == AuditAction.ACCESS_DENIED
        assert denied.severity == AuditSeverity.WARNING
        assert len(audit.audit_log) == 2

    def test_relation_change(self):
        """Test relation changes record the relation kind and endpoints."""
        audit = AuditLogger(enable_console=False)

        entry = audit.log_relation_change(AuditAction.LINK_REMOVED, "pm", "a", "b", applied=False)

        assert entry.resource_type == "link"
        assert entry.resource_id == "a"
        assert entry.details == {"dst": "b"}
        assert entry.success is False

    def test_log_dict(self):
        """Test the structured logging payload."""
        entry = AuditEntry(action=AuditAction.TRANSACTION_ROLLED_BACK, error_message="boom")

        payload = entry.to_log_dict()
        assert payload["error"] == "boom"
        assert payload["audit_id"] == str(entry.id)


class TestPolicyMachineAudit:
    """Tests for the audit trail of a policy machine."""

    def test_disabled_by_default(self, policy_machine):
        """Test no audit logger exists unless enabled."""
        assert policy_machine.audit_logger is None

    def test_records_changes_and_decisions(self, audited_policy_machine, make_operation_set):
        """Test creations, relations and privilege checks are recorded."""
        pm = audited_policy_machine
        user = pm.create_user("u1")
        ua = pm.create_user_attribute("ua")
        obj = pm.create_object("o1")
        read = pm.create_operation("read")
        pm.add_assignment(user, ua)
        pm.add_association(ua, make_operation_set(read, machine=pm), obj)

        assert pm.is_privilege(user, read, obj) is True
        assert pm.is_privilege(user, "write", obj) is False

        log = pm.audit_logger.audit_log
        created = log.query(action=AuditAction.ELEMENT_CREATED)
        assert {e.resource_id for e in created} >= {"u1", "ua", "o1", "read"}

        assigned = log.query(action=AuditAction.ASSIGNMENT_ADDED, resource_id="u1")
        assert assigned[0].details["dst"] == "ua"
        assert log.query(action=AuditAction.ASSOCIATION_ADDED)[0].resource_id == "ua"

        denied = log.get_denied_privileges(subject_id="u1")
        assert [e.operation for e in denied] == ["write"]
        assert all(e.policy_machine_uuid == pm.uuid for e in log.query())

    def test_records_bulk_flush(self, audited_policy_machine):
        """Test a bulk flush is recorded with its summary."""
        pm = audited_policy_machine

        with pm.bulk_persist():
            pm.create_user("u1")
            pm.create_user("u2")

        flushed = pm.audit_logger.audit_log.query(action=AuditAction.BULK_FLUSHED)
        assert flushed[0].details["upserted"] == 2

    def test_records_rollback(self, audited_policy_machine):
        """Test a rolled back transaction is recorded."""
        pm = audited_policy_machine

        with pytest.raises(RuntimeError):
            with pm.transaction():
                pm.create_user("u1")
                raise RuntimeError("boom")

        rolled_back = pm.audit_logger.audit_log.query(action=AuditAction.TRANSACTION_ROLLED_BACK)
        assert rolled_back[0].error_message == "boom"
        assert rolled_back[0].details["error_type"] == "RuntimeError"

    def test_audit_file_from_settings(self, storage_adapter, tmp_path):
        """Test the audit file configured in settings receives entries."""
        path = tmp_path / "audit.jsonl"
        settings = Settings(audit_enabled=True, audit_log_path=str(path))
        pm = PolicyMachine(storage_adapter=storage_adapter, settings=settings)

        pm.create_policy_class("pc")

        assert json.loads(path.read_text().splitlines()[0])["action"] == "element_created"


class TestLogging:
    """Tests for logging configuration."""

    @pytest.fixture(autouse=True)
    def reset_structlog(self):
        yield
        structlog.reset_defaults()

    def test_filters_below_level(self, capsys):
        """Test events below the configured level are dropped."""
        configure_logging(Settings(log_level="warning"))
        logger = structlog.get_logger("policy_machine.test")

        logger.info("quiet_event")
        logger.warning("loud_event")

        output = capsys.readouterr().out
        assert "quiet_event" not in output
        assert "loud_event" in output

    def test_json_in_production(self, capsys):
        """Test production renders each event as a JSON object."""
        configure_logging(Settings(environment="production", log_level="info"))
        structlog.get_logger("policy_machine.test").info("element_created", unique_identifier="u1")

        event = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert event["event"] == "element_created"
        assert event["unique_identifier"] == "u1"
        assert event["level"] == "info"
