"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection, metadata conversion and
rollback behaviour inside a unit of work.
"""

import pytest
from decimal import Decimal
from datetime import date

from coop_lending.currency import Money, Currency
from coop_lending.storage import InMemoryStorage
from coop_lending.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditTrail:
    """Hash chaining and integrity"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_first_event(self):
        event = self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "loan-1",
                                           {"loan_number": "LN-2026-000001"}, user_id="officer")

        assert event.sequence == 1
        assert event.previous_hash == ""
        assert event.verify_hash()
        assert len(event.current_hash) == 64

    def test_events_are_chained(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "loan-1")
        second = self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "loan-1")

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash

    def test_metadata_converted_to_plain_values(self):
        event = self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_RECORDED, "loan", "loan-1", {
            "amount": Money(12_345, Currency.PHP),
            "rate": Decimal('0.015'),
            "payment_date": date(2026, 2, 1),
            "interval": AuditEventType.LOAN_APPLIED,
            "nested": {"fee": Money(500, Currency.PHP)}
        })

        assert event.metadata == {
            "amount": 12_345,
            "rate": "0.015",
            "payment_date": "2026-02-01",
            "interval": "loan_applied",
            "nested": {"fee": 500}
        }

    def test_verify_integrity_of_clean_chain(self):
        for event_type in (AuditEventType.LOAN_APPLIED, AuditEventType.LOAN_APPROVED,
                           AuditEventType.LOAN_DISBURSED):
            self.audit_trail.log_event(event_type, "loan", "loan-1")

        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 3
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampered_metadata_detected(self):
        event = self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_RECORDED, "loan", "loan-1",
                                           {"amount": 10_000})
        self.audit_trail.log_event(AuditEventType.LOAN_CLOSED, "loan", "loan-1")

        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = 1
        self.storage.save("audit_events", event.id, stored)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_removed_event_breaks_chain(self):
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "loan-1")
        middle = self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "loan-1")
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "loan-1")

        data = self.storage.get_all_data()
        del data["audit_events"][middle.id]
        self.storage.clear_table("audit_events")
        for event_id, record in data["audit_events"].items():
            self.storage.save("audit_events", event_id, record)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_queries(self):
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "loan-1")
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "loan-2")
        self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "loan-1")

        assert [e.event_type for e in self.audit_trail.get_events_for_entity("loan", "loan-1")] == [
            AuditEventType.LOAN_APPLIED, AuditEventType.LOAN_APPROVED
        ]
        assert len(self.audit_trail.get_events_by_type(AuditEventType.LOAN_APPLIED)) == 2
        assert self.audit_trail.count_events() == 3

    def test_round_trip(self):
        event = self.audit_trail.log_event(AuditEventType.MEMBER_REGISTERED, "member", "m-1",
                                           {"member_number": "M-0001"}, user_id="admin", tenant_id="t1")

        loaded = AuditEvent.from_dict(self.storage.load("audit_events", event.id))
        assert loaded == event
        assert loaded.verify_hash()

    def test_rolled_back_event_never_becomes_predecessor(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "loan-1")

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "loan-1")
                raise RuntimeError("unit of work failed")

        after = self.audit_trail.log_event(AuditEventType.LOAN_REJECTED, "loan", "loan-1")
        assert after.sequence == 2
        assert after.previous_hash == first.current_hash
        assert self.audit_trail.verify_integrity()["valid"]

    def test_logging_does_not_scan_the_chain(self, monkeypatch):
        first = self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "loan-1")

        def no_full_scan(table):
            raise AssertionError(f"load_all({table}) called while logging")

        monkeypatch.setattr(self.storage, "load_all", no_full_scan)
        second = self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "loan-1")

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash

    def test_chain_without_head_record_continues(self):
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "loan-1")
        latest = self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "loan-1")
        self.storage.clear_table(self.audit_trail.head_table)

        event = self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "loan-1")

        assert event.sequence == 3
        assert event.previous_hash == latest.current_hash
        assert self.audit_trail.verify_integrity()["valid"]
