"""
Test suite for members module

Tests the member register and the eligibility check used at loan application.
"""

import pytest
from datetime import date

from coop_lending.audit import AuditEventType
from coop_lending.errors import LoanValidationError, RecordNotFoundError


class TestMembershipDirectory:
    """Member register and eligibility"""

    def test_register_member(self, directory, member, audit_trail):
        assert member.full_name == "Maria Santos"
        assert member.is_eligible

        loaded = directory.get_member(member.id)
        assert loaded.member_number == "M-0001"
        assert loaded.membership_date == date(2020, 3, 1)

        events = audit_trail.get_events_for_entity("member", member.id)
        assert events[0].event_type == AuditEventType.MEMBER_REGISTERED

    def test_duplicate_member_number(self, directory, member):
        with pytest.raises(LoanValidationError, match="already registered"):
            directory.register_member("M-0001", "Jose", "Reyes", actor="admin")

    def test_blank_member_number(self, directory):
        with pytest.raises(LoanValidationError, match="Member number is required"):
            directory.register_member("  ", "Jose", "Reyes", actor="admin")

    def test_eligibility(self, directory, member):
        customer = directory.register_member("C-0001", "Ana", "Cruz", actor="admin", is_member=False)

        assert directory.is_eligible_member(member.id)
        assert not directory.is_eligible_member(customer.id)
        assert not directory.is_eligible_member("unknown")

    def test_deactivation_revokes_eligibility(self, directory, member):
        directory.deactivate_member(member.id, "Resigned from cooperative", actor="admin")
        assert not directory.is_eligible_member(member.id)

        directory.reactivate_member(member.id, actor="admin")
        assert directory.is_eligible_member(member.id)

    def test_deactivate_unknown(self, directory):
        with pytest.raises(RecordNotFoundError):
            directory.deactivate_member("missing", "n/a", actor="admin")

    def test_lookup_and_listing(self, directory, member):
        directory.register_member("M-0002", "Pedro", "Garcia", actor="admin", tenant_id="branch-2")

        assert directory.get_member_by_number("M-0001").id == member.id
        assert directory.get_member_by_number("M-9999") is None
        assert len(directory.list_members()) == 2
        assert [m.member_number for m in directory.list_members(tenant_id="branch-2")] == ["M-0002"]
