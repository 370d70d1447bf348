"""
Membership Directory Module

The Loan Engine asks one question of the membership system: may this party
borrow? MembershipDirectory is that interface; StorageMembershipDirectory is
a storage-backed implementation that keeps a minimal member register.
"""

from abc import ABC, abstractmethod
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import LoanValidationError, RecordNotFoundError


class MembershipDirectory(ABC):
    """Eligibility lookup consulted once, synchronously, during loan application"""

    @abstractmethod
    def is_eligible_member(self, member_id: str) -> bool:
        """True when the party is an active cooperative member"""
        pass


@dataclass
class Member(StorageRecord):
    """Borrowing party in the member register"""
    member_number: str
    first_name: str
    last_name: str
    is_member: bool = True          # Admitted to the cooperative (not just a customer)
    is_active: bool = True
    membership_date: Optional[date] = None
    tenant_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_eligible(self) -> bool:
        return self.is_member and self.is_active


class StorageMembershipDirectory(MembershipDirectory):
    """
    Member register kept in the lending store
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "members"

    def register_member(
        self,
        member_number: str,
        first_name: str,
        last_name: str,
        actor: str,
        is_member: bool = True,
        membership_date: Optional[date] = None,
        tenant_id: Optional[str] = None
    ) -> Member:
        """
        Add a party to the register

        Args:
            member_number: Cooperative member number, unique
            first_name: Member's first name
            last_name: Member's last name
            actor: Who is registering the member
            is_member: False for non-member customers kept on file
            membership_date: Date of admission
            tenant_id: Owning cooperative/branch

        Returns:
            Created Member object
        """
        if not member_number.strip():
            raise LoanValidationError("Member number is required")
        if self.storage.find(self.table_name, {"member_number": member_number}):
            raise LoanValidationError(f"Member number {member_number} already registered")

        now = datetime.now(timezone.utc)
        member = Member(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            member_number=member_number,
            first_name=first_name,
            last_name=last_name,
            is_member=is_member,
            membership_date=membership_date,
            tenant_id=tenant_id
        )

        with self.storage.atomic():
            self._save_member(member)
            self.audit_trail.log_event(
                event_type=AuditEventType.MEMBER_REGISTERED,
                entity_type="member",
                entity_id=member.id,
                metadata={
                    "member_number": member_number,
                    "full_name": member.full_name,
                    "is_member": is_member
                },
                user_id=actor,
                tenant_id=tenant_id
            )

        return member

    def get_member(self, member_id: str) -> Optional[Member]:
        """Get member by ID"""
        member_dict = self.storage.load(self.table_name, member_id)
        if member_dict:
            return self._member_from_dict(member_dict)
        return None

    def get_member_by_number(self, member_number: str) -> Optional[Member]:
        members = self.storage.find(self.table_name, {"member_number": member_number})
        if members:
            return self._member_from_dict(members[0])
        return None

    def list_members(self, tenant_id: Optional[str] = None) -> List[Member]:
        filters = {"tenant_id": tenant_id} if tenant_id else {}
        return [self._member_from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def is_eligible_member(self, member_id: str) -> bool:
        member = self.get_member(member_id)
        return member is not None and member.is_eligible

    def deactivate_member(self, member_id: str, reason: str, actor: str) -> Member:
        """Deactivate a member; deactivated members cannot apply for loans"""
        return self._update_status(member_id, actor, is_active=False, reason=reason)

    def reactivate_member(self, member_id: str, actor: str) -> Member:
        return self._update_status(member_id, actor, is_active=True, reason=None)

    def _update_status(self, member_id: str, actor: str, is_active: bool, reason: Optional[str]) -> Member:
        member = self.get_member(member_id)
        if not member:
            raise RecordNotFoundError(f"Member {member_id} not found")

        member.is_active = is_active
        member.updated_at = datetime.now(timezone.utc)

        with self.storage.atomic():
            self._save_member(member)
            self.audit_trail.log_event(
                event_type=AuditEventType.MEMBER_UPDATED,
                entity_type="member",
                entity_id=member.id,
                metadata={
                    "action": "reactivated" if is_active else "deactivated",
                    "reason": reason
                },
                user_id=actor,
                tenant_id=member.tenant_id
            )

        return member

    def _save_member(self, member: Member) -> None:
        """Save member to storage"""
        self.storage.save(self.table_name, member.id, self._member_to_dict(member))

    def _member_to_dict(self, member: Member) -> Dict:
        """Convert Member to dictionary for storage"""
        result = member.to_dict()
        if member.membership_date:
            result['membership_date'] = member.membership_date.isoformat()
        return result

    def _member_from_dict(self, data: Dict) -> Member:
        """Convert dictionary to Member"""
        membership_date = None
        if data.get('membership_date'):
            membership_date = date.fromisoformat(data['membership_date'])

        return Member(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_number=data['member_number'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            is_member=data.get('is_member', True),
            is_active=data.get('is_active', True),
            membership_date=membership_date,
            tenant_id=data.get('tenant_id'),
            notes=data.get('notes')
        )
