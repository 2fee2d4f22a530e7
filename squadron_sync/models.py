"""
Data model for Squadron Sync.

Member and organization records are read-only snapshots produced by the
registry import step. Directory accounts and groups describe remote state
as reported by the directory service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple


class MemberType(Enum):
    """Registry member categories."""

    CADET = 'CADET'
    SENIOR = 'SENIOR'
    FIFTY_YEAR = 'FIFTY_YEAR'
    LIFE = 'LIFE'
    AEROSPACE_EDUCATION = 'AEROSPACE_EDUCATION'

    @classmethod
    def parse(cls, value: str) -> 'MemberType':
        """Parse a member type, tolerating case and the registry's spellings."""
        normalized = str(value).strip().upper().replace(' ', '_').replace('-', '_')
        aliases = {
            'AEM': 'AEROSPACE_EDUCATION',
            'AEROSPACE_EDUCATION_MEMBER': 'AEROSPACE_EDUCATION',
            'FIFTY_YEAR_MEMBER': 'FIFTY_YEAR',
            'LIFE_MEMBER': 'LIFE',
        }
        return cls(aliases.get(normalized, normalized))


class RegistryStatus(Enum):
    ACTIVE = 'active'
    EXPIRED = 'expired'


class AccountStatus(Enum):
    """Directory account lifecycle states, in forward order."""

    ACTIVE = 'active'
    SUSPENDED = 'suspended'
    ARCHIVED = 'archived'
    DELETED = 'deleted'


class GroupKind(Enum):
    ACCESS = 'access'
    PUBLIC_CONTACT = 'public_contact'
    ALLHANDS = 'allhands'
    CADETS = 'cadets'
    SENIORS = 'seniors'
    PARENTS = 'parents'


class Moderation(Enum):
    """Who may post to a group."""

    ANYONE_CAN_POST = 'ANYONE_CAN_POST'
    ALL_IN_DOMAIN_CAN_POST = 'ALL_IN_DOMAIN_CAN_POST'
    ALL_MEMBERS_CAN_POST = 'ALL_MEMBERS_CAN_POST'
    ALL_MANAGERS_CAN_POST = 'ALL_MANAGERS_CAN_POST'


@dataclass(frozen=True)
class Member:
    """A registry member as of the current snapshot."""

    member_id: str
    email: str
    org_id: str
    member_type: MemberType
    registry_status: RegistryStatus
    status_changed_at: Optional[datetime] = None
    duty_positions: Tuple[str, ...] = ()
    parent_emails: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Organization:
    """An organizational unit; squadrons own a fixed set of derived groups."""

    org_id: str
    squadron_code: str
    wing: str
    name: str = ''
    excluded: bool = False


@dataclass(frozen=True)
class DirectoryAccount:
    """Remote account state for a single member."""

    email: str
    status: AccountStatus
    status_changed_at: Optional[datetime] = None


@dataclass(frozen=True)
class GroupTemplate:
    """Static template from which one group per organization is derived."""

    kind: GroupKind
    address: str
    name: str
    description: str = ''
    include_types: FrozenSet[MemberType] = frozenset()
    listed: bool = False
    moderation: Moderation = Moderation.ALL_MEMBERS_CAN_POST


@dataclass(frozen=True)
class Group:
    """A concrete group for one (organization, kind) pair."""

    email: str
    kind: GroupKind
    org_id: str
    name: str
    description: str = ''
    listed: bool = False
    moderation: Moderation = Moderation.ALL_MEMBERS_CAN_POST

    def metadata(self) -> Dict[str, object]:
        """Fields compared against the directory to detect drift."""
        return {
            'name': self.name,
            'description': self.description,
            'listed': self.listed,
            'moderation': self.moderation,
        }


@dataclass
class RunCheckpoint:
    """Resume marker persisted between runs."""

    member_cursor: Optional[str] = None
    group_cursor: Optional[str] = None
    run_at: Optional[datetime] = None
    actions_taken: int = 0
    actions_failed: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            'member_cursor': self.member_cursor,
            'group_cursor': self.group_cursor,
            'run_at': self.run_at.isoformat() if self.run_at else None,
            'actions_taken': self.actions_taken,
            'actions_failed': self.actions_failed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'RunCheckpoint':
        run_at = data.get('run_at')
        return cls(
            member_cursor=data.get('member_cursor'),
            group_cursor=data.get('group_cursor'),
            run_at=datetime.fromisoformat(run_at) if run_at else None,
            actions_taken=int(data.get('actions_taken', 0)),
            actions_failed=int(data.get('actions_failed', 0)),
        )


@dataclass
class RegistrySnapshot:
    """Members and organizations as imported for one run."""

    members: List[Member] = field(default_factory=list)
    organizations: Dict[str, Organization] = field(default_factory=dict)
    generated_at: Optional[datetime] = None
