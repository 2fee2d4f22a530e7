"""
Account lifecycle state machine.

Maps a member's registry status, the state of their directory account and
the time spent in that state to the single transition the engine should
apply next. The functions here are pure; all I/O lives in the orchestrator.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from squadron_sync.models import AccountStatus, RegistryStatus


class Action(Enum):
    NONE = 'none'
    SUSPEND = 'suspend'
    REACTIVATE = 'reactivate'
    ARCHIVE = 'archive'
    DELETE = 'delete'


@dataclass(frozen=True)
class LifecycleThresholds:
    """Day counts that gate the age-based transitions."""

    suspension_grace_days: int = 7
    days_before_archive: int = 365
    days_before_delete: int = 1825


# Status each action moves an account into
TARGET_STATUS = {
    Action.SUSPEND: AccountStatus.SUSPENDED,
    Action.REACTIVATE: AccountStatus.ACTIVE,
    Action.ARCHIVE: AccountStatus.ARCHIVED,
    Action.DELETE: AccountStatus.DELETED,
}

ALLOWED_TRANSITIONS = {
    (AccountStatus.ACTIVE, AccountStatus.SUSPENDED),
    (AccountStatus.SUSPENDED, AccountStatus.ARCHIVED),
    (AccountStatus.ARCHIVED, AccountStatus.DELETED),
    (AccountStatus.SUSPENDED, AccountStatus.ACTIVE),
    (AccountStatus.ARCHIVED, AccountStatus.ACTIVE),
}

_REMOVAL_ACTIONS = (Action.SUSPEND, Action.ARCHIVE, Action.DELETE)


def is_allowed_transition(current: AccountStatus, target: AccountStatus) -> bool:
    """Return True if the directory account may move from current to target."""
    return (current, target) in ALLOWED_TRANSITIONS


def decide(
    registry_status: RegistryStatus,
    account_status: AccountStatus,
    days_since_status_change: int,
    excluded: bool = False,
    thresholds: Optional[LifecycleThresholds] = None
) -> Action:
    """
    Compute the next lifecycle action for one member.

    Args:
        registry_status: Member's status in the registry
        account_status: Current directory account status
        days_since_status_change: Whole days the account has spent in its
            current state (for active accounts: days since expiry)
        excluded: True if the member's organization is excluded from automation
        thresholds: Day thresholds; defaults are used when None

    Returns:
        The action to apply, Action.NONE when nothing is due
    """
    thresholds = thresholds or LifecycleThresholds()

    if account_status is AccountStatus.DELETED:
        return Action.NONE

    if registry_status is RegistryStatus.ACTIVE:
        if account_status in (AccountStatus.SUSPENDED, AccountStatus.ARCHIVED):
            return Action.REACTIVATE
        return Action.NONE

    action = Action.NONE
    if account_status is AccountStatus.ACTIVE:
        if days_since_status_change >= thresholds.suspension_grace_days:
            action = Action.SUSPEND
    elif account_status is AccountStatus.SUSPENDED:
        if days_since_status_change >= thresholds.days_before_archive:
            action = Action.ARCHIVE
    elif account_status is AccountStatus.ARCHIVED:
        if days_since_status_change >= thresholds.days_before_delete:
            action = Action.DELETE

    if excluded and action in _REMOVAL_ACTIONS:
        return Action.NONE
    return action


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_between(start: Optional[datetime], now: datetime) -> int:
    """Whole days elapsed from start to now; 0 when start is unknown or in the future."""
    if start is None:
        return 0
    delta = as_utc(now) - as_utc(start)
    return max(delta.days, 0)


def reference_time(
    account_status: AccountStatus,
    account_changed_at: Optional[datetime],
    registry_changed_at: Optional[datetime]
) -> Optional[datetime]:
    """
    Pick the timestamp age-based thresholds are measured from.

    Suspended and archived accounts age from the directory's own status
    change. An active account's grace period starts at the later of its last
    status change and the registry expiry, so a long-active account is not
    suspended the moment its membership lapses.
    """
    if account_status is not AccountStatus.ACTIVE:
        return account_changed_at
    candidates = [as_utc(t) for t in (account_changed_at, registry_changed_at) if t is not None]
    if not candidates:
        return None
    return max(candidates)
