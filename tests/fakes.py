"""
In-memory collaborators shared by the test modules.
"""

import os
import sys
from collections import defaultdict
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from squadron_sync.clock import Clock
from squadron_sync.config import DEFAULT_GROUP_TEMPLATES, SyncSettings, parse_group_template
from squadron_sync.directory.base import DirectoryClientBase
from squadron_sync.models import (
    AccountStatus, DirectoryAccount, Member, MemberType, Organization, RegistryStatus
)
from squadron_sync.retry import FailureCode, PermanentFailure, Success, failure_for_status

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Clock that only moves when told to; sleeping advances it."""

    def __init__(self, now=NOW):
        self._now = now
        self._monotonic = 0.0
        self.sleeps = []

    def now(self):
        return self._now + timedelta(seconds=self._monotonic)

    def monotonic(self):
        return self._monotonic

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        if seconds > 0:
            self._monotonic += seconds

    def advance(self, seconds):
        self._monotonic += seconds


class InMemoryDirectory(DirectoryClientBase):
    """
    Directory backend holding accounts and groups in dictionaries.

    failures maps (operation, key) to a list of HTTP statuses returned by
    successive calls before the real behaviour resumes. call_seconds makes
    every call advance the clock.
    """

    def __init__(self, clock=None, call_seconds=0.0):
        self.config = {}
        self.name = 'memory'
        self.connection = None
        self.clock = clock or FakeClock()
        self.call_seconds = call_seconds
        self.accounts = {}
        self.groups = {}
        self.members = defaultdict(set)
        self.failures = {}
        self.calls = []
        self.authenticated = False

    # Test helpers

    def add_account(self, email, status=AccountStatus.ACTIVE, changed_at=None):
        self.accounts[email] = DirectoryAccount(email, status, changed_at)

    def fail(self, operation, key, *statuses):
        self.failures.setdefault((operation, key), []).extend(statuses)

    def mutations(self):
        return [c for c in self.calls if not c[0].startswith(('get_', 'list_'))]

    def _enter(self, operation, key):
        self.calls.append((operation, key))
        self.clock.advance(self.call_seconds)
        pending = self.failures.get((operation, key))
        if pending:
            return failure_for_status(pending.pop(0), f"injected {operation} failure")
        return None

    def _set_status(self, email, status):
        self.accounts[email] = DirectoryAccount(email, status, self.clock.now())
        return Success(email)

    # DirectoryClientBase

    def authenticate(self):
        self.authenticated = True

    def get_user(self, email):
        failure = self._enter('get_user', email)
        if failure:
            return failure
        account = self.accounts.get(email)
        if account is None or account.status is AccountStatus.DELETED:
            return PermanentFailure(FailureCode.NOT_FOUND, 'user not found')
        return Success(account)

    def suspend_user(self, email):
        return self._enter('suspend_user', email) or self._set_status(email, AccountStatus.SUSPENDED)

    def reactivate_user(self, email):
        return self._enter('reactivate_user', email) or self._set_status(email, AccountStatus.ACTIVE)

    def archive_user(self, email):
        return self._enter('archive_user', email) or self._set_status(email, AccountStatus.ARCHIVED)

    def delete_user(self, email):
        return self._enter('delete_user', email) or self._set_status(email, AccountStatus.DELETED)

    def get_group(self, email):
        failure = self._enter('get_group', email)
        if failure:
            return failure
        if email not in self.groups:
            return PermanentFailure(FailureCode.NOT_FOUND, 'group not found')
        return Success(dict(self.groups[email]))

    def create_group(self, group):
        failure = self._enter('create_group', group.email)
        if failure:
            return failure
        if group.email in self.groups:
            return PermanentFailure(FailureCode.CONFLICT, 'group exists')
        self.groups[group.email] = group.metadata()
        return Success(group.email)

    def patch_group(self, group):
        failure = self._enter('patch_group', group.email)
        if failure:
            return failure
        self.groups[group.email] = group.metadata()
        return Success(group.email)

    def list_group_members(self, group_email):
        failure = self._enter('list_group_members', group_email)
        if failure:
            return failure
        return Success(sorted(self.members[group_email]))

    def add_group_member(self, group_email, member_email):
        failure = self._enter('add_group_member', member_email)
        if failure:
            return failure
        if member_email in self.members[group_email]:
            return PermanentFailure(FailureCode.CONFLICT, 'member already exists')
        self.members[group_email].add(member_email)
        return Success(member_email)

    def remove_group_member(self, group_email, member_email):
        failure = self._enter('remove_group_member', member_email)
        if failure:
            return failure
        if member_email not in self.members[group_email]:
            return PermanentFailure(FailureCode.NOT_FOUND, 'member not found')
        self.members[group_email].discard(member_email)
        return Success(member_email)


def make_member(member_id, org_id='100', member_type=MemberType.SENIOR,
                status=RegistryStatus.ACTIVE, changed_at=None, email=None, **kwargs):
    return Member(
        member_id=member_id,
        email=email or f"m{member_id}@example.org",
        org_id=org_id,
        member_type=member_type,
        registry_status=status,
        status_changed_at=changed_at,
        **kwargs
    )


def make_org(org_id='100', code='NER-NY-001', wing='NY', name='Test Squadron', excluded=False):
    return Organization(org_id=org_id, squadron_code=code, wing=wing, name=name, excluded=excluded)


def make_settings(**overrides):
    values = dict(
        directory={},
        snapshot_path='snapshot.json',
        checkpoint_path='checkpoint.json',
        inter_call_delay_seconds=0.0,
        retry_wait_seconds=0.0,
        group_domain='example.org',
        group_templates=tuple(parse_group_template(t) for t in DEFAULT_GROUP_TEMPLATES),
    )
    values.update(overrides)
    return SyncSettings(**values)
