"""
Squadron group reconciliation.

Every non-excluded organization owns one group per configured template.
The reconciler derives each group's address, metadata and exact membership
from the registry snapshot and the members' directory account states, then converges the directory to match: create
missing groups, patch drifted metadata, add and remove members. Groups are
never deleted here; their lifecycle beyond creation is manual.
"""

import logging
from collections import defaultdict
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from squadron_sync.clock import RunBudget
from squadron_sync.config import SyncSettings
from squadron_sync.directory.base import DirectoryClientBase
from squadron_sync.logging_setup import audit_logger
from squadron_sync.models import (
    AccountStatus, Group, GroupKind, GroupTemplate, Member, Organization, RunCheckpoint
)
from squadron_sync.notifications import NotificationReporter, NotificationSummary
from squadron_sync.orchestrator import resume_index
from squadron_sync.retry import FailureCode, PermanentFailure, RetryExecutor, Success

logger = logging.getLogger(__name__)


def render(pattern: str, organization: Organization, domain: str) -> str:
    """
    Fill a template pattern for one organization.

    Placeholders: {squadron} (lower-case code without dashes), {squadron_code},
    {wing} (lower-case), {domain} and {name}.
    """
    return pattern.format(
        squadron=organization.squadron_code.replace('-', '').lower(),
        squadron_code=organization.squadron_code,
        wing=organization.wing.lower(),
        domain=domain,
        name=organization.name or organization.squadron_code,
    )


def build_group(template: GroupTemplate, organization: Organization, domain: str) -> Group:
    return Group(
        email=render(template.address, organization, domain).lower(),
        kind=template.kind,
        org_id=organization.org_id,
        name=render(template.name, organization, domain),
        description=render(template.description, organization, domain),
        listed=template.listed,
        moderation=template.moderation,
    )


def desired_members(
    template: GroupTemplate,
    organization: Organization,
    members: Iterable[Member],
    accounts: Mapping[str, Optional[AccountStatus]],
    duty_positions: Iterable[str] = (),
    recruiting_mailbox: str = '',
    domain: str = ''
) -> Set[str]:
    """
    Compute the exact membership a group should have.

    Args:
        template: Group template
        organization: Owning organization
        members: Members of that organization
        accounts: Directory account status by member email; only members
            whose account is ACTIVE are eligible
        duty_positions: Duty positions that staff the public contact group
        recruiting_mailbox: Pattern for the wing recruiting address
        domain: Mail domain for rendering

    Returns:
        Set of lower-cased email addresses
    """
    active = [
        m for m in members
        if m.org_id == organization.org_id and accounts.get(m.email) is AccountStatus.ACTIVE
    ]

    if template.kind is GroupKind.PARENTS:
        child_types = template.include_types or frozenset()
        return {
            email.lower()
            for m in active if not child_types or m.member_type in child_types
            for email in m.parent_emails
        }

    if template.kind is GroupKind.PUBLIC_CONTACT:
        positions = {p.strip().lower() for p in duty_positions}
        emails = {
            m.email.lower() for m in active
            if positions.intersection(p.strip().lower() for p in m.duty_positions)
        }
        if recruiting_mailbox:
            emails.add(render(recruiting_mailbox, organization, domain).lower())
        return emails

    return {m.email.lower() for m in active if m.member_type in template.include_types}


class SquadronGroupReconciler:
    """Converges squadron groups to the membership derived from the registry."""

    def __init__(
        self,
        directory: DirectoryClientBase,
        executor: RetryExecutor,
        settings: SyncSettings
    ):
        self.directory = directory
        self.executor = executor
        self.settings = settings
        self._statuses: Dict[str, Optional[AccountStatus]] = {}

    def plan(
        self,
        organization: Organization,
        members: Iterable[Member],
        accounts: Mapping[str, Optional[AccountStatus]],
        unresolved: Iterable[str] = ()
    ) -> List[Tuple[Group, Set[str], Set[str]]]:
        """
        Desired groups and their membership for one organization.

        Returns:
            List of (group, wanted, held) where held are addresses that must
            not be removed because they depend on a member whose account
            state could not be read
        """
        members = list(members)
        domain = self.settings.group_domain
        unresolved = set(unresolved)
        optimistic = dict(accounts)
        optimistic.update((email, AccountStatus.ACTIVE) for email in unresolved)

        options = dict(duty_positions=self.settings.duty_positions,
                       recruiting_mailbox=self.settings.recruiting_mailbox,
                       domain=domain)
        plans = []
        for template in self.settings.group_templates:
            wanted = desired_members(template, organization, members, accounts, **options)
            held = set()
            if unresolved:
                held = desired_members(template, organization, members, optimistic, **options) - wanted
            plans.append((build_group(template, organization, domain), wanted, held))
        return plans

    def run_once(
        self,
        members: Iterable[Member],
        organizations: Dict[str, Organization],
        checkpoint: RunCheckpoint,
        budget: RunBudget,
        account_statuses: Optional[Mapping[str, Optional[AccountStatus]]] = None
    ) -> Tuple[RunCheckpoint, NotificationSummary]:
        """
        Reconcile groups for one batch of organizations.

        Args:
            members: Member snapshot
            organizations: Organizations by org_id
            checkpoint: Checkpoint carrying the group cursor
            budget: Wall-clock budget shared with the lifecycle phase
            account_statuses: Account states already read this run, by email;
                other members are looked up in the directory

        Returns:
            Tuple of (checkpoint with the new group cursor, summary for this phase)
        """
        self._statuses = dict(account_statuses or {})
        members_by_org = defaultdict(list)
        for member in members:
            members_by_org[member.org_id].append(member)

        eligible = sorted(
            (org for org in organizations.values() if not org.excluded),
            key=lambda org: org.org_id
        )
        keys = [org.org_id for org in eligible]
        start = resume_index(keys, checkpoint.group_cursor)
        if start >= len(eligible):
            start = 0

        reporter = NotificationReporter(dry_run=self.settings.dry_run)
        cursor = checkpoint.group_cursor
        processed = 0
        stopped_early = False

        logger.info(f"Group phase: {len(eligible)} organizations, starting at position {start}")

        for index in range(start, len(eligible)):
            if budget.expired():
                logger.warning("Time budget exhausted before next organization, stopping")
                stopped_early = True
                break

            organization = eligible[index]
            self.reconcile_organization(organization, members_by_org.get(organization.org_id, []), reporter)
            reporter.record_organization_processed()
            processed += 1
            cursor = organization.org_id

            if index == len(eligible) - 1:
                break
            if processed >= self.settings.batch_size:
                logger.info(f"Batch cap of {self.settings.batch_size} organizations reached, stopping")
                stopped_early = True
                break
            if budget.expired():
                logger.warning(f"Time budget of {budget.seconds}s exhausted after "
                               f"{processed} organizations, stopping")
                stopped_early = True
                break

        if not stopped_early:
            cursor = None

        reporter.summary.groups_complete = not stopped_early
        return replace(checkpoint, group_cursor=cursor), reporter.summary

    def reconcile_organization(self, organization: Organization, members: List[Member],
                               reporter: NotificationReporter) -> None:
        logger.info(f"Reconciling groups for {organization.squadron_code}")
        accounts, unresolved = self._account_states(members, reporter)
        for group, wanted, held in self.plan(organization, members, accounts, unresolved):
            self.reconcile_group(group, wanted, reporter, held)

    def _account_states(self, members: List[Member], reporter: NotificationReporter
                        ) -> Tuple[Dict[str, Optional[AccountStatus]], Set[str]]:
        """Account status per member email, reading any not seen yet this run."""
        accounts = {}
        unresolved = set()
        for member in members:
            email = member.email
            if email not in self._statuses:
                lookup = self.executor.execute(lambda: self.directory.get_user(email),
                                               f"get_user {email}")
                if isinstance(lookup, Success):
                    self._statuses[email] = lookup.value.status
                elif lookup.code is FailureCode.NOT_FOUND:
                    self._statuses[email] = None
                else:
                    logger.error(f"Account lookup failed for {email}: "
                                 f"{lookup.code.name} {lookup.last_error}")
                    reporter.record_failure(email, 'get_user', lookup.code, lookup.last_error)
                    unresolved.add(email)
                    continue
            accounts[email] = self._statuses[email]
        return accounts, unresolved

    def reconcile_group(self, group: Group, wanted: Set[str], reporter: NotificationReporter,
                        held: Iterable[str] = ()) -> None:
        """
        Create or patch one group and set its membership to exactly wanted.

        Addresses in held are left in place if already present.
        """
        current = self.executor.execute(lambda: self.directory.get_group(group.email),
                                        f"get_group {group.email}")
        existing_members: Optional[Set[str]] = None

        if isinstance(current, PermanentFailure):
            if current.code is not FailureCode.NOT_FOUND:
                reporter.record_failure(group.email, 'get_group', current.code, current.last_error)
                return
            if not self._create(group, reporter):
                return
            existing_members = set()
        elif current.value != group.metadata():
            if not self._patch(group, current.value, reporter):
                return

        if existing_members is None:
            listing = self.executor.execute(lambda: self.directory.list_group_members(group.email),
                                            f"list_group_members {group.email}")
            if isinstance(listing, PermanentFailure):
                reporter.record_failure(group.email, 'list_group_members', listing.code, listing.last_error)
                return
            existing_members = {e.lower() for e in listing.value}

        to_add = sorted(wanted - existing_members)
        to_remove = sorted(existing_members - wanted - set(held))
        if to_add or to_remove:
            logger.debug(f"{group.email}: {len(to_add)} to add, {len(to_remove)} to remove")

        added = sum(1 for email in to_add if self._add(group, email, reporter))
        removed = sum(1 for email in to_remove if self._remove(group, email, reporter))
        reporter.record_membership(added=added, removed=removed)

    def _create(self, group: Group, reporter: NotificationReporter) -> bool:
        if self.settings.dry_run:
            logger.info(f"[dry run] Would create group {group.email}")
            reporter.record_group_created()
            return True
        result = self.executor.execute(lambda: self.directory.create_group(group),
                                       f"create_group {group.email}")
        if isinstance(result, Success):
            logger.info(f"Created group {group.email}")
            reporter.record_group_created()
            return True
        reporter.record_failure(group.email, 'create_group', result.code, result.last_error)
        return False

    def _patch(self, group: Group, remote: dict, reporter: NotificationReporter) -> bool:
        drifted = sorted(k for k, v in group.metadata().items() if remote.get(k) != v)
        if self.settings.dry_run:
            logger.info(f"[dry run] Would update group {group.email}: {', '.join(drifted)}")
            reporter.record_group_updated()
            return True
        result = self.executor.execute(lambda: self.directory.patch_group(group),
                                       f"patch_group {group.email}")
        if isinstance(result, Success):
            logger.info(f"Updated group {group.email}: {', '.join(drifted)}")
            reporter.record_group_updated()
            return True
        reporter.record_failure(group.email, 'patch_group', result.code, result.last_error)
        return False

    def _add(self, group: Group, email: str, reporter: NotificationReporter) -> bool:
        if self.settings.dry_run:
            logger.info(f"[dry run] Would add {email} to {group.email}")
            return True
        result = self.executor.execute(lambda: self.directory.add_group_member(group.email, email),
                                       f"add_group_member {group.email} {email}")
        if isinstance(result, Success):
            audit_logger.log_membership_change('add', group.email, email, True)
            return True
        if result.code is FailureCode.CONFLICT:
            # added concurrently by someone else; already converged
            logger.debug(f"{email} already a member of {group.email}")
            return False
        reporter.record_failure(f"{group.email}:{email}", 'add_group_member', result.code, result.last_error)
        audit_logger.log_membership_change('add', group.email, email, False)
        return False

    def _remove(self, group: Group, email: str, reporter: NotificationReporter) -> bool:
        if self.settings.dry_run:
            logger.info(f"[dry run] Would remove {email} from {group.email}")
            return True
        result = self.executor.execute(lambda: self.directory.remove_group_member(group.email, email),
                                       f"remove_group_member {group.email} {email}")
        if isinstance(result, Success):
            audit_logger.log_membership_change('remove', group.email, email, True)
            return True
        if result.code is FailureCode.NOT_FOUND:
            logger.debug(f"{email} already removed from {group.email}")
            return False
        reporter.record_failure(f"{group.email}:{email}", 'remove_group_member', result.code, result.last_error)
        audit_logger.log_membership_change('remove', group.email, email, False)
        return False
