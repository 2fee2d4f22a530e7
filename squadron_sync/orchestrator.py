"""
Batch orchestrator for account lifecycle reconciliation.

Walks the member snapshot in a stable order, asks the lifecycle state
machine what each account needs, and applies that transition through the
retry executor. Each invocation is bounded by a batch cap and a wall-clock
budget; the checkpoint cursor lets the next invocation continue where this
one stopped.
"""

import bisect
import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from squadron_sync.clock import Clock, RunBudget
from squadron_sync.config import SyncSettings
from squadron_sync.directory.base import DirectoryClientBase
from squadron_sync.lifecycle import TARGET_STATUS, Action, decide, days_between, reference_time
from squadron_sync.logging_setup import audit_logger
from squadron_sync.models import AccountStatus, Member, Organization, RegistryStatus, RunCheckpoint
from squadron_sync.notifications import NotificationReporter, NotificationSummary
from squadron_sync.retry import FailureCode, PermanentFailure, Result, RetryExecutor, Success

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base exception for run-level sync errors."""
    pass


def resume_index(keys: Sequence[str], cursor: Optional[str]) -> int:
    """Index of the first key strictly after cursor in a sorted key list."""
    if cursor is None:
        return 0
    return bisect.bisect_right(keys, cursor)


class LifecycleOrchestrator:
    """
    Drives account lifecycle transitions over the member snapshot.

    Account state is read from the directory on every visit, so a second
    pass over unchanged inputs finds nothing to do. The state each visited
    account is left in is kept in account_statuses (None when the member has
    no account) for the group phase of the same run.
    """

    def __init__(
        self,
        directory: DirectoryClientBase,
        executor: RetryExecutor,
        settings: SyncSettings,
        clock: Clock
    ):
        self.directory = directory
        self.executor = executor
        self.settings = settings
        self.clock = clock
        self.account_statuses: Dict[str, Optional[AccountStatus]] = {}
        self._operations: Dict[Action, Callable[[str], Result]] = {
            Action.SUSPEND: directory.suspend_user,
            Action.REACTIVATE: directory.reactivate_user,
            Action.ARCHIVE: directory.archive_user,
            Action.DELETE: directory.delete_user,
        }

    def run_once(
        self,
        members: Iterable[Member],
        organizations: Dict[str, Organization],
        checkpoint: RunCheckpoint,
        budget: RunBudget
    ) -> Tuple[RunCheckpoint, NotificationSummary]:
        """
        Process one batch of members.

        Args:
            members: Member snapshot (any order)
            organizations: Organizations by org_id
            checkpoint: Checkpoint from the previous run
            budget: Wall-clock budget for this invocation

        Returns:
            Tuple of (checkpoint with the new member cursor, summary for this phase)
        """
        ordered = self._order(members)
        keys = [m.member_id for m in ordered]
        start = resume_index(keys, checkpoint.member_cursor)
        if start >= len(ordered):
            # cursor points past the end (population shrank); wrap around
            start = 0

        self.account_statuses = {}
        reporter = NotificationReporter(dry_run=self.settings.dry_run)
        cursor = checkpoint.member_cursor
        processed = 0
        stopped_early = False

        logger.info(f"Lifecycle phase: {len(ordered)} members, starting at position {start}")

        for index in range(start, len(ordered)):
            if budget.expired():
                logger.warning("Time budget exhausted before next member, stopping")
                stopped_early = True
                break

            member = ordered[index]
            self._process_member(member, organizations.get(member.org_id), reporter)
            reporter.record_member_processed()
            processed += 1
            cursor = member.member_id

            if index == len(ordered) - 1:
                break
            if processed >= self.settings.batch_size:
                logger.info(f"Batch cap of {self.settings.batch_size} members reached, stopping")
                stopped_early = True
                break
            if budget.expired():
                logger.warning(f"Time budget of {budget.seconds}s exhausted after "
                               f"{processed} members, stopping")
                stopped_early = True
                break

        if not stopped_early:
            cursor = None

        reporter.summary.lifecycle_complete = not stopped_early
        logger.info(f"Lifecycle phase processed {processed} members; "
                    f"next cursor: {cursor if cursor is not None else 'start'}")
        return replace(checkpoint, member_cursor=cursor), reporter.summary

    def _order(self, members: Iterable[Member]) -> List[Member]:
        by_id = {}
        for member in members:
            if member.member_id in by_id:
                logger.warning(f"Duplicate member id {member.member_id} in snapshot, keeping first")
                continue
            by_id[member.member_id] = member
        return [by_id[k] for k in sorted(by_id)]

    def compute_action(self, member: Member, organization: Optional[Organization], account) -> Action:
        """Decide the transition for a member given their current directory account."""
        registry_changed_at = None
        if member.registry_status is RegistryStatus.EXPIRED:
            registry_changed_at = member.status_changed_at
        since = reference_time(account.status, account.status_changed_at, registry_changed_at)
        days = days_between(since, self.clock.now())
        # members of an organization missing from the snapshot are never removed
        excluded = organization is None or organization.excluded
        return decide(member.registry_status, account.status, days,
                      excluded=excluded, thresholds=self.settings.thresholds)

    def _process_member(self, member: Member, organization: Optional[Organization],
                        reporter: NotificationReporter) -> None:
        email = member.email

        lookup = self.executor.execute(lambda: self.directory.get_user(email), f"get_user {email}")
        if isinstance(lookup, PermanentFailure):
            if lookup.code is FailureCode.NOT_FOUND:
                logger.debug(f"No directory account for member {member.member_id} ({email})")
                self.account_statuses[email] = None
                return
            logger.error(f"Account lookup failed for {email}: {lookup.code.name} {lookup.last_error}")
            reporter.record_failure(email, 'get_user', lookup.code, lookup.last_error)
            return

        account = lookup.value
        action = self.compute_action(member, organization, account)
        if action is Action.NONE:
            self.account_statuses[email] = account.status
            return

        if self.settings.dry_run:
            logger.info(f"[dry run] Would {action.value} {email} (currently {account.status.value})")
            self.account_statuses[email] = TARGET_STATUS[action]
            reporter.record_action(action)
            return

        operation = self._operations[action]
        result = self.executor.execute(lambda: operation(email), f"{action.value} {email}")
        if isinstance(result, Success):
            logger.info(f"{action.value.capitalize()} {email} "
                        f"(was {account.status.value}, member {member.member_id})")
            self.account_statuses[email] = TARGET_STATUS[action]
            reporter.record_action(action)
            audit_logger.log_lifecycle_action(action.value, email, True)
        else:
            logger.error(f"Failed to {action.value} {email}: {result.code.name} {result.last_error}")
            self.account_statuses[email] = account.status
            reporter.record_failure(email, action.value, result.code, result.last_error)
            audit_logger.log_lifecycle_action(action.value, email, False)
