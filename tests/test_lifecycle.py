#!/usr/bin/env python3
"""
Unit tests for the account lifecycle state machine.
"""

import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from squadron_sync.lifecycle import (
    Action, LifecycleThresholds, TARGET_STATUS, days_between, decide,
    is_allowed_transition, reference_time
)
from squadron_sync.models import AccountStatus, RegistryStatus

ACTIVE = RegistryStatus.ACTIVE
EXPIRED = RegistryStatus.EXPIRED


class TestDecide(unittest.TestCase):
    """Test cases for the transition table."""

    def test_registry_active_account_active(self):
        self.assertEqual(decide(ACTIVE, AccountStatus.ACTIVE, 1000), Action.NONE)

    def test_registry_active_reactivates_suspended_and_archived(self):
        self.assertEqual(decide(ACTIVE, AccountStatus.SUSPENDED, 0), Action.REACTIVATE)
        self.assertEqual(decide(ACTIVE, AccountStatus.ARCHIVED, 4000), Action.REACTIVATE)

    def test_deleted_is_terminal(self):
        for registry_status in (ACTIVE, EXPIRED):
            self.assertEqual(decide(registry_status, AccountStatus.DELETED, 9999), Action.NONE)

    def test_suspend_after_grace_period(self):
        self.assertEqual(decide(EXPIRED, AccountStatus.ACTIVE, 6), Action.NONE)
        self.assertEqual(decide(EXPIRED, AccountStatus.ACTIVE, 7), Action.SUSPEND)

    def test_archive_threshold(self):
        self.assertEqual(decide(EXPIRED, AccountStatus.SUSPENDED, 364), Action.NONE)
        self.assertEqual(decide(EXPIRED, AccountStatus.SUSPENDED, 365), Action.ARCHIVE)

    def test_delete_threshold(self):
        self.assertEqual(decide(EXPIRED, AccountStatus.ARCHIVED, 1824), Action.NONE)
        self.assertEqual(decide(EXPIRED, AccountStatus.ARCHIVED, 1825), Action.DELETE)

    def test_custom_thresholds(self):
        thresholds = LifecycleThresholds(suspension_grace_days=1, days_before_archive=10,
                                         days_before_delete=20)
        self.assertEqual(decide(EXPIRED, AccountStatus.ACTIVE, 1, thresholds=thresholds),
                         Action.SUSPEND)
        self.assertEqual(decide(EXPIRED, AccountStatus.SUSPENDED, 10, thresholds=thresholds),
                         Action.ARCHIVE)
        self.assertEqual(decide(EXPIRED, AccountStatus.ARCHIVED, 19, thresholds=thresholds),
                         Action.NONE)

    def test_excluded_org_blocks_removal_actions(self):
        self.assertEqual(decide(EXPIRED, AccountStatus.ACTIVE, 100, excluded=True), Action.NONE)
        self.assertEqual(decide(EXPIRED, AccountStatus.SUSPENDED, 400, excluded=True), Action.NONE)
        self.assertEqual(decide(EXPIRED, AccountStatus.ARCHIVED, 2000, excluded=True), Action.NONE)

    def test_excluded_org_still_reactivates(self):
        self.assertEqual(decide(ACTIVE, AccountStatus.SUSPENDED, 3, excluded=True), Action.REACTIVATE)

    def test_decisions_follow_allowed_edges(self):
        for account_status in AccountStatus:
            for registry_status in RegistryStatus:
                action = decide(registry_status, account_status, 10000)
                if action is Action.NONE:
                    continue
                self.assertTrue(is_allowed_transition(account_status, TARGET_STATUS[action]),
                                f"{account_status} -> {action}")


class TestTransitions(unittest.TestCase):

    def test_forward_edges_only(self):
        self.assertTrue(is_allowed_transition(AccountStatus.ACTIVE, AccountStatus.SUSPENDED))
        self.assertTrue(is_allowed_transition(AccountStatus.ARCHIVED, AccountStatus.DELETED))
        self.assertFalse(is_allowed_transition(AccountStatus.ACTIVE, AccountStatus.ARCHIVED))
        self.assertFalse(is_allowed_transition(AccountStatus.ACTIVE, AccountStatus.DELETED))
        self.assertFalse(is_allowed_transition(AccountStatus.DELETED, AccountStatus.ACTIVE))
        self.assertFalse(is_allowed_transition(AccountStatus.ARCHIVED, AccountStatus.SUSPENDED))


class TestTimeHelpers(unittest.TestCase):
    """Test cases for day counting and reference times."""

    def setUp(self):
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def test_days_between_unknown_start(self):
        self.assertEqual(days_between(None, self.now), 0)

    def test_days_between_future_start_clamps(self):
        self.assertEqual(days_between(self.now + timedelta(days=3), self.now), 0)

    def test_days_between_naive_is_utc(self):
        start = datetime(2024, 5, 25, 12, 0)
        self.assertEqual(days_between(start, self.now), 7)

    def test_partial_days_round_down(self):
        start = self.now - timedelta(days=6, hours=23)
        self.assertEqual(days_between(start, self.now), 6)

    def test_reference_for_active_account_is_later_timestamp(self):
        created = self.now - timedelta(days=900)
        expired = self.now - timedelta(days=6)
        self.assertEqual(reference_time(AccountStatus.ACTIVE, created, expired), expired)

    def test_reference_for_suspended_account_is_own_change(self):
        suspended = self.now - timedelta(days=30)
        expired = self.now - timedelta(days=40)
        self.assertEqual(reference_time(AccountStatus.SUSPENDED, suspended, expired), suspended)

    def test_reference_unknown(self):
        self.assertIsNone(reference_time(AccountStatus.ACTIVE, None, None))

    def test_grace_period_counts_from_expiry(self):
        created = self.now - timedelta(days=900)
        for days, expected in ((6, Action.NONE), (7, Action.SUSPEND)):
            expired = self.now - timedelta(days=days)
            since = reference_time(AccountStatus.ACTIVE, created, expired)
            self.assertEqual(decide(EXPIRED, AccountStatus.ACTIVE, days_between(since, self.now)),
                             expected)


if __name__ == '__main__':
    unittest.main()
