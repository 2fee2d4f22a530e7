#!/usr/bin/env python3
"""
Unit tests for run summaries and email notifications.
"""

import os
import sys
import unittest
from datetime import datetime
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from squadron_sync.lifecycle import Action
from squadron_sync.notifications import (
    MAX_LISTED_FAILURES, NotificationReporter, NotificationSummary, format_run_summary,
    format_runtime, send_email, send_failure_notification, send_run_summary
)
from squadron_sync import notifications
from squadron_sync.retry import FailureCode


class TestNotificationReporter(unittest.TestCase):
    """Test cases for outcome accumulation."""

    def test_counts(self):
        reporter = NotificationReporter()
        reporter.record_action(Action.SUSPEND)
        reporter.record_action(Action.SUSPEND)
        reporter.record_action(Action.DELETE)
        reporter.record_action(Action.NONE)
        reporter.record_group_created()
        reporter.record_membership(added=3, removed=1)
        reporter.record_failure('a@example.org', 'suspend', FailureCode.FORBIDDEN, 'denied')

        summary = reporter.summary
        self.assertEqual(summary.suspended, 2)
        self.assertEqual(summary.deleted, 1)
        self.assertEqual(summary.actions_taken, 8)
        self.assertEqual(summary.error_count, 1)
        self.assertEqual(summary.failure_codes(), {'FORBIDDEN': 1})

    def test_merge(self):
        lifecycle = NotificationSummary(reactivated=2, members_processed=10, lifecycle_complete=False)
        groups = NotificationSummary(groups_updated=1, organizations_processed=3)
        groups.failures.append(Mock(code=FailureCode.CONFLICT))

        reporter = NotificationReporter(dry_run=True)
        reporter.merge(lifecycle)
        reporter.merge(groups)

        summary = reporter.summary
        self.assertEqual(summary.reactivated, 2)
        self.assertEqual(summary.groups_updated, 1)
        self.assertEqual(summary.members_processed, 10)
        self.assertEqual(summary.error_count, 1)
        self.assertFalse(summary.lifecycle_complete)
        self.assertTrue(summary.groups_complete)
        self.assertTrue(summary.dry_run)


class TestFormatting(unittest.TestCase):

    def test_format_runtime(self):
        self.assertEqual(format_runtime(5.5), '5.50 seconds')
        self.assertEqual(format_runtime(125), '2m 5.0s')

    def test_summary_body(self):
        summary = NotificationSummary(suspended=3, archived=1, groups_created=2,
                                      groups_complete=False,
                                      started_at=datetime(2024, 6, 1, 12, 0, 0),
                                      finished_at=datetime(2024, 6, 1, 12, 5, 30))
        reporter = NotificationReporter()
        reporter.summary = summary
        reporter.record_failure('x@example.org', 'archive', FailureCode.NOT_FOUND, 'HTTP 404')

        body = format_run_summary(summary)

        self.assertIn('Suspended: 3', body)
        self.assertIn('Archived: 1', body)
        self.assertIn('Groups created: 2', body)
        self.assertIn('Runtime: 5m 30.0s', body)
        self.assertIn('stopped early', body)
        self.assertIn('NOT_FOUND: 1', body)
        self.assertIn('archive x@example.org: NOT_FOUND HTTP 404', body)

    def test_long_failure_list_truncated(self):
        reporter = NotificationReporter()
        for i in range(MAX_LISTED_FAILURES + 5):
            reporter.record_failure(f'u{i}@example.org', 'suspend', FailureCode.SERVER_ERROR)
        body = format_run_summary(reporter.summary)
        self.assertIn('... and 5 more errors', body)
        self.assertNotIn(f'u{MAX_LISTED_FAILURES}@example.org', body)

    def test_dry_run_marked(self):
        self.assertIn('DRY RUN', format_run_summary(NotificationSummary(dry_run=True)))


class TestSendEmail(unittest.TestCase):
    """Test cases for SMTP delivery."""

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_server': 'smtp.example.org',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@example.org',
            'smtp_password': 'smtppass',
            'email_from': 'alerts@example.org',
            'email_to': ('it@example.org', 'cc@example.org'),
        }

    @patch('smtplib.SMTP')
    def test_send_email_success_with_auth(self, mock_smtp):
        server = mock_smtp.return_value
        self.assertTrue(send_email('Subject', 'Body', self.config))
        mock_smtp.assert_called_once_with('smtp.example.org', 587, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@example.org', 'smtppass')
        args = server.sendmail.call_args[0]
        self.assertEqual(args[1], ['it@example.org', 'cc@example.org'])
        server.quit.assert_called_once()

    @patch('smtplib.SMTP_SSL')
    def test_send_email_ssl_port(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465
        self.assertTrue(send_email('Subject', 'Body', self.config))
        mock_smtp_ssl.return_value.starttls.assert_not_called()

    @patch('smtplib.SMTP')
    def test_send_email_failure_is_swallowed(self, mock_smtp):
        mock_smtp.return_value.sendmail.side_effect = OSError('relay down')
        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.return_value.quit.assert_called_once()

    @patch('smtplib.SMTP')
    def test_disabled(self, mock_smtp):
        self.config['enable_email'] = False
        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.assert_not_called()

    def test_missing_server_or_recipients(self):
        self.assertFalse(send_email('S', 'B', dict(self.config, smtp_server=None)))
        self.assertFalse(send_email('S', 'B', dict(self.config, email_to=[])))

    @patch('squadron_sync.notifications.send_email', return_value=True)
    def test_run_summary_routing(self, mock_send):
        clean = NotificationSummary()
        self.assertFalse(send_run_summary(clean, self.config))
        mock_send.assert_not_called()

        self.config['email_on_success'] = True
        self.assertTrue(send_run_summary(clean, self.config))
        self.assertIn('Successful', mock_send.call_args[0][0])

        reporter = NotificationReporter()
        reporter.record_failure('a@example.org', 'delete', FailureCode.FORBIDDEN)
        self.assertTrue(send_run_summary(reporter.summary, self.config))
        self.assertIn('1 errors', mock_send.call_args[0][0])

    @patch('squadron_sync.notifications.send_email', return_value=True)
    def test_failure_notification(self, mock_send):
        self.assertTrue(send_failure_notification('Registry Unavailable', 'file missing', self.config,
                                                  {'path': '/data/snapshot.json'}))
        subject, body = mock_send.call_args[0][:2]
        self.assertEqual(subject, 'Squadron Sync Alert: Registry Unavailable')
        self.assertIn('file missing', body)
        self.assertIn('path: /data/snapshot.json', body)
        self.assertIn('No directory changes were made', body)

    @patch('squadron_sync.notifications.send_email', return_value=True)
    def test_failure_after_changes_started(self, mock_send):
        send_failure_notification('Sync Failed', 'group listing broke', self.config,
                                  changes_possible=True)
        body = mock_send.call_args[0][1]
        self.assertNotIn('No directory changes', body)
        self.assertIn('changes made before the failure are kept', body)

    @patch('squadron_sync.notifications.send_email')
    def test_failure_notification_disabled(self, mock_send):
        self.config['email_on_failure'] = False
        self.assertFalse(send_failure_notification('X', 'Y', self.config))
        mock_send.assert_not_called()

    @patch('squadron_sync.notifications.send_email', return_value=True)
    def test_notification_config_check(self, mock_send):
        self.assertTrue(notifications.test_notification_config(self.config))
        self.assertIn('smtp.example.org', mock_send.call_args[0][1])


if __name__ == '__main__':
    unittest.main()
