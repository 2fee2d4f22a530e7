#!/usr/bin/env python3
"""
Unit tests for logging setup, sensitive data filtering and the audit trail.
"""

import os
import sys
import time
import shutil
import logging
import logging.handlers
import tempfile
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from squadron_sync.logging_setup import AuditLogger, LoggingManager, SensitiveDataFilter


def make_record(msg, *args):
    return logging.LogRecord('test', logging.INFO, __file__, 1, msg, args or None, None)


class TestSensitiveDataFilter(unittest.TestCase):
    """Test cases for credential scrubbing."""

    def setUp(self):
        self.filter = SensitiveDataFilter()

    def scrub(self, msg, *args):
        record = make_record(msg, *args)
        self.assertTrue(self.filter.filter(record))
        return record.getMessage()

    def test_filter_patterns(self):
        test_cases = [
            ('password=secret123', 'password=****'),
            ('token=abc123def456', 'token=****'),
            ('{"client_secret": "topsecret"}', '{"client_secret": "****"}'),
            ('{"smtp_password": "test123"}', '{"smtp_password": "****"}'),
            ("{'access_token': 'ya29.abc'}", "{'access_token': '****'}"),
            ('Authorization: Bearer abc123token', 'Authorization: Bearer ****'),
            ('Normal message without secrets', 'Normal message without secrets'),
        ]
        for input_msg, expected in test_cases:
            with self.subTest(input_msg=input_msg):
                self.assertEqual(self.scrub(input_msg), expected)

    def test_arguments_are_scrubbed(self):
        self.assertEqual(self.scrub('auth config %s', {'client_secret': 's3cr3t'}),
                         "auth config {'client_secret': '****'}")

    def test_email_addresses_untouched(self):
        self.assertEqual(self.scrub('Suspend cadet@example.org'), 'Suspend cadet@example.org')


class TestLoggingManager(unittest.TestCase):
    """Test cases for LoggingManager."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level

    def tearDown(self):
        for handler in self.root.handlers:
            handler.close()
        self.root.handlers = self.saved_handlers
        self.root.setLevel(self.saved_level)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_setup_creates_rotating_file_handler(self):
        log_dir = os.path.join(self.temp_dir, 'logs')
        manager = LoggingManager()
        manager.setup_logging({'level': 'DEBUG', 'log_dir': log_dir, 'console_output': False})

        self.assertTrue(os.path.isdir(log_dir))
        self.assertEqual(len(self.root.handlers), 1)
        self.assertIsInstance(self.root.handlers[0], logging.handlers.TimedRotatingFileHandler)
        self.assertEqual(self.root.level, logging.DEBUG)

        logging.getLogger('squadron_sync.test').info('token=abc123 done')
        self.root.handlers[0].flush()
        with open(os.path.join(log_dir, 'squadron_sync.log')) as f:
            content = f.read()
        self.assertIn('token=****', content)
        self.assertNotIn('abc123', content)

    def test_setup_only_once(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': False})
        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': True})
        self.assertEqual(len(self.root.handlers), 1)

    def test_console_and_plain_file(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir, 'rotation': 'none', 'console_output': True})
        kinds = sorted(type(h).__name__ for h in self.root.handlers)
        self.assertEqual(kinds, ['FileHandler', 'StreamHandler'])

    def test_old_rotated_logs_removed(self):
        old = os.path.join(self.temp_dir, 'squadron_sync.log.2020-01-01')
        with open(old, 'w') as f:
            f.write('old')
        stale = time.time() - 30 * 86400
        os.utime(old, (stale, stale))

        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir, 'retention_days': 7, 'console_output': False})

        self.assertFalse(os.path.exists(old))
        stats = manager.get_log_stats()
        self.assertTrue(stats['configured'])
        self.assertEqual(stats['log_files_count'], 1)


class TestAuditLogger(unittest.TestCase):

    def test_audit_messages(self):
        audit = AuditLogger()
        with patch.object(audit, 'logger') as mock_logger:
            audit.log_lifecycle_action('suspend', 'a@example.org', True)
            audit.log_membership_change('remove', 'g@example.org', 'a@example.org', False)
            audit.log_run_event('run complete', 'actions=2 errors=0')
        messages = [c[0][0] for c in mock_logger.info.call_args_list]
        self.assertEqual(messages, [
            'Lifecycle SUCCESS: suspend user=a@example.org',
            'Membership FAILURE: remove user=a@example.org group=g@example.org',
            'Run event: run complete - actions=2 errors=0',
        ])


if __name__ == '__main__':
    unittest.main()
