#!/usr/bin/env python3
"""
Unit tests for checkpoint persistence and the run lock.
"""

import os
import sys
import json
import shutil
import tempfile
import time
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from squadron_sync.checkpoint import CheckpointError, CheckpointStore
from squadron_sync.models import RunCheckpoint


class TestCheckpointStore(unittest.TestCase):
    """Test cases for CheckpointStore."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, 'state', 'checkpoint.json')
        self.store = CheckpointStore(self.path)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_file_gives_fresh_checkpoint(self):
        checkpoint = self.store.load()
        self.assertIsNone(checkpoint.member_cursor)
        self.assertIsNone(checkpoint.group_cursor)
        self.assertIsNone(checkpoint.run_at)

    def test_save_and_load(self):
        run_at = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        self.store.save(RunCheckpoint(member_cursor='123', group_cursor='900', run_at=run_at,
                                      actions_taken=7, actions_failed=1))

        loaded = CheckpointStore(self.path).load()

        self.assertEqual(loaded, RunCheckpoint('123', '900', run_at, 7, 1))

    def test_save_leaves_no_temp_files(self):
        self.store.save(RunCheckpoint(member_cursor='1'))
        self.store.save(RunCheckpoint(member_cursor='2'))
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ['checkpoint.json'])
        with open(self.path) as f:
            self.assertEqual(json.load(f)['member_cursor'], '2')

    def test_failed_write_keeps_previous_checkpoint(self):
        self.store.save(RunCheckpoint(member_cursor='1'))
        with patch('squadron_sync.checkpoint.os.replace', side_effect=OSError('disk full')):
            with self.assertRaises(CheckpointError):
                self.store.save(RunCheckpoint(member_cursor='2'))
        self.assertEqual(self.store.load().member_cursor, '1')
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ['checkpoint.json'])

    def test_corrupt_file_raises(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            f.write('{not json')
        with self.assertRaises(CheckpointError):
            self.store.load()

    def test_non_object_raises(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            json.dump(['a', 'b'], f)
        with self.assertRaises(CheckpointError):
            self.store.load()

    def test_lock_excludes_second_run(self):
        with self.store:
            other = CheckpointStore(self.path)
            with self.assertRaises(CheckpointError):
                other.acquire()
        self.assertFalse(os.path.exists(self.store.lock_path))

    def test_lock_released_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.store:
                raise RuntimeError('boom')
        other = CheckpointStore(self.path)
        other.acquire()
        other.release()

    def write_lock(self, content):
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.store.lock_path, 'w') as f:
            f.write(content)

    @patch('squadron_sync.checkpoint.os.kill', side_effect=ProcessLookupError)
    def test_lock_of_dead_process_taken_over(self, mock_kill):
        self.write_lock('424242')
        self.store.acquire()
        mock_kill.assert_called_once_with(424242, 0)
        with open(self.store.lock_path) as f:
            self.assertEqual(f.read(), str(os.getpid()))
        self.store.release()

    def test_lock_of_live_process_kept(self):
        self.write_lock(str(os.getpid()))
        with self.assertRaises(CheckpointError):
            self.store.acquire()
        self.assertTrue(os.path.exists(self.store.lock_path))

    def test_unreadable_lock_kept_without_age_limit(self):
        self.write_lock('not a pid')
        with self.assertRaises(CheckpointError):
            self.store.acquire()

    def test_old_lock_taken_over(self):
        self.write_lock(str(os.getpid()))
        old = time.time() - 7200
        os.utime(self.store.lock_path, (old, old))
        store = CheckpointStore(self.path, stale_after_seconds=3600)
        store.acquire()
        store.release()
        self.assertFalse(os.path.exists(self.store.lock_path))

    def test_recent_lock_within_age_limit_kept(self):
        self.write_lock(str(os.getpid()))
        store = CheckpointStore(self.path, stale_after_seconds=3600)
        with self.assertRaises(CheckpointError):
            store.acquire()


if __name__ == '__main__':
    unittest.main()
