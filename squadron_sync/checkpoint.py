"""
Run checkpoint persistence.

The checkpoint is the only state the engine owns between runs. It is written
atomically, and a lock file keeps two overlapping invocations from both
mutating the directory. A lock whose holder process is gone, or that is older
than stale_after_seconds, is taken over.
"""

import os
import json
import logging
import tempfile
import time
from typing import Optional

from squadron_sync.models import RunCheckpoint

logger = logging.getLogger(__name__)


class CheckpointError(Exception):
    """Raised when the checkpoint cannot be read, written or locked."""
    pass


class CheckpointStore:
    """JSON file-backed checkpoint store with an exclusive run lock."""

    def __init__(self, path: str, lock_path: Optional[str] = None,
                 stale_after_seconds: Optional[float] = None):
        self.path = path
        self.lock_path = lock_path or f"{path}.lock"
        self.stale_after_seconds = stale_after_seconds
        self._locked = False

    def load(self) -> RunCheckpoint:
        """
        Read the checkpoint, returning a fresh one on first run.

        Raises:
            CheckpointError: If the file exists but is unreadable or corrupt
        """
        if not os.path.exists(self.path):
            logger.info(f"No checkpoint at {self.path}, starting from the beginning")
            return RunCheckpoint()

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("checkpoint is not a JSON object")
            checkpoint = RunCheckpoint.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            raise CheckpointError(f"Checkpoint {self.path} is unreadable: {e}")

        logger.info(f"Loaded checkpoint: member_cursor={checkpoint.member_cursor}, "
                    f"group_cursor={checkpoint.group_cursor}, last run {checkpoint.run_at}")
        return checkpoint

    def save(self, checkpoint: RunCheckpoint) -> None:
        """
        Atomically replace the checkpoint file.

        Raises:
            CheckpointError: If the file cannot be written
        """
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.checkpoint-', suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(checkpoint.to_dict(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise CheckpointError(f"Failed to write checkpoint {self.path}: {e}")

        logger.debug(f"Checkpoint saved to {self.path}")

    def acquire(self) -> None:
        """
        Take the run lock, taking over a lock left behind by a dead run.

        Raises:
            CheckpointError: If another live run holds the lock
        """
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.lock_path)), exist_ok=True)
        except OSError as e:
            raise CheckpointError(f"Cannot create lock {self.lock_path}: {e}")

        for attempt in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                reason = self._stale_reason() if attempt == 0 else None
                if reason is None:
                    raise CheckpointError(f"Another run holds the lock {self.lock_path}")
                logger.warning(f"Taking over stale lock {self.lock_path}: {reason}")
                try:
                    os.remove(self.lock_path)
                except FileNotFoundError:
                    pass
                except OSError as e:
                    raise CheckpointError(f"Cannot remove stale lock {self.lock_path}: {e}")
            except OSError as e:
                raise CheckpointError(f"Cannot create lock {self.lock_path}: {e}")

        with os.fdopen(fd, 'w') as f:
            f.write(str(os.getpid()))
        self._locked = True

    def _stale_reason(self) -> Optional[str]:
        """Why the existing lock is stale, or None while its holder may still be running."""
        try:
            with open(self.lock_path, 'r') as f:
                content = f.read().strip()
            age = time.time() - os.path.getmtime(self.lock_path)
        except FileNotFoundError:
            return "lock disappeared"
        except OSError as e:
            logger.warning(f"Cannot inspect lock {self.lock_path}: {e}")
            return None

        if self.stale_after_seconds is not None and age > self.stale_after_seconds:
            return f"older than {self.stale_after_seconds:.0f}s"

        try:
            pid = int(content)
        except ValueError:
            return None
        if pid <= 0:
            return None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return f"process {pid} is not running"
        except PermissionError:
            # exists, owned by another user
            return None
        return None

    def release(self) -> None:
        if not self._locked:
            return
        try:
            os.remove(self.lock_path)
        except OSError as e:
            logger.warning(f"Could not remove lock {self.lock_path}: {e}")
        self._locked = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
