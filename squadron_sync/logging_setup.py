"""
Logging setup and configuration for Squadron Sync.

This module provides centralized logging configuration: a daily-rotated
application log with retention, optional console output for the scheduler's
captured output, scrubbing of credentials, and an audit trail of every
directory mutation.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, Mapping
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'smtp_password', 'token', 'secret', 'client_secret',
        'access_token', 'refresh_token', 'api_key', 'authorization', 'credential'
    ]

    _PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        # key=value
        _PATTERNS.append((re.compile(rf'({_keyword}\s*=\s*)[^\s,}}\]&]+', re.IGNORECASE), r'\1****'))
        # "key": "value"
        _PATTERNS.append((re.compile(rf'("{_keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
        # 'key': 'value' (repr of dicts)
        _PATTERNS.append((re.compile(rf"('{_keyword}'\s*:\s*')[^']*(')", re.IGNORECASE), r'\1****\2'))
    _PATTERNS.append((re.compile(r'((?:Bearer|Basic)\s+)[A-Za-z0-9._~+/=-]+', re.IGNORECASE), r'\1****'))
    del _keyword

    def filter(self, record):
        """Scrub the record's message in place; never drops records."""
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                pass

        msg = str(record.msg)
        for pattern, replacement in self._PATTERNS:
            msg = pattern.sub(replacement, msg)
        record.msg = msg
        return True


class LoggingManager:
    """
    Manages logging configuration for Squadron Sync.

    Provides file-based logging with rotation, retention policies, and
    console output for the invoking scheduler.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Mapping[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration section
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, 'squadron_sync.log')

        if str(rotation).lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in self.get_log_files():
            if log_file.endswith('squadron_sync.log'):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> list:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, 'squadron_sync.log*')))

    def get_log_stats(self) -> Dict[str, Any]:
        """
        Get statistics about current logging setup.

        Returns:
            Dictionary with logging statistics
        """
        log_files = self.get_log_files()
        total_size = 0
        for log_file in log_files:
            try:
                total_size += os.path.getsize(log_file)
            except OSError:
                pass

        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(log_files),
            'total_size_mb': round(total_size / (1024 * 1024), 2)
        }


_logging_manager = LoggingManager()


def setup_logging(config: Mapping[str, Any]) -> None:
    """Convenience function to set up logging."""
    _logging_manager.setup_logging(config)


def get_logging_stats() -> Dict[str, Any]:
    return _logging_manager.get_log_stats()


class AuditLogger:
    """Audit trail for directory mutations, logged under the 'audit' logger."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_lifecycle_action(self, action: str, email: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Lifecycle {status}: {action} user={email}")

    def log_membership_change(self, operation: str, group: str, email: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Membership {status}: {operation} user={email} group={group}")

    def log_run_event(self, event: str, details: str = ""):
        message = f"Run event: {event}"
        if details:
            message += f" - {details}"
        self.logger.info(message)


audit_logger = AuditLogger()
