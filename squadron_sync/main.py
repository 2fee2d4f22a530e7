"""
Entry point for Squadron Sync.

SyncRunner performs one scheduled run: load configuration and the registry
snapshot, read the checkpoint, reconcile account lifecycles and squadron
groups within the run's time budget, persist the checkpoint and report.
Fatal conditions are detected before any directory mutation.
"""

import sys
import json
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from squadron_sync.checkpoint import CheckpointError, CheckpointStore
from squadron_sync.clock import Clock, RunBudget
from squadron_sync.config import ConfigurationError, SyncSettings, load_settings
from squadron_sync.directory import create_directory_client
from squadron_sync.directory.base import DirectoryAPIError, DirectoryClientBase
from squadron_sync.groups import SquadronGroupReconciler
from squadron_sync.logging_setup import audit_logger, get_logging_stats, setup_logging
from squadron_sync.notifications import (
    NotificationReporter,
    send_failure_notification,
    send_run_summary,
    test_notification_config,
)
from squadron_sync.orchestrator import LifecycleOrchestrator, SyncError
from squadron_sync.registry import FileRegistrySource, RegistrySource, RegistryUnavailableError
from squadron_sync.retry import MaxRetriesExceeded, RetryExecutor, create_retry_callback, retry_call

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_CONFIG_ERROR = 2
EXIT_REGISTRY_UNAVAILABLE = 3
EXIT_CHECKPOINT_ERROR = 4
EXIT_DIRECTORY_ERROR = 5
EXIT_UNEXPECTED = 6


class SyncRunner:
    """
    Runs one reconciliation pass.

    Collaborators can be injected for testing; anything not supplied is built
    from the configuration.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        settings: Optional[SyncSettings] = None,
        clock: Optional[Clock] = None,
        directory: Optional[DirectoryClientBase] = None,
        registry: Optional[RegistrySource] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        dry_run: bool = False
    ):
        self.config_path = config_path
        self.settings = settings
        self.clock = clock or Clock()
        self.directory = directory
        self.registry = registry
        self.checkpoint_store = checkpoint_store
        self.dry_run = dry_run
        self.summary = None
        self.changes_possible = False

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 success, 1 per-entity failures, >1 fatal)
        """
        started_at = datetime.now()
        try:
            self._load_configuration()
            setup_logging(self.settings.logging)
            logger.info("Starting Squadron Sync" + (" (dry run)" if self.settings.dry_run else ""))

            snapshot = self._registry().load()
            store = self._checkpoint_store()
            with store:
                checkpoint = store.load()
                directory = self._connect_directory()

                budget = RunBudget(self.settings.time_budget_seconds, self.clock)
                executor = RetryExecutor(
                    self.clock,
                    max_attempts=self.settings.max_attempts,
                    retry_wait_seconds=self.settings.retry_wait_seconds,
                    inter_call_delay_seconds=self.settings.inter_call_delay_seconds,
                )
                reporter = NotificationReporter(dry_run=self.settings.dry_run)

                self.changes_possible = not self.settings.dry_run
                lifecycle = LifecycleOrchestrator(directory, executor, self.settings, self.clock)
                checkpoint, phase_summary = lifecycle.run_once(
                    snapshot.members, snapshot.organizations, checkpoint, budget)
                reporter.merge(phase_summary)
                self._save_checkpoint(store, checkpoint, reporter.summary)

                if self.settings.groups_enabled:
                    groups = SquadronGroupReconciler(directory, executor, self.settings)
                    checkpoint, phase_summary = groups.run_once(
                        snapshot.members, snapshot.organizations, checkpoint, budget,
                        account_statuses=lifecycle.account_statuses)
                    reporter.merge(phase_summary)
                    self._save_checkpoint(store, checkpoint, reporter.summary)

                self.summary = reporter.summary
                self.summary.started_at = started_at
                self.summary.finished_at = datetime.now()

            self._log_sync_summary()
            self._send_run_summary()

            if self.summary.error_count:
                logger.warning(f"Sync completed with {self.summary.error_count} errors")
                return EXIT_PARTIAL
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except RegistryUnavailableError as e:
            logger.error(f"Registry snapshot unavailable: {e}")
            self._send_failure_notification("Registry Unavailable", str(e))
            return EXIT_REGISTRY_UNAVAILABLE
        except CheckpointError as e:
            logger.error(f"Checkpoint error: {e}")
            self._send_failure_notification("Checkpoint Error", str(e))
            return EXIT_CHECKPOINT_ERROR
        except SyncError as e:
            logger.error(f"Directory unavailable: {e}")
            self._send_failure_notification("Directory Unavailable", str(e))
            return EXIT_DIRECTORY_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        if self.settings is not None:
            return
        try:
            self.settings = load_settings(self.config_path, dry_run=self.dry_run)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _registry(self) -> RegistrySource:
        if self.registry is None:
            self.registry = FileRegistrySource(
                self.settings.snapshot_path,
                clock=self.clock,
                max_age_hours=self.settings.max_snapshot_age_hours,
            )
        return self.registry

    def _checkpoint_store(self) -> CheckpointStore:
        if self.checkpoint_store is None:
            # a live run never outlasts its budget by much
            self.checkpoint_store = CheckpointStore(
                self.settings.checkpoint_path,
                stale_after_seconds=3 * self.settings.time_budget_seconds,
            )
        return self.checkpoint_store

    def _connect_directory(self) -> DirectoryClientBase:
        """Build and authenticate the directory client."""
        if self.directory is None:
            self.directory = create_directory_client(self.settings.directory, clock=self.clock)

        try:
            retry_call(
                self.directory.authenticate,
                max_attempts=self.settings.max_attempts,
                delay=self.settings.retry_wait_seconds,
                exceptions=(DirectoryAPIError, OSError),
                on_retry=create_retry_callback("Directory authentication"),
                sleep=self.clock.sleep,
            )
        except MaxRetriesExceeded as e:
            raise SyncError(f"Directory authentication failed: {e.last_exception}")
        return self.directory

    def _save_checkpoint(self, store: CheckpointStore, checkpoint, summary) -> None:
        """Persist progress so far; dry runs leave the checkpoint untouched."""
        if self.settings.dry_run:
            return
        checkpoint.run_at = self.clock.now()
        checkpoint.actions_taken = summary.actions_taken
        checkpoint.actions_failed = summary.error_count
        store.save(checkpoint)

    def _send_failure_notification(self, title: str, error_message: str):
        if self.settings is None:
            return
        try:
            send_failure_notification(title, error_message, self.settings.notifications,
                                      changes_possible=self.changes_possible)
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_run_summary(self):
        try:
            send_run_summary(self.summary, self.settings.notifications)
        except Exception as e:
            logger.error(f"Failed to send run summary: {e}")

    def _log_sync_summary(self):
        summary = self.summary
        logger.info("=== Sync Summary ===")
        logger.info(f"Members processed: {summary.members_processed}")
        logger.info(f"Reactivated: {summary.reactivated}, suspended: {summary.suspended}, "
                    f"archived: {summary.archived}, deleted: {summary.deleted}")
        logger.info(f"Organizations processed: {summary.organizations_processed}")
        logger.info(f"Groups created: {summary.groups_created}, updated: {summary.groups_updated}")
        logger.info(f"Group members added: {summary.group_members_added}, "
                    f"removed: {summary.group_members_removed}")
        logger.info(f"Errors: {summary.error_count} {summary.failure_codes() or ''}".rstrip())
        if not (summary.lifecycle_complete and summary.groups_complete):
            logger.info("Run stopped early; the next run resumes from the checkpoint")
        audit_logger.log_run_event(
            'run complete',
            f"actions={summary.actions_taken} errors={summary.error_count}"
        )

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def record(name: str, ok: bool, message: str):
            health_status['checks'][name] = {'status': 'pass' if ok else 'fail', 'message': message}
            if not ok:
                health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            record('configuration', True, 'Configuration loaded successfully')
        except ConfigurationError as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        try:
            snapshot = self._registry().load()
            record('registry', True, f'{len(snapshot.members)} members, '
                                     f'{len(snapshot.organizations)} organizations')
        except RegistryUnavailableError as e:
            record('registry', False, str(e))

        try:
            checkpoint = self._checkpoint_store().load()
            record('checkpoint', True, f'Last run: {checkpoint.run_at.isoformat() if checkpoint.run_at else "never"}')
        except CheckpointError as e:
            record('checkpoint', False, str(e))

        try:
            if self.directory is None:
                self.directory = create_directory_client(self.settings.directory, clock=self.clock)
            self.directory.authenticate()
            record('directory', True, 'Directory authentication successful')
        except (DirectoryAPIError, OSError) as e:
            record('directory', False, f'Directory authentication failed: {e}')

        notifications = self.settings.notifications
        if notifications.get('enable_email', False):
            missing = [f for f in ('smtp_server', 'email_from', 'email_to') if not notifications.get(f)]
            if missing:
                record('notifications', False, f'Missing notification config: {missing}')
            else:
                record('notifications', True, 'Email notification configuration valid')
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        health_status['checks']['logging'] = {'status': 'info', 'details': get_logging_stats()}
        return health_status

    def _cleanup(self):
        if self.directory:
            self.directory.close_connection()


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Squadron Sync: registry to directory reconciliation')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Compute and log actions without changing the directory')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    runner = SyncRunner(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = runner.health_check()
        print(json.dumps(health_status, indent=2, default=str))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            runner._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIG_ERROR)
        if test_notification_config(runner.settings.notifications):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(runner.run())


if __name__ == "__main__":
    main()
