"""
Main orchestrator for Roster Tag Sync.

Loads the configuration, builds the remote directory client and (when a job
needs it) the LDAP roster source, then runs every configured sync job in
turn through one reconciliation engine.
"""

import sys
import json
import logging
import argparse
import importlib
from datetime import datetime
from typing import Dict, Any, List, Optional

from roster_sync.config import load_config, ConfigurationError
from roster_sync.directory.base import RemoteDirectoryBase, DirectoryAPIError
from roster_sync.engine import ReconciliationEngine, SyncError, RemoteOperationFailed, ValidationMismatch
from roster_sync.logging_setup import setup_logging
from roster_sync.notifications import (
    format_runtime,
    send_failure_notification,
    send_sync_job_failure,
    send_ldap_connection_failure,
    send_success_summary,
    test_notification_config,
)
from roster_sync.sources import load_roster, LDAPRosterSource, LDAPConnectionError, LDAPQueryError, RosterError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_JOB_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_ERROR = 3
EXIT_UNEXPECTED = 4


class SyncOrchestrator:
    """
    Runs the configured sync jobs and reports on them.

    Jobs run sequentially against one directory client. They share one
    engine, so attribute fields discovered by an earlier job keep being
    synchronized by later ones.
    """

    def __init__(self, config_path: Optional[str] = None, job_names: Optional[List[str]] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            job_names: Run only these jobs (all jobs if None)
        """
        self.config = None
        self.config_path = config_path
        self.job_names = job_names
        self.directory = None
        self.ldap_source = None
        self.engine = None

        self.sync_stats = {
            'jobs_processed': 0,
            'jobs_failed': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'job_details': {}
        }

    def run(self) -> int:
        """
        Run every selected sync job.

        Returns:
            Exit code (0 when all jobs passed validation)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config['logging'])
            logger.info("Starting Roster Tag Sync")

            jobs = self._selected_jobs()
            self.directory = self._load_directory()
            self.engine = ReconciliationEngine(self.directory)
            self._connect_ldap(jobs)

            for job in jobs:
                self._process_job(job)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()

            if self.sync_stats['jobs_failed'] > 0:
                logger.warning(f"Sync completed with {self.sync_stats['jobs_failed']} failed jobs")
                return EXIT_JOB_FAILED

            self._send_success_notification()
            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_ldap_connection_failure(str(e))
            return EXIT_LDAP_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _selected_jobs(self) -> List[Dict[str, Any]]:
        jobs = self.config['syncs']
        if not self.job_names:
            return jobs

        known = {job['name'] for job in jobs}
        unknown = [name for name in self.job_names if name not in known]
        if unknown:
            raise ConfigurationError(f"Unknown sync job(s): {', '.join(unknown)}")
        return [job for job in jobs if job['name'] in self.job_names]

    def _load_directory(self) -> RemoteDirectoryBase:
        """Import roster_sync.directory.<module> and instantiate its directory class."""
        directory_config = dict(self.config['directory'])
        directory_config.setdefault('retry', self.config.get('error_handling', {}))
        module_name = directory_config['module']

        try:
            module = importlib.import_module(f"roster_sync.directory.{module_name}")
        except ImportError as e:
            raise ConfigurationError(f"Failed to import directory module {module_name}: {e}")

        for attr_name in dir(module):
            attr = getattr(module, attr_name)
            if isinstance(attr, type) and issubclass(attr, RemoteDirectoryBase) and attr is not RemoteDirectoryBase:
                return attr(directory_config)

        raise ConfigurationError(f"No RemoteDirectoryBase subclass found in module {module_name}")

    def _connect_ldap(self, jobs: List[Dict[str, Any]]):
        """Connect to LDAP only if one of the jobs reads its roster from it."""
        if not any(job['roster']['source'] == 'ldap' for job in jobs):
            return

        error_config = self.config.get('error_handling', {})
        self.ldap_source = LDAPRosterSource(self.config['ldap'])
        try:
            self.ldap_source.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            self.ldap_source = None
            raise

    def _process_job(self, job: Dict[str, Any]):
        """Run one sync job, recording its outcome."""
        name = job['name']
        list_name = job['list_name']
        tag = job['tag']
        job_start = datetime.now()
        job_stats = {'list_name': list_name, 'tag': tag, 'status': 'running'}

        logger.info(f"Syncing job '{name}': tag '{tag}' on list '{list_name}'")

        try:
            roster = load_roster(job['roster'], self.ldap_source)
            report = self.engine.sync(roster, tag, list_name)

            job_stats.update(report.summary())
            job_stats['status'] = 'passed'
            self.sync_stats['jobs_processed'] += 1

            if report.rejected_emails():
                logger.warning(f"Job '{name}': {len(report.rejected_emails())} addresses were rejected by the directory")
            if report.already_unsubscribed:
                logger.info(f"Job '{name}': {len(report.already_unsubscribed)} tagged contacts are unsubscribed")

        except (RemoteOperationFailed, ValidationMismatch) as e:
            self._job_failed(job, job_stats, e, remote_state_unknown=True)
        except (SyncError, RosterError, LDAPQueryError, DirectoryAPIError) as e:
            self._job_failed(job, job_stats, e, remote_state_unknown=False)
        except Exception as e:
            logger.error(f"Unexpected error in job '{name}'", exc_info=True)
            self._job_failed(job, job_stats, e, remote_state_unknown=True)

        finally:
            job_stats['runtime_seconds'] = (datetime.now() - job_start).total_seconds()
            self.sync_stats['job_details'][name] = job_stats
            logger.info(f"Completed job '{name}' in {job_stats['runtime_seconds']:.2f} seconds")

    def _job_failed(self, job: Dict[str, Any], job_stats: Dict[str, Any], error: Exception,
                    remote_state_unknown: bool):
        job_stats['status'] = 'failed'
        job_stats['error'] = str(error)
        self.sync_stats['jobs_failed'] += 1
        logger.error(f"Job '{job['name']}' failed: {error}")

        try:
            send_sync_job_failure(job['name'], job['list_name'], job['tag'], str(error),
                                  self.config.get('notifications', {}), remote_state_unknown)
        except Exception as e:
            logger.error(f"Failed to send job failure notification: {e}")

    def _send_failure_notification(self, title: str, error_message: str):
        if not self.config:
            return
        try:
            send_failure_notification(title, error_message, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_ldap_connection_failure(self, error_message: str):
        try:
            retry_count = self.config.get('error_handling', {}).get('max_retries', 3)
            send_ldap_connection_failure(error_message, self.config.get('notifications', {}), retry_count)
        except Exception as e:
            logger.error(f"Failed to send LDAP failure notification: {e}")

    def _send_success_notification(self):
        try:
            send_success_summary(self.sync_stats, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def _log_sync_summary(self):
        stats = self.sync_stats

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {format_runtime(stats['runtime_seconds'])}")
        logger.info(f"Jobs processed: {stats['jobs_processed']}")
        logger.info(f"Jobs failed: {stats['jobs_failed']}")

        for name, job in stats['job_details'].items():
            logger.info(f"--- {name} ({job['status']}) ---")
            if job['status'] == 'passed':
                logger.info(f"  Tagged: {job['tagged_before']} -> {job['tagged_after']}")
                logger.info(f"  Tags added: {job['tags_added']}, removed: {job['tags_removed']}")
                logger.info(f"  Members updated: {job['members_updated']}, created: {job['members_created']}")
                logger.info(f"  Rejected: {len(job['rejected_as_invalid'])} invalid, "
                            f"{len(job['rejected_as_permanently_deleted'])} permanently deleted")
            else:
                logger.info(f"  Error: {job.get('error')}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, directory access and LDAP connectivity.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def record(check: str, passed: bool, message: str):
            health_status['checks'][check] = {'status': 'pass' if passed else 'fail', 'message': message}
            if not passed:
                health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            record('configuration', True, 'Configuration loaded successfully')
        except ConfigurationError as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        try:
            directory = self._load_directory()
            with directory:
                directory.ping()
            record('directory', True, 'Directory reachable')
        except Exception as e:
            record('directory', False, f'Directory check failed: {e}')

        if any(job['roster']['source'] == 'ldap' for job in self.config['syncs']):
            source = LDAPRosterSource(self.config['ldap'])
            try:
                source.connect(max_retries=1, retry_wait=1)
                record('ldap', True, 'LDAP connection successful')
            except Exception as e:
                record('ldap', False, f'LDAP connection failed: {e}')
            finally:
                source.disconnect()

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            missing = [f for f in ('smtp_server', 'email_from', 'email_to') if not notifications_config.get(f)]
            if missing:
                record('notifications', False, f'Missing notification config: {missing}')
            else:
                record('notifications', True, 'Email notification configuration valid')
        else:
            health_status['checks']['notifications'] = {'status': 'skip', 'message': 'Email notifications disabled'}

        return health_status

    def _cleanup(self):
        if self.ldap_source:
            self.ldap_source.disconnect()
        if self.directory:
            self.directory.close_connection()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Roster Tag Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--job', '-j', action='append', dest='jobs', metavar='NAME',
                        help='Run only the named sync job (may be repeated)')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, job_names=args.jobs)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

        if test_notification_config(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
