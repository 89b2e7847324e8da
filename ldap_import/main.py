"""
Main orchestrator for the LDAP Import application.

This module runs an import: it loads configuration, connects to the directory
and the target store, imports users and then groups, and reports a summary.
Without ``--import`` the run is a dry run that only logs what would change.
"""

import sys
import logging
import importlib
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_import.config import load_config, ConfigurationError
from ldap_import.context import ImportContext, ReconciliationResult
from ldap_import.groups import GroupReconciler
from ldap_import.ldap_client import LDAPClient, LDAPConnectionError
from ldap_import.logging_setup import setup_logging
from ldap_import.mapping import MappingError, check_mapping
from ldap_import.targets.base import TargetStore, TargetAPIError, TargetAuthenticationError
from ldap_import.users import UserReconciler

logger = logging.getLogger(__name__)


class TargetLoadError(Exception):
    """Raised when the configured target store cannot be loaded."""
    pass


class PhaseResult:
    """Outcome of a user or group import phase."""

    SUCCESS = 'success'
    NO_RESULTS = 'no-results'
    FAILURE = 'failure'


class ImportOrchestrator:
    """
    Runs one import from LDAP into the target store.

    Users are imported before groups so group membership can be resolved
    through the usernames seen during the user import.
    """

    def __init__(self, config_path: Optional[str] = None, do_import: bool = False, debug: bool = False):
        """
        Initialize import orchestrator.

        Args:
            config_path: Path to configuration file
            do_import: Write changes to the target store; False is a dry run
            debug: Echo debug messages to the console
        """
        self.config = None
        self.ldap_client = None
        self.store = None
        self.context = None
        self.config_path = config_path
        self.do_import = do_import
        self.debug = debug

        self.import_stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'users': self._empty_counts(),
            'groups': self._empty_counts(),
            'phases': {},
        }

    @staticmethod
    def _empty_counts() -> Dict[str, int]:
        return {
            'processed': 0,
            ReconciliationResult.CREATED: 0,
            ReconciliationResult.UPDATED: 0,
            ReconciliationResult.SKIPPED_EXISTING: 0,
            ReconciliationResult.SKIPPED_NO_CREATE: 0,
            ReconciliationResult.SKIPPED_NUMERIC_NAME: 0,
            ReconciliationResult.SKIPPED_NO_NAME: 0,
            ReconciliationResult.ERROR: 0,
        }

    def run(self) -> int:
        """
        Run the complete import.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.import_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            mode = "import" if self.do_import else "dry run"
            logger.info(f"Starting LDAP import ({mode})")

            self._connect_ldap()
            self._connect_target()
            self.context = ImportContext(self.config, self.ldap_client, self.store)

            self.import_stats['phases']['users'] = self.import_users()
            self.import_stats['phases']['groups'] = self.import_groups()

            self.import_stats['end_time'] = datetime.now()
            self.import_stats['runtime_seconds'] = (
                self.import_stats['end_time'] - self.import_stats['start_time']
            ).total_seconds()

            self._log_import_summary()

            failed = [phase for phase, result in self.import_stats['phases'].items()
                      if result == PhaseResult.FAILURE]
            errors = self.import_stats['users']['error'] + self.import_stats['groups']['error']
            if failed or errors:
                logger.warning(f"Import completed with {errors} errors"
                               + (f", failed phases: {', '.join(failed)}" if failed else ""))
                return 1

            logger.info("Import completed successfully")
            return 0

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return 3
        except (TargetAPIError, TargetLoadError) as e:
            logger.error(f"Target connection error: {e}")
            return 3
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return 4
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")

    def _setup_logging(self):
        """Configure logging; a dry run reports to the console at INFO."""
        console_level = None
        if self.debug:
            console_level = 'DEBUG'
        elif not self.do_import:
            console_level = 'INFO'
        setup_logging(self.config.get('logging', {}), console_level=console_level)

    def _connect_ldap(self):
        """Establish LDAP connection."""
        ldap_config = self.config['ldap']
        error_config = self.config.get('error_handling', {})

        self.ldap_client = LDAPClient(ldap_config)

        try:
            self.ldap_client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _connect_target(self):
        """Load the target store and authenticate against it."""
        self.store = self._load_target_module(self.config['target'])
        if not self.store.authenticate():
            raise TargetAuthenticationError(f"Authentication failed for {self.config['target'].get('base_url')}")

    def _load_target_module(self, target_config: Dict[str, Any]) -> TargetStore:
        """Dynamically load the target store module and create the store instance."""
        module_name = target_config['module']

        try:
            target_module = importlib.import_module(f"ldap_import.targets.{module_name}")
        except ImportError as e:
            raise TargetLoadError(f"Failed to import target module {module_name}: {e}")

        store_class = None
        for attr_name in dir(target_module):
            attr = getattr(target_module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, TargetStore) and
                    attr.__module__ == target_module.__name__):
                store_class = attr
                break

        if not store_class:
            raise TargetLoadError(f"No TargetStore subclass found in module {module_name}")

        try:
            return store_class(target_config)
        except (KeyError, ValueError, TypeError, TargetAPIError) as e:
            raise TargetLoadError(f"Failed to initialize target {module_name}: {e}")

    def import_users(self) -> str:
        """
        Import every user found by the user search.

        Returns:
            A PhaseResult value
        """
        logger.info("Beginning user import")
        entries = self.ldap_client.run_user_search()
        if not entries:
            logger.warning("No results found, no users to import")
            return PhaseResult.NO_RESULTS

        try:
            check_mapping(self.config['ldap'].get('mapping'))
        except MappingError as e:
            logger.error(str(e))
            return PhaseResult.FAILURE

        self.context.users.clear()
        reconciler = UserReconciler(self.context)
        counts = self.import_stats['users']
        for entry in entries:
            result = reconciler.reconcile(entry, do_import=self.do_import)
            counts['processed'] += 1
            counts[result] += 1

        logger.info(f"Finished user import: {counts['processed']} entries processed")
        return PhaseResult.SUCCESS

    def import_groups(self) -> str:
        """
        Import every group found by the group search, with its members.

        Returns:
            A PhaseResult value
        """
        logger.info("Beginning group import")
        entries = self.ldap_client.run_group_search()
        if not entries:
            logger.warning("No results found, no groups to import")
            return PhaseResult.NO_RESULTS

        try:
            check_mapping(self.config['ldap'].get('group_mapping'))
        except MappingError as e:
            logger.error(str(e))
            return PhaseResult.FAILURE

        reconciler = GroupReconciler(self.context)
        counts = self.import_stats['groups']
        for entry in entries:
            result = reconciler.reconcile(entry, do_import=self.do_import)
            counts['processed'] += 1
            counts[result] += 1

        logger.info(f"Finished group import: {counts['processed']} entries processed")
        return PhaseResult.SUCCESS

    def _log_import_summary(self):
        """Log final import statistics."""
        stats = self.import_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Import Summary ===")
        logger.info(f"Mode: {'import' if self.do_import else 'dry run'}")
        logger.info(f"Total runtime: {runtime_str}")
        for kind in ('users', 'groups'):
            counts = stats[kind]
            logger.info(f"--- {kind.capitalize()} ({stats['phases'].get(kind, 'not run')}) ---")
            for key, value in counts.items():
                logger.info(f"  {key}: {value}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, directory and target connectivity.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'

        if self.config:
            try:
                test_client = LDAPClient(self.config['ldap'])
                test_client.connect(max_retries=1, retry_wait=1)
                reachable = test_client.test_connection()
                test_client.disconnect()
                if not reachable:
                    raise LDAPConnectionError("root DSE search failed")

                health_status['checks']['ldap'] = {
                    'status': 'pass',
                    'message': 'LDAP connection successful'
                }
            except LDAPConnectionError as e:
                health_status['checks']['ldap'] = {
                    'status': 'fail',
                    'message': f'LDAP connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'

            try:
                store = self._load_target_module(self.config['target'])
                authenticated = store.authenticate()
                store.close_connection()
                if not authenticated:
                    raise TargetAuthenticationError("no credentials accepted")
                health_status['checks']['target'] = {
                    'status': 'pass',
                    'message': 'Target store reachable'
                }
            except (TargetLoadError, TargetAPIError) as e:
                health_status['checks']['target'] = {
                    'status': 'fail',
                    'message': f'Target check failed: {e}'
                }
                health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
        if self.store:
            self.store.close_connection()


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Import users and groups from LDAP into RT')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--import', dest='do_import', action='store_true',
                        help='Write changes to RT; without this flag only report what would change')
    parser.add_argument('--debug', action='store_true',
                        help='Show debug messages on the console')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of import')

    args = parser.parse_args()

    orchestrator = ImportOrchestrator(config_path=args.config, do_import=args.do_import, debug=args.debug)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
