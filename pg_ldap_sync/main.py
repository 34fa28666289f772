"""
Main orchestrator for PG LDAP Sync.

This module runs one sync pass: it binds to LDAP once, then for every
configured database resolves the mapped LDAP groups and reconciles the
database's roles against them (provisioning, membership sync,
deprovisioning). Databases are processed one at a time and independently.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, FrozenSet, Optional, Set, Tuple

from pg_ldap_sync.config import load_config, ConfigurationError
from pg_ldap_sync.ldap_client import (
    LDAPClient,
    LDAPConnectionError,
    DirectoryError,
    GroupNotFoundError
)
from pg_ldap_sync.logging_setup import setup_logging
from pg_ldap_sync.notifications import (
    send_failure_notification,
    send_database_error_notification,
    send_ldap_connection_failure,
    send_success_summary,
    test_notification_config
)
from pg_ldap_sync.policy import RoleMapping, SyncPolicy
from pg_ldap_sync.postgres_client import PostgresClient, CatalogError
from pg_ldap_sync.reconciler import Reconciler, merge_role_memberships
from pg_ldap_sync.resolver import GroupResolver

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Raised when processing of one database has to be abandoned."""
    pass


class SyncOrchestrator:
    """
    Runs a sync pass across all configured databases.

    A failure in one database never prevents the others from being processed.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
        """
        self.config = None
        self.config_path = config_path
        self.ldap_client = None
        self.resolver = None
        self.policy = None
        self.reconciler = None

        self.sync_stats = {
            'databases_processed': 0,
            'databases_failed': 0,
            'total_accounts_created': 0,
            'total_grants': 0,
            'total_revokes': 0,
            'total_accounts_dropped': 0,
            'total_drop_failures': 0,
            'total_errors': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'database_details': {}
        }

    def run(self) -> int:
        """
        Run the complete synchronization pass.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            logger.info("Starting LDAP to PostgreSQL sync process")

            self._build_engine()
            self._connect_ldap()
            self._process_databases()

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()
            self._send_success_notification()

            stats = self.sync_stats
            if stats['databases_failed'] or stats['total_errors'] or stats['total_drop_failures']:
                logger.warning(f"Sync finished with {stats['databases_failed']} failed databases, "
                               f"{stats['total_errors']} errors and {stats['total_drop_failures']} drop failures")
                return 1

            logger.info("Sync process finished successfully")
            return 0

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_ldap_connection_failure(str(e))
            return 3
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return 4
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")

    def _setup_logging(self):
        """Configure logging based on configuration."""
        setup_logging(self.config.get('logging', {}))

    def _build_engine(self):
        """Create the sync policy and reconciler for this pass."""
        self.policy = SyncPolicy.from_config(self.config['sync_policy'])
        self.reconciler = Reconciler(self.policy, self.config.get('timeouts', {}))
        logger.info(f"Sync policy: prefixes={list(self.policy.allowed_prefixes)}, "
                    f"default role={self.policy.default_role}")

    def _connect_ldap(self):
        """Establish LDAP connection shared by every database."""
        logger.info("Initializing LDAP client...")
        self.ldap_client = LDAPClient(self.config['ldap'])

        try:
            self.ldap_client.connect()
        except LDAPConnectionError:
            self.ldap_client = None
            raise

        self.resolver = GroupResolver(self.ldap_client)

    def _process_databases(self):
        """Process every configured database, one at a time."""
        for db_config in self.config.get('databases', []):
            alias = db_config['alias']
            logger.info(f"--- Processing database: {alias} ---")

            try:
                self._process_database(db_config)
                self.sync_stats['databases_processed'] += 1

            except (CatalogError, SyncError) as e:
                logger.error(f"Failed to process database {alias}: {e}")
                self.sync_stats['databases_failed'] += 1
                self._record_error(alias, str(e))

            db_stats = self.sync_stats['database_details'][alias]
            if db_stats['errors'] or db_stats['drop_failures']:
                self._send_database_error_notification(alias, db_stats)

    def _process_database(self, db_config: Dict[str, Any]):
        """
        Run Connect -> Resolve -> Provision -> Sync -> Deprovision for one database.

        Raises:
            CatalogError: If the database's connection pool cannot be opened
            SyncError: If provisioning fails
        """
        alias = db_config['alias']
        db_start_time = datetime.now()

        db_stats = {
            'start_time': db_start_time,
            'mappings_resolved': 0,
            'mappings_failed': 0,
            'accounts_created': 0,
            'grants': 0,
            'revokes': 0,
            'accounts_dropped': 0,
            'drop_failures': [],
            'errors': [],
            'runtime_seconds': 0
        }
        self.sync_stats['database_details'][alias] = db_stats

        catalog = PostgresClient(alias, db_config['postgres'])
        try:
            catalog.connect()

            # == Resolve all mappings ==
            logger.info("Fetching and filtering all LDAP users...")
            memberships, unsynced_roles = self._resolve_mappings(alias, db_config)
            valid_users = merge_role_memberships(memberships)
            logger.info(f"{len(valid_users)} valid users across {len(memberships)} roles")

            # == Phase 1: User Provisioning ==
            logger.info("Phase 1: Ensuring all valid users exist in PostgreSQL...")
            try:
                provisioned = self.reconciler.provision(catalog, valid_users)
            except CatalogError as e:
                raise SyncError(f"Provisioning failed, skipping membership sync: {e}") from e
            db_stats['accounts_created'] = len(provisioned.created)
            self.sync_stats['total_accounts_created'] += len(provisioned.created)
            logger.info("Phase 1: User provisioning complete.")

            # == Phase 2: Membership Sync ==
            logger.info("Phase 2: Synchronizing group memberships...")
            for role, desired in memberships.items():
                if role in unsynced_roles:
                    logger.warning(f"Skipping membership sync for [{role}]: LDAP membership unknown this pass")
                    continue

                logger.info(f"--> Syncing membership for: [{role}]")
                try:
                    synced = self.reconciler.sync_role_membership(catalog, role, desired)
                except CatalogError as e:
                    logger.error(f"Failed to sync role membership for '{role}': {e}")
                    self._record_error(alias, f"Membership sync for role '{role}' failed: {e}")
                    continue

                db_stats['grants'] += len(synced.granted)
                db_stats['revokes'] += len(synced.revoked)
                self.sync_stats['total_grants'] += len(synced.granted)
                self.sync_stats['total_revokes'] += len(synced.revoked)
                if not synced.skipped:
                    logger.info(f"PostgreSQL role '{role}' is synchronized.")
            logger.info("Phase 2: Membership sync complete.")

            # == Phase 3: Deprovisioning ==
            logger.info("Phase 3: Removing users no longer in any mapped group...")
            try:
                # Members of an unresolved group would otherwise look stale
                deprovisioned = self.reconciler.deprovision(catalog, valid_users, protected_roles=unsynced_roles)
            except CatalogError as e:
                logger.error(f"Failed to deprovision users: {e}")
                self._record_error(alias, f"Deprovisioning failed: {e}")
            else:
                db_stats['accounts_dropped'] = len(deprovisioned.dropped)
                db_stats['drop_failures'] = [
                    f"{failure.account}: {failure.error}" for failure in deprovisioned.failures
                ]
                self.sync_stats['total_accounts_dropped'] += len(deprovisioned.dropped)
                self.sync_stats['total_drop_failures'] += len(deprovisioned.failures)
                logger.info("Phase 3: Deprovisioning complete.")

        finally:
            catalog.close()

            db_end_time = datetime.now()
            db_stats['end_time'] = db_end_time
            db_stats['runtime_seconds'] = (db_end_time - db_start_time).total_seconds()
            logger.info(f"Completed database: {alias} in {db_stats['runtime_seconds']:.2f} seconds")

    def _resolve_mappings(self, alias: str,
                          db_config: Dict[str, Any]) -> Tuple[Dict[str, FrozenSet[str]], Set[str]]:
        """
        Resolve every role mapping of a database into filtered member sets.

        Mappings that target the same role are merged. A group that no longer
        exists contributes an empty set and its role is still synchronized;
        any other directory failure also contributes an empty set, but its
        role is left untouched and its current members are not deprovisioned.

        Returns:
            Tuple of (members per role, roles that must not be synchronized)
        """
        db_stats = self.sync_stats['database_details'][alias]
        memberships: Dict[str, FrozenSet[str]] = {}
        unsynced_roles = set()

        for role_config in db_config.get('roles', []):
            mapping = RoleMapping.from_config(role_config)
            try:
                members = self.resolver.resolve(mapping.ldap_group)
                db_stats['mappings_resolved'] += 1
            except GroupNotFoundError as e:
                logger.warning(f"LDAP group for role '{mapping.postgres_role}' no longer exists, "
                               f"treating it as empty: {e}")
                db_stats['mappings_failed'] += 1
                self._record_error(alias, str(e))
                members = frozenset()
            except DirectoryError as e:
                logger.error(f"Error fetching LDAP members for '{mapping.ldap_group}': {e}")
                db_stats['mappings_failed'] += 1
                self._record_error(alias, f"Resolving '{mapping.ldap_group}' failed: {e}")
                unsynced_roles.add(mapping.postgres_role)
                members = frozenset()

            filtered = self.policy.filter(members)
            ignored = len(members) - len(filtered)
            if ignored:
                logger.info(f"Ignoring {ignored} members of '{mapping.ldap_group}' without an allowed prefix")

            memberships[mapping.postgres_role] = memberships.get(mapping.postgres_role, frozenset()) | filtered

        return memberships, unsynced_roles

    def _record_error(self, alias: str, message: str):
        self.sync_stats['database_details'][alias]['errors'].append(message)
        self.sync_stats['total_errors'] += 1

    def _send_failure_notification(self, title: str, error_message: str):
        """Send email notification for failures."""
        if not self.config:
            return
        notifications_config = self.config.get('notifications', {})
        send_failure_notification(title, error_message, notifications_config)

    def _send_database_error_notification(self, alias: str, db_stats: Dict[str, Any]):
        """Send email notification for database errors."""
        notifications_config = self.config.get('notifications', {})
        send_database_error_notification(
            alias, db_stats['errors'], db_stats['drop_failures'], notifications_config
        )

    def _send_ldap_connection_failure(self, error_message: str):
        """Send email notification for LDAP connection failure."""
        notifications_config = self.config.get('notifications', {})
        attempts = self.config.get('ldap', {}).get('connect_attempts', 1)
        send_ldap_connection_failure(error_message, notifications_config, attempts)

    def _send_success_notification(self):
        """Send email notification for a completed run."""
        notifications_config = self.config.get('notifications', {})
        send_success_summary(self.sync_stats, notifications_config)

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Databases processed: {stats['databases_processed']}")
        logger.info(f"Databases failed: {stats['databases_failed']}")
        logger.info(f"Accounts created: {stats['total_accounts_created']}")
        logger.info(f"Role grants: {stats['total_grants']}")
        logger.info(f"Role revokes: {stats['total_revokes']}")
        logger.info(f"Accounts dropped: {stats['total_accounts_dropped']}")
        logger.info(f"Drop failures: {stats['total_drop_failures']}")
        logger.info(f"Total errors: {stats['total_errors']}")

        for alias, db_stats in stats.get('database_details', {}).items():
            logger.info(f"--- {alias} Details ---")
            logger.info(f"  Runtime: {db_stats['runtime_seconds']:.2f}s")
            logger.info(f"  Mappings resolved: {db_stats['mappings_resolved']}")
            logger.info(f"  Mappings failed: {db_stats['mappings_failed']}")
            logger.info(f"  Accounts created: {db_stats['accounts_created']}")
            logger.info(f"  Grants: {db_stats['grants']}")
            logger.info(f"  Revokes: {db_stats['revokes']}")
            logger.info(f"  Accounts dropped: {db_stats['accounts_dropped']}")
            logger.info(f"  Errors: {len(db_stats['errors'])}")

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

        if not self.config:
            return health_status

        if not self.config['sync_policy'].get('allowed_user_prefixes'):
            health_status['checks']['sync_policy'] = {
                'status': 'warn',
                'message': 'No allowed_user_prefixes configured; membership sync and deprovisioning are disabled'
            }
        else:
            health_status['checks']['sync_policy'] = {
                'status': 'pass',
                'message': f"Managing prefixes {self.config['sync_policy']['allowed_user_prefixes']}"
            }

        test_client = LDAPClient(self.config['ldap'])
        try:
            test_client.connect()
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
        finally:
            test_client.disconnect()

        database_checks = {}
        for db_config in self.config.get('databases', []):
            alias = db_config['alias']
            catalog = PostgresClient(alias, db_config['postgres'])
            try:
                catalog.connect()
                database_checks[alias] = {
                    'status': 'pass',
                    'message': 'Database connection successful'
                }
            except CatalogError as e:
                database_checks[alias] = {
                    'status': 'fail',
                    'message': f'Database connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'
            finally:
                catalog.close()
        health_status['checks']['databases'] = database_checks

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]

            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
            logger.info("LDAP connection closed.")


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Synchronize LDAP group membership into PostgreSQL roles')
    parser.add_argument('--config', '-c', help='Path to configuration file (default: $CFG_PATH)')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

        notifications_config = orchestrator.config.get('notifications', {})
        if test_notification_config(notifications_config):
            print("Test email sent successfully")
            sys.exit(0)
        else:
            print("Failed to send test email")
            sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
