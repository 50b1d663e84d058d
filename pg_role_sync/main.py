"""
Main orchestrator for pg_role_sync.

This module wires configuration, logging, credential discovery, the directory
client and the role catalog together, builds the reconciliation plan and
applies it (or only writes it, in dry-run mode).

The log and script artifacts are truncated as soon as logging is configured.
A configuration error happens before that point, so it is reported on stderr
only and the artifacts from the previous run on the same weekday are left
untouched.
"""

import sys
import json
import logging
import argparse
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from pg_role_sync.config import load_config, ConfigurationError
from pg_role_sync.credentials import resolve_password, CredentialMissingError
from pg_role_sync.catalog import RoleCatalog, DiscoveryQueryError
from pg_role_sync.executor import StatementExecutor, ExecutionReport
from pg_role_sync.ldap_client import LDAPClient, LDAPConnectionError
from pg_role_sync.logging_setup import setup_logging, artifact_path
from pg_role_sync.names import ReservedIdentityFilter
from pg_role_sync.planner import ReconciliationPlanner
from pg_role_sync.statements import Plan

logger = logging.getLogger(__name__)


class ExitCode:
    SUCCESS = 0
    CONFIGURATION_ERROR = 2
    LDAP_CONNECTION_ERROR = 3
    UNEXPECTED_ERROR = 4
    DISCOVERY_FAILED = 5
    CREDENTIALS_MISSING = 6


@dataclass
class RunContext:
    """Everything one run needs, passed explicitly to each component."""
    connection: Dict[str, Any]
    password: Optional[str] = None
    drop_managed: bool = False
    case_insensitive: bool = False
    dry_run: bool = False
    managed_comment: str = 'Managed by pg_role_sync'
    sync_group_comment: str = 'pg_role_sync group'
    admin_user: str = 'postgres'
    reserved_prefix: Optional[str] = 'template'
    psql_path: str = 'psql'
    timeout: Optional[float] = 60
    on_missing_credentials: str = 'fail'
    log_file: Optional[str] = None
    script_file: Optional[str] = None
    started: datetime = field(default_factory=datetime.now)


def build_run_context(config: Dict[str, Any], args: Optional[argparse.Namespace] = None,
                      now: Optional[datetime] = None) -> RunContext:
    """
    Merge configuration and command-line flags into a RunContext.

    Flags that were not given on the command line leave the configured value in place.
    """
    postgres_config = config['postgres']
    sync_config = config['sync']
    now = now or datetime.now()

    def flag(name, default):
        value = getattr(args, name, None) if args is not None else None
        return default if value is None else value

    connection = {
        'host': flag('host', postgres_config['host']),
        'port': int(flag('port', postgres_config['port'])),
        'database': flag('database', postgres_config['database']),
        'user': flag('user', postgres_config['user']),
    }

    return RunContext(
        connection=connection,
        password=flag('password', postgres_config.get('password')),
        drop_managed=bool(flag('drop_managed_roles', sync_config['drop_managed_roles'])),
        case_insensitive=bool(flag('case_insensitive_roles', sync_config['case_insensitive_roles'])),
        dry_run=bool(flag('dry_run', sync_config['dry_run'])),
        managed_comment=sync_config['managed_comment'],
        sync_group_comment=sync_config['sync_group_comment'],
        admin_user=sync_config['admin_user'],
        reserved_prefix=sync_config['reserved_prefix'],
        psql_path=postgres_config['psql_path'],
        timeout=postgres_config['timeout_seconds'],
        on_missing_credentials=postgres_config['on_missing_credentials'],
        script_file=artifact_path(config['output']['script_dir'], 'sql', now),
        started=now,
    )


class SyncOrchestrator:
    """
    Main orchestrator for LDAP to PostgreSQL role reconciliation.

    Fatal conditions (bad configuration, missing credentials, LDAP connection
    failure, discovery failure) end the run with a distinct exit code. Lookup
    and per-statement failures are logged and tolerated.
    """

    def __init__(self, config_path: Optional[str] = None, args: Optional[argparse.Namespace] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            args: Parsed command-line flags overriding configuration values
        """
        self.config = None
        self.config_path = config_path
        self.args = args
        self.context = None
        self.ldap_client = None
        self.catalog = None
        self.plan = None
        self.report = None

    def run(self) -> int:
        """
        Run the complete reconciliation.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            self.context = build_run_context(self.config, self.args)
            self.context.log_file = setup_logging(self.config.get('logging', {}), self.context.started)
            executor = StatementExecutor(None, self.context.script_file)
            executor.reset_script()

            logger.info("Starting pg_role_sync")
            logger.info(f"Target {self.context.connection['user']}@{self.context.connection['host']}:"
                        f"{self.context.connection['port']}/{self.context.connection['database']} "
                        f"(drop_managed={self.context.drop_managed}, "
                        f"case_insensitive={self.context.case_insensitive}, dry_run={self.context.dry_run})")

            self._resolve_credentials()
            self.catalog = self._create_catalog()
            self._connect_ldap()

            self.plan = self._build_plan()
            executor.catalog = self.catalog
            self.report = executor.execute(self.plan, dry_run=self.context.dry_run)

            self._log_sync_summary()
            logger.info("Sync completed successfully")
            return ExitCode.SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return ExitCode.CONFIGURATION_ERROR
        except CredentialMissingError as e:
            logger.error(f"Credentials missing: {e}")
            if self.context and self.context.on_missing_credentials == 'ignore':
                logger.warning("Exiting without changes (on_missing_credentials=ignore)")
                return ExitCode.SUCCESS
            return ExitCode.CREDENTIALS_MISSING
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return ExitCode.LDAP_CONNECTION_ERROR
        except DiscoveryQueryError as e:
            logger.error(f"Role discovery failed, no changes made: {e}")
            return ExitCode.DISCOVERY_FAILED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return ExitCode.UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _resolve_credentials(self):
        self.context.password = resolve_password(self.context.connection, explicit=self.context.password)

    def _create_catalog(self) -> RoleCatalog:
        return RoleCatalog(
            self.context.connection,
            password=self.context.password,
            psql_path=self.context.psql_path,
            timeout=self.context.timeout,
        )

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

    def _build_plan(self) -> Plan:
        reserved_filter = ReservedIdentityFilter(
            admin_user=self.context.admin_user,
            reserved_prefix=self.context.reserved_prefix,
            extra_admins=[self.context.connection['user']],
        )
        planner = ReconciliationPlanner(
            self.catalog,
            self.ldap_client,
            reserved_filter=reserved_filter,
            managed_comment=self.context.managed_comment,
            sync_group_comment=self.context.sync_group_comment,
        )
        return planner.build_plan(
            drop_managed=self.context.drop_managed,
            case_insensitive=self.context.case_insensitive,
        )

    def _log_sync_summary(self):
        """Log final reconciliation statistics."""
        runtime = (datetime.now() - self.context.started).total_seconds()
        plan = self.plan
        report = self.report or ExecutionReport(self.context.dry_run)

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime:.2f} seconds")
        logger.info(f"Statements planned: {len(plan.statements)} ({len(plan.drops())} drops)")
        logger.info(f"Identities skipped: {len(plan.skipped())}")
        logger.info(f"Directory lookups failed: {len(plan.failed())}")
        if report.dry_run:
            logger.info(f"Dry run: script written to {self.context.script_file}")
        else:
            logger.info(f"Statements applied: {report.applied}")
            logger.info(f"Statements failed: {report.failed}")

        for outcome in plan.outcomes:
            logger.info(f"  {outcome.status}: {outcome.subject} - {outcome.reason}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of configuration, directory and catalog access.

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
            self.context = build_run_context(self.config, self.args)
            record('configuration', True, 'Configuration loaded successfully')
        except Exception as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        with LDAPClient(self.config['ldap']) as test_client:
            if test_client.test_connection():
                record('ldap', True, 'LDAP connection successful')
            else:
                record('ldap', False, 'LDAP connection failed')

        try:
            self._resolve_credentials()
            record('credentials', True, 'Catalog password resolved')
        except CredentialMissingError as e:
            record('credentials', False, str(e))
            return health_status

        if self._create_catalog().ping():
            record('catalog', True, 'psql connection successful')
        else:
            record('catalog', False, 'psql connection failed')

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pg_role_sync',
        description='Create PostgreSQL login roles for the members of LDAP groups'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--drop-managed-roles', '--dropManagedRoles', dest='drop_managed_roles',
                        action='store_true', default=None,
                        help='Drop every role previously created by this tool before syncing')
    parser.add_argument('--case-insensitive-roles', '--caseInsensitiveRoles', dest='case_insensitive_roles',
                        action='store_true', default=None,
                        help='Create lower-case unquoted roles for names without a hyphen')
    parser.add_argument('--dry-run', '--dryRun', dest='dry_run', action='store_true', default=None,
                        help='Write the SQL script without applying it')
    parser.add_argument('--host', help='PostgreSQL host')
    parser.add_argument('--port', type=int, help='PostgreSQL port')
    parser.add_argument('--database', help='Administrative database (default: postgres)')
    parser.add_argument('--user', help='PostgreSQL administrative user')
    parser.add_argument('--password', help='PostgreSQL password (else PGPASSWORD, else ~/.pgpass)')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config, args=args)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
