"""
PostgreSQL role catalog access through the psql client.

Queries run with tuples-only, unaligned output so that single-column results
come back as one value per line. The password is handed to the child process
through its own environment; the parent environment is left untouched.
"""

import os
import logging
import subprocess
from typing import Dict, List, Any, Optional

from pg_role_sync.statements import quote_literal

logger = logging.getLogger(__name__)

DEFAULT_MANAGED_COMMENT = 'Managed by pg_role_sync'
DEFAULT_SYNC_GROUP_COMMENT = 'pg_role_sync group'

ROLES_BY_COMMENT_SQL = (
    "SELECT r.rolname FROM pg_catalog.pg_roles r "
    "JOIN pg_catalog.pg_shdescription d "
    "ON d.objoid = r.oid AND d.classoid = 'pg_catalog.pg_authid'::pg_catalog.regclass "
    "WHERE d.description = {comment} ORDER BY r.oid"
)


class CatalogError(Exception):
    """Raised when psql cannot run a query or statement."""
    pass


class DiscoveryQueryError(CatalogError):
    """Raised when tagged role discovery fails; the run must not continue."""
    pass


class RoleCatalog:
    """
    Thin wrapper around psql for querying and changing the role catalog.

    Every call blocks until psql exits.
    """

    def __init__(self, connection: Dict[str, Any], password: Optional[str] = None,
                 psql_path: str = 'psql', timeout: Optional[float] = 60):
        self.host = connection['host']
        self.port = connection['port']
        self.database = connection['database']
        self.user = connection['user']
        self.password = password
        self.psql_path = psql_path
        self.timeout = timeout

    def _command(self, sql: str) -> List[str]:
        return [
            self.psql_path,
            '-X', '-q', '-A', '-t', '-w',
            '-v', 'ON_ERROR_STOP=1',
            '-h', str(self.host),
            '-p', str(self.port),
            '-d', self.database,
            '-U', self.user,
            '-c', sql,
        ]

    def _environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.password:
            env['PGPASSWORD'] = self.password
        return env

    def _run(self, sql: str) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                self._command(sql),
                env=self._environment(),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise CatalogError(f"psql executable not found: {self.psql_path}")
        except subprocess.TimeoutExpired:
            raise CatalogError(f"psql timed out after {self.timeout} seconds")

        if result.returncode != 0:
            stderr = (result.stderr or '').strip()
            raise CatalogError(stderr or f"psql exited with status {result.returncode}")
        return result

    def query_column(self, sql: str) -> List[str]:
        """
        Run a query and return its first column as a list of strings.

        Args:
            sql: Query returning a single column

        Returns:
            Non-empty output lines, in the order psql returned them

        Raises:
            CatalogError: If psql fails
        """
        logger.debug(f"Querying catalog: {sql}")
        result = self._run(sql)
        # Only the line terminator is removed; role names may carry spaces
        return [line for line in (result.stdout or '').splitlines() if line]

    def execute(self, sql: str) -> None:
        """Apply one statement, raising CatalogError if psql rejects it."""
        logger.debug(f"Executing: {sql}")
        self._run(sql)

    def find_roles_with_comment(self, comment: str) -> List[str]:
        """Return roles whose comment equals the given text, ordered by oid."""
        try:
            return self.query_column(ROLES_BY_COMMENT_SQL.format(comment=quote_literal(comment)))
        except CatalogError as e:
            raise DiscoveryQueryError(f"Role discovery for comment '{comment}' failed: {e}")

    def find_managed_roles(self, managed_comment: str = DEFAULT_MANAGED_COMMENT) -> List[str]:
        roles = self.find_roles_with_comment(managed_comment)
        logger.info(f"Found {len(roles)} managed roles")
        return roles

    def find_sync_group_roles(self, sync_group_comment: str = DEFAULT_SYNC_GROUP_COMMENT) -> List[str]:
        groups = self.find_roles_with_comment(sync_group_comment)
        logger.info(f"Found {len(groups)} sync-source group roles")
        return groups

    def ping(self) -> bool:
        """Check connectivity without raising."""
        try:
            return self.query_column('SELECT 1') == ['1']
        except CatalogError as e:
            logger.debug(f"Catalog ping failed: {e}")
            return False
