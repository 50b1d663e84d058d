"""
LDAP client for resolving directory group membership.

This module connects to the directory, looks groups up by common name and
resolves each direct member's distinguished name to a simple account name.
Lookup failures are reported per group or per member and never abort a run.
"""

import logging
import ssl
import time
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError, LDAPKeyError
from ldap3.utils.conv import escape_filter_chars

from pg_role_sync.statements import Outcome

logger = logging.getLogger(__name__)


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class MemberResolution:
    """Account names resolved for one group, with notes for anything that could not be resolved."""

    def __init__(self, group: str, members: Optional[List[str]] = None,
                 outcomes: Optional[List[Outcome]] = None):
        self.group = group
        self.members = members if members is not None else []
        self.outcomes = outcomes if outcomes is not None else []

    @property
    def found(self) -> bool:
        return not any(o.subject == self.group for o in self.outcomes)

    def __iter__(self):
        return iter(self.members)

    def __len__(self):
        return len(self.members)


class LDAPClient:
    """
    LDAP client for connecting to the directory and reading group membership.

    Only direct membership is read; nested groups appear as members whose
    account attribute is missing and are skipped.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.group_base_dn = config.get('group_base_dn', '')
        self.group_filter = config.get('group_filter', '(objectClass=group)')
        self.account_attribute = config.get('account_attribute', 'sAMAccountName')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        # Retry settings from error_handling config
        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = self.retry_wait if retry_wait is None else retry_wait

        try:
            tls_config = self._create_tls_config()
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._drop_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)
            except Exception as e:
                last_exception = e
                logger.error(f"Unexpected error during LDAP connection: {e}")
                self._drop_connection()
                break

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except Exception as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def find_group_member_dns(self, group_name: str) -> Optional[List[str]]:
        """
        Look a group up by common name and return its direct member DNs.

        Args:
            group_name: Common name of the group

        Returns:
            Member DNs in directory order, or None if the group was not found

        Raises:
            LDAPQueryError: If not connected or the search itself fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        search_filter = f"(&{self.group_filter}(cn={escape_filter_chars(group_name)}))"
        search_base = self.group_base_dn or self._get_domain_base()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        try:
            success = self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=['member']
            )
        except LDAPException as e:
            raise LDAPQueryError(f"Group search failed for {group_name}: {e}")

        if not success or not self.connection.entries:
            return None

        group_entry = self.connection.entries[0]
        if 'member' not in group_entry.entry_attributes:
            return []
        return [str(dn) for dn in group_entry.member.values]

    def lookup_account_name(self, member_dn: str) -> Optional[str]:
        """
        Resolve a member DN to its account name.

        Returns:
            The account attribute value, or None if the entry or attribute is missing

        Raises:
            LDAPQueryError: If the search itself fails
        """
        try:
            success = self.connection.search(
                search_base=member_dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=[self.account_attribute]
            )
        except LDAPException as e:
            raise LDAPQueryError(f"Member lookup failed for {member_dn}: {e}")

        if not success or not self.connection.entries:
            return None

        # Entry lookup matches attribute names case-insensitively
        try:
            value = self.connection.entries[0][self.account_attribute].value
        except LDAPKeyError:
            return None
        if isinstance(value, list):
            value = value[0] if value else None
        return str(value) if value else None

    def resolve_members(self, group_name: str) -> MemberResolution:
        """
        Resolve the direct members of a group to account names.

        A missing group yields an empty resolution with a failure note. A member
        that cannot be resolved is skipped with a failure note; the remaining
        members are still resolved.

        Args:
            group_name: Common name of the group

        Returns:
            MemberResolution with account names in directory order
        """
        logger.info(f"Resolving members of group: {group_name}")
        resolution = MemberResolution(group_name)

        try:
            member_dns = self.find_group_member_dns(group_name)
        except LDAPQueryError as e:
            logger.warning(f"Could not look up group {group_name}: {e}")
            resolution.outcomes.append(Outcome(group_name, Outcome.FAILED, str(e)))
            return resolution

        if member_dns is None:
            logger.warning(f"Group {group_name} not found in directory; treating it as empty")
            resolution.outcomes.append(Outcome(group_name, Outcome.FAILED, 'group not found in directory'))
            return resolution

        if not member_dns:
            logger.info(f"No members found in group {group_name}")
            return resolution

        logger.debug(f"Found {len(member_dns)} members in group {group_name}")

        for member_dn in member_dns:
            try:
                account_name = self.lookup_account_name(member_dn)
            except LDAPQueryError as e:
                logger.warning(f"Skipping member {member_dn} of {group_name}: {e}")
                resolution.outcomes.append(Outcome(member_dn, Outcome.FAILED, str(e)))
                continue

            if not account_name:
                logger.warning(f"Skipping member {member_dn} of {group_name}: no {self.account_attribute} found")
                resolution.outcomes.append(
                    Outcome(member_dn, Outcome.FAILED, f"no {self.account_attribute} found")
                )
                continue

            resolution.members.append(account_name)

        logger.info(f"Resolved {len(resolution.members)} of {len(member_dns)} members of {group_name}")
        return resolution

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def test_connection(self) -> bool:
        """
        Check that the directory accepts the bind and the group search base exists.

        Returns:
            True if the group search base can be read, False otherwise
        """
        try:
            if not self._connected:
                self.connect(max_retries=1, retry_wait=0)

            return bool(self.connection.search(
                search_base=self.group_base_dn or self._get_domain_base(),
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=[],
                size_limit=1
            ))
        except (LDAPConnectionError, LDAPQueryError, LDAPException) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
