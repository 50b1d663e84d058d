#!/usr/bin/env python3
"""
Unit tests for the LDAP client.

Covers connection handling with retries, TLS configuration, and group
membership resolution including partial failures.
"""

import os
import sys
import ssl
import unittest
from unittest.mock import Mock, MagicMock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import Server, Connection, MOCK_SYNC
from ldap3.core.exceptions import LDAPException, LDAPKeyError

from pg_role_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError, MemberResolution
from pg_role_sync.statements import Outcome


def group_entry(member_dns):
    entry = Mock()
    entry.entry_attributes = ['member'] if member_dns is not None else []
    entry.member.values = member_dns or []
    return entry


def user_entry(account_name, attribute='sAMAccountName'):
    entry = MagicMock()

    def get_attribute(key):
        if account_name is None or key.lower() != attribute.lower():
            raise LDAPKeyError(f"key '{key}' not found")
        return Mock(value=account_name)

    entry.__getitem__.side_effect = get_attribute
    return entry


class TestLDAPClient(unittest.TestCase):
    """Test cases for LDAPClient connection handling."""

    def setUp(self):
        """Set up test fixtures."""
        self.basic_config = {
            'server_url': 'ldaps://ldap.example.com:636',
            'bind_dn': 'CN=service,OU=Service,DC=example,DC=com',
            'bind_password': 'password123',
            'group_base_dn': 'OU=Groups,DC=example,DC=com',
        }

    def test_initialization_defaults(self):
        client = LDAPClient(self.basic_config)

        self.assertTrue(client.use_ssl)  # Auto-detected from ldaps://
        self.assertFalse(client.start_tls)
        self.assertTrue(client.verify_ssl)
        self.assertEqual(client.account_attribute, 'sAMAccountName')
        self.assertEqual(client.group_filter, '(objectClass=group)')
        self.assertEqual(client.max_retries, 3)

    def test_retry_settings_from_error_handling(self):
        config = dict(self.basic_config, error_handling={'max_retries': 5, 'retry_wait_seconds': 1})
        client = LDAPClient(config)
        self.assertEqual(client.max_retries, 5)
        self.assertEqual(client.retry_wait, 1)

    def test_tls_config_not_needed_for_plain_ldap(self):
        config = dict(self.basic_config, server_url='ldap://ldap.example.com')
        client = LDAPClient(config)
        self.assertIsNone(client._create_tls_config())

    @patch('pg_role_sync.ldap_client.Tls')
    def test_tls_config_without_verification(self, mock_tls):
        config = dict(self.basic_config, verify_ssl=False, ca_cert_file='/etc/ca.pem')
        LDAPClient(config)._create_tls_config()

        kwargs = mock_tls.call_args[1]
        self.assertEqual(kwargs['validate'], ssl.CERT_NONE)
        self.assertEqual(kwargs['ca_certs_file'], '/etc/ca.pem')

    @patch('pg_role_sync.ldap_client.Server')
    @patch('pg_role_sync.ldap_client.Connection')
    def test_successful_connection(self, mock_connection, mock_server):
        mock_conn = Mock()
        mock_conn.open.return_value = True
        mock_conn.bind.return_value = True
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.basic_config)
        self.assertTrue(client.connect())
        self.assertTrue(client._connected)

    @patch('pg_role_sync.ldap_client.time.sleep')
    @patch('pg_role_sync.ldap_client.Server')
    @patch('pg_role_sync.ldap_client.Connection')
    def test_connection_retries_then_fails(self, mock_connection, mock_server, mock_sleep):
        mock_conn = Mock()
        mock_conn.open.return_value = True
        mock_conn.bind.return_value = False
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.basic_config)
        with self.assertRaises(LDAPConnectionError):
            client.connect(max_retries=3, retry_wait=1)

        self.assertEqual(mock_connection.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)
        self.assertFalse(client._connected)

    @patch('pg_role_sync.ldap_client.Server')
    @patch('pg_role_sync.ldap_client.Connection')
    def test_context_manager_disconnects(self, mock_connection, mock_server):
        mock_conn = Mock()
        mock_conn.open.return_value = True
        mock_conn.bind.return_value = True
        mock_connection.return_value = mock_conn

        with LDAPClient(self.basic_config) as client:
            client.connect()

        mock_conn.unbind.assert_called_once()
        self.assertFalse(client._connected)

    @patch('pg_role_sync.ldap_client.Server')
    @patch('pg_role_sync.ldap_client.Connection')
    def test_test_connection_reads_group_base(self, mock_connection, mock_server):
        mock_conn = Mock()
        mock_conn.open.return_value = True
        mock_conn.bind.return_value = True
        mock_conn.search.return_value = True
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.basic_config)

        self.assertTrue(client.test_connection())
        self.assertEqual(mock_conn.search.call_args[1]['search_base'], 'OU=Groups,DC=example,DC=com')

    @patch('pg_role_sync.ldap_client.time.sleep')
    @patch('pg_role_sync.ldap_client.Server')
    @patch('pg_role_sync.ldap_client.Connection')
    def test_test_connection_reports_bind_failure(self, mock_connection, mock_server, mock_sleep):
        mock_conn = Mock()
        mock_conn.open.return_value = True
        mock_conn.bind.return_value = False
        mock_connection.return_value = mock_conn

        self.assertFalse(LDAPClient(self.basic_config).test_connection())
        self.assertEqual(mock_connection.call_count, 1)

    def test_query_requires_connection(self):
        client = LDAPClient(self.basic_config)
        with self.assertRaises(LDAPQueryError):
            client.find_group_member_dns('PG-USERS')

    def test_domain_base_from_bind_dn(self):
        client = LDAPClient(self.basic_config)
        self.assertEqual(client._get_domain_base(), 'DC=example,DC=com')


class TestResolveMembers(unittest.TestCase):
    """Test cases for LDAPClient.resolve_members."""

    ALICE_DN = 'CN=Alice Smith,OU=Users,DC=example,DC=com'
    BOB_DN = 'CN=Bob,OU=Users,DC=example,DC=com'
    GONE_DN = 'CN=Gone,OU=Users,DC=example,DC=com'

    def setUp(self):
        self.client = LDAPClient({
            'server_url': 'ldap://ldap.example.com',
            'bind_dn': 'CN=service,DC=example,DC=com',
            'bind_password': 'password123',
            'group_base_dn': 'OU=Groups,DC=example,DC=com',
        })
        self.conn = Mock()
        self.client.connection = self.conn
        self.client._connected = True
        self.users = {
            self.ALICE_DN: user_entry('Alice-Smith'),
            self.BOB_DN: user_entry('bob'),
        }
        self.groups = {
            'PG-USERS': group_entry([self.ALICE_DN, self.GONE_DN, self.BOB_DN]),
        }
        self.conn.search.side_effect = self._search

    def _search(self, search_base, search_filter, search_scope=None, attributes=None, **kwargs):
        if 'objectClass=group' in search_filter:
            name = search_filter.split('(cn=')[1].rstrip(')')
            self.conn.entries = [self.groups[name]] if name in self.groups else []
        else:
            self.conn.entries = [self.users[search_base]] if search_base in self.users else []
        return bool(self.conn.entries)

    def test_resolves_members_in_directory_order(self):
        resolution = self.client.resolve_members('PG-USERS')

        self.assertIsInstance(resolution, MemberResolution)
        self.assertEqual(resolution.members, ['Alice-Smith', 'bob'])
        self.assertTrue(resolution.found)

    def test_group_search_filter_and_base(self):
        self.client.resolve_members('PG-USERS')

        first_call = self.conn.search.call_args_list[0][1]
        self.assertEqual(first_call['search_filter'], '(&(objectClass=group)(cn=PG-USERS))')
        self.assertEqual(first_call['search_base'], 'OU=Groups,DC=example,DC=com')
        self.assertEqual(first_call['attributes'], ['member'])

    def test_filter_value_is_escaped(self):
        self.client.resolve_members('weird(name)*')

        search_filter = self.conn.search.call_args_list[0][1]['search_filter']
        self.assertIn('weird\\28name\\29\\2a', search_filter)

    def test_unresolvable_member_is_skipped(self):
        resolution = self.client.resolve_members('PG-USERS')

        self.assertEqual(len(resolution.outcomes), 1)
        self.assertEqual(resolution.outcomes[0].subject, self.GONE_DN)
        self.assertEqual(resolution.outcomes[0].status, Outcome.FAILED)

    def test_missing_group_is_empty_not_fatal(self):
        resolution = self.client.resolve_members('NOPE')

        self.assertEqual(resolution.members, [])
        self.assertFalse(resolution.found)
        self.assertIn('not found', resolution.outcomes[0].reason)

    def test_empty_group(self):
        self.groups['EMPTY'] = group_entry(None)
        resolution = self.client.resolve_members('EMPTY')

        self.assertEqual(resolution.members, [])
        self.assertEqual(resolution.outcomes, [])

    def test_member_lookup_exception_does_not_abort_group(self):
        original = self._search

        def flaky(search_base, search_filter, **kwargs):
            if search_base == self.ALICE_DN:
                raise LDAPException('timeout')
            return original(search_base, search_filter, **kwargs)

        self.conn.search.side_effect = flaky
        resolution = self.client.resolve_members('PG-USERS')

        self.assertEqual(resolution.members, ['bob'])
        self.assertEqual([o.subject for o in resolution.outcomes], [self.ALICE_DN, self.GONE_DN])

    def test_group_search_exception_is_recorded(self):
        self.conn.search.side_effect = LDAPException('server down')

        resolution = self.client.resolve_members('PG-USERS')

        self.assertEqual(resolution.members, [])
        self.assertIn('server down', resolution.outcomes[0].reason)

    def test_member_without_account_attribute(self):
        self.users[self.BOB_DN] = user_entry(None)
        resolution = self.client.resolve_members('PG-USERS')

        self.assertEqual(resolution.members, ['Alice-Smith'])
        self.assertEqual(len(resolution.outcomes), 2)

    def test_multi_valued_account_attribute_takes_first(self):
        self.users[self.BOB_DN] = user_entry(['bob', 'bobby'])
        resolution = self.client.resolve_members('PG-USERS')

        self.assertEqual(resolution.members, ['Alice-Smith', 'bob'])


class TestResolveMembersAgainstDirectory(unittest.TestCase):
    """Resolve members against an in-memory ldap3 directory."""

    def setUp(self):
        server = Server('fake_directory')
        self.connection = Connection(server, user='cn=svc,dc=example,dc=com', password='pw',
                                     client_strategy=MOCK_SYNC)
        self.connection.strategy.add_entry('cn=svc,dc=example,dc=com',
                                           {'objectClass': 'person', 'userPassword': 'pw'})
        self.connection.strategy.add_entry('cn=Bob,ou=users,dc=example,dc=com',
                                           {'objectClass': 'person', 'sAMAccountName': 'bob'})
        self.connection.strategy.add_entry('cn=PG-USERS,ou=groups,dc=example,dc=com', {
            'objectClass': 'group',
            'cn': 'PG-USERS',
            'member': ['cn=Bob,ou=users,dc=example,dc=com'],
        })
        self.connection.bind()

    def tearDown(self):
        self.connection.unbind()

    def _client(self, account_attribute):
        client = LDAPClient({
            'server_url': 'ldap://fake_directory',
            'bind_dn': 'cn=svc,dc=example,dc=com',
            'bind_password': 'pw',
            'group_base_dn': 'ou=groups,dc=example,dc=com',
            'account_attribute': account_attribute,
        })
        client.connection = self.connection
        client._connected = True
        return client

    def test_account_attribute_as_stored(self):
        resolution = self._client('sAMAccountName').resolve_members('PG-USERS')
        self.assertEqual(resolution.members, ['bob'])

    def test_account_attribute_name_is_case_insensitive(self):
        resolution = self._client('samaccountname').resolve_members('PG-USERS')

        self.assertEqual(resolution.members, ['bob'])
        self.assertEqual(resolution.outcomes, [])


if __name__ == '__main__':
    unittest.main()
