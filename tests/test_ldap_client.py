#!/usr/bin/env python3
"""
Unit tests for the LDAP membership client.

Uses mocked ldap3 Server and Connection objects to check DN construction,
member classification and error translation.
"""

import unittest
from unittest.mock import Mock, patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import MODIFY_ADD, MODIFY_DELETE
from ldap3.core.exceptions import LDAPSocketOpenError

from group_membership_sync.clients.ldap import LDAPMembershipClient, LDAPConnectionError
from group_membership_sync.errors import NotFound, RemoteError, TruncatedListingError


def make_entry(dn, attributes):
    entry = Mock()
    entry.entry_dn = dn
    entry.entry_attributes_as_dict = attributes
    return entry


class TestLDAPMembershipClient(unittest.TestCase):
    """Test cases for LDAPMembershipClient."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'server_url': 'ldap://ldap.test:389',
            'bind_dn': 'cn=sync,dc=test,dc=com',
            'bind_password': 'secret',
            'user_base_dn': 'ou=People,dc=test,dc=com',
            'group_base_dn': 'ou=Groups,dc=test,dc=com',
        }
        self.client = LDAPMembershipClient(self.config, {'max_retries': 2, 'retry_wait_seconds': 0})
        self.connection = Mock()
        self.connection.result = {'result': 0, 'description': 'success'}
        self.client.connection = self.connection
        self.client._connected = True

    def test_dn_construction_escapes_values(self):
        self.assertEqual(self.client.user_dn('jdoe'), 'uid=jdoe,ou=People,dc=test,dc=com')
        self.assertEqual(self.client.group_dn('eng'), 'cn=eng,ou=Groups,dc=test,dc=com')
        self.assertEqual(self.client.group_dn('a,b'), 'cn=a\\,b,ou=Groups,dc=test,dc=com')

    def test_members_are_split_into_users_and_groups(self):
        self.connection.search.return_value = True
        self.connection.entries = [make_entry('cn=eng,ou=Groups,dc=test,dc=com', {'member': [
            'uid=jdoe,ou=People,dc=test,dc=com',
            'uid=asmith,ou=People,dc=test,dc=com',
            'cn=platform,ou=Groups,dc=test,dc=com',
            'cn=a\\,b,ou=Groups,dc=test,dc=com',
            'cn=outsider,ou=Elsewhere,dc=test,dc=com',
        ]})]

        self.assertEqual(self.client.list_group_users('eng'), {'jdoe', 'asmith'})
        self.assertEqual(self.client.list_group_groups('eng'), {'platform', 'a,b'})

        kwargs = self.connection.search.call_args[1]
        self.assertEqual(kwargs['search_base'], 'cn=eng,ou=Groups,dc=test,dc=com')
        self.assertEqual(kwargs['attributes'], ['member'])

    def test_members_in_sub_containers_are_not_listed(self):
        self.connection.search.return_value = True
        self.connection.entries = [make_entry('cn=eng,ou=Groups,dc=test,dc=com', {'member': [
            'uid=admin,ou=People,dc=test,dc=com',
            'uid=u1,ou=People,dc=test,dc=com',
            'uid=u9,ou=Contractors,ou=People,dc=test,dc=com',
            'cn=team,ou=Nested,ou=Groups,dc=test,dc=com',
            'UID=U2,OU=People,DC=Test,DC=com',
        ]})]

        self.assertEqual(self.client.list_group_users('eng'), {'admin', 'u1', 'U2'})
        self.assertEqual(self.client.list_group_groups('eng'), set())

    def test_group_without_members(self):
        self.connection.search.return_value = True
        self.connection.entries = [make_entry('cn=eng,ou=Groups,dc=test,dc=com', {})]

        self.assertEqual(self.client.list_group_users('eng'), set())

    def test_ranged_member_attribute_is_truncation(self):
        self.connection.search.return_value = True
        self.connection.entries = [make_entry('cn=big,ou=Groups,dc=test,dc=com', {
            'member;range=0-1499': ['uid=u0,ou=People,dc=test,dc=com'],
        })]

        with self.assertRaises(TruncatedListingError):
            self.client.list_group_users('big')

    def test_missing_group_entry_is_remote_error(self):
        self.connection.search.return_value = False
        self.connection.result = {'result': 32, 'description': 'noSuchObject'}

        with self.assertRaises(RemoteError) as ctx:
            self.client.list_group_groups('gone')
        self.assertNotIsInstance(ctx.exception, NotFound)

    def test_get_user_found(self):
        self.connection.search.return_value = True
        self.connection.entries = [make_entry('uid=jdoe,ou=People,dc=test,dc=com', {'uid': ['jdoe']})]

        user = self.client.get_user('jdoe')

        self.assertEqual(user, {'id': 'jdoe', 'dn': 'uid=jdoe,ou=People,dc=test,dc=com'})

    def test_get_user_no_such_object_is_not_found(self):
        self.connection.search.return_value = False
        self.connection.result = {'result': 32, 'description': 'noSuchObject'}

        with self.assertRaises(NotFound) as ctx:
            self.client.get_user('ghost')
        self.assertEqual(ctx.exception.resource_id, 'ghost')

    def test_get_user_other_failure_is_remote_error(self):
        self.connection.search.return_value = False
        self.connection.result = {'result': 50, 'description': 'insufficientAccessRights'}

        with self.assertRaises(RemoteError) as ctx:
            self.client.get_user('jdoe')
        self.assertIn('insufficientAccessRights', str(ctx.exception))

    def test_add_and_remove_modify_member_attribute(self):
        self.connection.modify.return_value = True

        self.client.add_user_to_group('eng', 'jdoe')
        self.client.remove_group_from_group('eng', 'platform')

        self.connection.modify.assert_any_call(
            'cn=eng,ou=Groups,dc=test,dc=com',
            {'member': [(MODIFY_ADD, ['uid=jdoe,ou=People,dc=test,dc=com'])]}
        )
        self.connection.modify.assert_any_call(
            'cn=eng,ou=Groups,dc=test,dc=com',
            {'member': [(MODIFY_DELETE, ['cn=platform,ou=Groups,dc=test,dc=com'])]}
        )

    def test_failed_modify_raises_remote_error(self):
        self.connection.modify.return_value = False
        self.connection.result = {'result': 16, 'description': 'noSuchAttribute'}

        with self.assertRaises(RemoteError) as ctx:
            self.client.remove_user_from_group('eng', 'jdoe')
        self.assertIn('remove user jdoe from group eng', str(ctx.exception))

    def test_removing_last_member_swaps_in_placeholder(self):
        self.client.placeholder_member_dn = 'cn=sync,dc=test,dc=com'
        results = iter([
            {'result': 65, 'description': 'objectClassViolation'},
            {'result': 0, 'description': 'success'},
        ])

        def modify(dn, changes):
            self.connection.result = next(results)
            return self.connection.result['result'] == 0

        self.connection.modify.side_effect = modify

        self.client.remove_user_from_group('eng', 'jdoe')

        self.assertEqual(self.connection.modify.call_count, 2)
        self.connection.modify.assert_called_with(
            'cn=eng,ou=Groups,dc=test,dc=com',
            {'member': [
                (MODIFY_ADD, ['cn=sync,dc=test,dc=com']),
                (MODIFY_DELETE, ['uid=jdoe,ou=People,dc=test,dc=com']),
            ]}
        )

    def test_removing_last_member_without_placeholder_fails(self):
        self.connection.modify.return_value = False
        self.connection.result = {'result': 65, 'description': 'objectClassViolation'}

        with self.assertRaises(RemoteError) as ctx:
            self.client.remove_group_from_group('eng', 'platform')

        self.assertIn('placeholder_member_dn', str(ctx.exception))
        self.assertEqual(self.connection.modify.call_count, 1)

    def test_object_class_violation_on_add_is_not_retried_with_placeholder(self):
        self.client.placeholder_member_dn = 'cn=sync,dc=test,dc=com'
        self.connection.modify.return_value = False
        self.connection.result = {'result': 65, 'description': 'objectClassViolation'}

        with self.assertRaises(RemoteError):
            self.client.add_user_to_group('eng', 'jdoe')
        self.assertEqual(self.connection.modify.call_count, 1)

    def test_operations_require_connection(self):
        self.client._connected = False

        with self.assertRaises(RemoteError):
            self.client.add_group_to_group('eng', 'platform')


class TestLDAPConnect(unittest.TestCase):
    """Test cases for connection handling."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'server_url': 'ldaps://ldap.test:636',
            'bind_dn': 'cn=sync,dc=test,dc=com',
            'bind_password': 'secret',
            'user_base_dn': 'ou=People,dc=test,dc=com',
            'group_base_dn': 'ou=Groups,dc=test,dc=com',
        }

    @patch('group_membership_sync.clients.ldap.Connection')
    @patch('group_membership_sync.clients.ldap.Server')
    def test_connect_and_close(self, mock_server, mock_connection):
        conn = mock_connection.return_value
        conn.open.return_value = True
        conn.bind.return_value = True

        client = LDAPMembershipClient(self.config)
        self.assertTrue(client.connect())
        self.assertTrue(client.use_ssl)
        self.assertTrue(client._connected)

        client.close()
        conn.unbind.assert_called_once()
        self.assertIsNone(client.connection)

    @patch('group_membership_sync.clients.ldap.time.sleep')
    @patch('group_membership_sync.clients.ldap.Connection')
    @patch('group_membership_sync.clients.ldap.Server')
    def test_connect_retries_then_fails(self, mock_server, mock_connection, mock_sleep):
        mock_connection.return_value.open.side_effect = LDAPSocketOpenError("unreachable")

        client = LDAPMembershipClient(self.config, {'max_retries': 3, 'retry_wait_seconds': 2})

        with self.assertRaises(LDAPConnectionError):
            client.connect()
        self.assertEqual(mock_connection.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    def test_context_manager_closes(self):
        client = LDAPMembershipClient(self.config)
        with patch.object(client, 'close') as mock_close:
            with client:
                pass
        mock_close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
