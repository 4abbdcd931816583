#!/usr/bin/env python3
"""
Unit tests for roster sources: YAML/CSV roster files and LDAP groups.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import Mock, MagicMock, patch

from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError

# Add parent directory to path to import roster_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from roster_sync.contact import Contact
from roster_sync.sources import load_roster, RosterError, LDAPRosterSource, LDAPConnectionError, LDAPQueryError
from roster_sync.sources.file_source import load_roster_file


class TestRosterFiles(unittest.TestCase):
    """Test cases for load_roster_file."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='roster_sync_roster_test_')

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write(self, name, content):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)
        return path

    def test_yaml_list(self):
        path = self.write('parks.yaml', (
            "- first_name: Leslie\n"
            "  last_name: Knope\n"
            "  email: leslie@x.com\n"
            "  attributes:\n"
            "    CITY: Pawnee\n"
            "    ZIP: 46001\n"
            "- first_name: April\n"
            "  email: april@x.com\n"
        ))

        contacts = load_roster_file(path)

        self.assertEqual(contacts, [
            Contact('Leslie', 'Knope', 'leslie@x.com', ('CITY', 'Pawnee'), ('ZIP', '46001')),
            Contact('April', None, 'april@x.com'),
        ])

    def test_yaml_contacts_mapping(self):
        path = self.write('parks.yml', "contacts:\n  - {first_name: Ron, last_name: Swanson, email: ron@x.com}\n")
        self.assertEqual(load_roster_file(path), [Contact('Ron', 'Swanson', 'ron@x.com')])

    def test_yaml_empty(self):
        self.assertEqual(load_roster_file(self.write('empty.yaml', '')), [])

    def test_yaml_not_a_list(self):
        with self.assertRaises(RosterError):
            load_roster_file(self.write('bad.yaml', 'contacts: leslie@x.com\n'))

    def test_yaml_entry_not_mapping(self):
        with self.assertRaises(RosterError) as ctx:
            load_roster_file(self.write('bad.yaml', '- leslie@x.com\n'))
        self.assertIn('entry 0', str(ctx.exception))

    def test_yaml_attributes_not_mapping(self):
        with self.assertRaises(RosterError):
            load_roster_file(self.write('bad.yaml', '- {email: a@x.com, attributes: [CITY]}\n'))

    def test_yaml_invalid(self):
        with self.assertRaises(RosterError) as ctx:
            load_roster_file(self.write('bad.yaml', '- {email: [unclosed\n'))
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_yaml_scalar_names_become_text(self):
        path = self.write('parks.yaml', "- {first_name: 2024, last_name: No, email: a@x.com}\n")

        contact, = load_roster_file(path)

        self.assertEqual(contact, Contact('2024', 'False', 'a@x.com'))
        self.assertEqual(contact.display_name(), '2024 False')

    def test_csv(self):
        path = self.write('parks.csv', (
            "first_name,last_name,email,CITY,JOB\n"
            "Leslie,Knope,leslie@x.com,Pawnee,Deputy Director\n"
            "Ron,,ron@x.com,,Director\n"
        ))

        leslie, ron = load_roster_file(path)

        self.assertEqual(leslie, Contact('Leslie', 'Knope', 'leslie@x.com',
                                         ('CITY', 'Pawnee'), ('JOB', 'Deputy Director')))
        self.assertIsNone(ron.last_name)
        self.assertEqual(dict(ron.attributes), {'JOB': 'Director'})

    def test_csv_with_byte_order_mark(self):
        path = os.path.join(self.temp_dir, 'excel.csv')
        with open(path, 'w', encoding='utf-8-sig') as f:
            f.write("email,first_name\nann@x.com,Ann\n")

        self.assertEqual(load_roster_file(path), [Contact('Ann', None, 'ann@x.com')])

    def test_csv_without_email_column(self):
        with self.assertRaises(RosterError) as ctx:
            load_roster_file(self.write('parks.csv', "first_name,last_name\nLeslie,Knope\n"))
        self.assertIn("no 'email' column", str(ctx.exception))

    def test_file_not_utf8(self):
        path = os.path.join(self.temp_dir, 'latin1.csv')
        with open(path, 'wb') as f:
            f.write(b"first_name,email\n\xe9mile,emile@x.com\n")

        with self.assertRaises(RosterError) as ctx:
            load_roster_file(path)
        self.assertIn('Cannot read roster file', str(ctx.exception))

    def test_missing_file(self):
        with self.assertRaises(RosterError) as ctx:
            load_roster_file(os.path.join(self.temp_dir, 'missing.csv'))
        self.assertIn('Cannot read roster file', str(ctx.exception))

    def test_unsupported_extension(self):
        with self.assertRaises(RosterError):
            load_roster_file(self.write('parks.txt', 'leslie@x.com'))


class TestLoadRoster(unittest.TestCase):
    """Test cases for the load_roster dispatcher."""

    @patch('roster_sync.sources.load_roster_file')
    def test_file_source(self, mock_load):
        mock_load.return_value = [Contact('Ann', 'Perkins', 'ann@x.com')]

        contacts = load_roster({'source': 'file', 'path': 'rosters/parks.csv'})

        mock_load.assert_called_once_with('rosters/parks.csv')
        self.assertEqual(len(contacts), 1)

    def test_ldap_source(self):
        ldap_source = Mock()
        ldap_source.fetch_contacts.return_value = []

        load_roster({'source': 'ldap', 'group_dn': 'CN=Parks,DC=pawnee,DC=gov', 'merge_fields': {'CITY': 'l'}},
                    ldap_source)

        ldap_source.fetch_contacts.assert_called_once_with('CN=Parks,DC=pawnee,DC=gov', {'CITY': 'l'})

    def test_ldap_source_without_connection(self):
        with self.assertRaises(RosterError):
            load_roster({'source': 'ldap', 'group_dn': 'CN=Parks,DC=pawnee,DC=gov'})

    def test_unknown_source(self):
        with self.assertRaises(RosterError):
            load_roster({'source': 'database'})


class TestLDAPRosterSource(unittest.TestCase):
    """Test cases for LDAPRosterSource with ldap3 mocked out."""

    def setUp(self):
        self.config = {
            'server_url': 'ldaps://dc1.pawnee.gov:636',
            'bind_dn': 'CN=svc-sync,OU=Service,DC=pawnee,DC=gov',
            'bind_password': 'secret',
            'user_filter': '(objectClass=person)',
        }

    def connected_source(self):
        source = LDAPRosterSource(self.config)
        source.connection = MagicMock()
        source.connection.bound = True
        return source

    def test_ssl_detected_from_url(self):
        self.assertTrue(LDAPRosterSource(self.config).use_ssl)
        self.config['server_url'] = 'ldap://dc1.pawnee.gov'
        self.assertFalse(LDAPRosterSource(self.config).use_ssl)

    @patch('roster_sync.sources.ldap_source.Connection')
    @patch('roster_sync.sources.ldap_source.Server')
    def test_connect(self, mock_server, mock_connection):
        connection = mock_connection.return_value
        connection.open.return_value = True
        connection.bind.return_value = True
        connection.bound = True

        source = LDAPRosterSource(self.config)
        source.connect(max_retries=1, retry_wait=0)

        self.assertTrue(source.connected)
        mock_connection.assert_called_once_with(
            mock_server.return_value, user=self.config['bind_dn'], password='secret',
            auto_bind=False, receive_timeout=10
        )
        connection.start_tls.assert_not_called()

    @patch('roster_sync.retry.time.sleep')
    @patch('roster_sync.sources.ldap_source.Connection')
    @patch('roster_sync.sources.ldap_source.Server')
    def test_connect_bind_failure(self, mock_server, mock_connection, mock_sleep):
        connection = mock_connection.return_value
        connection.open.return_value = True
        connection.bind.return_value = False

        source = LDAPRosterSource(self.config)
        with self.assertRaises(LDAPConnectionError) as ctx:
            source.connect(max_retries=2, retry_wait=0)

        self.assertIn('after 2 attempts', str(ctx.exception))
        self.assertEqual(connection.bind.call_count, 2)

    @patch('roster_sync.retry.time.sleep')
    @patch('roster_sync.sources.ldap_source.Connection')
    @patch('roster_sync.sources.ldap_source.Server')
    def test_connect_retries_socket_errors(self, mock_server, mock_connection, mock_sleep):
        connection = mock_connection.return_value
        connection.open.side_effect = [LDAPSocketOpenError('unreachable'), True]
        connection.bind.return_value = True

        source = LDAPRosterSource(self.config)
        source.connect(max_retries=3, retry_wait=0)

        self.assertEqual(connection.open.call_count, 2)

    def test_fetch_contacts(self):
        source = self.connected_source()
        source.connection.extend.standard.paged_search.return_value = iter([
            {'type': 'searchResEntry', 'dn': 'CN=Leslie Knope,OU=Users,DC=pawnee,DC=gov',
             'attributes': {'givenName': ['Leslie'], 'sn': 'Knope', 'mail': ['leslie@x.com'], 'l': 'Pawnee',
                            'title': []}},
            {'type': 'searchResRef', 'uri': ['ldap://other.pawnee.gov/']},
            {'type': 'searchResEntry', 'dn': 'CN=No Mail,OU=Users,DC=pawnee,DC=gov',
             'attributes': {'givenName': 'No', 'sn': 'Mail', 'mail': []}},
        ])

        contacts = source.fetch_contacts('CN=Parks Dept,OU=Groups,DC=pawnee,DC=gov',
                                         {'CITY': 'l', 'JOB': 'title'})

        self.assertEqual(contacts, [Contact('Leslie', 'Knope', 'leslie@x.com', ('CITY', 'Pawnee'))])
        kwargs = source.connection.extend.standard.paged_search.call_args[1]
        self.assertEqual(kwargs['search_base'], 'DC=pawnee,DC=gov')
        self.assertEqual(kwargs['search_filter'],
                         '(&(objectClass=person)(memberOf=CN=Parks Dept,OU=Groups,DC=pawnee,DC=gov))')
        self.assertEqual(kwargs['attributes'], ['givenName', 'l', 'mail', 'sn', 'title'])
        self.assertTrue(kwargs['generator'])

    def test_fetch_contacts_escapes_group_dn(self):
        source = self.connected_source()
        source.connection.extend.standard.paged_search.return_value = iter([])

        source.fetch_contacts('CN=Parks (Seasonal),DC=pawnee,DC=gov')

        search_filter = source.connection.extend.standard.paged_search.call_args[1]['search_filter']
        self.assertIn(r'CN=Parks \28Seasonal\29', search_filter)

    def test_fetch_contacts_uses_configured_base(self):
        self.config['user_base_dn'] = 'OU=Users,DC=pawnee,DC=gov'
        source = self.connected_source()
        source.connection.extend.standard.paged_search.return_value = iter([])

        source.fetch_contacts('CN=Parks,DC=pawnee,DC=gov')

        kwargs = source.connection.extend.standard.paged_search.call_args[1]
        self.assertEqual(kwargs['search_base'], 'OU=Users,DC=pawnee,DC=gov')

    def test_fetch_contacts_not_connected(self):
        with self.assertRaises(LDAPQueryError):
            LDAPRosterSource(self.config).fetch_contacts('CN=Parks,DC=pawnee,DC=gov')

    def test_fetch_contacts_search_failure(self):
        source = self.connected_source()
        source.connection.extend.standard.paged_search.side_effect = LDAPException('size limit exceeded')

        with self.assertRaises(LDAPQueryError) as ctx:
            source.fetch_contacts('CN=Parks,DC=pawnee,DC=gov')
        self.assertIn('size limit exceeded', str(ctx.exception))

    def test_search_base_cannot_be_derived(self):
        self.config['bind_dn'] = 'svc-sync@pawnee.gov'
        source = self.connected_source()

        with self.assertRaises(LDAPQueryError):
            source.fetch_contacts('CN=Parks,DC=pawnee,DC=gov')

    def test_disconnect(self):
        source = self.connected_source()
        connection = source.connection

        with source:
            pass

        connection.unbind.assert_called_once()
        self.assertIsNone(source.connection)
        self.assertFalse(source.connected)


if __name__ == '__main__':
    unittest.main()
