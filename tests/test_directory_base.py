#!/usr/bin/env python3
"""
Unit tests for RemoteDirectoryBase: configuration, authentication headers
and the JSON-over-HTTPS request helper.
"""

import base64
import json
import ssl
import unittest
from http.client import IncompleteRead
from unittest.mock import Mock, patch
import sys
import os

# Add parent directory to path to import roster_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from roster_sync.directory.base import RemoteDirectoryBase, DirectoryAPIError, DirectoryAuthenticationError


class StubDirectory(RemoteDirectoryBase):
    """Concrete subclass so the base class can be instantiated."""

    def ping(self):
        return True

    def list_all(self):
        return []

    def get_members(self, list_id):
        return []

    def upsert_member(self, list_id, member):
        return None

    def set_tag(self, list_id, email, tag_name, active):
        pass


def make_response(status, body=b'', reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    response.read.return_value = body
    return response


class TestDirectoryConfiguration(unittest.TestCase):
    """Test cases for client initialization."""

    def setUp(self):
        self.config = {
            'name': 'TestDirectory',
            'base_url': 'https://api.example.test/3.0/',
            'auth': {'method': 'basic', 'username': 'user', 'password': 'secret'},
        }

    def test_url_parsing(self):
        directory = StubDirectory(self.config)
        self.assertEqual(directory.host, 'api.example.test')
        self.assertEqual(directory.base_path, '/3.0')
        self.assertEqual(directory.timeout, 30)

    def test_basic_auth_header(self):
        directory = StubDirectory(self.config)
        expected = base64.b64encode(b'user:secret').decode()
        self.assertEqual(directory.auth_headers['Authorization'], f'Basic {expected}')

    def test_token_auth_header(self):
        self.config['auth'] = {'method': 'bearer', 'token': 'abc'}
        directory = StubDirectory(self.config)
        self.assertEqual(directory.auth_headers['Authorization'], 'Bearer abc')

    def test_no_auth(self):
        self.config['auth'] = {}
        directory = StubDirectory(self.config)
        self.assertEqual(directory.auth_headers, {})

    def test_missing_basic_credentials(self):
        self.config['auth'] = {'method': 'basic', 'username': 'user'}
        with self.assertRaises(DirectoryAuthenticationError):
            StubDirectory(self.config)

    def test_unknown_auth_method(self):
        self.config['auth'] = {'method': 'oauth2'}
        with self.assertRaises(DirectoryAuthenticationError):
            StubDirectory(self.config)

    def test_ssl_verification_disabled(self):
        self.config['verify_ssl'] = False
        directory = StubDirectory(self.config)
        self.assertEqual(directory.ssl_context.verify_mode, ssl.CERT_NONE)

    def test_ssl_verification_default(self):
        directory = StubDirectory(self.config)
        self.assertEqual(directory.ssl_context.verify_mode, ssl.CERT_REQUIRED)

    def test_unsupported_truststore_type(self):
        self.config['truststore_file'] = '/tmp/store.jks'
        self.config['truststore_type'] = 'JKS'
        with self.assertRaises(DirectoryAPIError) as ctx:
            StubDirectory(self.config)
        self.assertIn('Unsupported truststore type', str(ctx.exception))

    def test_missing_truststore_file(self):
        self.config['truststore_file'] = '/nonexistent/ca.pem'
        with self.assertRaises(DirectoryAPIError) as ctx:
            StubDirectory(self.config)
        self.assertIn('Truststore loading failed', str(ctx.exception))

    def test_plain_http_has_no_ssl_context(self):
        self.config['base_url'] = 'http://localhost:8080/api'
        directory = StubDirectory(self.config)
        self.assertIsNone(directory.ssl_context)

    def test_abstract_methods_required(self):
        with self.assertRaises(TypeError):
            RemoteDirectoryBase(self.config)

    def test_find_list_exact_match(self):
        directory = StubDirectory(self.config)
        from roster_sync.directory.models import RemoteList
        lists = [RemoteList('1', 'Newsletter'), RemoteList('2', 'newsletter')]

        self.assertEqual(directory.find_list('newsletter', lists).id, '2')
        self.assertIsNone(directory.find_list('News', lists))


@patch('roster_sync.directory.base.HTTPSConnection')
class TestDirectoryRequest(unittest.TestCase):
    """Test cases for RemoteDirectoryBase.request."""

    def setUp(self):
        self.directory = StubDirectory({
            'name': 'TestDirectory',
            'base_url': 'https://api.example.test/3.0',
            'auth': {'method': 'token', 'token': 'abc'},
        })

    def test_get_with_params(self, mock_https):
        connection = mock_https.return_value
        connection.getresponse.return_value = make_response(200, b'{"lists": []}')

        result = self.directory.request('GET', '/lists', params={'count': 10, 'offset': 0})

        self.assertEqual(result, {'lists': []})
        method, path, body, headers = connection.request.call_args[0]
        self.assertEqual(method, 'GET')
        self.assertEqual(path, '/3.0/lists?count=10&offset=0')
        self.assertIsNone(body)
        self.assertEqual(headers['Authorization'], 'Bearer abc')
        self.assertNotIn('Content-Type', headers)

    def test_body_is_json(self, mock_https):
        connection = mock_https.return_value
        connection.getresponse.return_value = make_response(200, b'{"id": "x"}')

        self.directory.request('PUT', 'lists/1/members/abc', body={'email_address': 'a@x.com'})

        method, path, body, headers = connection.request.call_args[0]
        self.assertEqual(path, '/3.0/lists/1/members/abc')
        self.assertEqual(json.loads(body), {'email_address': 'a@x.com'})
        self.assertEqual(headers['Content-Type'], 'application/json')

    def test_empty_response(self, mock_https):
        mock_https.return_value.getresponse.return_value = make_response(204, b'', 'No Content')
        self.assertEqual(self.directory.request('POST', '/lists/1/members/abc/tags', body={}), {})

    def test_connection_reused(self, mock_https):
        mock_https.return_value.getresponse.return_value = make_response(200, b'{}')

        self.directory.request('GET', '/ping')
        self.directory.request('GET', '/ping')

        mock_https.assert_called_once()

    def test_problem_document(self, mock_https):
        problem = {'title': 'Invalid Resource', 'status': 400,
                   'detail': 'user@bad looks fake or invalid, please enter a real email address.'}
        mock_https.return_value.getresponse.return_value = make_response(
            400, json.dumps(problem).encode(), 'Bad Request')

        with self.assertRaises(DirectoryAPIError) as ctx:
            self.directory.request('PUT', '/lists/1/members/abc', body={})

        error = ctx.exception
        self.assertEqual(error.status_code, 400)
        self.assertEqual(error.title, 'Invalid Resource')
        self.assertIn('looks fake or invalid', error.detail)
        self.assertIn('HTTP 400: Invalid Resource', str(error))

    def test_non_json_error(self, mock_https):
        mock_https.return_value.getresponse.return_value = make_response(502, b'<html>Bad gateway</html>',
                                                                         'Bad Gateway')

        with self.assertRaises(DirectoryAPIError) as ctx:
            self.directory.request('GET', '/lists')

        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(ctx.exception.title, 'Bad Gateway')
        self.assertIn('Bad gateway', ctx.exception.detail)

    def test_unauthorized(self, mock_https):
        mock_https.return_value.getresponse.return_value = make_response(
            401, b'{"title": "API Key Invalid"}', 'Unauthorized')

        with self.assertRaises(DirectoryAuthenticationError) as ctx:
            self.directory.request('GET', '/ping')
        self.assertEqual(ctx.exception.status_code, 401)

    def test_connection_error_drops_connection(self, mock_https):
        mock_https.return_value.request.side_effect = ConnectionRefusedError("Connection refused")

        with self.assertRaises(DirectoryAPIError) as ctx:
            self.directory.request('GET', '/ping')

        self.assertIn('Connection error', str(ctx.exception))
        self.assertIsNone(ctx.exception.status_code)
        self.assertIsNone(self.directory.connection)

    def test_truncated_response_drops_connection(self, mock_https):
        response = make_response(200)
        response.read.side_effect = IncompleteRead(b'{"id"')
        mock_https.return_value.getresponse.return_value = response

        with self.assertRaises(DirectoryAPIError) as ctx:
            self.directory.request('POST', '/lists/1/members/abc/tags', body={})

        self.assertIn('Connection error', str(ctx.exception))
        mock_https.return_value.close.assert_called_once()
        self.assertIsNone(self.directory.connection)

    def test_invalid_json(self, mock_https):
        mock_https.return_value.getresponse.return_value = make_response(200, b'not json')

        with self.assertRaises(DirectoryAPIError) as ctx:
            self.directory.request('GET', '/ping')
        self.assertIn('Invalid JSON', str(ctx.exception))

    def test_context_manager_closes(self, mock_https):
        mock_https.return_value.getresponse.return_value = make_response(200, b'{}')

        with self.directory as directory:
            directory.request('GET', '/ping')

        mock_https.return_value.close.assert_called_once()
        self.assertIsNone(self.directory.connection)


if __name__ == '__main__':
    unittest.main()
