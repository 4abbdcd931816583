"""
Base remote directory interface and common HTTP client functionality.

This module defines the abstract base class every remote contact directory
integration implements, together with the shared HTTPS client, SSL trust
store handling and authentication headers.
"""

import json
import ssl
import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Sequence, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from roster_sync.directory.models import MemberRequest, RemoteList, RemoteMember, UpsertResult

logger = logging.getLogger(__name__)


class DirectoryAPIError(Exception):
    """Base exception for remote directory API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 title: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.title = title or ''
        self.detail = detail or ''


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when the directory rejects our credentials."""
    pass


class RemoteDirectoryBase(ABC):
    """
    Abstract base class for remote contact directories.

    Subclasses implement the four operations the reconciliation engine needs
    (list_all, get_members, upsert_member, set_tag). The base class provides
    a JSON-over-HTTPS client with a single persistent connection.

    A directory client is not thread-safe: all calls for one sync are issued
    sequentially.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the directory client.

        Args:
            config: Directory configuration dictionary
        """
        self.config = config
        self.name = config.get('name', self.__class__.__name__)
        self.base_url = config['base_url']
        self.auth_config = config.get('auth', {})
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout_seconds', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load extra CA certificates, e.g. for a TLS-inspecting proxy."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)

            elif truststore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                password = self.config.get('truststore_password')
                with open(truststore_file, 'rb') as f:
                    _, certificate, additional = pkcs12.load_key_and_certificates(
                        f.read(), password.encode() if password else None
                    )

                certificates = [certificate] if certificate else []
                certificates.extend(additional or [])
                if not certificates:
                    raise DirectoryAPIError(f"No certificates found in {truststore_file}")

                ca_data = '\n'.join(
                    cert.public_bytes(serialization.Encoding.PEM).decode('ascii') for cert in certificates
                )
                self.ssl_context.load_verify_locations(cadata=ca_data)

            else:
                raise DirectoryAPIError(f"Unsupported truststore type: {truststore_type}")

            logger.info(f"Loaded {truststore_type} truststore: {truststore_file}")

        except DirectoryAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise DirectoryAPIError(f"Truststore loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if not (username and password):
                raise DirectoryAuthenticationError(
                    f"Basic auth configured but missing username or password for {self.name}"
                )
            credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
            self.auth_headers['Authorization'] = f"Basic {credentials}"

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if not token:
                raise DirectoryAuthenticationError(f"Token auth configured but missing token for {self.name}")
            self.auth_headers['Authorization'] = f"Bearer {token}"

        elif auth_method:
            raise DirectoryAuthenticationError(f"Unknown authentication method '{auth_method}' for {self.name}")

        logger.debug(f"Configured '{auth_method or 'no'}' authentication for {self.name}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make a JSON request to the directory API.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: API endpoint path (relative to base_url)
            body: Request body, serialized as JSON
            params: Query string parameters

        Returns:
            Parsed response body ({} for empty responses)

        Raises:
            DirectoryAuthenticationError: On HTTP 401/403
            DirectoryAPIError: On any other failure; HTTP errors carry the
                status code and the problem title/detail reported by the API
        """
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params)

        headers = {'Accept': 'application/json'}
        headers.update(self.auth_headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
            logger.debug(f"Response status: {response.status} {response.reason}")

        except (ConnectionError, OSError, HTTPException) as e:
            # Drop the connection so the next call reconnects
            self.close_connection()
            raise DirectoryAPIError(f"Connection error to {self.name}: {e}")

        if response.status >= 400:
            raise self._error_from_response(response.status, response.reason, response_data)

        if not response_data:
            return {}

        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise DirectoryAPIError(f"Invalid JSON response from {self.name}: {e}", status_code=response.status)

    def _error_from_response(self, status: int, reason: str, response_data: str) -> DirectoryAPIError:
        """Build an exception from an error response (RFC 7807 problem documents are understood)."""
        title = reason
        detail = ''
        try:
            problem = json.loads(response_data) if response_data else {}
            if isinstance(problem, dict):
                title = problem.get('title') or reason
                detail = problem.get('detail') or ''
        except json.JSONDecodeError:
            detail = response_data[:200]

        message = f"HTTP {status}: {title}"
        if detail:
            message += f" - {detail}"

        if status in (401, 403):
            return DirectoryAuthenticationError(message, status_code=status, title=title, detail=detail)
        return DirectoryAPIError(message, status_code=status, title=title, detail=detail)

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    @abstractmethod
    def ping(self) -> bool:
        """
        Check that the directory is reachable and the credentials work.

        Returns:
            True if the directory answered successfully
        """
        pass

    @abstractmethod
    def list_all(self) -> List[RemoteList]:
        """
        Enumerate every list held by the directory.

        Returns:
            List of RemoteList entries (id and name)
        """
        pass

    @abstractmethod
    def get_members(self, list_id: str) -> List[RemoteMember]:
        """
        Fetch the full member collection of a list.

        Args:
            list_id: Directory identifier of the list

        Returns:
            Every member of the list, regardless of status
        """
        pass

    @abstractmethod
    def upsert_member(self, list_id: str, member: MemberRequest) -> UpsertResult:
        """
        Create a member or update its fields.

        Args:
            list_id: Directory identifier of the list
            member: Email, fields to write and the status to use if new

        Returns:
            UpsertResult distinguishing success, an invalid address, a
            permanently deleted address and any other failure
        """
        pass

    @abstractmethod
    def set_tag(self, list_id: str, email: str, tag_name: str, active: bool) -> None:
        """
        Add (active=True) or remove (active=False) one tag on a member.

        Raises:
            DirectoryAPIError: If the directory refuses the change
        """
        pass

    def find_list(self, list_name: str, lists: Optional[Sequence[RemoteList]] = None) -> Optional[RemoteList]:
        """Return the list whose name matches exactly, or None."""
        for remote_list in (lists if lists is not None else self.list_all()):
            if remote_list.name == list_name:
                return remote_list
        return None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
