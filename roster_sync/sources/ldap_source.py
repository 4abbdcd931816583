"""
LDAP roster source.

Builds a roster from the members of an LDAP group: givenName, sn and mail
become the contact's name and email, and any configured LDAP attributes are
copied into named merge fields (e.g. {'CITY': 'l', 'JOB': 'title'}).
"""

import ssl
import logging
from typing import Dict, List, Any, Optional

from ldap3 import Server, Connection, SUBTREE, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from roster_sync.contact import Contact
from roster_sync.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

NAME_ATTRIBUTES = ('givenName', 'sn', 'mail')


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPRosterSource:
    """
    Reads group members from an LDAP directory (Active Directory or OpenLDAP
    with the memberOf overlay).
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: The `ldap` configuration section
        """
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self.connection = None

    @property
    def connected(self) -> bool:
        return self.connection is not None and self.connection.bound

    def connect(self, max_retries: int = 3, retry_wait: float = 5) -> None:
        """
        Open and bind the connection, retrying failed attempts.

        Raises:
            LDAPConnectionError: If every attempt fails
        """
        server = Server(
            self.server_url,
            use_ssl=self.use_ssl,
            tls=self._create_tls_config(),
            connect_timeout=self.connection_timeout
        )

        try:
            self.connection = retry_call(
                self._bind,
                args=(server,),
                max_attempts=max(1, max_retries),
                delay=retry_wait,
                exceptions=(LDAPException, LDAPConnectionError),
                on_retry=create_retry_callback("LDAP bind")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}")

        logger.info(f"Connected and bound to LDAP server {self.server_url}")

    def _bind(self, server: Server) -> Connection:
        connection = Connection(
            server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        if not connection.open():
            raise LDAPConnectionError(f"Failed to open connection: {connection.result}")
        if self.start_tls and not self.use_ssl and not connection.start_tls():
            raise LDAPConnectionError(f"Failed to start TLS: {connection.result}")
        if not connection.bind():
            raise LDAPConnectionError(f"Bind failed: {connection.result}")
        return connection

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        if not self.verify_ssl:
            logger.warning("LDAP SSL certificate verification disabled")

        return Tls(
            validate=ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE,
            ca_certs_file=self.ca_cert_file
        )

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self.connection = None

    def fetch_contacts(self, group_dn: str, merge_fields: Optional[Dict[str, str]] = None) -> List[Contact]:
        """
        Build contacts for the members of a group.

        Args:
            group_dn: Distinguished name of the group
            merge_fields: Merge field name -> LDAP attribute to copy into it

        Returns:
            One contact per member that has a mail attribute

        Raises:
            LDAPQueryError: If not connected or the search fails
        """
        if not self.connected:
            raise LDAPQueryError("Not connected to LDAP server")

        merge_fields = merge_fields or {}
        attributes = sorted(set(NAME_ATTRIBUTES) | set(merge_fields.values()))
        search_filter = f"(&{self.user_filter}(memberOf={escape_filter_chars(group_dn)}))"
        search_base = self.user_base_dn or self._domain_base()

        logger.info(f"Retrieving members of group: {group_dn}")
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        contacts = []
        try:
            entries = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes,
                paged_size=self.page_size,
                generator=True
            )
            for entry in entries:
                if entry.get('type') != 'searchResEntry':
                    continue
                contact = self._to_contact(entry, merge_fields)
                if contact is not None:
                    contacts.append(contact)
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP search failed for {group_dn}: {e}")

        logger.info(f"Retrieved {len(contacts)} contacts from {group_dn}")
        return contacts

    def _to_contact(self, entry: Dict[str, Any], merge_fields: Dict[str, str]) -> Optional[Contact]:
        values = entry.get('attributes', {})
        email = _first_value(values.get('mail'))
        if not email:
            logger.warning(f"Skipping LDAP entry without mail attribute: {entry.get('dn')}")
            return None

        return Contact(
            _first_value(values.get('givenName')),
            _first_value(values.get('sn')),
            email,
            *((field_name, _first_value(values.get(ldap_attribute)))
              for field_name, ldap_attribute in merge_fields.items())
        )

    def _domain_base(self) -> str:
        """Derive the search base from the DC components of the bind DN."""
        dc_parts = [part.strip() for part in self.bind_dn.split(',') if part.strip().upper().startswith('DC=')]
        if not dc_parts:
            raise LDAPQueryError("Cannot determine search base; set ldap.user_base_dn")
        return ','.join(dc_parts)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


def _first_value(value: Any) -> Optional[str]:
    """LDAP attributes may be single values or lists; return the first as text."""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None or value == '':
        return None
    return str(value)
