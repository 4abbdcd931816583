"""
Roster sources: where the contacts for a sync job come from.
"""

from typing import Any, Dict, List, Optional

from roster_sync.contact import Contact
from roster_sync.sources.file_source import RosterError, load_roster_file
from roster_sync.sources.ldap_source import LDAPRosterSource, LDAPConnectionError, LDAPQueryError


def load_roster(roster_config: Dict[str, Any], ldap_source: Optional[LDAPRosterSource] = None) -> List[Contact]:
    """
    Load the roster described by a sync job's `roster` section.

    Args:
        roster_config: {'source': 'file', 'path': ...} or
            {'source': 'ldap', 'group_dn': ..., 'merge_fields': {...}}
        ldap_source: Connected LDAP source, required for 'ldap' rosters

    Raises:
        RosterError: Unknown source, or an LDAP roster without a connection
        LDAPQueryError: If the LDAP search fails
    """
    source = roster_config.get('source')

    if source == 'file':
        return load_roster_file(roster_config['path'])

    if source == 'ldap':
        if ldap_source is None:
            raise RosterError("LDAP roster requested but no LDAP connection is configured")
        return ldap_source.fetch_contacts(roster_config['group_dn'], roster_config.get('merge_fields'))

    raise RosterError(f"Unknown roster source: {source!r}")


__all__ = [
    'load_roster',
    'load_roster_file',
    'LDAPRosterSource',
    'LDAPConnectionError',
    'LDAPQueryError',
    'RosterError',
]
