"""
Remote contact directory integrations.

Each module in this package provides one RemoteDirectoryBase subclass; the
orchestrator picks the module named by the `directory.module` setting.
"""

from roster_sync.directory.base import RemoteDirectoryBase, DirectoryAPIError, DirectoryAuthenticationError
from roster_sync.directory.models import (
    MemberRequest,
    MemberStatus,
    RemoteList,
    RemoteMember,
    UpsertOutcome,
    UpsertResult,
)

__all__ = [
    'RemoteDirectoryBase',
    'DirectoryAPIError',
    'DirectoryAuthenticationError',
    'MemberRequest',
    'MemberStatus',
    'RemoteList',
    'RemoteMember',
    'UpsertOutcome',
    'UpsertResult',
]
