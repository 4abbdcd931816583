"""
Data types exchanged with a remote contact directory.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class MemberStatus(Enum):
    """Subscription status of a list member."""

    SUBSCRIBED = 'subscribed'
    UNSUBSCRIBED = 'unsubscribed'
    PENDING = 'pending'
    CLEANED = 'cleaned'
    TRANSACTIONAL = 'transactional'
    ARCHIVED = 'archived'

    @classmethod
    def parse(cls, value: Optional[str]) -> 'MemberStatus':
        try:
            return cls((value or '').lower())
        except ValueError:
            raise ValueError(f"Unknown member status: {value!r}")


@dataclass(frozen=True)
class RemoteList:
    """A contact list (audience) held by the directory."""

    id: str
    name: str


@dataclass(frozen=True)
class RemoteMember:
    """
    The directory's view of one contact on one list.

    Attributes holds the directory's stored field values. Values are
    normally strings; an empty string is how the directory reports a field
    that was never set.
    """

    email: str
    status: MemberStatus
    tags: FrozenSet[str] = frozenset()
    attributes: Dict[str, Any] = field(default_factory=dict)

    def has_tag(self, tag_name: str) -> bool:
        return tag_name in self.tags

    def attribute(self, name: str) -> Optional[str]:
        """Return a stored string field, or None when absent or not a string."""
        value = self.attributes.get(name)
        return value if isinstance(value, str) else None


@dataclass(frozen=True)
class MemberRequest:
    """
    Create-or-update request for one member.

    status_if_new only applies when the member does not exist yet; an
    existing member's status is never changed by an upsert.
    """

    email: str
    attributes: Dict[str, str] = field(default_factory=dict)
    status_if_new: MemberStatus = MemberStatus.SUBSCRIBED


class UpsertOutcome(Enum):
    OK = 'ok'
    REJECTED_INVALID = 'rejected_invalid'
    REJECTED_DELETED = 'rejected_deleted'
    FAILED = 'failed'


@dataclass(frozen=True)
class UpsertResult:
    """Result of an upsert, one of the UpsertOutcome kinds."""

    outcome: UpsertOutcome
    member: Optional[RemoteMember] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is UpsertOutcome.OK

    @classmethod
    def success(cls, member: Optional[RemoteMember] = None) -> 'UpsertResult':
        return cls(UpsertOutcome.OK, member=member)

    @classmethod
    def rejected_invalid(cls, detail: Optional[str] = None) -> 'UpsertResult':
        return cls(UpsertOutcome.REJECTED_INVALID, detail=detail)

    @classmethod
    def rejected_deleted(cls, detail: Optional[str] = None) -> 'UpsertResult':
        return cls(UpsertOutcome.REJECTED_DELETED, detail=detail)

    @classmethod
    def failed(cls, detail: str) -> 'UpsertResult':
        return cls(UpsertOutcome.FAILED, detail=detail)
