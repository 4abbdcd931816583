"""
Reconciliation engine.

Brings one tag on a remote list in line with a roster of contacts:

1. register any new attribute names seen on the roster as synchronized fields
2. snapshot the list's members and the baseline tagged/unsubscribed counts
3. for members on the roster, add the tag if missing and push changed fields;
   for members not on the roster, remove the tag if present
4. create and tag the roster contacts the list does not have yet
5. re-read the list and verify the tagged set and its fields

The remote directory has no transactions. Once step 3 has started, any
failure leaves the list in an unknown state and is reported as such; nothing
is rolled back.

Only one sync per list may run at a time. Within a process this is enforced
with a per-list lock; across processes the caller must ensure it.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Set

from roster_sync.contact import Contact
from roster_sync.directory.base import RemoteDirectoryBase, DirectoryAPIError
from roster_sync.directory.models import MemberRequest, MemberStatus, RemoteMember, UpsertOutcome
from roster_sync.logging_setup import log_sink

logger = logging.getLogger(__name__)

Sink = Callable[[str, bool], None]

UNKNOWN_STATE_WARNING = (
    "THIS ERROR OCCURRED AFTER CHANGES WERE SENT TO THE REMOTE DIRECTORY. "
    "THE LIST IS NOW IN AN UNKNOWN STATE. Do you need to correct it manually?"
)


class SyncError(Exception):
    """Base exception for reconciliation errors."""
    pass


class ListNotFound(SyncError):
    """No remote list has the requested name. Raised before any change is made."""

    def __init__(self, list_name: str):
        super().__init__(f'List "{list_name}" cannot be found')
        self.list_name = list_name


class DuplicateContactError(SyncError, ValueError):
    """The roster holds more than one contact with the same email address."""

    def __init__(self, emails: Sequence[str]):
        super().__init__(f"Roster contains duplicate email addresses: {', '.join(emails)}")
        self.emails = list(emails)


class RemoteOperationFailed(SyncError):
    """A remote write failed part-way through; the list state is unknown."""
    pass


class ValidationMismatch(SyncError):
    """The list read back after the sync does not match the roster."""

    def __init__(self, message: str, expected_count: Optional[int] = None, tagged_count: Optional[int] = None,
                 extra_emails: Optional[List[str]] = None, mismatched_fields: Optional[List[str]] = None,
                 failed_writes: Optional[List[str]] = None):
        super().__init__(message)
        self.expected_count = expected_count
        self.tagged_count = tagged_count
        self.extra_emails = extra_emails or []
        self.mismatched_fields = mismatched_fields or []
        self.failed_writes = failed_writes or []


def fields_equal(remote_value: Optional[str], local_value: Optional[str]) -> bool:
    """
    Compare a stored remote field with a contact's value.

    The directory has no notion of an unset field and reports it as an empty
    string, so an empty remote value matches an absent local one.
    """
    return remote_value == local_value or (remote_value == '' and local_value is None)


class SyncField(NamedTuple):
    """A remote field name and how to read its value from a contact."""

    name: str
    projection: Callable[[Contact], Optional[str]]

    def value_for(self, contact: Contact) -> Optional[str]:
        return self.projection(contact)


def _attribute_projection(name: str) -> Callable[[Contact], Optional[str]]:
    def projection(contact: Contact) -> Optional[str]:
        return contact.attribute(name)
    return projection


BUILTIN_FIELDS = (
    SyncField('FNAME', lambda contact: contact.first_name),
    SyncField('LNAME', lambda contact: contact.last_name),
)


class FieldRegistry:
    """
    The fields kept in sync, in registration order.

    Starts with the first/last name fields and grows as new attribute names
    appear on rosters. Fields are never removed, so a field seen once keeps
    being compared on every later sync run by the same engine.
    """

    def __init__(self, fields: Optional[Iterable[SyncField]] = None):
        self._fields: Dict[str, SyncField] = {}
        for sync_field in (BUILTIN_FIELDS if fields is None else fields):
            self.register(sync_field)

    def register(self, sync_field: SyncField) -> bool:
        """Add a field. Returns False if a field with that name is already known."""
        if sync_field.name in self._fields:
            return False
        self._fields[sync_field.name] = sync_field
        return True

    def discover(self, roster: Iterable[Contact]) -> List[str]:
        """Register every attribute name on the roster that is not yet known. Returns the new names."""
        added = []
        for contact in roster:
            for name in contact.attributes:
                if self.register(SyncField(name, _attribute_projection(name))):
                    added.append(name)
        return added

    @property
    def names(self) -> List[str]:
        return list(self._fields)

    def __iter__(self) -> Iterator[SyncField]:
        return iter(list(self._fields.values()))

    def __len__(self) -> int:
        return len(self._fields)

    def __contains__(self, name: str) -> bool:
        return name in self._fields


@dataclass
class SyncReport:
    """
    Outcome of a successful sync.

    The three email sets are disjoint. Rejected addresses were refused by the
    directory and are not tagged. Unsubscribed addresses are tagged but were
    left unsubscribed; the roster owner may want to record that preference.
    """

    rejected_as_invalid: Set[str] = field(default_factory=set)
    rejected_as_permanently_deleted: Set[str] = field(default_factory=set)
    already_unsubscribed: Set[str] = field(default_factory=set)

    tagged_before: int = 0
    tagged_after: int = 0
    tags_added: int = 0
    tags_removed: int = 0
    members_updated: int = 0
    members_created: int = 0

    def rejected_emails(self) -> Set[str]:
        return self.rejected_as_invalid | self.rejected_as_permanently_deleted

    def summary(self) -> Dict[str, Any]:
        return {
            'tagged_before': self.tagged_before,
            'tagged_after': self.tagged_after,
            'tags_added': self.tags_added,
            'tags_removed': self.tags_removed,
            'members_updated': self.members_updated,
            'members_created': self.members_created,
            'rejected_as_invalid': sorted(self.rejected_as_invalid),
            'rejected_as_permanently_deleted': sorted(self.rejected_as_permanently_deleted),
            'already_unsubscribed': sorted(self.already_unsubscribed),
        }


class ReconciliationEngine:
    """
    Reconciles rosters against lists held by a remote directory.

    The engine keeps no state between calls except its field registry. All
    remote calls for one sync are made one after another through the given
    directory client.

    The per-list locks are shared by all engines and kept for the life of the
    process, one per list name ever synced. Plain locks cannot be weakly
    referenced, so entries are never evicted.
    """

    _list_locks: Dict[str, threading.Lock] = {}
    _list_locks_guard = threading.Lock()

    def __init__(self, directory: RemoteDirectoryBase, sink: Optional[Sink] = None,
                 registry: Optional[FieldRegistry] = None):
        """
        Args:
            directory: Remote directory client
            sink: Callable receiving (message, is_fatal) for progress and failures
            registry: Field registry; a fresh one with the name fields if omitted
        """
        self.directory = directory
        self.sink = sink or log_sink
        self.registry = registry if registry is not None else FieldRegistry()

    def sync(self, roster: Iterable[Contact], tag_name: str, list_name: str) -> SyncReport:
        """
        Make `tag_name` on list `list_name` mark exactly the roster's contacts.

        Args:
            roster: Contacts that should carry the tag; emails must be unique
            tag_name: The tag to reconcile
            list_name: Exact name of the remote list

        Returns:
            SyncReport of rejected and already-unsubscribed addresses

        Raises:
            DuplicateContactError: Roster repeats an email (nothing changed)
            ListNotFound: No list is named `list_name` (nothing changed)
            DirectoryAPIError: Reading the list failed before any change was made
            RemoteOperationFailed: A remote write or any later step failed; list state unknown
            ValidationMismatch: The list read back does not match; list state unknown
        """
        if not tag_name:
            raise ValueError("Tag name must not be empty")

        roster = list(roster)
        contacts = self._prepare_roster(roster)

        with self._lock_for(list_name):
            return self._sync_list(roster, contacts, tag_name, list_name)

    @classmethod
    def _lock_for(cls, list_name: str) -> threading.Lock:
        with cls._list_locks_guard:
            return cls._list_locks.setdefault(list_name, threading.Lock())

    def _prepare_roster(self, roster: List[Contact]) -> List[Contact]:
        contacts = []
        seen = set()
        duplicates = []
        for contact in roster:
            if not contact.is_synchronizable:
                logger.warning(f"Skipping contact without an email address: {contact.display_name() or '(no name)'}")
                continue
            if contact.email in seen:
                duplicates.append(contact.email)
            seen.add(contact.email)
            contacts.append(contact)

        if duplicates:
            raise DuplicateContactError(sorted(set(duplicates)))
        return contacts

    def _sync_list(self, roster: List[Contact], contacts: List[Contact], tag_name: str,
                   list_name: str) -> SyncReport:
        new_fields = self.registry.discover(roster)
        if new_fields:
            logger.info(f"Now synchronizing additional fields: {', '.join(new_fields)}")

        list_id = self._resolve_list(list_name)

        members = self.directory.get_members(list_id)
        tagged_before = sum(1 for member in members if member.has_tag(tag_name))
        unsubscribed_before = self._count_unsubscribed(members)
        self.sink(f"\t\tList contains {tagged_before} contacts with this tag before this update", False)

        report = SyncReport(tagged_before=tagged_before)

        try:
            pending = self._reconcile_existing(list_id, tag_name, members, contacts, report)
            synced, failed_writes = self._create_missing(list_id, tag_name, pending, contacts, report)
            current_members = self.directory.get_members(list_id)
        except RemoteOperationFailed as e:
            self._fail_after_changes(str(e))
            raise
        except DirectoryAPIError as e:
            message = f"Remote operation failed while syncing tag '{tag_name}': {e}"
            self._fail_after_changes(message)
            raise RemoteOperationFailed(message) from e
        except Exception as e:
            message = f"Unexpected error while syncing tag '{tag_name}': {type(e).__name__}: {e}"
            self._fail_after_changes(message)
            raise RemoteOperationFailed(message) from e

        self._validate(current_members, tag_name, synced, tagged_before, unsubscribed_before,
                       failed_writes, report)
        return report

    def _resolve_list(self, list_name: str) -> str:
        remote_list = self.directory.find_list(list_name)
        if remote_list is None:
            error = ListNotFound(list_name)
            self.sink(str(error), True)
            raise error
        return remote_list.id

    def _reconcile_existing(self, list_id: str, tag_name: str, members: List[RemoteMember],
                            contacts: List[Contact], report: SyncReport) -> List[Contact]:
        """Handle every member already on the list. Returns the contacts the list lacks."""
        remaining = {contact.email: contact for contact in contacts}

        for member in members:
            contact = remaining.pop(member.email, None)

            if contact is None:
                if member.has_tag(tag_name):
                    self.directory.set_tag(list_id, member.email, tag_name, False)
                    report.tags_removed += 1
                    logger.info(f"Removed tag '{tag_name}' from {member.email}")
                continue

            if not member.has_tag(tag_name):
                self.directory.set_tag(list_id, member.email, tag_name, True)
                report.tags_added += 1
                logger.info(f"Added tag '{tag_name}' to {contact}")

            changes = self._changed_fields(member, contact)
            if changes:
                result = self.directory.upsert_member(list_id, MemberRequest(member.email, changes))
                if not result.ok:
                    raise RemoteOperationFailed(
                        f"Updating fields {', '.join(changes)} for {member.email} failed: "
                        f"{result.outcome.value} {result.detail or ''}".rstrip()
                    )
                report.members_updated += 1
                logger.info(f"Updated {', '.join(changes)} for {contact}")

            if member.status is MemberStatus.UNSUBSCRIBED:
                report.already_unsubscribed.add(member.email)

        return list(remaining.values())

    def _changed_fields(self, member: RemoteMember, contact: Contact) -> Dict[str, str]:
        changes = {}
        for sync_field in self.registry:
            value = sync_field.value_for(contact)
            if not fields_equal(member.attribute(sync_field.name), value):
                # The directory clears a field when given an empty string
                changes[sync_field.name] = '' if value is None else value
        return changes

    def _create_missing(self, list_id: str, tag_name: str, pending: List[Contact], contacts: List[Contact],
                        report: SyncReport):
        """
        Create and tag contacts the list does not have.

        A failed create or tag is recorded and the remaining contacts are
        still processed; validation then reports the overall damage.

        Returns:
            (contacts expected to be tagged keyed by email, failed write descriptions)
        """
        synced = {contact.email: contact for contact in contacts}
        failed_writes = []

        for contact in pending:
            attributes = {}
            for sync_field in self.registry:
                value = sync_field.value_for(contact)
                attributes[sync_field.name] = '' if value is None else value

            result = self.directory.upsert_member(
                list_id, MemberRequest(contact.email, attributes, status_if_new=MemberStatus.SUBSCRIBED)
            )

            if result.outcome is UpsertOutcome.REJECTED_DELETED:
                del synced[contact.email]
                report.rejected_as_permanently_deleted.add(contact.email)
                logger.warning(f"{contact} was permanently deleted from the list and cannot be re-added")
                continue

            if result.outcome is UpsertOutcome.REJECTED_INVALID:
                del synced[contact.email]
                report.rejected_as_invalid.add(contact.email)
                logger.warning(f"{contact} was rejected as an invalid address")
                continue

            if result.outcome is UpsertOutcome.FAILED:
                failed_writes.append(f"{contact.email}: create failed ({result.detail})")
                logger.error(f"Failed to create {contact}: {result.detail}")
                continue

            try:
                self.directory.set_tag(list_id, contact.email, tag_name, True)
            except DirectoryAPIError as e:
                failed_writes.append(f"{contact.email}: tagging failed ({e})")
                logger.error(f"Failed to tag new member {contact}: {e}")
                continue

            report.members_created += 1
            report.tags_added += 1
            logger.info(f"Added {contact} with tag '{tag_name}'")

        return synced, failed_writes

    def _validate(self, members: List[RemoteMember], tag_name: str, synced: Dict[str, Contact],
                  tagged_before: int, unsubscribed_before: int, failed_writes: List[str],
                  report: SyncReport) -> None:
        """Check a fresh read of the list against what the sync should have produced."""
        unsubscribed_now = self._count_unsubscribed(members)
        if unsubscribed_now != unsubscribed_before:
            self._fail_validation(
                f"Unsubscribed contacts have gone from {unsubscribed_before} to {unsubscribed_now}. "
                f"This count should not have changed.",
                failed_writes
            )

        tagged = [member for member in members if member.has_tag(tag_name)]
        if len(tagged) != len(synced):
            self._fail_validation(
                f"Number of contacts with tag '{tag_name}' ({len(tagged)}) "
                f"does not match sync list count ({len(synced)})",
                failed_writes, expected_count=len(synced), tagged_count=len(tagged)
            )

        extra_emails = []
        mismatched_fields = []
        for member in tagged:
            contact = synced.get(member.email)
            if contact is None:
                extra_emails.append(member.email)
                continue

            for sync_field in self.registry:
                remote_value = member.attribute(sync_field.name)
                local_value = sync_field.value_for(contact)
                if not fields_equal(remote_value, local_value):
                    mismatched_fields.append(
                        f"{member.email}: field '{sync_field.name}' ({remote_value}) "
                        f"does not match sync list value ({local_value})"
                    )

        if extra_emails or mismatched_fields:
            sections = []
            if extra_emails:
                sections.append(f"List contains these contacts for tag '{tag_name}' that weren't in the "
                                f"list of contacts to sync:\n\t" + '\n\t'.join(extra_emails))
            if mismatched_fields:
                sections.append("Found some contacts whose fields weren't updated:\n\t"
                                + '\n\t'.join(mismatched_fields))
            self._fail_validation(
                '\n'.join(sections), failed_writes, expected_count=len(synced), tagged_count=len(tagged),
                extra_emails=extra_emails, mismatched_fields=mismatched_fields
            )

        report.tagged_after = len(tagged)
        self.sink(f"Validation passed! List now contains *{len(tagged)}* contacts with this tag. "
                  f"(Was *{tagged_before}*)", False)

    def _fail_validation(self, message: str, failed_writes: List[str], **details) -> None:
        if failed_writes:
            message += "\nThese writes failed during the sync:\n\t" + '\n\t'.join(failed_writes)
        self._fail_after_changes(message)
        raise ValidationMismatch(message, failed_writes=failed_writes, **details)

    def _fail_after_changes(self, message: str) -> None:
        self.sink(f"{message}\n{UNKNOWN_STATE_WARNING}", True)

    @staticmethod
    def _count_unsubscribed(members: List[RemoteMember]) -> int:
        return sum(1 for member in members if member.status is MemberStatus.UNSUBSCRIBED)
