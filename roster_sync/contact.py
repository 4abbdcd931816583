"""
Contact record for roster synchronization.

A Contact is one person the caller wants tagged on the remote list. It holds
the identity (email), the name fields and an open set of extra attributes
that are kept in sync with the remote directory's merge fields.
"""

from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


def _text(value: Any) -> Optional[str]:
    # YAML rosters yield ints and booleans for unquoted values
    return None if value is None else str(value)


class Contact:
    """
    One person to be synchronized.

    Instances are treated as read-only once constructed: the attribute
    mapping is exposed through a read-only view and `replace()` returns a
    modified copy rather than changing the original.
    """

    __slots__ = ('_first_name', '_last_name', '_email', '_attributes')

    def __init__(self, first_name: Optional[str], last_name: Optional[str], email: Optional[str],
                 *attribute_pairs: Tuple[str, Optional[str]], **attributes: Optional[str]):
        """
        Create a contact.

        Args:
            first_name: Given name (may be None)
            last_name: Family name (may be None)
            email: Email address, the identity key
            *attribute_pairs: (name, value) tuples for extra attributes
            **attributes: Extra attributes given as keywords, applied after the pairs

        Duplicate attribute names are resolved by last write wins. A value of
        None means "not set" and is not stored.
        """
        self._first_name = first_name
        self._last_name = last_name
        self._email = email or ''

        merged: Dict[str, str] = {}
        for name, value in list(attribute_pairs) + list(attributes.items()):
            if not name:
                raise ValueError("Attribute name must not be empty")
            if value is None:
                merged.pop(name, None)
            else:
                merged[name] = str(value)
        self._attributes = MappingProxyType(merged)

    @property
    def first_name(self) -> Optional[str]:
        return self._first_name

    @property
    def last_name(self) -> Optional[str]:
        return self._last_name

    @property
    def email(self) -> str:
        return self._email

    @property
    def attributes(self) -> Mapping[str, str]:
        return self._attributes

    @property
    def is_synchronizable(self) -> bool:
        """A contact without an email address cannot be matched remotely."""
        return bool(self._email)

    def attribute(self, name: str) -> Optional[str]:
        """Return the named attribute, or None when it is not set."""
        return self._attributes.get(name)

    def display_name(self) -> str:
        """
        Build the name shown in logs.

        The first name alone when there is no last name, otherwise first and
        last name separated by one space (not added if the first name already
        ends with one). Blank names are ignored.
        """
        name = ''
        if self._first_name and self._first_name.strip():
            name = self._first_name

        if self._last_name and self._last_name.strip():
            if not name.endswith(' '):
                name += ' '
            name += self._last_name

        return name

    def replace(self, **changes: Any) -> 'Contact':
        """
        Return a copy with the given fields changed.

        Accepts first_name, last_name, email and attributes (a mapping that
        replaces the whole attribute set).
        """
        unknown = set(changes) - {'first_name', 'last_name', 'email', 'attributes'}
        if unknown:
            raise TypeError(f"Unknown contact fields: {', '.join(sorted(unknown))}")

        attributes = changes.get('attributes', self._attributes)
        return Contact(
            changes.get('first_name', self._first_name),
            changes.get('last_name', self._last_name),
            changes.get('email', self._email),
            *attributes.items()
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Contact':
        """Build a contact from a roster entry mapping."""
        extra: Iterable[Tuple[str, Any]] = (data.get('attributes') or {}).items()
        return cls(
            _text(data.get('first_name')),
            _text(data.get('last_name')),
            _text(data.get('email')),
            *((name, _text(value)) for name, value in extra)
        )

    def _key(self):
        return (self._first_name, self._last_name, self._email, tuple(sorted(self._attributes.items())))

    def __eq__(self, other):
        if not isinstance(other, Contact):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self):
        return (f"Contact(first_name={self._first_name!r}, last_name={self._last_name!r}, "
                f"email={self._email!r}, attributes={dict(self._attributes)!r})")

    def __str__(self):
        return f"{self.display_name()}: {self._email}"
