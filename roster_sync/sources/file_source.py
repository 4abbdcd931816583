"""
Roster files.

Two formats are accepted, chosen by file extension:

YAML (.yaml, .yml) - a list of mappings, or a mapping with a `contacts` list:

    - first_name: Leslie
      last_name: Knope
      email: leslie.knope@parksdept.com
      attributes:
        CITY: Pawnee

CSV (.csv) - a header row with first_name, last_name and email columns. Every
other column is an attribute named after its header; an empty cell means the
attribute is not set for that contact.
"""

import csv
import logging
from typing import Any, List

import yaml

from roster_sync.contact import Contact

logger = logging.getLogger(__name__)

NAME_COLUMNS = ('first_name', 'last_name', 'email')


class RosterError(Exception):
    """Raised when a roster cannot be read or is malformed."""
    pass


def load_roster_file(path: str) -> List[Contact]:
    """
    Load contacts from a roster file.

    Args:
        path: Path to a .yaml/.yml or .csv file

    Returns:
        Contacts in file order

    Raises:
        RosterError: If the file is missing, unreadable or malformed
    """
    lowered = path.lower()
    try:
        if lowered.endswith(('.yaml', '.yml')):
            contacts = _load_yaml(path)
        elif lowered.endswith('.csv'):
            contacts = _load_csv(path)
        else:
            raise RosterError(f"Unsupported roster file type: {path}")
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise RosterError(f"Cannot read roster file {path}: {e}")

    logger.info(f"Loaded {len(contacts)} contacts from {path}")
    return contacts


def _load_yaml(path: str) -> List[Contact]:
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RosterError(f"Invalid YAML in roster file {path}: {e}")

    if isinstance(data, dict):
        data = data.get('contacts')
    if data is None:
        return []
    if not isinstance(data, list):
        raise RosterError(f"Roster file {path} must contain a list of contacts")

    contacts = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise RosterError(f"Roster entry {index} in {path} is not a mapping")
        attributes: Any = entry.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise RosterError(f"Roster entry {index} in {path}: attributes must be a mapping")
        contacts.append(Contact.from_dict(entry))
    return contacts


def _load_csv(path: str) -> List[Contact]:
    with open(path, 'r', encoding='utf-8-sig', newline='') as f:
        reader = csv.DictReader(f)
        headers = reader.fieldnames or []
        if 'email' not in headers:
            raise RosterError(f"Roster file {path} has no 'email' column")

        attribute_columns = [header for header in headers if header and header not in NAME_COLUMNS]
        contacts = []
        for row in reader:
            attributes = [(column, row.get(column) or None) for column in attribute_columns]
            contacts.append(Contact(
                (row.get('first_name') or '').strip() or None,
                (row.get('last_name') or '').strip() or None,
                (row.get('email') or '').strip(),
                *attributes
            ))
    return contacts
