"""
Roster Tag Sync - Keep one tag on a remote contact list in step with a local roster.

This package reconciles a roster of contacts (from a file or an LDAP group)
against a remote contact directory such as a Mailchimp audience, so that
exactly the roster's contacts carry the sync tag and their name and custom
fields match, then re-reads the directory to verify the result.
"""

__version__ = "1.0.0"
__author__ = "Roster Sync Team"
