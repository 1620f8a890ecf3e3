"""
Remote user lookup.

Finds exactly one user entry on a directory connection for an (attribute, value)
pair, and distinguishes "nobody" from "more than one" from "not a user".
"""

import logging
from typing import Iterable, Optional

from ldap_auth_sync.ldap_client import DirectoryConnection, RemoteUserRecord

logger = logging.getLogger(__name__)

# Attributes tried, in order, when all we have is what the user typed
FALLBACK_ATTRIBUTES = ('uid', 'cn', 'samaccountname')

USER_OBJECT_CLASSES = frozenset(['person', 'organizationalperson', 'inetorgperson', 'user'])


class NoDirectoryUserError(Exception):
    """Raised when a search matches no user entry."""
    pass


class UnexpectedEntryTypeError(NoDirectoryUserError):
    """Raised when the single matching entry is not a user (e.g. a group)."""
    pass


class MultipleUsersFoundError(Exception):
    """Raised when a search that must be unique matches several entries."""

    def __init__(self, attribute: str, value: str, count: int):
        self.attribute = attribute
        self.value = value
        self.count = count
        super().__init__(f"{count} directory entries match {attribute}={value}")


class UserLookup:
    """
    Finds remote user records.

    If an identifying attribute override is configured it is always used as the
    equality key, whatever attribute the caller asks for.
    """

    def __init__(self, identification_attribute: Optional[str] = None):
        self.identification_attribute = identification_attribute

    def find(self, connection: DirectoryConnection, value: str, attribute: str) -> RemoteUserRecord:
        """
        Find the single user entry where attribute equals value.

        Args:
            connection: Directory connection to search
            value: Value to match
            attribute: Attribute to compare

        Returns:
            The matching record

        Raises:
            NoDirectoryUserError: If nothing matches
            UnexpectedEntryTypeError: If the match is not a user entry
            MultipleUsersFoundError: If more than one entry matches
        """
        key = self.identification_attribute or attribute
        records = connection.search(key, value)

        if not records:
            raise NoDirectoryUserError(f"No directory user with {key}={value} on {connection.name}")

        if len(records) > 1:
            raise MultipleUsersFoundError(key, value, len(records))

        record = records[0]
        if not USER_OBJECT_CLASSES.intersection(record.object_classes):
            raise UnexpectedEntryTypeError(
                f"Search for {key}={value} returned a non-user entry {record.dn} "
                f"(objectClass: {', '.join(record.object_classes) or 'none'})")

        return record

    def find_first(self, connection: DirectoryConnection, value: str,
                   attributes: Iterable[str] = FALLBACK_ATTRIBUTES) -> Optional[RemoteUserRecord]:
        """
        Try each attribute in turn and return the first user found.

        Returns:
            The first matching record, or None if no attribute matched

        Raises:
            MultipleUsersFoundError: If an attribute matches several entries
        """
        for attribute in attributes:
            try:
                return self.find(connection, value, attribute)
            except NoDirectoryUserError as e:
                logger.debug(f"{e}")
                continue
        return None
