"""
Mirroring of local identity changes onto the secondary directory.

Every handler looks the remote counterpart up by ``cn`` on the secondary
connection and then creates, modifies, renames or deletes it. Directory-side
failures are raised so the host can abort the local operation that triggered
them; the only failure tolerated is an entry that already exists when an
administrator creates a user.
"""

import base64
import logging
from collections import OrderedDict
from typing import Callable, Dict, Any

from cryptography.hazmat.primitives import hashes
from ldap3.utils.dn import escape_rdn

from ldap_auth_sync.ldap_client import (
    DirectoryConnection,
    DirectoryOperationError,
    EntryAlreadyExistsError,
    LdapAttr,
    RemoteUserRecord,
)
from ldap_auth_sync.logging_setup import security_logger
from ldap_auth_sync.lookup import UserLookup, NoDirectoryUserError
from ldap_auth_sync.pool import DirectoryConnectionPool
from ldap_auth_sync.store import LocalIdentity, LocalIdentityStore

logger = logging.getLogger(__name__)

# Directory attribute -> local identity attribute
ATTRIBUTE_MAPPING = OrderedDict([
    ('sn', 'username'),
    ('uid', 'username'),
    ('mail', 'email'),
])

PASSWORD_ATTRIBUTE = 'userPassword'


class DirectorySyncError(Exception):
    """Raised when the secondary directory rejects a mirrored change."""
    pass


class RemoteEntryExistsError(DirectorySyncError):
    """Raised when a mirrored user already exists on the secondary directory."""
    pass


def ldap_password_hash(password: str) -> str:
    """
    Hash a password in the RFC 2307 ``{SHA}`` scheme.

    >>> ldap_password_hash('secret')
    '{SHA}5en6G6MezRroT3XKqkdPOmY/BfQ='
    """
    digest = hashes.Hash(hashes.SHA1())
    digest.update(password.encode('utf-8'))
    return '{SHA}' + base64.b64encode(digest.finalize()).decode('ascii')


class DirectorySyncer:
    """Applies local identity lifecycle events to the secondary directory."""

    def __init__(self, pool: DirectoryConnectionPool, lookup: UserLookup, store: LocalIdentityStore):
        self.pool = pool
        self.lookup = lookup
        self.store = store

    @property
    def connection(self) -> DirectoryConnection:
        return self.pool.secondary

    def _find_remote(self, username: str) -> RemoteUserRecord:
        return self.lookup.find(self.connection, username, LdapAttr.CN)

    def _apply(self, operation: str, dn: str, func: Callable[[], Any]):
        try:
            func()
        except EntryAlreadyExistsError as e:
            security_logger.log_directory_operation(operation, dn, False)
            raise RemoteEntryExistsError(f"Impossible to {operation} the directory user {dn}: {e}") from e
        except DirectoryOperationError as e:
            security_logger.log_directory_operation(operation, dn, False)
            raise DirectorySyncError(f"Impossible to {operation} the directory user {dn}: {e}") from e
        security_logger.log_directory_operation(operation, dn, True)

    def user_dn(self, username: str) -> str:
        base_dn = self.connection.endpoint.base_dn
        rdn = f"cn={escape_rdn(username)}"
        return f"{rdn},{base_dn}" if base_dn else rdn

    def create_remote_user(self, identity: LocalIdentity):
        """
        Create the directory entry for a local identity.

        Raises:
            RemoteEntryExistsError: If the entry already exists
            DirectorySyncError: If the directory rejects the entry
        """
        attributes: Dict[str, Any] = {'cn': identity.username}
        for ldap_attr, local_attr in ATTRIBUTE_MAPPING.items():
            value = getattr(identity, local_attr)
            if value:
                attributes[ldap_attr] = value
        if identity.password:
            attributes[PASSWORD_ATTRIBUTE] = ldap_password_hash(identity.password)

        dn = self.user_dn(identity.username)
        object_classes = self.connection.endpoint.schema.user_object_classes
        self._apply('create', dn, lambda: self.connection.add_entry(dn, object_classes, attributes))
        logger.info(f"Created directory user {dn}")

    def after_login(self, username: str, password: str):
        """
        Create the directory counterpart of a local user who just logged in.

        Login is the only moment the cleartext password of an existing local user
        is known, so users that predate the synchronization are mirrored here.
        """
        try:
            self._find_remote(username)
            return
        except NoDirectoryUserError:
            pass

        identity = self.store.find_by_username(username)
        if identity is None:
            logger.warning(f"Logged in user {username} has no local identity to mirror")
            return
        identity.password = password
        try:
            self.create_remote_user(identity)
        finally:
            identity.password = None

    def after_admin_create(self, identity: LocalIdentity):
        """Mirror a user created by an administrator; an existing entry is left alone."""
        try:
            self.create_remote_user(identity)
        except RemoteEntryExistsError as e:
            logger.info(f"Directory user for {identity.username} already exists, not created: {e}")

    def before_update(self, identity: LocalIdentity):
        """
        Mirror attribute, password and username changes before they are saved locally.

        The remote entry is looked up with the username as it was before the change.
        """
        old_username = identity.old_value('username')
        try:
            record = self._find_remote(old_username)
        except NoDirectoryUserError:
            if identity.password:
                self.create_remote_user(identity)
            return

        changes = OrderedDict()
        for ldap_attr, local_attr in ATTRIBUTE_MAPPING.items():
            if identity.is_attribute_changed(local_attr):
                changes[ldap_attr] = getattr(identity, local_attr)
        if identity.password:
            changes[PASSWORD_ATTRIBUTE] = ldap_password_hash(identity.password)

        if changes:
            self._apply('modify', record.dn, lambda: self.connection.modify_entry(record.dn, changes))
            logger.info(f"Updated directory user {record.dn}: {', '.join(changes)}")

        if old_username != identity.username:
            new_rdn = f"cn={escape_rdn(identity.username)}"
            self._apply('rename', record.dn, lambda: self.connection.rename_entry(record.dn, new_rdn))
            logger.info(f"Renamed directory user {record.dn} to {new_rdn}")

    def after_password_reset(self, identity: LocalIdentity):
        """Mirror a password set through the recovery flow."""
        try:
            record = self._find_remote(identity.username)
        except NoDirectoryUserError:
            if identity.password:
                self.create_remote_user(identity)
            return

        if not identity.password:
            return
        changes = {PASSWORD_ATTRIBUTE: ldap_password_hash(identity.password)}
        self._apply('modify', record.dn, lambda: self.connection.modify_entry(record.dn, changes))
        logger.info(f"Updated password of directory user {record.dn}")

    def before_delete(self, identity: LocalIdentity):
        """Delete the directory counterpart of a local user, if there is one."""
        try:
            record = self._find_remote(identity.username)
        except NoDirectoryUserError:
            logger.debug(f"No directory user for {identity.username}, nothing to delete")
            return

        self._apply('delete', record.dn, lambda: self.connection.delete_entry(record.dn))
        logger.info(f"Deleted directory user {record.dn}")
