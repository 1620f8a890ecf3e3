"""
Post-authentication identity reconciliation.

Once a directory has accepted a user's credentials, this module finds the local
identity for that user, provisioning one on first login, or falls back to the
shared default identity when local users are not created.
"""

import logging
import secrets
from datetime import datetime
from typing import Any

from ldap_auth_sync.ldap_client import LdapAttr, RemoteUserRecord
from ldap_auth_sync.lookup import UserLookup, FALLBACK_ATTRIBUTES
from ldap_auth_sync.pool import DirectoryConnectionPool
from ldap_auth_sync.roles import RoleAssigner
from ldap_auth_sync.store import LocalIdentity, LocalIdentityStore, Profile, PersistenceError

logger = logging.getLogger(__name__)


class NoRemoteUserError(Exception):
    """Raised when a user who just authenticated cannot be found in the directory."""
    pass


def placeholder_password() -> str:
    """Random password stored for directory users; nobody knows it, so it never matches."""
    return secrets.token_urlsafe(32)


class IdentityReconciler:
    """Resolves or provisions the local identity of a directory-authenticated user."""

    DEFAULT_IDENTITY_EMAIL = 'default@user.com'

    def __init__(self, pool: DirectoryConnectionPool, lookup: UserLookup, store: LocalIdentityStore,
                 role_assigner: RoleAssigner, create_local_users: bool = True, default_user_id: Any = -1):
        self.pool = pool
        self.lookup = lookup
        self.store = store
        self.role_assigner = role_assigner
        self.create_local_users = create_local_users
        self.default_user_id = default_user_id

    def resolve(self, username_inserted: str) -> LocalIdentity:
        """
        Return the local identity for a user who passed directory authentication.

        Args:
            username_inserted: The login exactly as the user typed it

        Returns:
            Local identity to open the session with

        Raises:
            NoRemoteUserError: If the user cannot be found on the primary directory
            PersistenceError: If a new identity cannot be saved
            RoleNotFoundError: If a default role is not registered
            ConfigurationError: If default_roles is malformed
        """
        record = self.lookup.find_first(self.pool.primary, username_inserted, FALLBACK_ATTRIBUTES)
        if record is None:
            raise NoRemoteUserError(f"Impossible to find directory user {username_inserted}")

        username = record.first(LdapAttr.UID) or username_inserted

        identity = self.store.find_by_username(username)
        if identity is not None:
            return identity

        if self.create_local_users:
            return self._provision(username, record)
        return self._default_identity(username)

    def _provision(self, username: str, record: RemoteUserRecord) -> LocalIdentity:
        identity = LocalIdentity(
            username=username,
            email=record.first(LdapAttr.MAIL),
            password=placeholder_password(),
            confirmed_at=datetime.now(),
        )
        if not self.store.save(identity):
            raise PersistenceError(f"Impossible to create local user {username}")
        identity.password = None
        logger.info(f"Created local user {username} (id={identity.id}) from {record.dn}")

        name = record.first(LdapAttr.CN)
        if name:
            profile = self.store.find_profile(identity.id) or Profile(identity.id)
            profile.name = name
            if not self.store.save_profile(profile):
                logger.warning(f"Could not save profile name for local user {username}")

        self.role_assigner.assign_defaults(identity.id)
        return identity

    def _default_identity(self, username: str) -> LocalIdentity:
        identity = self.store.find_by_id(self.default_user_id)
        if identity is None:
            identity = LocalIdentity(
                id=self.default_user_id,
                email=self.DEFAULT_IDENTITY_EMAIL,
                password=placeholder_password(),
                confirmed_at=datetime.now(),
            )
            if not self.store.save(identity):
                raise PersistenceError(f"Impossible to create the default user {self.default_user_id}")
            identity.password = None
            logger.info(f"Created default user {self.default_user_id}")
            self.role_assigner.assign_defaults(identity.id)

        # Shown in the session only; the shared record is not saved per user
        identity.username = username
        return identity
