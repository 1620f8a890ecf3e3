"""
Callbacks invoked by the host framework.

The host calls these explicitly from its own login, recovery and user
administration flows; nothing here depends on the host's event mechanism.
"""

import logging
from typing import Any, Optional

from ldap_auth_sync.ldap_client import LdapAttr
from ldap_auth_sync.logging_setup import security_logger
from ldap_auth_sync.lookup import UserLookup, NoDirectoryUserError
from ldap_auth_sync.pool import DirectoryConnectionPool
from ldap_auth_sync.reconciler import IdentityReconciler
from ldap_auth_sync.store import LocalIdentity, SessionManager, Responder
from ldap_auth_sync.syncer import DirectorySyncer
from ldap_auth_sync.verifier import CredentialVerifier

logger = logging.getLogger(__name__)


class AuthenticationHooks:
    """Login and password recovery callbacks."""

    def __init__(self, pool: DirectoryConnectionPool, lookup: UserLookup, verifier: CredentialVerifier,
                 reconciler: IdentityReconciler, session: SessionManager, responder: Responder,
                 remember_login_lifespan: int = 1209600, allow_password_recovery: bool = False,
                 password_recovery_redirect: Any = None):
        self.pool = pool
        self.lookup = lookup
        self.verifier = verifier
        self.reconciler = reconciler
        self.session = session
        self.responder = responder
        self.remember_login_lifespan = remember_login_lifespan
        self.allow_password_recovery = allow_password_recovery
        self.password_recovery_redirect = password_recovery_redirect

    def before_login(self, username: str, password: str, remember_me: bool = False) -> Optional[LocalIdentity]:
        """
        Handle a login form submission before the host's own authentication.

        Returns:
            The logged in identity, or None to let the host's login proceed
            (empty credentials, or credentials no directory accepted)
        """
        if not username or not password:
            return None

        if not self.verifier.verify(username, password):
            return None

        identity = self.reconciler.resolve(username)

        duration = self.remember_login_lifespan if remember_me else 0
        self.session.login(identity, duration)
        security_logger.log_directory_login(identity.username, identity.id)
        logger.info(f"User '{identity.username}' logged in through the directory")

        self.responder.redirect_back()
        return identity

    def before_recovery_request(self, email: str) -> bool:
        """
        Stop password recovery for directory users when it is not allowed.

        Returns:
            True if the request was redirected away, False to let recovery proceed

        Raises:
            MultipleUsersFoundError: If several directory entries carry the email
        """
        try:
            self.lookup.find(self.pool.primary, email, LdapAttr.MAIL)
        except NoDirectoryUserError:
            return False

        if self.allow_password_recovery:
            return False

        security_logger.log_security_event('Password recovery refused for directory user', f"email={email}")
        self.responder.redirect(self.password_recovery_redirect)
        return True


class LifecycleHooks:
    """
    Local identity lifecycle callbacks.

    Without a syncer (synchronization disabled) every callback does nothing.
    """

    def __init__(self, syncer: Optional[DirectorySyncer] = None):
        self.syncer = syncer

    @property
    def enabled(self) -> bool:
        return self.syncer is not None

    def after_login(self, username: str, password: str):
        if self.syncer:
            self.syncer.after_login(username, password)

    def after_create(self, identity: LocalIdentity):
        if self.syncer:
            self.syncer.after_admin_create(identity)

    def before_update(self, identity: LocalIdentity):
        if self.syncer:
            self.syncer.before_update(identity)

    def after_password_reset(self, identity: LocalIdentity):
        if self.syncer:
            self.syncer.after_password_reset(identity)

    def before_delete(self, identity: LocalIdentity):
        if self.syncer:
            self.syncer.before_delete(identity)
