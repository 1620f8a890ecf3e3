"""
Local identity model and collaborator interfaces.

The local user store, role storage, session handling and HTTP responses belong to
the host application. This module defines the identity record the core works
with and the abstract interfaces the host must implement for it.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when the local store fails to save a record."""
    pass


class LocalIdentity:
    """
    A local user record.

    ``password`` is the transient cleartext password, set only while a request
    that knows it (login, password change, admin create) is being handled.
    ``old_attributes`` holds the values as last loaded from the store, so that
    pre-update handlers can tell what changed.
    """

    TRACKED_ATTRIBUTES = ('username', 'email', 'password_hash', 'confirmed_at')

    def __init__(self, id: Any = None, username: Optional[str] = None, email: Optional[str] = None,
                 password: Optional[str] = None, password_hash: Optional[str] = None,
                 confirmed_at: Optional[datetime] = None):
        self.id = id
        self.username = username
        self.email = email
        self.password = password
        self.password_hash = password_hash
        self.confirmed_at = confirmed_at
        self.old_attributes: Dict[str, Any] = {}

    def snapshot(self):
        """Record the current values as the stored ones."""
        self.old_attributes = {name: getattr(self, name) for name in self.TRACKED_ATTRIBUTES}

    def old_value(self, name: str) -> Any:
        """Value of an attribute before the pending change (current value if never stored)."""
        if name in self.old_attributes:
            return self.old_attributes[name]
        return getattr(self, name)

    def is_attribute_changed(self, name: str) -> bool:
        if name not in self.old_attributes:
            return getattr(self, name, None) is not None
        return self.old_attributes[name] != getattr(self, name)

    def __repr__(self):
        return f"LocalIdentity(id={self.id!r}, username={self.username!r})"


class Profile:
    """Display profile attached to a local identity."""

    def __init__(self, user_id: Any, name: Optional[str] = None):
        self.user_id = user_id
        self.name = name


class LocalIdentityStore(ABC):
    """Persistence of local identities and their profiles."""

    @abstractmethod
    def find_by_username(self, username: str) -> Optional[LocalIdentity]:
        pass

    @abstractmethod
    def find_by_id(self, identity_id: Any) -> Optional[LocalIdentity]:
        pass

    @abstractmethod
    def save(self, identity: LocalIdentity) -> bool:
        """
        Insert or update an identity.

        Returns:
            True if saved; False if the store refused it (validation, constraints)
        """
        pass

    @abstractmethod
    def find_profile(self, user_id: Any) -> Optional[Profile]:
        pass

    @abstractmethod
    def save_profile(self, profile: Profile) -> bool:
        pass


class RoleManager(ABC):
    """Role lookup and assignment. Role definitions are managed elsewhere."""

    @abstractmethod
    def get_role(self, name: str) -> Any:
        """Return the role registered under name, or None."""
        pass

    @abstractmethod
    def assign(self, role: Any, user_id: Any):
        pass


class SessionManager(ABC):
    """Opens authenticated sessions."""

    @abstractmethod
    def login(self, identity: LocalIdentity, duration: int) -> bool:
        """
        Log the identity in.

        Args:
            identity: Resolved local identity
            duration: Seconds the session is remembered for (0 for browser session)
        """
        pass


class Responder(ABC):
    """Sends HTTP redirects on behalf of the hooks."""

    @abstractmethod
    def redirect(self, target: Any):
        pass

    @abstractmethod
    def redirect_back(self):
        """Redirect to the page the request came from."""
        pass
