"""
Default role assignment for provisioned identities.
"""

import logging
from typing import Any

from ldap_auth_sync.config import ConfigurationError
from ldap_auth_sync.store import RoleManager

logger = logging.getLogger(__name__)


class RoleNotFoundError(Exception):
    """Raised when a configured default role is not registered."""

    def __init__(self, role_name: str):
        self.role_name = role_name
        super().__init__(f"Role not found: {role_name}")


class RoleAssigner:
    """Assigns the configured default roles, in configuration order."""

    def __init__(self, role_manager: RoleManager, default_roles: Any):
        self.role_manager = role_manager
        self.default_roles = default_roles

    @property
    def enabled(self) -> bool:
        return self.default_roles is not False and self.default_roles is not None

    def assign_defaults(self, user_id: Any):
        """Assign the configured default roles, if any."""
        if not self.enabled:
            return
        if not isinstance(self.default_roles, list):
            raise ConfigurationError('default_roles must be a list of role names')
        self.assign(user_id, self.default_roles)

    def assign(self, user_id: Any, role_names):
        """
        Bind each named role to the user.

        Roles assigned before a failure stay assigned.

        Raises:
            ConfigurationError: If a role name is not a string
            RoleNotFoundError: If a role name is not registered
        """
        for role_name in role_names:
            if not isinstance(role_name, str):
                raise ConfigurationError(f"Role names must be strings, got {role_name!r}")
            role = self.role_manager.get_role(role_name)
            if not role:
                raise RoleNotFoundError(role_name)
            self.role_manager.assign(role, user_id)
            logger.info(f"Assigned role {role_name} to user {user_id}")
