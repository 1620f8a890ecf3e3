"""
Directory connection pool.

Holds the primary directory connection, one connection per alternate
organizational unit, and the secondary directory connection that local users
are mirrored to. Built once at startup and handed to every component.
"""

import logging
from collections import OrderedDict
from typing import Dict, Any, List, Optional

from ldap_auth_sync.config import Settings
from ldap_auth_sync.ldap_client import DirectoryConnection, DirectoryConnectionError
from ldap_auth_sync.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)


class DirectoryConnectionPool:
    """Connections to the primary directory, its alternate OUs, and the secondary directory."""

    def __init__(self, primary: DirectoryConnection,
                 alternates: Optional[Dict[str, DirectoryConnection]] = None,
                 secondary: Optional[DirectoryConnection] = None):
        self.primary = primary
        self.alternates: Dict[str, DirectoryConnection] = OrderedDict(alternates or {})
        self.secondary = secondary if secondary is not None else primary

    @classmethod
    def from_settings(cls, settings: Settings) -> 'DirectoryConnectionPool':
        """
        Build the pool described by the settings. Connections are not opened yet.

        Args:
            settings: Validated settings

        Returns:
            Unconnected pool
        """
        primary = DirectoryConnection(settings.ldap, name='primary')

        alternates = OrderedDict()
        for organizational_unit in settings.other_organizational_units:
            endpoint = settings.ldap.for_organizational_unit(organizational_unit)
            alternates[organizational_unit] = DirectoryConnection(endpoint, name=organizational_unit)

        if settings.second_ldap is settings.ldap:
            secondary = primary
        else:
            secondary = DirectoryConnection(settings.second_ldap, name='secondary')

        return cls(primary, alternates, secondary)

    def attempt_order(self) -> List[DirectoryConnection]:
        """Primary connection first, then alternate OUs in configured order."""
        return [self.primary] + list(self.alternates.values())

    def all_connections(self) -> List[DirectoryConnection]:
        connections = self.attempt_order()
        if self.secondary not in connections:
            connections.append(self.secondary)
        return connections

    def connect_all(self, error_handling: Optional[Dict[str, Any]] = None):
        """
        Open every connection in the pool, retrying transient failures.

        Args:
            error_handling: ``max_retries`` and ``retry_wait_seconds`` settings

        Raises:
            DirectoryConnectionError: If a connection cannot be opened
        """
        error_handling = error_handling or {}
        max_retries = error_handling.get('max_retries', 3)
        retry_wait = error_handling.get('retry_wait_seconds', 5)

        for connection in self.all_connections():
            try:
                retry_call(
                    connection.connect,
                    max_attempts=max_retries + 1,
                    delay=retry_wait,
                    exceptions=(DirectoryConnectionError,),
                    on_retry=create_retry_callback(f"Connecting to directory {connection.name}")
                )
            except MaxRetriesExceeded as e:
                raise DirectoryConnectionError(
                    f"Failed to connect to directory {connection.name} after {e.attempts} attempts: "
                    f"{e.last_exception}") from e.last_exception

        logger.info(f"Directory pool connected: primary, {len(self.alternates)} alternate OU(s), "
                    f"{'shared' if self.secondary is self.primary else 'separate'} secondary")

    def disconnect_all(self):
        for connection in self.all_connections():
            connection.disconnect()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect_all()
