"""
Directory connection wrapper around ldap3.

This module provides the bind/search/mutate operations the authentication and
synchronization code needs from one configured directory endpoint, and the
RemoteUserRecord type that searches return.
"""

import logging
import ssl
import threading
from typing import Dict, List, Any, Optional, Iterable
from ldap3 import Server, Connection, SUBTREE, ALL, ALL_ATTRIBUTES, MODIFY_REPLACE, Tls
from ldap3.core.exceptions import (
    LDAPException,
    LDAPBindError,
    LDAPCommunicationError,
    LDAPSocketReceiveError,
    LDAPResponseTimeoutError,
)
from ldap3.utils.conv import escape_filter_chars

from ldap_auth_sync.config import DirectoryEndpointConfig

logger = logging.getLogger(__name__)

# LDAP result codes
RESULT_SUCCESS = 0
RESULT_NO_SUCH_OBJECT = 32
RESULT_ENTRY_ALREADY_EXISTS = 68


class DirectoryConnectionError(Exception):
    """Raised when the directory cannot be reached or the service bind fails."""
    pass


class DirectoryTimeoutError(DirectoryConnectionError):
    """Raised when a directory call exceeds the configured network timeout."""
    pass


class DirectoryOperationError(Exception):
    """Raised when the directory rejects a search, add, modify, rename or delete."""

    def __init__(self, message: str, result: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.result = result or {}


class EntryAlreadyExistsError(DirectoryOperationError):
    """Raised when an entry being created is already present in the directory."""
    pass


class LdapAttr:
    """Well-known attribute names, lower-cased as they are stored on records."""

    UID = 'uid'
    CN = 'cn'
    SN = 'sn'
    MAIL = 'mail'
    SAMACCOUNTNAME = 'samaccountname'
    USER_PASSWORD = 'userpassword'
    OBJECT_CLASS = 'objectclass'
    DISTINGUISHED_NAME = 'distinguishedname'


class RemoteUserRecord:
    """
    A directory entry returned by a search.

    Attribute names are case-insensitive. Every attribute maps to an ordered list
    of string values; asking for an attribute the entry does not carry yields an
    empty list rather than an error.
    """

    def __init__(self, dn: str, attributes: Dict[str, Iterable[Any]]):
        self.dn = dn
        self._attributes: Dict[str, List[str]] = {}
        for name, values in attributes.items():
            if not isinstance(values, (list, tuple, set)):
                values = [values]
            self._attributes[name.lower()] = [self._to_text(v) for v in values if v is not None]

    @staticmethod
    def _to_text(value: Any) -> str:
        if isinstance(value, bytes):
            return value.decode('utf-8', errors='replace')
        return str(value)

    @classmethod
    def from_entry(cls, entry) -> 'RemoteUserRecord':
        """Build a record from an ldap3 Entry."""
        return cls(str(entry.entry_dn), entry.entry_attributes_as_dict)

    def values(self, name: str) -> List[str]:
        """Return all values of an attribute, or an empty list if absent."""
        return list(self._attributes.get(name.lower(), []))

    def first(self, name: str) -> Optional[str]:
        """Return the first value of an attribute, or None if absent or empty."""
        values = self._attributes.get(name.lower())
        if not values:
            return None
        return values[0]

    @property
    def object_classes(self) -> List[str]:
        return [value.lower() for value in self.values(LdapAttr.OBJECT_CLASS)]

    def __contains__(self, name: str) -> bool:
        return bool(self._attributes.get(name.lower()))

    def __repr__(self):
        return f"RemoteUserRecord(dn={self.dn!r})"


class DirectoryConnection:
    """
    One live session to one directory endpoint.

    The service account session is shared by every request using this connection,
    so calls on it are serialized. User binds run on their own short-lived ldap3
    connections and never disturb the service session.
    """

    def __init__(self, endpoint: DirectoryEndpointConfig, name: str = 'default'):
        """
        Initialize directory connection with configuration.

        Args:
            endpoint: Directory endpoint configuration
            name: Label used in logs (the OU name for alternate connections)
        """
        self.endpoint = endpoint
        self.name = name

        self.server = None
        self.connection = None
        self._connected = False
        self._lock = threading.RLock()

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        """
        Open the service session and bind with the configured service account.

        Returns:
            True if connection successful

        Raises:
            DirectoryConnectionError: If the server cannot be reached or the bind fails
        """
        with self._lock:
            self.disconnect()
            self.server = self._create_server()
            connection = self._open_connection(self.endpoint.bind_dn, self.endpoint.bind_password)
            try:
                if not connection.bind():
                    raise DirectoryConnectionError(
                        f"Service bind failed on {self.name}: {connection.result.get('description')}")
            except DirectoryConnectionError:
                self._close_quietly(connection)
                raise
            except LDAPBindError as e:
                self._close_quietly(connection)
                raise DirectoryConnectionError(f"Service bind failed on {self.name}: {e}")
            except (LDAPSocketReceiveError, LDAPResponseTimeoutError) as e:
                self._close_quietly(connection)
                raise DirectoryTimeoutError(f"Timed out binding to {self.endpoint.server_url}: {e}")
            except LDAPException as e:
                self._close_quietly(connection)
                raise DirectoryConnectionError(f"Failed to bind to {self.endpoint.server_url}: {e}")

            self.connection = connection
            self._connected = True
            logger.info(f"Connected and bound to directory {self.endpoint.server_url} ({self.name})")
            return True

    def _create_server(self) -> Server:
        """Create the ldap3 Server object for this endpoint."""
        try:
            tls_config = self._create_tls_config()
            server = Server(
                self.endpoint.server_url,
                use_ssl=self.endpoint.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.endpoint.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.endpoint.server_url} "
                         f"(SSL: {self.endpoint.use_ssl}, StartTLS: {self.endpoint.start_tls})")
            return server
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server: {e}")

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.endpoint.use_ssl or self.endpoint.start_tls):
            return None

        tls_config = {}

        if not self.endpoint.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning(f"SSL certificate verification disabled for {self.name}")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.endpoint.ca_cert_file:
            tls_config['ca_certs_file'] = self.endpoint.ca_cert_file

        if self.endpoint.cert_file and self.endpoint.key_file:
            tls_config['local_certificate_file'] = self.endpoint.cert_file
            tls_config['local_private_key_file'] = self.endpoint.key_file

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    def _open_connection(self, user: Optional[str], password: Optional[str]) -> Connection:
        """Open (but do not bind) an ldap3 connection, negotiating StartTLS if configured."""
        if self.server is None:
            self.server = self._create_server()
        connection = Connection(
            self.server,
            user=user,
            password=password,
            auto_bind=False,
            receive_timeout=self.endpoint.receive_timeout
        )
        try:
            connection.open()
            if self.endpoint.start_tls and not self.endpoint.use_ssl:
                if not connection.start_tls():
                    raise DirectoryConnectionError(f"Failed to start TLS: {connection.result}")
        except DirectoryConnectionError:
            self._close_quietly(connection)
            raise
        except (LDAPSocketReceiveError, LDAPResponseTimeoutError) as e:
            self._close_quietly(connection)
            raise DirectoryTimeoutError(f"Timed out connecting to {self.endpoint.server_url}: {e}")
        except LDAPException as e:
            self._close_quietly(connection)
            raise DirectoryConnectionError(f"Failed to open connection to {self.endpoint.server_url}: {e}")
        return connection

    def _close_quietly(self, connection: Connection):
        """Unbind a connection that is being abandoned after an error."""
        try:
            connection.unbind()
        except LDAPException as e:
            logger.debug(f"Ignoring error closing abandoned connection on {self.name}: {e}")

    def disconnect(self):
        """Close the service session."""
        with self._lock:
            if self.connection and self._connected:
                try:
                    self.connection.unbind()
                    logger.debug(f"Directory connection {self.name} closed")
                except LDAPException as e:
                    logger.warning(f"Error closing directory connection {self.name}: {e}")
                finally:
                    self._connected = False
                    self.connection = None

    def bind_identifier(self, identifier: str) -> str:
        """Build the bind identifier for a username from the account prefix and suffix."""
        return f"{self.endpoint.account_prefix}{identifier}{self.endpoint.account_suffix}"

    def bind_as(self, identifier: str, password: str) -> bool:
        """
        Attempt to authenticate as a user.

        Args:
            identifier: Username, wrapped in the configured account prefix and suffix
            password: Cleartext password

        Returns:
            True if the directory accepted the credentials, False if it rejected them

        Raises:
            DirectoryConnectionError: If the directory cannot be reached
            DirectoryTimeoutError: If the bind exceeds the network timeout
        """
        # An empty password would be an unauthenticated bind, which always succeeds
        if not identifier or not password:
            return False

        bind_user = self.bind_identifier(identifier)
        connection = self._open_connection(bind_user, password)
        try:
            success = connection.bind()
        except LDAPBindError as e:
            logger.debug(f"Bind rejected for {bind_user} on {self.name}: {e}")
            success = False
        except (LDAPSocketReceiveError, LDAPResponseTimeoutError) as e:
            raise DirectoryTimeoutError(f"Timed out binding as {bind_user}: {e}")
        except LDAPCommunicationError as e:
            raise DirectoryConnectionError(f"Connection lost binding as {bind_user}: {e}")
        finally:
            try:
                connection.unbind()
            except LDAPException:
                logger.debug(f"Ignoring error closing bind connection for {bind_user}")

        logger.debug(f"Bind as {bind_user} on {self.name}: {'accepted' if success else 'rejected'}")
        return bool(success)

    def with_account_prefix(self, account_prefix: str) -> 'DirectoryConnection':
        """
        Return a new connection binding users with a different account prefix.

        The returned connection shares this connection's Server object and has no
        service session of its own; it is only good for ``bind_as``, which opens a
        short-lived connection per call. The receiver is left untouched.
        """
        rebound = DirectoryConnection(self.endpoint.with_account_prefix(account_prefix),
                                      name=f"{self.name}[{account_prefix}]")
        rebound.server = self.server
        return rebound

    def _require_connection(self) -> Connection:
        if not self._connected or self.connection is None:
            raise DirectoryConnectionError(f"Not connected to directory {self.name}")
        return self.connection

    def _run(self, operation: str, func, *args, **kwargs):
        """Run an ldap3 call on the service session, translating its exceptions."""
        with self._lock:
            connection = self._require_connection()
            try:
                func(connection, *args, **kwargs)
            except (LDAPSocketReceiveError, LDAPResponseTimeoutError) as e:
                raise DirectoryTimeoutError(f"{operation} timed out on {self.name}: {e}")
            except LDAPCommunicationError as e:
                raise DirectoryConnectionError(f"{operation} failed on {self.name}: {e}")
            except LDAPException as e:
                raise DirectoryOperationError(f"{operation} failed on {self.name}: {e}")
            return connection

    def search(self, attribute: str, value: str) -> List[RemoteUserRecord]:
        """
        Search the endpoint's base DN for entries where attribute equals value.

        Args:
            attribute: Attribute compared for equality
            value: Value to look for (escaped before use)

        Returns:
            All matching entries, possibly empty
        """
        search_filter = f"({attribute}={escape_filter_chars(value)})"
        search_base = self.endpoint.base_dn
        logger.debug(f"Searching {self.name} with filter: {search_filter} in base: {search_base}")

        def _search(connection):
            connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=[ALL_ATTRIBUTES]
            )

        connection = self._run('Search', _search)
        result_code = connection.result.get('result', RESULT_SUCCESS)
        if result_code not in (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT):
            raise DirectoryOperationError(
                f"Search failed on {self.name}: {connection.result.get('description')}", connection.result)

        return [RemoteUserRecord.from_entry(entry) for entry in connection.entries]

    def _check_result(self, operation: str, dn: str, connection: Connection):
        result = connection.result or {}
        result_code = result.get('result', RESULT_SUCCESS)
        if result_code == RESULT_ENTRY_ALREADY_EXISTS:
            raise EntryAlreadyExistsError(f"Entry already exists: {dn}", result)
        if result_code != RESULT_SUCCESS:
            raise DirectoryOperationError(
                f"{operation} of {dn} failed on {self.name}: {result.get('description')}", result)

    def add_entry(self, dn: str, object_classes: Iterable[str], attributes: Dict[str, Any]):
        """
        Create a new entry.

        Raises:
            EntryAlreadyExistsError: If an entry with this DN already exists
            DirectoryOperationError: If the directory rejects the entry
        """
        connection = self._run('Add', lambda c: c.add(dn, list(object_classes), attributes))
        self._check_result('Add', dn, connection)

    def modify_entry(self, dn: str, changes: Dict[str, Any]):
        """
        Replace attribute values on an entry.

        Args:
            dn: Entry to modify
            changes: Mapping of attribute name to its new value (None clears it)
        """
        ldap_changes = {}
        for attribute, value in changes.items():
            if value is None:
                values = []
            else:
                values = value if isinstance(value, list) else [value]
            ldap_changes[attribute] = [(MODIFY_REPLACE, values)]

        connection = self._run('Modify', lambda c: c.modify(dn, ldap_changes))
        self._check_result('Modify', dn, connection)

    def rename_entry(self, dn: str, new_rdn: str):
        """Change the relative distinguished name of an entry."""
        connection = self._run('Rename', lambda c: c.modify_dn(dn, new_rdn))
        self._check_result('Rename', dn, connection)

    def delete_entry(self, dn: str):
        """Delete an entry."""
        connection = self._run('Delete', lambda c: c.delete(dn))
        self._check_result('Delete', dn, connection)

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        return {
            'name': self.name,
            'connected': self._connected,
            'server_url': self.endpoint.server_url,
            'schema': self.endpoint.schema.value,
            'base_dn': self.endpoint.base_dn,
            'account_prefix': self.endpoint.account_prefix,
            'account_suffix': self.endpoint.account_suffix,
            'use_ssl': self.endpoint.use_ssl,
            'start_tls': self.endpoint.start_tls,
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
