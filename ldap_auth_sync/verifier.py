"""
Multi-strategy credential verification.

A user may type a uid, a cn or a sAMAccountName, while the directory only accepts
binds for the attribute its DNs are built from. Verification therefore tries a
direct bind first and, when that fails, looks the user up, rediscovers the RDN
attribute from the entry's DN and binds again with it. The same is repeated on
every alternate organizational unit until one succeeds.
"""

import re
import logging
from typing import Optional

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

from ldap_auth_sync.ldap_client import DirectoryConnection, RemoteUserRecord
from ldap_auth_sync.logging_setup import security_logger
from ldap_auth_sync.lookup import UserLookup, FALLBACK_ATTRIBUTES
from ldap_auth_sync.pool import DirectoryConnectionPool

logger = logging.getLogger(__name__)


class CredentialVerifier:
    """Decides whether a username/password pair is accepted by any configured directory."""

    def __init__(self, pool: DirectoryConnectionPool, lookup: UserLookup):
        self.pool = pool
        self.lookup = lookup

    def verify(self, username: str, password: str) -> bool:
        """
        Verify credentials against the primary connection, then each alternate OU.

        Args:
            username: What the user typed as login
            password: Cleartext password

        Returns:
            True if any connection accepted the credentials

        Raises:
            DirectoryConnectionError: If a directory cannot be reached
            MultipleUsersFoundError: If the fallback search is ambiguous
        """
        if not username or not password:
            return False

        for connection in self.pool.attempt_order():
            if self.try_authentication(connection, username, password):
                security_logger.log_authentication_attempt(f"ldap:{connection.name}", username, True)
                return True
            logger.debug(f"Authentication of {username} failed on {connection.name}")

        security_logger.log_authentication_attempt('ldap', username, False)
        return False

    def try_authentication(self, connection: DirectoryConnection, username: str, password: str) -> bool:
        """
        Authenticate on a single connection.

        Returns:
            True if either the direct bind or the rediscovered-prefix bind succeeded
        """
        if connection.bind_as(username, password):
            return True

        record = self.lookup.find_first(connection, username, FALLBACK_ATTRIBUTES)
        if record is None:
            return False

        rdn_attribute = self.rdn_attribute(connection, record)
        if not rdn_attribute:
            logger.warning(f"Cannot determine the RDN attribute of {record.dn}")
            return False

        user_auth = record.first(rdn_attribute)
        if not user_auth:
            logger.warning(f"Entry {record.dn} has no value for its RDN attribute {rdn_attribute}")
            return False

        logger.debug(f"Retrying bind for {username} on {connection.name} as {rdn_attribute}={user_auth}")
        with connection.with_account_prefix(f"{rdn_attribute}=") as rebound:
            return rebound.bind_as(user_auth, password)

    @staticmethod
    def rdn_attribute(connection: DirectoryConnection, record: RemoteUserRecord) -> Optional[str]:
        """
        Name of the attribute on the left-hand side of the entry's DN.

        The DN is matched against the connection's account suffix first, so that
        ``uid=jdoe,ou=people,dc=example,dc=com`` with suffix
        ``,ou=people,dc=example,dc=com`` yields ``uid``. When the suffix is not part
        of the DN (UPN-style suffixes), the first RDN component is used.
        """
        endpoint = connection.endpoint
        dn = record.first(endpoint.schema.distinguished_name_attribute) or record.dn
        if not dn:
            return None

        suffix = endpoint.account_suffix
        if suffix:
            match = re.match(rf'^(?P<prefix>[^=,]+)=.*{re.escape(suffix)}$', dn, re.IGNORECASE)
            if match:
                return match.group('prefix').strip()

        try:
            components = parse_dn(dn)
        except LDAPInvalidDnError:
            return None
        if not components:
            return None
        return components[0][0].strip()
