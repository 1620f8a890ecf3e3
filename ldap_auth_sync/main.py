"""
Module facade and command-line entry point for LDAP Auth Sync.

LdapAuthModule wires configuration, logging, the directory connection pool and
every component together once at startup, and exposes the hooks the host
framework calls. The command line offers a health check and a credential check
against the configured directories.
"""

import sys
import json
import getpass
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_auth_sync.config import ConfigurationError, Settings, load_settings
from ldap_auth_sync.hooks import AuthenticationHooks, LifecycleHooks
from ldap_auth_sync.ldap_client import DirectoryConnection, DirectoryConnectionError
from ldap_auth_sync.logging_setup import setup_logging
from ldap_auth_sync.lookup import UserLookup, MultipleUsersFoundError
from ldap_auth_sync.pool import DirectoryConnectionPool
from ldap_auth_sync.reconciler import IdentityReconciler
from ldap_auth_sync.roles import RoleAssigner
from ldap_auth_sync.store import LocalIdentityStore, RoleManager, SessionManager, Responder
from ldap_auth_sync.syncer import DirectorySyncer
from ldap_auth_sync.verifier import CredentialVerifier

logger = logging.getLogger(__name__)


class LdapAuthModule:
    """
    Directory authentication and synchronization, assembled from configuration.

    Collaborators may be omitted when only verification is needed (e.g. from the
    command line); the hooks that need them are then unusable.
    """

    def __init__(self, config_path: Optional[str] = None, settings: Optional[Settings] = None,
                 store: Optional[LocalIdentityStore] = None, role_manager: Optional[RoleManager] = None,
                 session: Optional[SessionManager] = None, responder: Optional[Responder] = None):
        """
        Initialize the module.

        Args:
            config_path: Path to configuration file, used when settings is None
            settings: Already loaded settings
            store: Local identity store
            role_manager: Role lookup and assignment
            session: Session collaborator
            responder: HTTP redirect collaborator
        """
        self.config_path = config_path
        self.settings = settings
        self.store = store
        self.role_manager = role_manager
        self.session = session
        self.responder = responder

        self.pool: Optional[DirectoryConnectionPool] = None
        self.lookup: Optional[UserLookup] = None
        self.verifier: Optional[CredentialVerifier] = None
        self.reconciler: Optional[IdentityReconciler] = None
        self.syncer: Optional[DirectorySyncer] = None
        self.authentication_hooks: Optional[AuthenticationHooks] = None
        self.lifecycle_hooks: Optional[LifecycleHooks] = None

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.settings is None:
            self.settings = load_settings(self.config_path)

    def start(self):
        """
        Load configuration, configure logging, connect every directory and build the hooks.

        Raises:
            ConfigurationError: If the configuration is invalid
            DirectoryConnectionError: If a directory cannot be reached
        """
        self._load_configuration()
        setup_logging(self.settings.logging)

        self.pool = DirectoryConnectionPool.from_settings(self.settings)
        self.pool.connect_all(self.settings.error_handling)
        self._build_components()
        logger.info("LDAP auth module started")

    def _build_components(self):
        settings = self.settings
        self.lookup = UserLookup(settings.user_identification_ldap_attribute)
        self.verifier = CredentialVerifier(self.pool, self.lookup)
        self.reconciler = IdentityReconciler(
            self.pool, self.lookup, self.store,
            RoleAssigner(self.role_manager, settings.default_roles),
            create_local_users=settings.create_local_users,
            default_user_id=settings.default_user_id,
        )
        self.authentication_hooks = AuthenticationHooks(
            self.pool, self.lookup, self.verifier, self.reconciler, self.session, self.responder,
            remember_login_lifespan=settings.remember_login_lifespan,
            allow_password_recovery=settings.allow_password_recovery,
            password_recovery_redirect=settings.password_recovery_redirect,
        )
        if settings.sync_users_to_ldap:
            self.syncer = DirectorySyncer(self.pool, self.lookup, self.store)
        self.lifecycle_hooks = LifecycleHooks(self.syncer)

    def stop(self):
        """Close every directory connection."""
        if self.pool:
            self.pool.disconnect_all()

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration and connectivity of every configured directory.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        directory_checks = {}
        pool = DirectoryConnectionPool.from_settings(self.settings)
        for connection in pool.all_connections():
            directory_checks[connection.name] = self._check_connection(connection)
            if directory_checks[connection.name]['status'] != 'pass':
                health_status['status'] = 'unhealthy'
        health_status['checks']['directories'] = directory_checks

        health_status['checks']['sync'] = {
            'status': 'pass' if self.settings.sync_users_to_ldap else 'skip',
            'message': ('Local users are mirrored to ' + self.settings.second_ldap.server_url
                        if self.settings.sync_users_to_ldap else 'Synchronization disabled')
        }
        return health_status

    @staticmethod
    def _check_connection(connection: DirectoryConnection) -> Dict[str, Any]:
        try:
            connection.connect()
            return {
                'status': 'pass',
                'message': f'Connected to {connection.endpoint.server_url}',
                'details': connection.get_connection_stats()
            }
        except DirectoryConnectionError as e:
            return {
                'status': 'fail',
                'message': f'Directory connection failed: {e}'
            }
        finally:
            connection.disconnect()


def main(argv=None) -> int:
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='LDAP authentication and user synchronization')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and directory connectivity')
    parser.add_argument('--verify', metavar='USERNAME',
                        help='Check a user\'s credentials against the configured directories')

    args = parser.parse_args(argv)
    module = LdapAuthModule(config_path=args.config)

    if args.health_check:
        health_status = module.health_check()
        print(json.dumps(health_status, indent=2))
        return 0 if health_status['status'] == 'healthy' else 1

    if args.verify:
        try:
            module.start()
            password = getpass.getpass(f"Password for {args.verify}: ")
            accepted = module.verifier.verify(args.verify, password)
        except ConfigurationError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return 2
        except DirectoryConnectionError as e:
            print(f"Directory connection error: {e}", file=sys.stderr)
            return 3
        except MultipleUsersFoundError as e:
            print(f"Ambiguous directory data: {e}", file=sys.stderr)
            return 4
        finally:
            module.stop()

        print(f"Credentials for {args.verify}: {'accepted' if accepted else 'rejected'}")
        return 0 if accepted else 1

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
