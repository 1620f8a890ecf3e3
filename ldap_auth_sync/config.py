"""
Configuration loading and management for LDAP Auth Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults, and turns the result into typed settings objects.
"""

import os
import re
import enum
import yaml
import logging
from dataclasses import dataclass, replace
from typing import Dict, Any, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class SchemaDialect(enum.Enum):
    """Directory schema dialects understood by the directory connection."""

    ACTIVE_DIRECTORY = 'ActiveDirectory'
    OPENLDAP = 'OpenLDAP'

    @property
    def user_object_classes(self) -> Tuple[str, ...]:
        """Object classes given to user entries created in this dialect."""
        if self is SchemaDialect.ACTIVE_DIRECTORY:
            return ('top', 'person', 'organizationalPerson', 'user')
        return ('top', 'person', 'organizationalPerson', 'inetOrgPerson')

    @property
    def distinguished_name_attribute(self) -> str:
        if self is SchemaDialect.ACTIVE_DIRECTORY:
            return 'distinguishedname'
        return 'dn'


# Leading OU components of an OpenLDAP account suffix, e.g. ",ou=people" in
# ",ou=people,dc=example,dc=com". Whatever follows is kept as the suffix tail.
_OU_SUFFIX_RE = re.compile(r'(?:,ou=\w+)*(?P<rest>,.*)?', re.IGNORECASE)


@dataclass(frozen=True)
class DirectoryEndpointConfig:
    """
    Connection parameters for one directory endpoint.

    Instances are immutable; the prefix rediscovery and alternate organizational
    unit handling derive new instances instead of editing an existing one.
    """

    schema: SchemaDialect
    server_url: str
    base_dn: str = ''
    account_prefix: str = ''
    account_suffix: str = ''
    bind_dn: Optional[str] = None
    bind_password: Optional[str] = None
    use_ssl: bool = False
    start_tls: bool = False
    verify_ssl: bool = True
    ca_cert_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    connection_timeout: int = 10
    receive_timeout: int = 10

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'DirectoryEndpointConfig':
        """
        Build an endpoint config from a validated configuration section.

        Args:
            config: One directory section (``ldap`` or ``second_ldap``)

        Returns:
            Endpoint configuration
        """
        server_url = config['server_url']
        return cls(
            schema=SchemaDialect(config['schema']),
            server_url=server_url,
            base_dn=config.get('base_dn') or '',
            account_prefix=config.get('account_prefix') or '',
            account_suffix=config.get('account_suffix') or '',
            bind_dn=config.get('bind_dn'),
            bind_password=config.get('bind_password'),
            use_ssl=config.get('use_ssl', server_url.lower().startswith('ldaps://')),
            start_tls=config.get('start_tls', False),
            verify_ssl=config.get('verify_ssl', True),
            ca_cert_file=config.get('ca_cert_file'),
            cert_file=config.get('cert_file'),
            key_file=config.get('key_file'),
            connection_timeout=config.get('connection_timeout', 10),
            receive_timeout=config.get('receive_timeout', 10),
        )

    def with_account_prefix(self, account_prefix: str) -> 'DirectoryEndpointConfig':
        """Return a copy of this config binding with a different account prefix."""
        return replace(self, account_prefix=account_prefix)

    def for_organizational_unit(self, organizational_unit: str) -> 'DirectoryEndpointConfig':
        """
        Return a copy of this config pointed at an alternate organizational unit.

        OpenLDAP endpoints bind with a DN template, so the OU components at the
        start of the account suffix are swapped for the alternate OU. Active
        Directory endpoints bind with UPNs, so the search base moves instead.
        """
        if self.schema is SchemaDialect.OPENLDAP:
            match = _OU_SUFFIX_RE.match(self.account_suffix)
            rest = match.group('rest') or ''
            return replace(self, account_suffix=f",ou={organizational_unit}{rest}")

        base_dn = f"ou={organizational_unit},{self.base_dn}" if self.base_dn else f"ou={organizational_unit}"
        return replace(self, base_dn=base_dn)


class Settings:
    """Typed view over the validated configuration dictionary."""

    def __init__(self, config: Dict[str, Any]):
        self.raw = config
        self.ldap = DirectoryEndpointConfig.from_dict(config['ldap'])
        second_ldap = config.get('second_ldap')
        self.second_ldap = DirectoryEndpointConfig.from_dict(second_ldap) if second_ldap else self.ldap
        self.other_organizational_units: List[str] = list(config.get('other_organizational_units') or [])
        self.create_local_users: bool = config['create_local_users']
        # Validated lazily, when roles are first assigned
        self.default_roles = config['default_roles']
        self.sync_users_to_ldap: bool = config['sync_users_to_ldap']
        self.default_user_id = config['default_user_id']
        self.user_identification_ldap_attribute: Optional[str] = config['user_identification_ldap_attribute']
        self.allow_password_recovery: bool = config['allow_password_recovery']
        self.password_recovery_redirect = config.get('password_recovery_redirect')
        self.remember_login_lifespan: int = config['remember_login_lifespan']
        self.logging: Dict[str, Any] = config['logging']
        self.error_handling: Dict[str, Any] = config['error_handling']


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'second_ldap.bind_password': 'SECOND_LDAP_BIND_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        return self.load_dict(self.config)

    def load_dict(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate an already parsed configuration dictionary.

        Args:
            config: Configuration dictionary

        Returns:
            Validated configuration dictionary with defaults applied
        """
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a mapping")
        self.config = config

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if not env_value:
                continue
            section = config_key.split('.')[0]
            # Never conjure an optional section out of an env var alone
            if section != 'ldap' and section not in self.config:
                continue
            self._set_nested_value(self.config, config_key, env_value)
            logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if current.get(key) is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap')
        if not ldap_config:
            errors.append("ldap configuration must be specified")
        else:
            errors.extend(self._validate_endpoint('ldap', ldap_config))

        second_ldap = self.config.get('second_ldap')
        if second_ldap:
            errors.extend(self._validate_endpoint('second_ldap', second_ldap))

        other_ous = self.config.get('other_organizational_units')
        if other_ous:
            if not isinstance(other_ous, list) or not all(isinstance(ou, str) for ou in other_ous):
                errors.append("other_organizational_units must be a list of names")

        allow_recovery = self.config.get('allow_password_recovery', False)
        if allow_recovery is False and not self.config.get('password_recovery_redirect'):
            errors.append("password_recovery_redirect must be specified if allow_password_recovery is false")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_endpoint(self, name: str, endpoint: Dict[str, Any]) -> List[str]:
        """Validate one directory endpoint section."""
        if not isinstance(endpoint, dict):
            return [f"{name} must be a mapping"]

        errors = []
        if not endpoint.get('server_url'):
            errors.append(f"Missing required field {name}.server_url")

        schema = endpoint.get('schema')
        if not schema:
            errors.append(f"{name}.schema must be specified")
        else:
            try:
                dialect = SchemaDialect(schema)
            except ValueError:
                choices = ', '.join(d.value for d in SchemaDialect)
                errors.append(f"Unknown {name}.schema '{schema}' (expected one of: {choices})")
            else:
                if dialect is SchemaDialect.OPENLDAP and not endpoint.get('account_suffix'):
                    errors.append(f"{name}: OpenLDAP requires an account suffix")
        return errors

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        module_defaults = {
            'create_local_users': True,
            'default_roles': False,
            'sync_users_to_ldap': False,
            'default_user_id': -1,
            'user_identification_ldap_attribute': None,
            'allow_password_recovery': False,
            'password_recovery_redirect': None,
            'other_organizational_units': [],
            'remember_login_lifespan': 1209600,
        }
        for key, value in module_defaults.items():
            self.config.setdefault(key, value)

        endpoint_defaults = {
            'base_dn': '',
            'account_prefix': '',
            'account_suffix': '',
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10,
        }
        for section in ('ldap', 'second_ldap'):
            endpoint = self.config.get(section)
            if endpoint:
                for key, value in endpoint_defaults.items():
                    endpoint.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration and wrap it in a typed Settings object.

    Args:
        config_path: Path to config file

    Returns:
        Validated settings
    """
    return Settings(load_config(config_path))
