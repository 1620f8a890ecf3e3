#!/usr/bin/env python3
"""
Unit tests for the module facade and command-line entry point.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_auth_sync.config import ConfigLoader, ConfigurationError, Settings
from ldap_auth_sync.hooks import AuthenticationHooks, LifecycleHooks
from ldap_auth_sync.ldap_client import DirectoryConnectionError
from ldap_auth_sync.main import LdapAuthModule, main
from ldap_auth_sync.syncer import DirectorySyncer


def make_settings(**overrides):
    config = {
        'ldap': {
            'schema': 'OpenLDAP',
            'server_url': 'ldap://ldap.example.com',
            'base_dn': 'dc=example,dc=com',
            'account_prefix': 'uid=',
            'account_suffix': ',ou=people,dc=example,dc=com',
        },
        'other_organizational_units': ['contractors'],
        'password_recovery_redirect': '/site/contact',
    }
    config.update(overrides)
    return Settings(ConfigLoader('test.yaml').load_dict(config))


@patch('ldap_auth_sync.main.setup_logging')
@patch('ldap_auth_sync.ldap_client.DirectoryConnection.disconnect')
@patch('ldap_auth_sync.ldap_client.DirectoryConnection.connect', return_value=True)
class TestLdapAuthModule(unittest.TestCase):
    """Test cases for LdapAuthModule."""

    def test_start_without_sync(self, mock_connect, mock_disconnect, mock_setup_logging):
        """Test start builds the hooks without a syncer when sync is disabled."""
        module = LdapAuthModule(settings=make_settings(), store=Mock(), role_manager=Mock(),
                                session=Mock(), responder=Mock())

        module.start()

        self.assertEqual(mock_connect.call_count, 2)
        mock_setup_logging.assert_called_once()
        self.assertIsInstance(module.authentication_hooks, AuthenticationHooks)
        self.assertIsInstance(module.lifecycle_hooks, LifecycleHooks)
        self.assertIsNone(module.syncer)
        self.assertFalse(module.lifecycle_hooks.enabled)
        self.assertEqual(module.authentication_hooks.password_recovery_redirect, '/site/contact')

        module.stop()
        self.assertEqual(mock_disconnect.call_count, 2)

    def test_start_with_sync(self, mock_connect, mock_disconnect, mock_setup_logging):
        """Test start builds a syncer bound to the secondary directory."""
        module = LdapAuthModule(settings=make_settings(sync_users_to_ldap=True, second_ldap={
            'schema': 'OpenLDAP',
            'server_url': 'ldap://mirror.example.com',
            'base_dn': 'ou=users,dc=example,dc=com',
            'account_suffix': ',ou=users,dc=example,dc=com',
        }), store=Mock(), role_manager=Mock(), session=Mock(), responder=Mock())

        module.start()

        self.assertIsInstance(module.syncer, DirectorySyncer)
        self.assertTrue(module.lifecycle_hooks.enabled)
        self.assertEqual(module.syncer.connection.name, 'secondary')
        self.assertEqual(mock_connect.call_count, 3)

    @patch('ldap_auth_sync.main.load_settings', side_effect=ConfigurationError('bad config'))
    def test_start_configuration_error(self, mock_load_settings, mock_connect, mock_disconnect,
                                       mock_setup_logging):
        """Test configuration errors surface from start."""
        with self.assertRaises(ConfigurationError):
            LdapAuthModule(config_path='missing.yaml').start()
        mock_connect.assert_not_called()

    def test_health_check_healthy(self, mock_connect, mock_disconnect, mock_setup_logging):
        """Test a healthy report when every directory connects."""
        status = LdapAuthModule(settings=make_settings()).health_check()

        self.assertEqual(status['status'], 'healthy')
        self.assertEqual(status['checks']['configuration']['status'], 'pass')
        self.assertEqual(set(status['checks']['directories']), {'primary', 'contractors'})
        self.assertEqual(status['checks']['sync']['status'], 'skip')

    def test_health_check_unreachable(self, mock_connect, mock_disconnect, mock_setup_logging):
        """Test an unreachable directory makes the report unhealthy."""
        mock_connect.side_effect = DirectoryConnectionError('unreachable')

        status = LdapAuthModule(settings=make_settings()).health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['directories']['primary']['status'], 'fail')
        self.assertEqual(mock_disconnect.call_count, 2)

    @patch('ldap_auth_sync.main.load_settings', side_effect=ConfigurationError('bad config'))
    def test_health_check_configuration_error(self, mock_load_settings, mock_connect, mock_disconnect,
                                              mock_setup_logging):
        """Test a configuration error makes the report unhealthy."""
        status = LdapAuthModule(config_path='missing.yaml').health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['configuration']['status'], 'fail')
        mock_connect.assert_not_called()


@patch('ldap_auth_sync.main.LdapAuthModule')
class TestCommandLine(unittest.TestCase):
    """Test cases for the command-line entry point."""

    def test_health_check(self, mock_module_cls):
        """Test --health-check exits 0 when healthy and 1 otherwise."""
        mock_module_cls.return_value.health_check.return_value = {'status': 'healthy', 'checks': {}}
        self.assertEqual(main(['--health-check', '--config', 'config.yaml']), 0)
        mock_module_cls.assert_called_with(config_path='config.yaml')

        mock_module_cls.return_value.health_check.return_value = {'status': 'unhealthy', 'checks': {}}
        self.assertEqual(main(['--health-check']), 1)

    @patch('ldap_auth_sync.main.getpass.getpass', return_value='secret')
    def test_verify_accepted(self, mock_getpass, mock_module_cls):
        """Test --verify exits 0 for accepted credentials."""
        module = mock_module_cls.return_value
        module.verifier.verify.return_value = True

        self.assertEqual(main(['--verify', 'jdoe']), 0)

        module.start.assert_called_once()
        module.verifier.verify.assert_called_once_with('jdoe', 'secret')
        module.stop.assert_called_once()

    @patch('ldap_auth_sync.main.getpass.getpass', return_value='wrong')
    def test_verify_rejected(self, mock_getpass, mock_module_cls):
        """Test --verify exits 1 for rejected credentials."""
        mock_module_cls.return_value.verifier.verify.return_value = False

        self.assertEqual(main(['--verify', 'jdoe']), 1)

    def test_verify_configuration_error(self, mock_module_cls):
        """Test --verify exits 2 on configuration errors."""
        mock_module_cls.return_value.start.side_effect = ConfigurationError('bad config')

        self.assertEqual(main(['--verify', 'jdoe']), 2)
        mock_module_cls.return_value.stop.assert_called_once()

    def test_verify_connection_error(self, mock_module_cls):
        """Test --verify exits 3 when a directory is unreachable."""
        mock_module_cls.return_value.start.side_effect = DirectoryConnectionError('unreachable')

        self.assertEqual(main(['--verify', 'jdoe']), 3)

    def test_no_action(self, mock_module_cls):
        """Test running without an action prints help and exits 2."""
        with patch('sys.stdout'):
            self.assertEqual(main([]), 2)


if __name__ == '__main__':
    unittest.main()
