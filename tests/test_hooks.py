#!/usr/bin/env python3
"""
Unit tests for the host framework callbacks.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_auth_sync.hooks import AuthenticationHooks, LifecycleHooks
from ldap_auth_sync.ldap_client import RemoteUserRecord
from ldap_auth_sync.lookup import UserLookup, MultipleUsersFoundError
from ldap_auth_sync.pool import DirectoryConnectionPool
from ldap_auth_sync.store import LocalIdentity, SessionManager, Responder


class TestAuthenticationHooks(unittest.TestCase):
    """Test cases for AuthenticationHooks."""

    def setUp(self):
        """Set up test fixtures."""
        patcher = patch('ldap_auth_sync.hooks.security_logger')
        self.mock_security_logger = patcher.start()
        self.addCleanup(patcher.stop)

        self.mail_records = []
        self.primary = Mock()
        self.primary.name = 'primary'
        self.primary.search.side_effect = lambda attribute, value: list(self.mail_records)
        self.verifier = Mock()
        self.reconciler = Mock()
        self.session = Mock(spec=SessionManager)
        self.responder = Mock(spec=Responder)
        self.identity = LocalIdentity(id=4, username='jdoe')
        self.reconciler.resolve.return_value = self.identity

    def make_hooks(self, **overrides):
        options = dict(remember_login_lifespan=3600, allow_password_recovery=False,
                       password_recovery_redirect='/site/contact')
        options.update(overrides)
        return AuthenticationHooks(DirectoryConnectionPool(self.primary), UserLookup(), self.verifier,
                                   self.reconciler, self.session, self.responder, **options)

    def test_login_empty_credentials(self):
        """Test empty credentials are left to the host."""
        hooks = self.make_hooks()

        self.assertIsNone(hooks.before_login('', 'secret'))
        self.assertIsNone(hooks.before_login('jdoe', ''))
        self.verifier.verify.assert_not_called()

    def test_login_rejected_credentials(self):
        """Test rejected credentials are left to the host's own login."""
        self.verifier.verify.return_value = False

        self.assertIsNone(self.make_hooks().before_login('jdoe', 'wrong'))

        self.reconciler.resolve.assert_not_called()
        self.session.login.assert_not_called()
        self.responder.redirect_back.assert_not_called()

    def test_login_accepted(self):
        """Test accepted credentials open a session and redirect back."""
        self.verifier.verify.return_value = True

        identity = self.make_hooks().before_login('jdoe', 'secret')

        self.assertIs(identity, self.identity)
        self.verifier.verify.assert_called_once_with('jdoe', 'secret')
        self.reconciler.resolve.assert_called_once_with('jdoe')
        self.session.login.assert_called_once_with(self.identity, 0)
        self.responder.redirect_back.assert_called_once()
        self.mock_security_logger.log_directory_login.assert_called_once_with('jdoe', 4)

    def test_login_remember_me(self):
        """Test remember-me sessions last the configured lifespan."""
        self.verifier.verify.return_value = True

        self.make_hooks().before_login('jdoe', 'secret', remember_me=True)

        self.session.login.assert_called_once_with(self.identity, 3600)

    def test_login_reconciliation_failure(self):
        """Test reconciliation failures propagate without opening a session."""
        self.verifier.verify.return_value = True
        self.reconciler.resolve.side_effect = RuntimeError('store down')

        with self.assertRaises(RuntimeError):
            self.make_hooks().before_login('jdoe', 'secret')
        self.session.login.assert_not_called()

    def test_recovery_unknown_email(self):
        """Test recovery for an email unknown to the directory proceeds."""
        self.assertFalse(self.make_hooks().before_recovery_request('nobody@example.com'))
        self.responder.redirect.assert_not_called()

    def test_recovery_directory_user_redirected(self):
        """Test recovery for a directory user is redirected when not allowed."""
        self.mail_records = [RemoteUserRecord('uid=jdoe,dc=example,dc=com', {
            'mail': ['jdoe@example.com'], 'objectClass': ['inetOrgPerson']})]

        self.assertTrue(self.make_hooks().before_recovery_request('jdoe@example.com'))

        self.primary.search.assert_called_once_with('mail', 'jdoe@example.com')
        self.responder.redirect.assert_called_once_with('/site/contact')
        self.mock_security_logger.log_security_event.assert_called_once()

    def test_recovery_allowed(self):
        """Test recovery proceeds for directory users when allowed."""
        self.mail_records = [RemoteUserRecord('uid=jdoe,dc=example,dc=com', {
            'mail': ['jdoe@example.com'], 'objectClass': ['inetOrgPerson']})]

        self.assertFalse(self.make_hooks(allow_password_recovery=True).before_recovery_request('jdoe@example.com'))
        self.responder.redirect.assert_not_called()

    def test_recovery_ambiguous_email(self):
        """Test an email shared by several directory entries is an error."""
        self.mail_records = [
            RemoteUserRecord('uid=a,dc=example,dc=com', {'objectClass': ['person']}),
            RemoteUserRecord('uid=b,dc=example,dc=com', {'objectClass': ['person']}),
        ]

        with self.assertRaises(MultipleUsersFoundError):
            self.make_hooks().before_recovery_request('shared@example.com')
        self.responder.redirect.assert_not_called()


class TestLifecycleHooks(unittest.TestCase):
    """Test cases for LifecycleHooks."""

    def test_disabled_hooks_do_nothing(self):
        """Test every callback is inert without a syncer."""
        hooks = LifecycleHooks()
        identity = LocalIdentity(id=1, username='alice')

        self.assertFalse(hooks.enabled)
        hooks.after_login('alice', 'secret')
        hooks.after_create(identity)
        hooks.before_update(identity)
        hooks.after_password_reset(identity)
        hooks.before_delete(identity)

    def test_callbacks_delegate_to_syncer(self):
        """Test each callback reaches the matching syncer handler."""
        syncer = Mock()
        hooks = LifecycleHooks(syncer)
        identity = LocalIdentity(id=1, username='alice')

        self.assertTrue(hooks.enabled)
        hooks.after_login('alice', 'secret')
        hooks.after_create(identity)
        hooks.before_update(identity)
        hooks.after_password_reset(identity)
        hooks.before_delete(identity)

        syncer.after_login.assert_called_once_with('alice', 'secret')
        syncer.after_admin_create.assert_called_once_with(identity)
        syncer.before_update.assert_called_once_with(identity)
        syncer.after_password_reset.assert_called_once_with(identity)
        syncer.before_delete.assert_called_once_with(identity)

    def test_syncer_errors_propagate(self):
        """Test directory failures reach the host so it can abort the change."""
        syncer = Mock()
        syncer.before_update.side_effect = RuntimeError('directory down')

        with self.assertRaises(RuntimeError):
            LifecycleHooks(syncer).before_update(LocalIdentity(id=1, username='alice'))


if __name__ == '__main__':
    unittest.main()
