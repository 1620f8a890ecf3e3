"""
LDAP Auth Sync - Authenticate users against LDAP directories and mirror local users to one.

This package verifies credentials against a primary directory and its alternate
organizational units, reconciles the result with the host application's local
users, and optionally keeps a secondary directory in step with local user changes.
"""

__version__ = "1.0.0"
__author__ = "LDAP Auth Sync Team"
