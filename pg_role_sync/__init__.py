"""
pg_role_sync - Create PostgreSQL login roles from LDAP group membership.

This package reads the direct members of LDAP groups and reconciles them into
the PostgreSQL role catalog, tagging every role it creates so later runs can
find and optionally drop them.
"""

__version__ = "1.0.0"
__author__ = "pg_role_sync Team"
