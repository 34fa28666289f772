"""
PG LDAP Sync - Mirror LDAP group membership into PostgreSQL roles.

This package resolves (possibly nested) LDAP groups into flat sets of account
names and reconciles PostgreSQL login roles and role grants against them.
"""

__version__ = "1.0.0"
__author__ = "PG LDAP Sync Team"
