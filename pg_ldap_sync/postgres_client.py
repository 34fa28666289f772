"""
PostgreSQL client for reading and changing role membership.

This module wraps a psycopg2 connection pool for one database and exposes the
catalog operations the reconciler needs. Every operation runs inside a
transaction opened with PostgresClient.transaction(); nothing here decides
what to change.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Any, List, Optional

import psycopg2
from psycopg2 import sql, pool

logger = logging.getLogger(__name__)

MANAGED_MEMBERS_QUERY = """
    SELECT u.rolname
    FROM pg_catalog.pg_roles u
    JOIN pg_catalog.pg_auth_members m ON (m.member = u.oid)
    JOIN pg_catalog.pg_roles g ON (g.oid = m.roleid)
    WHERE g.rolname = %s AND ({prefix_clauses})
    ORDER BY u.rolname
"""


class CatalogError(Exception):
    """Raised when a catalog query, statement or transaction fails."""
    pass


class CatalogConnectionError(CatalogError):
    """Raised when the connection pool for a database cannot be opened."""
    pass


class SavepointError(CatalogError):
    """Raised when a transaction cannot be recovered after a failed statement."""
    pass


class CatalogTransaction:
    """
    Catalog operations bound to one open transaction.

    Obtained from PostgresClient.transaction(); must not outlive it.
    """

    def __init__(self, cursor, database: str):
        self.cursor = cursor
        self.database = database

    def _execute(self, statement, params=None, description: str = 'statement'):
        try:
            self.cursor.execute(statement, params)
        except psycopg2.Error as e:
            raise CatalogError(f"Failed to {description} in '{self.database}': {e}") from e

    def account_exists(self, name: str) -> bool:
        """Check whether a role with this exact name exists."""
        self._execute("SELECT EXISTS(SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = %s)",
                      (name,), f"check for existence of role '{name}'")
        return bool(self.cursor.fetchone()[0])

    def create_account(self, name: str):
        """Create a login role."""
        self._execute(sql.SQL("CREATE ROLE {} WITH LOGIN").format(sql.Identifier(name)),
                      description=f"create user role '{name}'")

    def grant_role(self, role: str, name: str):
        """Make the account a direct member of the role."""
        self._execute(sql.SQL("GRANT {} TO {}").format(sql.Identifier(role), sql.Identifier(name)),
                      description=f"grant role '{role}' to '{name}'")

    def revoke_role(self, role: str, name: str):
        """Remove the account's direct membership of the role."""
        self._execute(sql.SQL("REVOKE {} FROM {}").format(sql.Identifier(role), sql.Identifier(name)),
                      description=f"revoke role '{role}' from '{name}'")

    def drop_account(self, name: str):
        """
        Drop a role inside a savepoint.

        A failed DROP ROLE (for example, the role still owns objects) rolls
        back to the savepoint, so the enclosing transaction stays usable for
        the remaining drops. If the rollback itself fails the transaction is
        unusable and SavepointError is raised instead.
        """
        self._execute("SAVEPOINT drop_account", description="create savepoint")
        try:
            self._execute(sql.SQL("DROP ROLE {}").format(sql.Identifier(name)),
                          description=f"drop user '{name}'")
        except CatalogError:
            try:
                self._execute("ROLLBACK TO SAVEPOINT drop_account", description="roll back to savepoint")
            except CatalogError as rollback_error:
                raise SavepointError(str(rollback_error)) from rollback_error
            raise
        self._execute("RELEASE SAVEPOINT drop_account", description="release savepoint")

    def list_managed_role_members(self, role: str, like_patterns: List[str]) -> List[str]:
        """
        List direct members of a role whose name matches one of the patterns.

        Args:
            role: Group role to inspect
            like_patterns: SQL LIKE patterns, see SyncPolicy.like_patterns()

        Returns:
            Member role names; empty when no patterns are given
        """
        if not like_patterns:
            return []

        prefix_clauses = sql.SQL(" OR ").join(
            sql.SQL("u.rolname LIKE %s") for _ in like_patterns
        )
        query = sql.SQL(MANAGED_MEMBERS_QUERY).format(prefix_clauses=prefix_clauses)
        self._execute(query, [role] + list(like_patterns),
                      f"query current managed members of role '{role}'")
        return [row[0] for row in self.cursor.fetchall()]


class PostgresClient:
    """Connection pool and transaction scope for one configured database."""

    def __init__(self, alias: str, config: Dict[str, Any]):
        """
        Initialize PostgreSQL client.

        Args:
            alias: Name of the database entry in the configuration
            config: The database's 'postgres' configuration dictionary
        """
        self.alias = alias
        self.config = config
        self.dbname = config['dbname']
        self.pool = None

    def connect(self):
        """
        Open the connection pool and verify the database answers.

        Raises:
            CatalogConnectionError: If the pool cannot be created or the ping fails
        """
        try:
            self.pool = pool.SimpleConnectionPool(
                1,
                self.config.get('pool_max_connections', 2),
                host=self.config['host'],
                port=self.config.get('port', 5432),
                dbname=self.dbname,
                user=self.config['user'],
                password=self.config.get('password'),
                sslmode=self.config.get('sslmode', 'prefer'),
                connect_timeout=self.config.get('connect_timeout', 10),
                application_name='pg-ldap-sync'
            )
        except psycopg2.Error as e:
            raise CatalogConnectionError(f"Unable to create connection pool for '{self.alias}': {e}") from e

        try:
            self.ping()
        except CatalogError as e:
            self.close()
            raise CatalogConnectionError(f"Unable to connect to database '{self.alias}': {e}") from e

        logger.info(f"Successfully connected to PostgreSQL database: {self.dbname} ({self.alias})")

    def ping(self):
        """Run a trivial query on a pooled connection."""
        with self.transaction() as tx:
            tx._execute("SELECT 1", description="ping database")

    @contextmanager
    def transaction(self, timeout_seconds: Optional[float] = None):
        """
        Run a unit of work in one transaction.

        Commits when the block exits normally and rolls back when it raises.

        Args:
            timeout_seconds: Optional per-statement timeout for this transaction

        Yields:
            CatalogTransaction bound to the transaction
        """
        if not self.pool:
            raise CatalogError(f"Not connected to database '{self.alias}'")

        try:
            conn = self.pool.getconn()
        except psycopg2.Error as e:
            raise CatalogError(f"Failed to get a connection for '{self.alias}': {e}") from e

        try:
            with conn.cursor() as cursor:
                tx = CatalogTransaction(cursor, self.alias)
                if timeout_seconds:
                    tx._execute("SELECT set_config('statement_timeout', %s, true)",
                                (f"{int(timeout_seconds * 1000)}ms",), "set statement timeout")
                yield tx
            conn.commit()
        except psycopg2.Error as e:
            self._rollback(conn)
            raise CatalogError(f"Transaction failed in '{self.alias}': {e}") from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            self.pool.putconn(conn)

    def _rollback(self, conn):
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed in '{self.alias}': {e}")

    def close(self):
        """Close every connection in the pool."""
        if self.pool:
            try:
                self.pool.closeall()
                logger.info(f"PostgreSQL connection pool closed for '{self.alias}'")
            except psycopg2.Error as e:
                logger.warning(f"Error closing connection pool for '{self.alias}': {e}")
            finally:
                self.pool = None

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
