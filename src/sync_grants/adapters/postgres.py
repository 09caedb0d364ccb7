"""PostgreSQL adapter for sync_grants.

Implements PostgreSQL-specific catalog queries and changes. Statements are
composed with ``psycopg.sql`` so identifiers and literals are always quoted by
the driver, and executed through the SQLAlchemy connection.
"""

import logging
from collections.abc import Iterable
from contextlib import contextmanager
from typing import cast

import sqlalchemy as sa
from psycopg import sql

from sync_grants.adapters.base import DatabaseAdapter
from sync_grants.exceptions import NotFoundError
from sync_grants.exceptions import StatementError
from sync_grants.models import Acl
from sync_grants.models import ObjectKind
from sync_grants.models import Privilege
from sync_grants.models import Target

logger = logging.getLogger(__name__)

# undefined_object, invalid_schema_name, undefined_table, undefined_function, invalid_catalog_name
_NOT_FOUND_SQLSTATES = frozenset(('42704', '3F000', '42P01', '42883', '3D000'))

# Relation kinds covered by grants on tables: ordinary, partitioned, view, materialized view, foreign
_TABLE_RELKINDS = ('r', 'p', 'v', 'm', 'f')
_SEQUENCE_RELKINDS = ('S',)

_OBJECT_PRIVILEGES_SQL = """
SELECT o.name, acl.privilege_type, acl.is_grantable
FROM (
    {objects}
) o
LEFT JOIN LATERAL (
    SELECT privilege_type, is_grantable
    FROM aclexplode(COALESCE(o.acl, acldefault({acl_kind}, o.owner)))
    WHERE grantee = {grantee}
) acl ON true
ORDER BY o.name
"""


class PostgresAdapter(DatabaseAdapter):
    """PostgreSQL-specific implementation of DatabaseAdapter."""

    def __init__(self, conn):
        """Initialize the PostgreSQL adapter.

        Args:
            conn: SQLAlchemy connection object using the psycopg (3) driver
        """
        super().__init__(conn)

        if conn.engine.driver != 'psycopg':
            raise ValueError(f'Unsupported database driver: {conn.engine.driver}')
        self.sql = sql

    def _execute_sql(self, sql_obj):
        """Execute a SQL statement constructed with psycopg sql module.

        This avoids "argument 1 must be psycopg.Connection, not PGConnectionProxy"
        which can happen when elastic-apm wraps the connection object.

        Colons are escaped, so a quoted name such as ``"my :app"`` is not taken
        for a bind parameter by ``sa.text``.
        """
        unwrapped_connection = getattr(
            self.conn.connection.driver_connection,
            '__wrapped__',
            self.conn.connection.driver_connection,
        )
        statement = sql_obj.as_string(unwrapped_connection)
        return self.conn.execute(sa.text(statement.replace(':', r'\:')))

    # ===== Statement Execution and Transaction Methods =====

    def execute(self, statement, intent: str):
        """Execute one statement, translating driver errors into StatementError or NotFoundError."""
        try:
            return self._execute_sql(statement)
        except sa.exc.DBAPIError as e:
            detail = str(e.orig).splitlines()[0] if e.orig is not None else type(e).__name__
            if getattr(e.orig, 'sqlstate', None) in _NOT_FOUND_SQLSTATES:
                raise NotFoundError(f'Error {intent}: {detail}') from e
            raise StatementError(intent, detail) from e

    @contextmanager
    def transaction(self):
        """Context manager for database transactions.

        Yields the adapter. Rolls back on exit unless committed inside the block.
        """
        self.conn.begin()
        try:
            yield self
        finally:
            self.rollback()

    def commit(self):
        try:
            self.conn.commit()
        except sa.exc.DBAPIError as e:
            raise StatementError('committing transaction', str(e.orig).splitlines()[0]) from e

    def rollback(self):
        if self.conn.in_transaction():
            self.conn.rollback()

    @contextmanager
    def savepoint(self):
        with self.conn.begin_nested():
            yield

    # ===== State Retrieval Methods =====

    def get_current_user(self) -> str:
        """Get the current database user."""
        return cast(str, self.execute(self.sql.SQL('SELECT CURRENT_USER'), 'reading current user').fetchall()[0][0])

    def get_role_exists(self, role_name: str) -> bool:
        """Check if a role exists."""
        exists = self.execute(
            self.sql.SQL('SELECT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = {role_name})').format(
                role_name=self.sql.Literal(role_name),
            ),
            f'checking if role {role_name} exists',
        ).fetchall()[0][0]

        return cast(bool, exists)

    def get_database_exists(self, database_name: str) -> bool:
        """Check if a database exists."""
        exists = self.execute(
            self.sql.SQL('SELECT EXISTS (SELECT 1 FROM pg_database WHERE datname = {database_name})').format(
                database_name=self.sql.Literal(database_name),
            ),
            f'checking if database {database_name} exists',
        ).fetchall()[0][0]

        return cast(bool, exists)

    def get_schema_exists(self, schema_name: str) -> bool:
        """Check if a schema exists."""
        exists = self.execute(
            self.sql.SQL('SELECT EXISTS (SELECT 1 FROM pg_namespace WHERE nspname = {schema_name})').format(
                schema_name=self.sql.Literal(schema_name),
            ),
            f'checking if schema {schema_name} exists',
        ).fetchall()[0][0]

        return cast(bool, exists)

    def is_member_of_role(self, member_name: str, role_name: str) -> bool:
        """Check if a role has the privileges of another role."""
        is_member = self.execute(
            self.sql.SQL("SELECT pg_has_role({member_name}, {role_name}, 'USAGE')").format(
                member_name=self.sql.Literal(member_name),
                role_name=self.sql.Literal(role_name),
            ),
            f'checking membership of role {member_name} in role {role_name}',
        ).fetchall()[0][0]

        return cast(bool, is_member)

    def has_revocable_membership(self, member_name: str, role_name: str) -> bool:
        """Check if ``REVOKE role FROM member`` issued on this connection would remove a membership.

        Before PostgreSQL 16 there is at most one membership row per pair, and the
        revoke removes it whoever granted it. From 16 on it only removes the rows
        granted by the current user.
        """
        has_membership = self.execute(
            self.sql.SQL("""
            SELECT EXISTS (
                SELECT 1
                FROM pg_auth_members m
                WHERE m.roleid = (SELECT oid FROM pg_roles WHERE rolname = {role_name})
                AND m.member = (SELECT oid FROM pg_roles WHERE rolname = {member_name})
                AND (
                    current_setting('server_version_num')::int < 160000
                    OR m.grantor = (SELECT oid FROM pg_roles WHERE rolname = current_user)
                )
            )
        """).format(
                member_name=self.sql.Literal(member_name),
                role_name=self.sql.Literal(role_name),
            ),
            f'checking direct membership of role {member_name} in role {role_name}',
        ).fetchall()[0][0]

        return cast(bool, has_membership)

    def get_schema(self, schema_name: str) -> tuple[str, tuple[str, ...]] | None:
        """Get the owner and ACL entries of a schema."""
        rows = self.execute(
            self.sql.SQL("""
            SELECT pg_get_userbyid(nspowner), COALESCE(nspacl, '{{}}'::aclitem[])::text[]
            FROM pg_namespace
            WHERE nspname = {schema_name}
        """).format(
                schema_name=self.sql.Literal(schema_name),
            ),
            f'reading schema {schema_name}',
        ).fetchall()
        if not rows:
            return None
        owner, acl_entries = rows[0]
        return owner, tuple(acl_entries)

    def get_table_owners(self, schema_name: str) -> tuple[str, ...]:
        """Get the owners of the tables, views and sequences in a schema."""
        owners = self.execute(
            self.sql.SQL("""
            SELECT DISTINCT pg_get_userbyid(c.relowner)
            FROM pg_class c
            INNER JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = {schema_name}
              AND c.relkind IN ({relkinds})
            ORDER BY 1
        """).format(
                schema_name=self.sql.Literal(schema_name),
                relkinds=self.sql.SQL(',').join(
                    self.sql.Literal(relkind) for relkind in _TABLE_RELKINDS + _SEQUENCE_RELKINDS
                ),
            ),
            f'reading table owners in schema {schema_name}',
        ).fetchall()

        return tuple(owner for (owner,) in owners)

    def _objects_sql(self, target: Target):
        """A query for name, acl and owner of the object(s) of a target."""
        if target.kind == ObjectKind.DATABASE:
            return self.sql.SQL(
                'SELECT datname AS name, datacl AS acl, datdba AS owner FROM pg_database WHERE datname = {name}',
            ).format(name=self.sql.Literal(target.name)), 'd'

        if target.kind == ObjectKind.FUNCTION:
            query = self.sql.SQL("""
                SELECT p.proname AS name, p.proacl AS acl, p.proowner AS owner
                FROM pg_proc p
                INNER JOIN pg_namespace n ON n.oid = p.pronamespace
                WHERE n.nspname = {schema_name}
            """).format(schema_name=self.sql.Literal(target.schema))
            name_column = 'proname'
            acl_kind = 'f'
        else:
            relkinds = _SEQUENCE_RELKINDS if target.kind == ObjectKind.SEQUENCE else _TABLE_RELKINDS
            query = self.sql.SQL("""
                SELECT c.relname AS name, c.relacl AS acl, c.relowner AS owner
                FROM pg_class c
                INNER JOIN pg_namespace n ON n.oid = c.relnamespace
                WHERE n.nspname = {schema_name}
                  AND c.relkind IN ({relkinds})
            """).format(
                schema_name=self.sql.Literal(target.schema),
                relkinds=self.sql.SQL(',').join(self.sql.Literal(relkind) for relkind in relkinds),
            )
            name_column = 'relname'
            acl_kind = 's' if target.kind == ObjectKind.SEQUENCE else 'r'

        if target.objects:
            query = self.sql.SQL('{query} AND {name_column} IN ({names})').format(
                query=query,
                name_column=self.sql.Identifier(name_column),
                names=self.sql.SQL(',').join(self.sql.Literal(name) for name in target.objects),
            )
        return query, acl_kind

    def get_object_privileges(self, role_name: str, target: Target) -> dict[str, Acl]:
        """Get the privileges of a role on every object of a target."""
        objects_sql, acl_kind = self._objects_sql(target)
        grantee = (
            self.sql.SQL('(SELECT oid FROM pg_roles WHERE rolname = {role_name})').format(
                role_name=self.sql.Literal(role_name),
            )
            if role_name
            else self.sql.SQL('0')
        )
        rows = self.execute(
            self.sql.SQL(_OBJECT_PRIVILEGES_SQL).format(
                objects=objects_sql,
                acl_kind=self.sql.Literal(acl_kind),
                grantee=grantee,
            ),
            f'reading privileges of role {role_name or "PUBLIC"} on {target.describe()}',
        ).fetchall()

        privileges: dict[str, Privilege] = {}
        grant_options: dict[str, Privilege] = {}
        for name, privilege_type, is_grantable in rows:
            privileges.setdefault(name, Privilege(0))
            grant_options.setdefault(name, Privilege(0))
            if privilege_type is None:
                continue
            privilege = Privilege.from_sql_name(privilege_type)
            privileges[name] |= privilege
            if is_grantable:
                grant_options[name] |= privilege

        return {
            name: Acl(role=role_name, privileges=privileges[name], grant_options=grant_options[name])
            for name in privileges
        }

    def get_role_members(self, role_name: str) -> tuple[str, ...]:
        """Get the direct members of a group role."""
        members = self.execute(
            self.sql.SQL("""
            SELECT members.rolname
            FROM pg_auth_members am
            INNER JOIN pg_roles groups ON groups.oid = am.roleid
            INNER JOIN pg_roles members ON members.oid = am.member
            WHERE groups.rolname = {role_name}
            ORDER BY 1
        """).format(
                role_name=self.sql.Literal(role_name),
            ),
            f'reading members of role {role_name}',
        ).fetchall()

        return tuple(member for (member,) in members)

    def get_extension(self, extension_name: str) -> tuple[str, str] | None:
        """Get the schema and version of an installed extension."""
        rows = self.execute(
            self.sql.SQL("""
            SELECT n.nspname, e.extversion
            FROM pg_extension e
            INNER JOIN pg_namespace n ON n.oid = e.extnamespace
            WHERE e.extname = {extension_name}
        """).format(
                extension_name=self.sql.Literal(extension_name),
            ),
            f'reading extension {extension_name}',
        ).fetchall()
        if not rows:
            return None
        schema_name, version = rows[0]
        return schema_name, version

    # ===== Catalog Manipulation Methods =====

    def grant_memberships(self, memberships: Iterable[str], role_name: str, intent: str = ''):
        """Grant role memberships."""
        memberships = tuple(memberships)
        if not memberships:
            logger.info('No memberships granted to %s', role_name)
            return
        logger.info('Granting memberships %s to role %s', memberships, role_name)
        self.execute(
            self.sql.SQL('GRANT {memberships} TO {role_name}').format(
                memberships=self.sql.SQL(',').join(self.sql.Identifier(membership) for membership in memberships),
                role_name=self.sql.Identifier(role_name),
            ),
            intent or f'granting memberships {", ".join(memberships)} to role {role_name}',
        )

    def revoke_memberships(self, memberships: Iterable[str], role_name: str, intent: str = ''):
        """Revoke role memberships."""
        memberships = tuple(memberships)
        if not memberships:
            logger.info('No memberships revoked from %s', role_name)
            return
        logger.info('Revoking memberships %s from role %s', memberships, role_name)
        self.execute(
            self.sql.SQL('REVOKE {memberships} FROM {role_name}').format(
                memberships=self.sql.SQL(',').join(self.sql.Identifier(membership) for membership in memberships),
                role_name=self.sql.Identifier(role_name),
            ),
            intent or f'revoking memberships {", ".join(memberships)} from role {role_name}',
        )

    def create_schema(self, schema_name: str, owner: str = '', if_not_exists: bool = False):
        """Create a new schema."""
        logger.info('Creating SCHEMA %s', schema_name)
        self.execute(
            self.sql.SQL('CREATE SCHEMA {if_not_exists}{schema_name}{authorization}').format(
                if_not_exists=self.sql.SQL('IF NOT EXISTS ' if if_not_exists else ''),
                schema_name=self.sql.Identifier(schema_name),
                authorization=self.sql.SQL(' AUTHORIZATION {owner}').format(owner=self.sql.Identifier(owner))
                if owner
                else self.sql.SQL(''),
            ),
            f'creating schema {schema_name}',
        )

    def rename_schema(self, schema_name: str, new_name: str):
        """Rename a schema."""
        logger.info('Renaming SCHEMA %s to %s', schema_name, new_name)
        self.execute(
            self.sql.SQL('ALTER SCHEMA {schema_name} RENAME TO {new_name}').format(
                schema_name=self.sql.Identifier(schema_name),
                new_name=self.sql.Identifier(new_name),
            ),
            f'renaming schema {schema_name} to {new_name}',
        )

    def grant_ownership(self, schema_name: str, role_name: str):
        """Grant ownership of a schema to a role."""
        logger.info('Granting ownership of SCHEMA %s to role %s', schema_name, role_name)
        self.execute(
            self.sql.SQL('ALTER SCHEMA {schema_name} OWNER TO {role_name}').format(
                schema_name=self.sql.Identifier(schema_name),
                role_name=self.sql.Identifier(role_name),
            ),
            f'granting ownership of schema {schema_name} to role {role_name}',
        )

    def drop_schema(self, schema_name: str, cascade: bool = False):
        """Drop a schema."""
        logger.info('Dropping SCHEMA %s', schema_name)
        self.execute(
            self.sql.SQL('DROP SCHEMA {schema_name} {drop_mode}').format(
                schema_name=self.sql.Identifier(schema_name),
                drop_mode=self.sql.SQL('CASCADE' if cascade else 'RESTRICT'),
            ),
            f'dropping schema {schema_name}',
        )

    def create_extension(self, extension_name: str, schema_name: str = '', version: str = ''):
        """Install an extension."""
        logger.info('Creating EXTENSION %s', extension_name)
        self.execute(
            self.sql.SQL('CREATE EXTENSION IF NOT EXISTS {extension_name}{schema_name}{version}').format(
                extension_name=self.sql.Identifier(extension_name),
                schema_name=self.sql.SQL(' SCHEMA {}').format(self.sql.Identifier(schema_name))
                if schema_name
                else self.sql.SQL(''),
                version=self.sql.SQL(' VERSION {}').format(self.sql.Literal(version)) if version else self.sql.SQL(''),
            ),
            f'creating extension {extension_name}',
        )

    def set_extension_schema(self, extension_name: str, schema_name: str):
        """Move an extension to another schema."""
        logger.info('Moving EXTENSION %s to schema %s', extension_name, schema_name)
        self.execute(
            self.sql.SQL('ALTER EXTENSION {extension_name} SET SCHEMA {schema_name}').format(
                extension_name=self.sql.Identifier(extension_name),
                schema_name=self.sql.Identifier(schema_name),
            ),
            f'moving extension {extension_name} to schema {schema_name}',
        )

    def update_extension(self, extension_name: str, version: str = ''):
        """Update an extension."""
        logger.info('Updating EXTENSION %s to version %s', extension_name, version or 'default')
        self.execute(
            self.sql.SQL('ALTER EXTENSION {extension_name} UPDATE{version}').format(
                extension_name=self.sql.Identifier(extension_name),
                version=self.sql.SQL(' TO {}').format(self.sql.Literal(version)) if version else self.sql.SQL(''),
            ),
            f'updating extension {extension_name}',
        )

    def drop_extension(self, extension_name: str):
        """Uninstall an extension."""
        logger.info('Dropping EXTENSION %s', extension_name)
        self.execute(
            self.sql.SQL('DROP EXTENSION {extension_name}').format(
                extension_name=self.sql.Identifier(extension_name),
            ),
            f'dropping extension {extension_name}',
        )
