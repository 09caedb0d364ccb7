import uuid
from contextlib import contextmanager
from types import SimpleNamespace

import pytest
import sqlalchemy as sa

from sync_grants.adapters.postgres import PostgresAdapter
from sync_grants.client import Client
from sync_grants.models import Acl

engine_type = 'postgresql+psycopg'

# The default/root database that comes with the PostgreSQL Docker image
ROOT_DATABASE_NAME = 'postgres'

# We make and drop a database in each test to keep them isolated
TEST_DATABASE_NAME = 'sync_grants_test'

ROOT_URL = f'{engine_type}://postgres:postgres@127.0.0.1:5432/{ROOT_DATABASE_NAME}'

TRANSACTION_MARKERS = ('BEGIN', 'COMMIT', 'ROLLBACK', 'SAVEPOINT', 'RELEASE SAVEPOINT', 'ROLLBACK TO SAVEPOINT')


class FakeDriverError(Exception):
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


class FakeAdapter(PostgresAdapter):
    """PostgresAdapter that records statements instead of sending them, with an in-memory catalog."""

    def __init__(self, current_user='syncer'):
        super().__init__(SimpleNamespace(engine=SimpleNamespace(driver='psycopg')))
        self.statements = []
        self.fail_on = None
        self.fail_sqlstate = None
        self.current_user = current_user
        self.roles = {current_user}
        self.memberships = set()
        # Direct memberships of a NOINHERIT member, which give no privileges
        self.noinherit_memberships = set()
        self.databases = {ROOT_DATABASE_NAME}
        self.schemas = {}
        self.table_owners = {}
        self.object_privileges = {}
        self.extensions = {}
        self.committed = False
        self.in_transaction = False

    def _execute_sql(self, sql_obj):
        statement = sql_obj.as_string(None)
        self.statements.append(statement)
        if self.fail_on is not None and self.fail_on in statement:
            raise sa.exc.DBAPIError(statement, None, FakeDriverError('simulated failure', self.fail_sqlstate))
        return None

    @property
    def sql_statements(self):
        """Recorded statements without transaction markers."""
        return [statement for statement in self.statements if statement not in TRANSACTION_MARKERS]

    @contextmanager
    def transaction(self):
        self.statements.append('BEGIN')
        self.committed = False
        self.in_transaction = True
        try:
            yield self
        finally:
            self.rollback()
            self.in_transaction = False

    def commit(self):
        self.statements.append('COMMIT')
        self.committed = True

    def rollback(self):
        if self.in_transaction and not self.committed:
            self.statements.append('ROLLBACK')
            self.in_transaction = False

    @contextmanager
    def savepoint(self):
        self.statements.append('SAVEPOINT')
        try:
            yield
        except Exception:
            self.statements.append('ROLLBACK TO SAVEPOINT')
            raise
        self.statements.append('RELEASE SAVEPOINT')

    def get_current_user(self):
        return self.current_user

    def get_role_exists(self, role_name):
        return role_name in self.roles

    def get_database_exists(self, database_name):
        return database_name in self.databases

    def get_schema_exists(self, schema_name):
        return schema_name in self.schemas

    def is_member_of_role(self, member_name, role_name):
        return member_name == role_name or (member_name, role_name) in self.memberships

    def has_revocable_membership(self, member_name, role_name):
        pair = (member_name, role_name)
        return pair in self.memberships or pair in self.noinherit_memberships

    def get_schema(self, schema_name):
        return self.schemas.get(schema_name)

    def get_table_owners(self, schema_name):
        return tuple(sorted(self.table_owners.get(schema_name, ())))

    def get_object_privileges(self, role_name, target):
        scope = target.schema if target.kind.in_schema else target.name
        acls = self.object_privileges.get((role_name, target.kind, scope), {})
        if target.objects:
            acls = {name: acl for name, acl in acls.items() if name in target.objects}
        return {
            name: Acl(role=role_name, privileges=acl.privileges, grant_options=acl.grant_options)
            for name, acl in acls.items()
        }

    def get_role_members(self, role_name):
        return tuple(sorted(member for member, role in self.memberships if role == role_name))

    def get_extension(self, extension_name):
        return self.extensions.get(extension_name)

    def grant_memberships(self, memberships, role_name, intent=''):
        memberships = tuple(memberships)
        super().grant_memberships(memberships, role_name, intent)
        self.memberships.update((role_name, membership) for membership in memberships)

    def revoke_memberships(self, memberships, role_name, intent=''):
        memberships = tuple(memberships)
        super().revoke_memberships(memberships, role_name, intent)
        self.memberships.difference_update((role_name, membership) for membership in memberships)

    def create_schema(self, schema_name, owner='', if_not_exists=False):
        super().create_schema(schema_name, owner=owner, if_not_exists=if_not_exists)
        self.schemas.setdefault(schema_name, (owner or self.current_user, ()))

    def rename_schema(self, schema_name, new_name):
        super().rename_schema(schema_name, new_name)
        self.schemas[new_name] = self.schemas.pop(schema_name)

    def grant_ownership(self, schema_name, role_name):
        super().grant_ownership(schema_name, role_name)
        _, acl_entries = self.schemas[schema_name]
        self.schemas[schema_name] = (role_name, acl_entries)

    def drop_schema(self, schema_name, cascade=False):
        super().drop_schema(schema_name, cascade=cascade)
        self.schemas.pop(schema_name, None)

    def create_extension(self, extension_name, schema_name='', version=''):
        super().create_extension(extension_name, schema_name=schema_name, version=version)
        self.extensions.setdefault(extension_name, (schema_name or 'public', version or '1.0'))

    def set_extension_schema(self, extension_name, schema_name):
        super().set_extension_schema(extension_name, schema_name)
        _, version = self.extensions[extension_name]
        self.extensions[extension_name] = (schema_name, version)

    def update_extension(self, extension_name, version=''):
        super().update_extension(extension_name, version=version)
        schema_name, _ = self.extensions[extension_name]
        self.extensions[extension_name] = (schema_name, version)

    def drop_extension(self, extension_name):
        super().drop_extension(extension_name)
        self.extensions.pop(extension_name, None)


class FakeClient(Client):
    """Client whose transactions all run on one FakeAdapter."""

    def __init__(self, adapter, expected_version='16.2', **kwargs):
        super().__init__(
            f'{engine_type}://syncer@127.0.0.1:5432/{ROOT_DATABASE_NAME}',
            expected_version=expected_version,
            **kwargs,
        )
        self.adapter = adapter
        self.opened = []

    @contextmanager
    def transaction(self, database=None):
        self.opened.append(database or self.default_database)
        with self.adapter.transaction():
            yield self.adapter


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def fake_client(fake_adapter):
    return FakeClient(fake_adapter)


@pytest.fixture
def make_fake_client(fake_adapter):
    def _make_fake_client(**kwargs):
        return FakeClient(fake_adapter, **kwargs)

    return _make_fake_client


@pytest.fixture
def root_engine():
    engine = sa.create_engine(ROOT_URL, connect_args={'connect_timeout': 2})
    try:
        with engine.connect():
            pass
    except sa.exc.OperationalError:
        engine.dispose()
        pytest.skip('PostgreSQL is not available on 127.0.0.1:5432')
    yield engine
    engine.dispose()


@pytest.fixture
def test_database(root_engine):
    syncing_user = f'test_syncing_user_{uuid.uuid4().hex}'

    def drop_database_if_exists(conn):
        # Recent versions of PostgreSQL have a `WITH (force)` option to DROP DATABASE which kills
        # conections, but we run tests on older versions that don't support this.
        conn.execute(
            sa.text(f"""
            SELECT pg_terminate_backend(pg_stat_activity.pid)
            FROM pg_stat_activity
            WHERE pg_stat_activity.datname = '{TEST_DATABASE_NAME}'
            AND pid != pg_backend_pid();
        """),
        )
        conn.execute(sa.text(f'DROP DATABASE IF EXISTS {TEST_DATABASE_NAME}'))
        memberships = conn.execute(
            sa.text("""
            SELECT roleid::regrole, member::regrole
            FROM pg_auth_members
            WHERE member::regrole::text LIKE 'test\\_%' OR roleid::regrole::text LIKE 'test\\_%'
        """),
        ).fetchall()
        for role, member in memberships:
            conn.execute(sa.text(f'REVOKE {role} FROM {member} CASCADE'))

        roles = conn.execute(
            sa.text("""
            SELECT rolname FROM pg_roles WHERE rolname LIKE 'test\\_%'
        """),
        ).fetchall()
        for (role,) in roles:
            conn.execute(sa.text(f'REVOKE ALL PRIVILEGES ON DATABASE {ROOT_DATABASE_NAME} FROM {role}'))
            conn.execute(sa.text(f'DROP ROLE {role}'))

    with root_engine.connect() as conn:
        conn.execution_options(isolation_level='AUTOCOMMIT')
        drop_database_if_exists(conn)
        conn.execute(sa.text(f'CREATE DATABASE {TEST_DATABASE_NAME}'))
        conn.execute(sa.text(f'REVOKE CONNECT ON DATABASE {TEST_DATABASE_NAME} FROM PUBLIC'))

    with root_engine.begin() as conn:
        conn.execute(sa.text(f"CREATE ROLE {syncing_user} WITH CREATEROLE LOGIN PASSWORD 'password'"))
        conn.execute(sa.text(f'ALTER DATABASE {TEST_DATABASE_NAME} OWNER TO {syncing_user}'))

    yield syncing_user

    with root_engine.connect() as conn:
        conn.execution_options(isolation_level='AUTOCOMMIT')
        drop_database_if_exists(conn)


@pytest.fixture
def test_client(test_database):
    client = Client(f'{engine_type}://{test_database}:password@127.0.0.1:5432/{TEST_DATABASE_NAME}')
    yield client
    client.close()


@pytest.fixture
def test_engine(test_database):
    # The NullPool prevents default connection pooling, which interfers with tests that
    # terminate connections
    engine = sa.create_engine(
        f'{engine_type}://{test_database}:password@127.0.0.1:5432/{TEST_DATABASE_NAME}',
        poolclass=sa.pool.NullPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def create_test_role(test_engine):
    # Created by the syncing user, which can then grant memberships in it
    def _create_test_role(suffix=''):
        role_name = f'test_role_{uuid.uuid4().hex[:12]}{suffix}'
        with test_engine.begin() as conn:
            conn.execute(sa.text(f'CREATE ROLE {role_name}'))
        return role_name

    return _create_test_role


@pytest.fixture
def test_table(root_engine, test_engine):
    schema_name = f'test_schema_{uuid.uuid4().hex}'
    table_name = f'test_table_{uuid.uuid4().hex}'

    with test_engine.begin() as conn:
        conn.execute(sa.text(f'CREATE SCHEMA {schema_name}'))
        conn.execute(sa.text(f'CREATE TABLE {schema_name}.{table_name} (id int)'))

    yield schema_name, table_name

    with test_engine.begin() as conn:
        conn.execute(sa.text(f'DROP SCHEMA IF EXISTS {schema_name} CASCADE'))


@pytest.fixture
def test_sqlite_engine():
    engine = sa.create_engine('sqlite:///:memory:')
    yield engine
    engine.dispose()
