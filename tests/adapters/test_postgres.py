from types import SimpleNamespace

import pytest
from psycopg import sql

from sync_grants.adapters.postgres import PostgresAdapter
from sync_grants.exceptions import NotFoundError
from sync_grants.exceptions import StatementError
from sync_grants.models import Acl
from sync_grants.models import ObjectKind
from sync_grants.models import Privilege
from sync_grants.models import ResourceData
from sync_grants.models import Target
from sync_grants.resources.grant import create_grant
from sync_grants.resources.grant import delete_grant
from sync_grants.resources.role_membership import create_role_membership
from sync_grants.resources.schema import create_schema
from sync_grants.resources.schema import delete_schema


def test_adapter_requires_psycopg_driver() -> None:
    with pytest.raises(ValueError, match='Unsupported database driver: psycopg2'):
        PostgresAdapter(SimpleNamespace(engine=SimpleNamespace(driver='psycopg2')))


@pytest.mark.parametrize('sqlstate', ['42704', '3F000', '42P01', '42883', '3D000'])
def test_execute_raises_not_found(fake_adapter, sqlstate) -> None:
    fake_adapter.fail_on = 'DROP'
    fake_adapter.fail_sqlstate = sqlstate

    with pytest.raises(NotFoundError, match='Error dropping schema app: simulated failure'):
        fake_adapter.drop_schema('app')


def test_execute_raises_statement_error(fake_adapter) -> None:
    fake_adapter.fail_on = 'DROP'
    fake_adapter.fail_sqlstate = '2BP01'

    with pytest.raises(StatementError) as excinfo:
        fake_adapter.drop_schema('app')

    assert excinfo.value.intent == 'dropping schema app'
    assert str(excinfo.value) == 'Error dropping schema app: simulated failure'
    assert excinfo.value.__cause__ is not None


def test_execute_keeps_colons_in_quoted_names() -> None:
    executed = []
    conn = SimpleNamespace(
        engine=SimpleNamespace(driver='psycopg'),
        connection=SimpleNamespace(driver_connection=None),
        execute=executed.append,
    )
    adapter = PostgresAdapter(conn)

    adapter.execute(
        sql.SQL('CREATE SCHEMA {} AUTHORIZATION {}').format(sql.Identifier('my :app'), sql.Identifier('owner')),
        'creating schema my :app',
    )
    adapter.execute(sql.SQL('SELECT {}::text').format(sql.Literal('a :b')), 'selecting')

    assert [clause._bindparams for clause in executed] == [{}, {}]
    assert [str(clause) for clause in executed] == [
        'CREATE SCHEMA "my :app" AUTHORIZATION "owner"',
        "SELECT 'a :b'::text",
    ]


def test_catalog_queries(test_client, test_database, test_table) -> None:
    schema_name, _ = test_table

    with test_client.transaction() as adapter:
        assert adapter.get_current_user() == test_database
        assert adapter.get_role_exists(test_database)
        assert not adapter.get_role_exists('test_missing_role')
        assert adapter.get_database_exists(test_client.default_database)
        assert adapter.get_schema_exists(schema_name)
        assert adapter.get_table_owners(schema_name) == (test_database,)
        assert adapter.get_schema(schema_name) == (test_database, ())
        assert adapter.get_schema('test_missing_schema') is None
        assert adapter.get_extension('test_missing_extension') is None


def test_table_grant_round_trip(test_client, test_table, create_test_role) -> None:
    schema_name, table_name = test_table
    role_name = create_test_role()
    data = ResourceData(
        {
            'role': role_name,
            'database': test_client.default_database,
            'schema': schema_name,
            'object_type': 'table',
            'objects': [table_name],
            'privileges': ['SELECT', 'UPDATE'],
        },
    )

    create_grant(test_client, data)

    assert data.id
    assert data.get('privileges') == ['SELECT', 'UPDATE']
    with test_client.transaction() as adapter:
        target = Target(ObjectKind.TABLE, schema=schema_name, objects=(table_name,))
        assert adapter.get_object_privileges(role_name, target) == {
            table_name: Acl(role_name, Privilege.SELECT | Privilege.UPDATE),
        }

    delete_grant(test_client, data)

    assert data.id == ''
    with test_client.transaction() as adapter:
        assert adapter.get_object_privileges(role_name, target) == {table_name: Acl(role_name)}


def test_database_grant_with_grant_option(test_client, create_test_role) -> None:
    role_name = create_test_role()
    database = test_client.default_database
    data = ResourceData(
        {
            'role': role_name,
            'database': database,
            'object_type': 'database',
            'privileges': ['CONNECT'],
            'with_grant_option': True,
        },
    )

    create_grant(test_client, data)

    assert data.id == f'{database}.{role_name}:database:::CONNECT*'
    with test_client.transaction() as adapter:
        assert adapter.get_object_privileges(role_name, Target(ObjectKind.DATABASE, name=database)) == {
            database: Acl(role_name, Privilege.CONNECT, Privilege.CONNECT),
        }


def test_schema_with_policies(test_client, test_database, create_test_role) -> None:
    reader = create_test_role()
    declared = [{'role': reader, 'usage': True}]
    data = ResourceData({'name': 'test_app', 'policy': declared})

    create_schema(test_client, data)

    assert data.id == f'{test_client.default_database}.test_app'
    assert data.get('owner') == test_database
    assert data.get('policy') is declared
    with test_client.transaction() as adapter:
        _, acl_entries = adapter.get_schema('test_app')
    assert f'{reader}=U/{test_database}' in acl_entries

    delete_schema(test_client, data)

    with test_client.transaction() as adapter:
        assert not adapter.get_schema_exists('test_app')


def test_drop_missing_schema_raises_not_found(test_client) -> None:
    with test_client.transaction() as adapter:
        with pytest.raises(NotFoundError):
            adapter.drop_schema('test_missing_schema')


def test_role_membership(test_client, test_database, create_test_role) -> None:
    group = create_test_role()
    member = create_test_role()
    data = ResourceData({'name': 'test_membership', 'role': group, 'members': [member]})

    create_role_membership(test_client, data)

    assert data.get('members') == [member]
    with test_client.transaction() as adapter:
        assert adapter.get_role_members(group) == (member,)
        assert adapter.is_member_of_role(member, group)
        assert not adapter.is_member_of_role(group, member)
        assert adapter.has_revocable_membership(member, group)
        assert not adapter.has_revocable_membership(group, member)


def test_savepoint_rolls_back_failed_block(test_client) -> None:
    with test_client.transaction() as adapter:
        with pytest.raises(StatementError):
            with adapter.savepoint():
                adapter.create_schema('test_savepoint')
                adapter.create_schema('test_savepoint')
        assert not adapter.get_schema_exists('test_savepoint')
