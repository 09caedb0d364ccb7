"""Reconciler for schema resources: a schema, its owner and per-role policies on it."""

import logging

from sync_grants import acl
from sync_grants.client import Client
from sync_grants.elevation import elevated_role
from sync_grants.elevation import elevated_roles
from sync_grants.exceptions import ConfigError
from sync_grants.exceptions import NotFoundError
from sync_grants.features import Feature
from sync_grants.models import ObjectKind
from sync_grants.models import ResourceData
from sync_grants.models import SchemaConfig
from sync_grants.models import Target
from sync_grants.models import acl_to_schema_policy
from sync_grants.models import role_key
from sync_grants.models import schema_policy_to_declaration
from sync_grants.policy import declarations_by_role
from sync_grants.policy import diff_policies
from sync_grants.policy import plan_statements

logger = logging.getLogger(__name__)


def schema_id(database: str, name: str) -> str:
    return f'{database}.{name}'


def _database_and_name(client: Client, data: ResourceData) -> tuple[str, str]:
    """The database and schema of a resource, taken from its identifier when importing."""
    name = data.get('name', '')
    if name:
        return data.get('database', '') or client.default_database, name
    database, _, name = data.id.partition('.')
    if not database or not name:
        raise ConfigError(f'Schema ID {data.id!r} has not the expected format "database.schema"')
    return database, name


def create_schema(client: Client, data: ResourceData):
    """Create the schema, or take it over when it already exists, and grant its policies."""
    config = SchemaConfig.from_resource(data, client.default_database)
    target = Target(ObjectKind.SCHEMA, name=config.name)

    with client.catalog_lock.write():
        with client.transaction(config.database) as adapter:
            with elevated_role(adapter, config.owner, client.actor_role(adapter)):
                if adapter.get_schema_exists(config.name):
                    if config.owner:
                        adapter.grant_ownership(config.name, config.owner)
                else:
                    adapter.create_schema(
                        config.name,
                        owner=config.owner,
                        if_not_exists=config.if_not_exists and client.supported(Feature.SCHEMA_CREATE_IF_NOT_EXISTS),
                    )

                policies = declarations_by_role(config.policies)
                for key in sorted(policies):
                    declaration = policies[key]
                    for statement in acl.grants(target, declaration.to_acl()):
                        adapter.execute(
                            statement,
                            f'granting privileges on schema {config.name} to role {declaration.role or "PUBLIC"}',
                        )
            adapter.commit()

        data.set_id(schema_id(config.database, config.name))
        _read(client, data, config.database, config.name)


def read_schema(client: Client, data: ResourceData):
    """Refresh owner and policies from the catalog, clearing the identifier when the schema is gone."""
    database, name = _database_and_name(client, data)
    with client.catalog_lock.read():
        _read(client, data, database, name)


def _read(client: Client, data: ResourceData, database: str, name: str):
    with client.transaction(database) as adapter:
        schema = adapter.get_schema(name)

    if schema is None:
        logger.warning('Schema %s not found in database %s', name, database)
        data.set_id('')
        return

    owner, acl_entries = schema
    acls = acl.merge_by_role(acl.parse(entry) for entry in acl_entries)
    actual = [acl_to_schema_policy(acls[key]) for key in sorted(acls) if key != role_key(owner)]

    # Ownership covers the owner's privileges, so a policy naming the owner is not compared
    declared = [
        declaration
        for declaration in (schema_policy_to_declaration(policy) for policy in data.get('policy', ()))
        if declaration.key != role_key(owner)
    ]
    diff = diff_policies(declared, (schema_policy_to_declaration(policy) for policy in actual))
    if diff.has_changes:
        logger.debug(
            'Policies on schema %s drifted: dropped=%s added=%s updated=%s',
            name,
            sorted(diff.dropped),
            sorted(diff.added),
            sorted(diff.updated),
        )
        data.set('policy', actual)

    data.set('name', name)
    data.set('owner', owner)
    data.set('database', database)
    data.set_id(schema_id(database, name))


def update_schema(client: Client, data: ResourceData):
    """Apply a rename, an owner change and policy changes in one transaction."""
    config = SchemaConfig.from_resource(data, client.default_database)

    if data.has_change('owner') and not config.owner:
        raise ConfigError('Error setting schema owner to an empty string')
    previous_owner, _ = data.get_change('owner')

    with client.catalog_lock.write():
        with client.transaction(config.database) as adapter:
            owners = {previous_owner or '', config.owner}
            with elevated_roles(adapter, owners, client.actor_role(adapter)):
                if data.has_change('name'):
                    old_name, new_name = data.get_change('name')
                    adapter.rename_schema(old_name, new_name)

                if data.has_change('owner'):
                    adapter.grant_ownership(config.name, config.owner)

                if data.has_change('policy'):
                    old_policies, new_policies = data.get_change('policy')
                    diff = diff_policies(
                        [schema_policy_to_declaration(policy) for policy in old_policies or ()],
                        [schema_policy_to_declaration(policy) for policy in new_policies or ()],
                    )
                    target = Target(ObjectKind.SCHEMA, name=config.name)
                    for statement in plan_statements(diff, target, adapter.get_role_exists):
                        adapter.execute(statement, f'updating privileges on schema {config.name}')
            adapter.commit()

        data.set_id(schema_id(config.database, config.name))
        _read(client, data, config.database, config.name)


def delete_schema(client: Client, data: ResourceData):
    """Drop the schema, and with ``drop_cascade`` everything in it."""
    config = SchemaConfig.from_resource(data, client.default_database)

    with client.catalog_lock.write():
        try:
            with client.transaction(config.database) as adapter:
                with elevated_role(adapter, config.owner, client.actor_role(adapter)):
                    adapter.drop_schema(config.name, cascade=config.drop_cascade)
                adapter.commit()
        except NotFoundError as e:
            logger.warning('Schema %s already dropped: %s', config.name, e)

    data.set_id('')


def schema_exists(client: Client, data: ResourceData) -> bool:
    database, name = _database_and_name(client, data)

    with client.catalog_lock.read():
        with client.transaction() as adapter:
            if not adapter.get_database_exists(database):
                return False
        with client.transaction(database) as adapter:
            return adapter.get_schema_exists(name)
