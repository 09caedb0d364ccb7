"""Reconciler for grant resources: one role's privileges on a database, or on objects in a schema.

Create and update both revoke everything the role holds on the target and then
grant the declared privileges, in one transaction, so the role never loses its
privileges in between and grant options can be lowered.
"""

import logging
from dataclasses import replace

from sync_grants import acl
from sync_grants.client import Client
from sync_grants.elevation import elevated_roles
from sync_grants.elevation import roles_to_grant_for_schema
from sync_grants.exceptions import ConfigError
from sync_grants.exceptions import NotFoundError
from sync_grants.features import Feature
from sync_grants.models import GrantConfig
from sync_grants.models import ObjectKind
from sync_grants.models import ResourceData
from sync_grants.models import privileges_from_names

logger = logging.getLogger(__name__)

RESOURCE_NAME = 'postgresql_grant'
ID_DELIMITER = ':'
GRANT_OPTION_SUFFIX = '*'


def grant_id(config: GrantConfig) -> str:
    """The identifier of a grant: ``{database}.{role}:{object_type}:{schema}:{objects}:{privileges}``.

    Objects and privileges are sorted and comma-joined, so the identifier also
    records what was applied. Privileges granted with grant option are
    suffixed with ``*``, as in an aclitem.
    """
    suffix = GRANT_OPTION_SUFFIX if config.with_grant_option else ''
    return ID_DELIMITER.join(
        (
            f'{config.database}.{config.role}',
            config.object_type.value,
            config.schema,
            ','.join(sorted(config.objects)),
            ','.join(f'{name}{suffix}' for name in sorted(config.privileges.sql_names())),
        ),
    )


def parse_grant_id(id: str) -> dict:
    """Split a grant identifier into its fields.

    Returns:
        dict: With keys database, role, object_type, schema, objects, privileges and
        with_grant_option, objects and privileges as tuples.
    """
    database, _, rest = id.partition('.')
    parts = rest.split(ID_DELIMITER)
    if not database or len(parts) != 5:
        raise ConfigError(f'Grant ID {id!r} has not the expected format "database.role:type:schema:objects:privileges"')
    role, object_type, schema, objects, privileges = parts
    privilege_names = tuple(privileges.split(',')) if privileges else ()
    return {
        'database': database,
        'role': role,
        'object_type': object_type,
        'schema': schema,
        'objects': tuple(objects.split(',')) if objects else (),
        'privileges': tuple(name.removesuffix(GRANT_OPTION_SUFFIX) for name in privilege_names),
        'with_grant_option': any(name.endswith(GRANT_OPTION_SUFFIX) for name in privilege_names),
    }


def _applied_config(data: ResourceData) -> GrantConfig:
    """The grant as last applied: the declared values, with objects, privileges and grant option taken from the id.

    A read that found drift clears ``privileges`` and ``objects``, so they are
    only trusted while there is no id yet.
    """
    config = GrantConfig.from_resource(data, require_privileges=False)
    if not data.id:
        return config
    applied = parse_grant_id(data.id)
    return replace(
        config,
        objects=applied['objects'],
        privileges=privileges_from_names(applied['privileges'], config.object_type),
        with_grant_option=applied['with_grant_option'],
    )


def _apply(client: Client, adapter, config: GrantConfig, grant: bool):
    target = config.target()
    owners = () if config.object_type == ObjectKind.DATABASE else roles_to_grant_for_schema(adapter, config.schema)
    declared = config.declaration().to_acl()
    role_name = config.role or 'PUBLIC'

    with elevated_roles(adapter, owners, client.actor_role(adapter)):
        logger.info('Revoking all privileges on %s from role %s', target.describe(), role_name)
        for statement in acl.revokes(target, declared):
            adapter.execute(statement, f'revoking privileges on {target.describe()} from role {role_name}')
        if not grant:
            return
        logger.info(
            'Granting %s on %s to role %s%s',
            ', '.join(declared.privileges.sql_names()),
            target.describe(),
            role_name,
            ' with grant option' if config.with_grant_option else '',
        )
        for statement in acl.grants(target, declared):
            adapter.execute(statement, f'granting privileges on {target.describe()} to role {role_name}')


def create_grant(client: Client, data: ResourceData):
    """Apply the declared privileges, then re-read them."""
    client.require(Feature.PRIVILEGES, RESOURCE_NAME)
    config = GrantConfig.from_resource(data)

    with client.catalog_lock.write():
        with client.transaction(config.database) as adapter:
            _apply(client, adapter, config, grant=True)
            adapter.commit()

        data.set_id(grant_id(config))
        _read(client, data, config)


# Create revokes before granting, so it applies changes too
update_grant = create_grant


def read_grant(client: Client, data: ResourceData):
    """Compare the privileges in the catalog with the ones last applied.

    Clears the identifier when the role, database or schema is gone, and clears
    ``privileges`` (and ``objects``) when the catalog has drifted so the next
    apply grants them again. The identifier itself is kept, so reading again
    still compares against what was applied.
    """
    client.require(Feature.PRIVILEGES, RESOURCE_NAME)
    config = _applied_config(data)

    with client.catalog_lock.read():
        _read(client, data, config)


def _role_database_schema_exist(client: Client, config: GrantConfig) -> bool:
    with client.transaction() as adapter:
        if config.role and not adapter.get_role_exists(config.role):
            logger.debug('Role %s does not exist', config.role)
            return False
        if not adapter.get_database_exists(config.database):
            logger.debug('Database %s does not exist', config.database)
            return False

    if config.object_type == ObjectKind.DATABASE:
        return True

    with client.transaction(config.database) as adapter:
        if not adapter.get_schema_exists(config.schema):
            logger.debug('Schema %s does not exist in database %s', config.schema, config.database)
            return False
    return True


def _read(client: Client, data: ResourceData, config: GrantConfig):
    if not _role_database_schema_exist(client, config):
        data.set_id('')
        return

    if not data.id:
        data.set_id(grant_id(config))

    expected = config.declaration()
    with client.transaction(config.database) as adapter:
        actual = adapter.get_object_privileges(config.role, config.target())

    if config.objects and set(actual) != set(config.objects):
        logger.debug(
            'Role %s expected to have privileges %s on %s but actually had privileges on %s',
            config.role or 'PUBLIC',
            expected.privileges.sql_names(),
            list(config.objects),
            sorted(actual),
        )
        data.set('objects', [])

    for name in sorted(actual):
        if actual[name].privileges != expected.privileges or actual[name].grant_options != expected.grant_options:
            logger.debug(
                '%s %s has not the expected privileges %s for role %s, found %s',
                config.object_type.value,
                name,
                expected.privileges.sql_names(),
                config.role or 'PUBLIC',
                actual[name].privileges.sql_names(),
            )
            data.set('privileges', [])
            break

    if config.objects and not actual:
        logger.warning('None of the objects %s exist in schema %s any more', list(config.objects), config.schema)
        data.set_id('')


def delete_grant(client: Client, data: ResourceData):
    """Revoke every privilege the role holds on the objects the grant was applied to."""
    client.require(Feature.PRIVILEGES, RESOURCE_NAME)
    config = _applied_config(data)

    with client.catalog_lock.write():
        try:
            with client.transaction(config.database) as adapter:
                _apply(client, adapter, config, grant=False)
                adapter.commit()
        except NotFoundError as e:
            logger.warning('Nothing to revoke for grant %s: %s', data.id, e)

    data.set_id('')
