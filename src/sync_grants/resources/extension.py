"""Reconciler for extension resources."""

import logging

from sync_grants.client import Client
from sync_grants.exceptions import ConfigError
from sync_grants.exceptions import NotFoundError
from sync_grants.features import Feature
from sync_grants.models import ExtensionConfig
from sync_grants.models import ResourceData

logger = logging.getLogger(__name__)

RESOURCE_NAME = 'postgresql_extension'


def extension_id(database: str, name: str) -> str:
    return f'{database}.{name}'


def create_extension(client: Client, data: ResourceData):
    client.require(Feature.EXTENSION, RESOURCE_NAME)
    config = ExtensionConfig.from_resource(data, client.default_database)

    with client.catalog_lock.write():
        with client.transaction(config.database) as adapter:
            adapter.create_extension(config.name, schema_name=config.schema, version=config.version)
            adapter.commit()

        data.set_id(extension_id(config.database, config.name))
        _read(client, data, config)


def read_extension(client: Client, data: ResourceData):
    """Refresh schema and version from the catalog, clearing the identifier when the extension is gone."""
    client.require(Feature.EXTENSION, RESOURCE_NAME)
    config = ExtensionConfig.from_resource(data, client.default_database)

    with client.catalog_lock.read():
        _read(client, data, config)


def _read(client: Client, data: ResourceData, config: ExtensionConfig):
    with client.transaction(config.database) as adapter:
        extension = adapter.get_extension(config.name)

    if extension is None:
        logger.warning('Extension %s not found in database %s', config.name, config.database)
        data.set_id('')
        return

    schema_name, version = extension
    data.set('name', config.name)
    data.set('schema', schema_name)
    data.set('version', version)
    data.set('database', config.database)
    data.set_id(extension_id(config.database, config.name))


def update_extension(client: Client, data: ResourceData):
    """Move the extension to its declared schema and update it to its declared version."""
    client.require(Feature.EXTENSION, RESOURCE_NAME)
    config = ExtensionConfig.from_resource(data, client.default_database)

    if data.has_change('schema') and not config.schema:
        raise ConfigError('Error setting extension schema to an empty string')

    with client.catalog_lock.write():
        with client.transaction(config.database) as adapter:
            if data.has_change('schema'):
                adapter.set_extension_schema(config.name, config.schema)
            if data.has_change('version'):
                adapter.update_extension(config.name, config.version)
            adapter.commit()

        _read(client, data, config)


def delete_extension(client: Client, data: ResourceData):
    client.require(Feature.EXTENSION, RESOURCE_NAME)
    config = ExtensionConfig.from_resource(data, client.default_database)

    with client.catalog_lock.write():
        try:
            with client.transaction(config.database) as adapter:
                adapter.drop_extension(config.name)
                adapter.commit()
        except NotFoundError as e:
            logger.warning('Extension %s already dropped: %s', config.name, e)

    data.set_id('')


def extension_exists(client: Client, data: ResourceData) -> bool:
    client.require(Feature.EXTENSION, RESOURCE_NAME)
    config = ExtensionConfig.from_resource(data, client.default_database)

    with client.catalog_lock.read():
        with client.transaction(config.database) as adapter:
            return adapter.get_extension(config.name) is not None
