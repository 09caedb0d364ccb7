"""Reconciler for role membership resources: the members of one group role."""

import logging

from sync_grants.client import Client
from sync_grants.models import ResourceData
from sync_grants.models import RoleMembershipConfig

logger = logging.getLogger(__name__)


def _add_members(adapter, members, role: str):
    for member in sorted(members):
        adapter.grant_memberships((role,), member, f'granting role {role} to role {member}')


def _remove_members(adapter, members, role: str):
    for member in sorted(members):
        adapter.revoke_memberships((role,), member, f'revoking role {role} from role {member}')


def create_role_membership(client: Client, data: ResourceData):
    config = RoleMembershipConfig.from_resource(data)

    with client.catalog_lock.write():
        with client.transaction() as adapter:
            _add_members(adapter, config.members, config.role)
            adapter.commit()

        data.set_id(config.name)
        _read(client, data, config.role)


def read_role_membership(client: Client, data: ResourceData):
    config = RoleMembershipConfig.from_resource(data)
    with client.catalog_lock.read():
        _read(client, data, config.role)


def _read(client: Client, data: ResourceData, role: str):
    with client.transaction() as adapter:
        if not adapter.get_role_exists(role):
            logger.warning('Role %s not found', role)
            data.set_id('')
            return
        members = adapter.get_role_members(role)

    data.set('role', role)
    data.set('members', list(members))


def update_role_membership(client: Client, data: ResourceData):
    """Grant the role to new members and revoke it from members no longer declared."""
    config = RoleMembershipConfig.from_resource(data)

    with client.catalog_lock.write():
        if data.has_change('members'):
            old_members, new_members = data.get_change('members')
            old_members = set(old_members or ())
            new_members = set(new_members or ())

            with client.transaction() as adapter:
                _remove_members(adapter, old_members - new_members, config.role)
                _add_members(adapter, new_members - old_members, config.role)
                adapter.commit()

        _read(client, data, config.role)


def delete_role_membership(client: Client, data: ResourceData):
    config = RoleMembershipConfig.from_resource(data)

    with client.catalog_lock.write():
        with client.transaction() as adapter:
            _remove_members(adapter, config.members, config.role)
            adapter.commit()

    data.set_id('')
