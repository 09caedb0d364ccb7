"""Temporary, transaction-scoped membership in another role.

A connecting user that is not a superuser can only change the privileges or
ownership of objects it owns. To act on objects owned by another role it is
granted membership in that role for the duration of one block, inside the
current transaction, and the membership is revoked again before the block
returns.
"""

import logging
from collections.abc import Callable
from collections.abc import Iterable
from contextlib import ExitStack
from contextlib import contextmanager
from typing import TypeVar

from sync_grants.adapters.base import DatabaseAdapter
from sync_grants.exceptions import SyncGrantsError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@contextmanager
def elevated_role(adapter: DatabaseAdapter, target_role: str, actor_role: str):
    """Run the block as a member of ``target_role``.

    Nothing is granted when ``target_role`` is empty, is the actor itself, or
    already has the actor as a member. That includes a direct membership that
    does not inherit privileges, which is left alone rather than granted and
    then revoked. Otherwise the actor is granted membership before the block
    and it is revoked after the block on every exit path. The block runs inside
    a savepoint so that when it fails the revoke can still be issued in the
    same transaction.

    Args:
        adapter: Adapter with an open transaction
        target_role: The role whose privileges are needed
        actor_role: The role the connection acts as

    Raises:
        StatementError: If granting the membership fails, or if revoking it
            fails after the block succeeded. When the block itself failed, a
            revoke failure is added as a note on the block's exception.
    """
    if not target_role or target_role == actor_role:
        yield
        return

    if adapter.is_member_of_role(actor_role, target_role):
        logger.debug('Role %s is already a member of role %s', actor_role, target_role)
        yield
        return

    # Granting again is a no-op for a NOINHERIT member, and the revoke would drop its membership
    if adapter.has_revocable_membership(actor_role, target_role):
        logger.warning(
            'Role %s is a member of role %s without inheriting its privileges, not granting membership',
            actor_role,
            target_role,
        )
        yield
        return

    logger.info('Temporarily granting role %s to role %s', target_role, actor_role)
    adapter.grant_memberships(
        (target_role,),
        actor_role,
        f'granting membership in role {target_role} to role {actor_role}',
    )
    revoke_intent = f'revoking membership in role {target_role} from role {actor_role}'

    try:
        with adapter.savepoint():
            yield
    except Exception as e:
        logger.info('Revoking role %s from role %s after failure', target_role, actor_role)
        try:
            adapter.revoke_memberships((target_role,), actor_role, revoke_intent)
        except SyncGrantsError as revoke_error:
            e.add_note(str(revoke_error))
        raise

    logger.info('Revoking role %s from role %s', target_role, actor_role)
    adapter.revoke_memberships((target_role,), actor_role, revoke_intent)


@contextmanager
def elevated_roles(adapter: DatabaseAdapter, target_roles: Iterable[str], actor_role: str):
    """Run the block as a member of every role in ``target_roles``.

    Roles are elevated into in sorted order and released in reverse order.
    """
    with ExitStack() as stack:
        for target_role in sorted({role for role in target_roles if role}):
            stack.enter_context(elevated_role(adapter, target_role, actor_role))
        yield


def with_elevated_role(adapter: DatabaseAdapter, target_role: str, actor_role: str, fn: Callable[[], T]) -> T:
    """Call ``fn`` as a member of ``target_role`` and return its result."""
    with elevated_role(adapter, target_role, actor_role):
        return fn()


def roles_to_grant_for_schema(adapter: DatabaseAdapter, schema_name: str) -> tuple[str, ...]:
    """The roles whose membership is needed to change privileges in a schema.

    These are the owners of the tables, views and sequences in the schema plus
    the owner of the schema itself.
    """
    owners = set(adapter.get_table_owners(schema_name))
    schema = adapter.get_schema(schema_name)
    if schema is not None:
        owners.add(schema[0])
    return tuple(sorted(owners))
