"""Comparison of two declared policy lists, and the statements that move from one to the other."""

import logging
from collections.abc import Callable
from collections.abc import Iterable

from psycopg import sql

from sync_grants import acl
from sync_grants.models import PolicyDeclaration
from sync_grants.models import PolicyDiff
from sync_grants.models import Target

logger = logging.getLogger(__name__)


def declarations_by_role(declarations: Iterable[PolicyDeclaration]) -> dict[str, PolicyDeclaration]:
    """Index declarations by role key, merging declarations that share a key."""
    by_role: dict[str, PolicyDeclaration] = {}
    for declaration in declarations:
        if declaration.key in by_role:
            by_role[declaration.key] = by_role[declaration.key].merge(declaration)
        else:
            by_role[declaration.key] = declaration
    return by_role


def diff_policies(old: Iterable[PolicyDeclaration], new: Iterable[PolicyDeclaration]) -> PolicyDiff:
    """Partition the roles of two policy lists into dropped, added, updated and unchanged.

    Roles are keyed case-insensitively, and PUBLIC (the empty role) is a key of
    its own. A role declared more than once in one list is merged into a single
    declaration first.

    Args:
        old: The previously applied declarations.
        new: The declarations to apply now.

    Returns:
        PolicyDiff: Every role key of ``old`` and ``new`` in exactly one bucket.

    Raises:
        ConsistencyError: If one role is declared twice in a list with differing object lists.
    """
    old_by_role = declarations_by_role(old)
    new_by_role = declarations_by_role(new)

    diff = PolicyDiff()
    for key, old_declaration in old_by_role.items():
        if key not in new_by_role:
            diff.dropped[key] = old_declaration
        elif new_by_role[key] == old_declaration:
            diff.unchanged[key] = old_declaration
        else:
            diff.updated[key] = (old_declaration, new_by_role[key])
    for key, new_declaration in new_by_role.items():
        if key not in old_by_role:
            diff.added[key] = new_declaration

    logger.debug(
        'Policy diff: dropped=%s added=%s updated=%s unchanged=%s',
        sorted(diff.dropped),
        sorted(diff.added),
        sorted(diff.updated),
        sorted(diff.unchanged),
    )
    return diff


def plan_statements(
    diff: PolicyDiff,
    target: Target,
    role_exists: Callable[[str], bool],
) -> list[sql.Composed]:
    """The REVOKE and GRANT statements that apply ``diff`` to ``target``.

    Revokes come first: for dropped roles, then for the old side of updated
    roles. Grants follow: for added roles, then for the new side of updated
    roles. Within each group roles are taken in key order, so the same diff
    always gives the same statements.

    A dropped role that no longer exists has nothing left to revoke and is
    skipped. PUBLIC always exists.

    Args:
        diff: The result of :func:`diff_policies`.
        target: What the policies apply to.
        role_exists: Whether a role with the given name currently exists.
    """
    statements: list[sql.Composed] = []

    for key in sorted(diff.dropped):
        declaration = diff.dropped[key]
        if declaration.role and not role_exists(declaration.role):
            logger.info('Role %s no longer exists, nothing to revoke on %s', declaration.role, target.describe())
            continue
        statements.extend(acl.revokes(target, declaration.to_acl()))
    for key in sorted(diff.updated):
        old_declaration, _ = diff.updated[key]
        statements.extend(acl.revokes(target, old_declaration.to_acl()))

    for key in sorted(diff.added):
        statements.extend(acl.grants(target, diff.added[key].to_acl()))
    for key in sorted(diff.updated):
        _, new_declaration = diff.updated[key]
        statements.extend(acl.grants(target, new_declaration.to_acl()))

    return statements
