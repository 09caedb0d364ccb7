"""Encoding and decoding of PostgreSQL ACL entries.

A native ACL entry (an ``aclitem``) reads ``grantee=privchars/grantor``, for
example ``alice=rw*/postgres``: alice holds SELECT, and UPDATE with grant option,
as granted by postgres. An empty grantee is the PUBLIC pseudo-role.

This module translates between that form, the :class:`~sync_grants.models.Acl`
value and the GRANT/REVOKE statements that produce it on a target.
"""

import logging
from collections.abc import Iterable

from psycopg import sql

from sync_grants.exceptions import ConsistencyError
from sync_grants.exceptions import ParseError
from sync_grants.models import Acl
from sync_grants.models import Privilege
from sync_grants.models import Target

logger = logging.getLogger(__name__)


def _read_name(entry: str, pos: int, terminators: str) -> tuple[str, int]:
    """Read a possibly double-quoted role name starting at ``pos``.

    Returns the name and the position just after it.
    """
    if pos < len(entry) and entry[pos] == '"':
        chars = []
        pos += 1
        while True:
            if pos >= len(entry):
                raise ParseError(f'Unterminated quoted role name in ACL entry {entry!r}')
            if entry[pos] == '"':
                if entry[pos + 1 : pos + 2] == '"':
                    chars.append('"')
                    pos += 2
                    continue
                return ''.join(chars), pos + 1
            chars.append(entry[pos])
            pos += 1

    end = pos
    while end < len(entry) and entry[end] not in terminators:
        end += 1
    return entry[pos:end], end


def parse(entry: str) -> Acl:
    """Decode one native ACL entry.

    Args:
        entry (str): An entry such as ``alice=arwdDxt/postgres`` or ``=U/postgres``.

    Returns:
        Acl: The decoded value. An empty grantee gives the PUBLIC ACL.

    Raises:
        ParseError: If the entry has no ``=``, contains an unknown privilege
            character, or has a ``*`` not following a privilege character.
    """
    role, pos = _read_name(entry, 0, '=')
    if pos >= len(entry) or entry[pos] != '=':
        raise ParseError(f'Missing "=" in ACL entry {entry!r}')
    pos += 1

    privileges = Privilege(0)
    grant_options = Privilege(0)
    previous = None
    while pos < len(entry) and entry[pos] != '/':
        char = entry[pos]
        if char == '*':
            if previous is None:
                raise ParseError(f'Grant option marker without a privilege in ACL entry {entry!r}')
            grant_options |= previous
            previous = None
        else:
            try:
                previous = Privilege.from_acl_char(char)
            except KeyError:
                raise ParseError(f'Unknown privilege {char!r} in ACL entry {entry!r}') from None
            privileges |= previous
        pos += 1

    grantor = ''
    if pos < len(entry):
        grantor, pos = _read_name(entry, pos + 1, '/')
        if pos != len(entry):
            raise ParseError(f'Unexpected trailing characters in ACL entry {entry!r}')

    return Acl(role=role, privileges=privileges, grant_options=grant_options, grantor=grantor)


def _quote_name(name: str) -> str:
    if all(c.islower() or c.isdigit() or c == '_' for c in name):
        return name
    return '"' + name.replace('"', '""') + '"'


def to_aclitem(acl: Acl) -> str:
    """Encode an ACL value in the native ``grantee=privchars/grantor`` form."""
    chars = ''.join(
        privilege.acl_char + ('*' if privilege in acl.grant_options else '') for privilege in acl.privileges
    )
    item = f'{_quote_name(acl.role)}={chars}'
    if acl.grantor:
        item += f'/{_quote_name(acl.grantor)}'
    return item


def role_sql(role: str) -> sql.Composable:
    """The grantee of a statement. The empty role renders as the PUBLIC keyword."""
    return sql.Identifier(role) if role else sql.SQL('PUBLIC')


def target_sql(target: Target) -> sql.Composable:
    """The ``ON ...`` clause object of a GRANT/REVOKE statement."""
    if not target.kind.in_schema:
        return sql.SQL('{kind} {name}').format(kind=sql.SQL(target.kind.keyword), name=sql.Identifier(target.name))
    if target.objects:
        return sql.SQL('{kind} {objects}').format(
            kind=sql.SQL(target.kind.keyword),
            objects=sql.SQL(',').join(sql.Identifier(target.schema, name) for name in target.objects),
        )
    return sql.SQL('ALL {kind} IN SCHEMA {schema}').format(
        kind=sql.SQL(target.kind.plural),
        schema=sql.Identifier(target.schema),
    )


def _grant(target: Target, role: str, privileges: Privilege, with_grant_option: bool) -> sql.Composed:
    return sql.SQL('GRANT {privileges} ON {target} TO {role}{grant_option}').format(
        privileges=sql.SQL(',').join(sql.SQL(name) for name in privileges.sql_names()),
        target=target_sql(target),
        role=role_sql(role),
        grant_option=sql.SQL(' WITH GRANT OPTION') if with_grant_option else sql.SQL(''),
    )


def grants(target: Target, acl: Acl) -> list[sql.Composed]:
    """GRANT statements that give ``acl.role`` the privileges in ``acl`` on ``target``.

    Privileges without grant option go in one statement, privileges with grant
    option in a second ``WITH GRANT OPTION`` statement. An empty ACL yields no
    statements.
    """
    _check_allowed(target, acl)
    statements = []
    plain = acl.privileges & ~acl.grant_options
    if plain:
        statements.append(_grant(target, acl.role, plain, with_grant_option=False))
    if acl.grant_options:
        statements.append(_grant(target, acl.role, acl.grant_options, with_grant_option=True))
    return statements


def revokes(target: Target, acl: Acl) -> list[sql.Composed]:
    """REVOKE statements removing everything ``acl.role`` holds on ``target``.

    Grant options cannot be lowered directly, so privileges are always revoked in
    full and re-granted afterwards where needed.
    """
    if not acl.privileges:
        return []
    return [
        sql.SQL('REVOKE ALL PRIVILEGES ON {target} FROM {role}').format(
            target=target_sql(target),
            role=role_sql(acl.role),
        ),
    ]


def _check_allowed(target: Target, acl: Acl):
    not_allowed = acl.privileges & ~target.kind.allowed_privileges
    if not_allowed:
        raise ConsistencyError(
            f'Privileges {", ".join(not_allowed.sql_names())} cannot be granted on {target.describe()}',
        )


def merge(a: Acl, b: Acl) -> Acl:
    """Union of two ACL values of the same role."""
    return a.merge(b)


def merge_by_role(acls: Iterable[Acl]) -> dict[str, Acl]:
    """Index ACL values by role key, merging values that share a key."""
    merged: dict[str, Acl] = {}
    for acl in acls:
        if acl.key in merged:
            logger.debug('Merging duplicate ACL entries for role %s', acl.role or 'PUBLIC')
            merged[acl.key] = merged[acl.key].merge(acl)
        else:
            merged[acl.key] = acl
    return merged
