"""Privilege, ACL and policy models, plus the typed configuration of each resource."""

from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from enum import Flag
from enum import auto
from typing import Any

from sync_grants.exceptions import ConfigError
from sync_grants.exceptions import ConsistencyError


class Privilege(Flag):
    """Bitset of database/object privileges.

    A single member denotes one privilege; members combine with ``|`` into the
    privilege set of a role on an object. Iterating a combined value yields its
    members in declaration order, which is the order privileges are rendered in
    GRANT statements.
    """

    SELECT = auto()
    """Read/select rows from tables, views or sequences."""
    INSERT = auto()
    """Insert new rows into tables."""
    UPDATE = auto()
    """Update existing rows, or call setval on sequences."""
    DELETE = auto()
    """Delete rows."""
    TRUNCATE = auto()
    """Remove all rows from a table quickly."""
    REFERENCES = auto()
    """Create foreign keys referencing a table."""
    TRIGGER = auto()
    """Create triggers on tables."""
    CREATE = auto()
    """Create new objects in a database or schema."""
    CONNECT = auto()
    """Connect to the database."""
    TEMPORARY = auto()
    """Create temporary tables."""
    EXECUTE = auto()
    """Execute functions or procedures."""
    USAGE = auto()
    """Use a schema or sequence without altering it."""
    SET = auto()
    """Set a server configuration parameter."""
    ALTER_SYSTEM = auto()
    """Alter system-wide settings."""
    MAINTAIN = auto()
    """Run maintenance operations such as VACUUM or REINDEX on a table."""

    @property
    def acl_char(self) -> str:
        """The character the privilege is written as in a native aclitem."""
        return _ACL_CHARS[self]

    @property
    def sql_name(self) -> str:
        """The keyword the privilege is written as in GRANT/REVOKE."""
        return self.name.replace('_', ' ')

    @classmethod
    def from_sql_name(cls, name: str) -> 'Privilege':
        """Look up a privilege by its SQL keyword, e.g. ``'ALTER SYSTEM'`` or ``'temp'``."""
        normalised = name.strip().upper().replace(' ', '_')
        if normalised == 'TEMP':
            normalised = 'TEMPORARY'
        try:
            return cls[normalised]
        except KeyError:
            raise ConfigError(f'Unknown privilege {name!r}') from None

    @classmethod
    def from_acl_char(cls, char: str) -> 'Privilege':
        """Look up a privilege by its aclitem character."""
        return _PRIVILEGES_BY_ACL_CHAR[char]

    @classmethod
    def none(cls) -> 'Privilege':
        """The empty privilege set."""
        return cls(0)

    def sql_names(self) -> tuple[str, ...]:
        """SQL keywords of every privilege in the set, in declaration order."""
        return tuple(privilege.sql_name for privilege in self)


_ACL_CHARS = {
    Privilege.SELECT: 'r',
    Privilege.INSERT: 'a',
    Privilege.UPDATE: 'w',
    Privilege.DELETE: 'd',
    Privilege.TRUNCATE: 'D',
    Privilege.REFERENCES: 'x',
    Privilege.TRIGGER: 't',
    Privilege.CREATE: 'C',
    Privilege.CONNECT: 'c',
    Privilege.TEMPORARY: 'T',
    Privilege.EXECUTE: 'X',
    Privilege.USAGE: 'U',
    Privilege.SET: 's',
    Privilege.ALTER_SYSTEM: 'A',
    Privilege.MAINTAIN: 'm',
}
_PRIVILEGES_BY_ACL_CHAR = {char: privilege for privilege, char in _ACL_CHARS.items()}


class ObjectKind(Enum):
    """Kinds of object privileges can be granted on."""

    DATABASE = 'database'
    SCHEMA = 'schema'
    TABLE = 'table'
    SEQUENCE = 'sequence'
    FUNCTION = 'function'

    @property
    def keyword(self) -> str:
        """Keyword naming a single object of the kind, e.g. ``TABLE``."""
        return self.value.upper()

    @property
    def plural(self) -> str:
        """Keyword used in ``ALL <plural> IN SCHEMA``."""
        return f'{self.keyword}S'

    @property
    def in_schema(self) -> bool:
        """Whether objects of the kind live inside a schema."""
        return self in (ObjectKind.TABLE, ObjectKind.SEQUENCE, ObjectKind.FUNCTION)

    @property
    def allowed_privileges(self) -> Privilege:
        """Every privilege that can be granted on the kind. Also what ``ALL`` expands to."""
        return _ALLOWED_PRIVILEGES[self]


_ALLOWED_PRIVILEGES = {
    ObjectKind.DATABASE: Privilege.CREATE | Privilege.CONNECT | Privilege.TEMPORARY,
    ObjectKind.SCHEMA: Privilege.CREATE | Privilege.USAGE,
    ObjectKind.TABLE: (
        Privilege.SELECT
        | Privilege.INSERT
        | Privilege.UPDATE
        | Privilege.DELETE
        | Privilege.TRUNCATE
        | Privilege.REFERENCES
        | Privilege.TRIGGER
    ),
    ObjectKind.SEQUENCE: Privilege.USAGE | Privilege.SELECT | Privilege.UPDATE,
    ObjectKind.FUNCTION: Privilege.EXECUTE,
}

# Object kinds the grant resource manages. Schema privileges are managed by the schema resource's policies.
GRANT_OBJECT_KINDS = (ObjectKind.DATABASE, ObjectKind.TABLE, ObjectKind.SEQUENCE, ObjectKind.FUNCTION)


def role_key(role_name: str) -> str:
    """Case-insensitive key of a role. PUBLIC is the empty string and keeps its own key."""
    return role_name.lower()


@dataclass(frozen=True)
class Acl:
    """One role's privilege set on one object.

    Attributes:
        role (str): The grantee. The empty string denotes the PUBLIC pseudo-role.
        privileges (Privilege): Privileges held.
        grant_options (Privilege): Privileges the role may grant on to others.
            Always a subset of ``privileges``.
        grantor (str): The role that granted the privileges, when read from the
            catalog. Not part of the value's identity.
    """

    role: str = ''
    privileges: Privilege = Privilege(0)
    grant_options: Privilege = Privilege(0)
    grantor: str = field(default='', compare=False)

    def __post_init__(self):
        if self.grant_options & ~self.privileges:
            raise ConsistencyError(
                f'Role {self.role or "PUBLIC"} cannot hold grant option for '
                f'{", ".join((self.grant_options & ~self.privileges).sql_names())} without the privilege itself',
            )

    @property
    def key(self) -> str:
        return role_key(self.role)

    def merge(self, other: 'Acl') -> 'Acl':
        """Union of two ACL values of the same role."""
        if self.key != other.key:
            raise ConsistencyError(
                f'Cannot merge privileges of role {other.role or "PUBLIC"} into role {self.role or "PUBLIC"}',
            )
        return Acl(
            role=self.role,
            privileges=self.privileges | other.privileges,
            grant_options=self.grant_options | other.grant_options,
            grantor=self.grantor,
        )

    def has_privilege(self, privilege: Privilege) -> bool:
        return privilege in self.privileges

    def has_grant_option(self, privilege: Privilege) -> bool:
        return privilege in self.grant_options


@dataclass(frozen=True)
class Target:
    """What a GRANT/REVOKE statement applies to.

    Attributes:
        kind (ObjectKind): Kind of the object(s).
        name (str): Name of the database or schema for DATABASE and SCHEMA kinds.
        schema (str): Schema the objects live in for in-schema kinds.
        objects (tuple[str, ...]): Names of the objects in ``schema``. Empty means
            every object of the kind in the schema.
    """

    kind: ObjectKind
    name: str = ''
    schema: str = ''
    objects: tuple[str, ...] = ()

    def describe(self) -> str:
        if self.kind.in_schema:
            if self.objects:
                return f'{self.kind.value} {", ".join(f"{self.schema}.{o}" for o in self.objects)}'
            return f'all {self.kind.value}s in schema {self.schema}'
        return f'{self.kind.value} {self.name}'


@dataclass(frozen=True)
class PolicyDeclaration:
    """One role's desired privileges on one target.

    Attributes:
        role (str): The grantee, ``''`` for PUBLIC.
        privileges (Privilege): Privileges the role should hold.
        grant_options (Privilege): Privileges the role should be able to grant on.
        objects (tuple[str, ...]): Objects the declaration is restricted to; empty
            means all objects of the kind in scope.
    """

    role: str = ''
    privileges: Privilege = Privilege(0)
    grant_options: Privilege = Privilege(0)
    objects: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return role_key(self.role)

    def to_acl(self) -> Acl:
        return Acl(role=self.role, privileges=self.privileges, grant_options=self.grant_options)

    def merge(self, other: 'PolicyDeclaration') -> 'PolicyDeclaration':
        """Union of two declarations for the same role, as when a role is declared in two policy fragments."""
        if self.key != other.key:
            raise ConsistencyError(
                f'Cannot merge policy of role {other.role or "PUBLIC"} into role {self.role or "PUBLIC"}',
            )
        if self.objects != other.objects:
            raise ConsistencyError(
                f'Role {self.role or "PUBLIC"} is declared twice with different objects: '
                f'{list(self.objects)} and {list(other.objects)}',
            )
        return PolicyDeclaration(
            role=self.role,
            privileges=self.privileges | other.privileges,
            grant_options=self.grant_options | other.grant_options,
            objects=self.objects,
        )


@dataclass(frozen=True)
class PolicyDiff:
    """Roles of an old and a new policy list partitioned by what happened to them.

    Attributes:
        dropped (dict): Role key -> old declaration, for roles only in the old list.
        added (dict): Role key -> new declaration, for roles only in the new list.
        updated (dict): Role key -> (old, new), for roles in both lists that differ.
        unchanged (dict): Role key -> declaration, for roles in both lists that are equal.
    """

    dropped: dict[str, PolicyDeclaration] = field(default_factory=dict)
    added: dict[str, PolicyDeclaration] = field(default_factory=dict)
    updated: dict[str, tuple[PolicyDeclaration, PolicyDeclaration]] = field(default_factory=dict)
    unchanged: dict[str, PolicyDeclaration] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.dropped or self.added or self.updated)


class ResourceData:
    """The declared/persisted values of one resource instance.

    This is the surface the lifecycle framework hands to every reconciler. During
    an update ``previous`` holds the state from before the change, which is what
    ``has_change`` and ``get_change`` compare against.
    """

    def __init__(
        self,
        values: Mapping[str, Any] | None = None,
        id: str = '',
        previous: Mapping[str, Any] | None = None,
    ):
        self.values: dict[str, Any] = dict(values or {})
        self.previous: dict[str, Any] | None = dict(previous) if previous is not None else None
        self.id = id

    def get(self, key: str, default: Any = None) -> Any:
        value = self.values.get(key)
        return default if value is None else value

    def set(self, key: str, value: Any):
        self.values[key] = value

    def set_id(self, id: str):
        self.id = id

    def has_change(self, key: str) -> bool:
        if self.previous is None:
            return False
        return self.previous.get(key) != self.values.get(key)

    def get_change(self, key: str) -> tuple[Any, Any]:
        previous = self.previous if self.previous is not None else self.values
        return previous.get(key), self.values.get(key)

    def __repr__(self):
        return f'ResourceData(id={self.id!r}, values={self.values!r})'


# ===== Typed resource configuration =====


def _required_str(data: ResourceData, key: str, resource: str) -> str:
    value = data.get(key, '')
    if not isinstance(value, str) or not value:
        raise ConfigError(f'{resource}: "{key}" is required')
    return value


def _optional_str(data: ResourceData, key: str, default: str = '') -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f'"{key}" must be a string, got {value!r}')
    return value


def _str_tuple(values: Iterable[Any] | None, key: str) -> tuple[str, ...]:
    values = tuple(values or ())
    if not all(isinstance(value, str) for value in values):
        raise ConfigError(f'"{key}" must be a list of strings, got {list(values)!r}')
    return values


def _reject_delimiters(resource: str, **values: str | tuple[str, ...]):
    for key, value in values.items():
        for item in (value,) if isinstance(value, str) else value:
            if ':' in item or ',' in item:
                raise ConfigError(f'{resource}: "{key}" cannot contain ":" or ",", got {item!r}')


def privileges_from_names(names: Iterable[str], kind: ObjectKind) -> Privilege:
    """Translate privilege keywords into a bitset allowed on ``kind``. ``ALL`` expands to every allowed privilege."""
    privileges = Privilege(0)
    for name in names:
        if name.strip().upper() == 'ALL':
            privileges |= kind.allowed_privileges
            continue
        privilege = Privilege.from_sql_name(name)
        if privilege not in kind.allowed_privileges:
            raise ConfigError(
                f'Invalid privilege type {name} for object type {kind.value}; allowed: '
                f'{", ".join(kind.allowed_privileges.sql_names())}, ALL',
            )
        privileges |= privilege
    return privileges


@dataclass(frozen=True)
class GrantConfig:
    """Declared configuration of a grant resource.

    Attributes:
        role (str): Role receiving the privileges.
        database (str): Database the objects live in (or are).
        schema (str): Schema of the objects; empty for database grants.
        object_type (ObjectKind): One of database, table, sequence or function.
        objects (tuple[str, ...]): Objects to grant on. Empty means all objects of
            the kind in the schema.
        privileges (Privilege): Privileges to grant.
        with_grant_option (bool): Whether the role may grant the privileges on.
    """

    role: str
    database: str
    object_type: ObjectKind
    privileges: Privilege
    schema: str = ''
    objects: tuple[str, ...] = ()
    with_grant_option: bool = False

    @classmethod
    def from_resource(cls, data: ResourceData, require_privileges: bool = True) -> 'GrantConfig':
        """Validate the declared values of a grant.

        Args:
            data: The resource values.
            require_privileges: Whether an empty ``privileges`` list is an error. Read
                and delete pass False, since a read that found drift clears the list.
        """
        role = _required_str(data, 'role', 'grant')
        if role.lower() == 'public':
            role = ''
        database = _required_str(data, 'database', 'grant')
        schema = _optional_str(data, 'schema')

        object_type_name = _required_str(data, 'object_type', 'grant')
        try:
            object_type = ObjectKind(object_type_name.lower())
        except ValueError:
            object_type = None
        if object_type not in GRANT_OBJECT_KINDS:
            raise ConfigError(
                f'grant: "object_type" must be one of {", ".join(k.value for k in GRANT_OBJECT_KINDS)}, '
                f'got {object_type_name!r}',
            )

        objects = _str_tuple(data.get('objects'), 'objects')
        if object_type == ObjectKind.DATABASE:
            if objects:
                raise ConfigError('grant: "objects" cannot be set when "object_type" is database')
        elif not schema:
            raise ConfigError(f'grant: "schema" is required when "object_type" is {object_type.value}')

        privilege_names = _str_tuple(data.get('privileges'), 'privileges')
        if require_privileges and not privilege_names:
            raise ConfigError('grant: at least one privilege is required')
        privileges = privileges_from_names(privilege_names, object_type)

        if '.' in database:
            raise ConfigError(f'grant: "database" cannot contain ".", got {database!r}')
        _reject_delimiters('grant', role=role, database=database, schema=schema, objects=objects)

        return cls(
            role=role,
            database=database,
            object_type=object_type,
            privileges=privileges,
            schema=schema,
            objects=tuple(sorted(objects)),
            with_grant_option=bool(data.get('with_grant_option', False)),
        )

    def target(self) -> Target:
        if self.object_type == ObjectKind.DATABASE:
            return Target(ObjectKind.DATABASE, name=self.database)
        return Target(self.object_type, schema=self.schema, objects=self.objects)

    def declaration(self) -> PolicyDeclaration:
        return PolicyDeclaration(
            role=self.role,
            privileges=self.privileges,
            grant_options=self.privileges if self.with_grant_option else Privilege(0),
            objects=self.objects,
        )


def schema_policy_to_declaration(policy: Mapping[str, Any]) -> PolicyDeclaration:
    """Translate one declared schema policy block into a declaration.

    A block without a role applies to PUBLIC.
    """
    for plain, with_grant in (('create', 'create_with_grant'), ('usage', 'usage_with_grant')):
        if policy.get(plain) and policy.get(with_grant):
            raise ConfigError(f'schema policy: "{plain}" conflicts with "{with_grant}"')

    privileges = Privilege(0)
    grant_options = Privilege(0)
    if policy.get('create'):
        privileges |= Privilege.CREATE
    if policy.get('create_with_grant'):
        privileges |= Privilege.CREATE
        grant_options |= Privilege.CREATE
    if policy.get('usage'):
        privileges |= Privilege.USAGE
    if policy.get('usage_with_grant'):
        privileges |= Privilege.USAGE
        grant_options |= Privilege.USAGE

    role = policy.get('role') or ''
    if not isinstance(role, str):
        raise ConfigError(f'schema policy: "role" must be a string, got {role!r}')
    return PolicyDeclaration(role=role, privileges=privileges, grant_options=grant_options)


def acl_to_schema_policy(acl: Acl) -> dict[str, Any]:
    """The declared-policy form of a schema ACL read from the catalog."""
    return {
        'role': acl.role,
        'create': acl.has_privilege(Privilege.CREATE) and not acl.has_grant_option(Privilege.CREATE),
        'create_with_grant': acl.has_grant_option(Privilege.CREATE),
        'usage': acl.has_privilege(Privilege.USAGE) and not acl.has_grant_option(Privilege.USAGE),
        'usage_with_grant': acl.has_grant_option(Privilege.USAGE),
    }


@dataclass(frozen=True)
class SchemaConfig:
    """Declared configuration of a schema resource.

    Attributes:
        name (str): Name of the schema.
        database (str): Database the schema lives in.
        owner (str): Role that owns the schema; empty leaves ownership to the connecting user.
        if_not_exists (bool): Use ``CREATE SCHEMA IF NOT EXISTS`` where the server supports it.
        drop_cascade (bool): Drop contained objects when the schema is deleted.
        policies (tuple[PolicyDeclaration, ...]): Per-role policies on the schema.
    """

    name: str
    database: str
    owner: str = ''
    if_not_exists: bool = True
    drop_cascade: bool = False
    policies: tuple[PolicyDeclaration, ...] = ()

    @classmethod
    def from_resource(cls, data: ResourceData, default_database: str) -> 'SchemaConfig':
        database = _optional_str(data, 'database') or default_database
        if '.' in database or ':' in database:
            raise ConfigError(f'schema: "database" cannot contain "." or ":", got {database!r}')
        return cls(
            name=_required_str(data, 'name', 'schema'),
            database=database,
            owner=_optional_str(data, 'owner'),
            if_not_exists=bool(data.get('if_not_exists', True)),
            drop_cascade=bool(data.get('drop_cascade', False)),
            policies=tuple(schema_policy_to_declaration(policy) for policy in data.get('policy', ())),
        )


@dataclass(frozen=True)
class RoleMembershipConfig:
    """Declared configuration of a role membership resource.

    Attributes:
        name (str): Name of the membership resource itself.
        role (str): The group role.
        members (tuple[str, ...]): Roles that should be members of ``role``, sorted.
    """

    name: str
    role: str
    members: tuple[str, ...] = ()

    @classmethod
    def from_resource(cls, data: ResourceData) -> 'RoleMembershipConfig':
        members = _str_tuple(data.get('members'), 'members')
        if not members:
            raise ConfigError('role membership: at least one member is required')
        return cls(
            name=_required_str(data, 'name', 'role membership'),
            role=_required_str(data, 'role', 'role membership'),
            members=tuple(sorted(set(members))),
        )


@dataclass(frozen=True)
class ExtensionConfig:
    """Declared configuration of an extension resource.

    Attributes:
        name (str): Name of the extension.
        database (str): Database to install the extension in.
        schema (str): Schema to install the extension's objects in; empty for the server default.
        version (str): Version to install; empty for the default version.
    """

    name: str
    database: str
    schema: str = ''
    version: str = ''

    @classmethod
    def from_resource(cls, data: ResourceData, default_database: str) -> 'ExtensionConfig':
        database = _optional_str(data, 'database') or default_database
        if '.' in database or ':' in database:
            raise ConfigError(f'extension: "database" cannot contain "." or ":", got {database!r}')
        return cls(
            name=_required_str(data, 'name', 'extension'),
            database=database,
            schema=_optional_str(data, 'schema'),
            version=_optional_str(data, 'version'),
        )
