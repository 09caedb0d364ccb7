"""Abstract base class for database adapters.

Defines the transaction and catalog surface the reconcilers work through.
"""

from abc import ABC
from abc import abstractmethod
from collections.abc import Iterable
from contextlib import contextmanager
from typing import Any

from sync_grants.models import Acl
from sync_grants.models import Target


class DatabaseAdapter(ABC):
    """Abstract base class for database-specific operations.

    One adapter wraps one connection and at most one open transaction on it.
    Each database adapter must implement methods for:
    - Running statements inside a transaction, and savepoints within it
    - Querying the catalog: roles, memberships, schemas, ACLs, extensions
    - Changing the catalog: memberships, schemas, extensions
    """

    def __init__(self, conn):
        """Initialize the adapter with a database connection.

        Args:
            conn: Database connection object (e.g., SQLAlchemy connection)
        """
        self.conn = conn

    # ===== Statement Execution and Transaction Methods =====

    @abstractmethod
    def execute(self, statement: Any, intent: str) -> Any:
        """Execute one statement in the current transaction.

        Args:
            statement: The statement, composed with the driver's SQL composition module
            intent: What the statement is meant to do, used in the error when it fails

        Returns:
            The driver result

        Raises:
            StatementError: If the statement failed
            NotFoundError: If the statement failed because an object or role does not exist
        """

    @abstractmethod
    @contextmanager
    def transaction(self):
        """Context manager for one database transaction.

        Begins a transaction and yields the adapter. Unless :meth:`commit` was
        called inside the block, the transaction is rolled back on exit, on every
        exit path.
        """

    @abstractmethod
    def commit(self):
        """Commit the current transaction.

        Raises:
            StatementError: If the commit failed
        """

    @abstractmethod
    def rollback(self):
        """Roll back the current transaction. A no-op when there is none, e.g. after commit."""

    @abstractmethod
    @contextmanager
    def savepoint(self):
        """Context manager for a savepoint inside the current transaction.

        The savepoint is released when the block succeeds and rolled back when it
        raises, leaving the enclosing transaction usable.
        """

    # ===== State Retrieval Methods =====

    @abstractmethod
    def get_current_user(self) -> str:
        """Get the current database user.

        Returns:
            Current user name
        """

    @abstractmethod
    def get_role_exists(self, role_name: str) -> bool:
        """Check if a role exists.

        Args:
            role_name: Name of the role to check

        Returns:
            True if role exists, False otherwise
        """

    @abstractmethod
    def get_database_exists(self, database_name: str) -> bool:
        """Check if a database exists."""

    @abstractmethod
    def get_schema_exists(self, schema_name: str) -> bool:
        """Check if a schema exists in the connected database."""

    @abstractmethod
    def is_member_of_role(self, member_name: str, role_name: str) -> bool:
        """Check if a role is a member of another role, directly or through other memberships.

        Args:
            member_name: The role whose membership is checked
            role_name: The group role

        Returns:
            True if ``member_name`` has the privileges of ``role_name``
        """

    @abstractmethod
    def has_revocable_membership(self, member_name: str, role_name: str) -> bool:
        """Check if revoking ``role_name`` from ``member_name`` on this connection would remove a membership.

        Args:
            member_name: The member role
            role_name: The group role

        Returns:
            True if a direct membership exists that this connection's REVOKE would remove
        """

    @abstractmethod
    def get_schema(self, schema_name: str) -> tuple[str, tuple[str, ...]] | None:
        """Get the owner and ACL of a schema.

        Args:
            schema_name: Name of the schema

        Returns:
            ``(owner, acl_entries)`` where ``acl_entries`` are native aclitem
            strings, or None if the schema does not exist
        """

    @abstractmethod
    def get_table_owners(self, schema_name: str) -> tuple[str, ...]:
        """Get the distinct owners of the tables, views and sequences in a schema.

        Returns:
            Sorted tuple of owner role names
        """

    @abstractmethod
    def get_object_privileges(self, role_name: str, target: Target) -> dict[str, Acl]:
        """Get the privileges a role holds on the object(s) of a target.

        Args:
            role_name: The grantee; empty for PUBLIC
            target: The database, or the objects in a schema. A target without
                objects covers every object of its kind in the schema.

        Returns:
            Dictionary mapping object name -> the role's ACL on it. Every existing
            object of the target has an entry, with an empty ACL when the role
            holds nothing on it.
        """

    @abstractmethod
    def get_role_members(self, role_name: str) -> tuple[str, ...]:
        """Get the direct members of a group role.

        Returns:
            Sorted tuple of member role names
        """

    @abstractmethod
    def get_extension(self, extension_name: str) -> tuple[str, str] | None:
        """Get where an extension is installed.

        Returns:
            ``(schema, version)``, or None if the extension is not installed
        """

    # ===== Catalog Manipulation Methods =====

    @abstractmethod
    def grant_memberships(self, memberships: Iterable[str], role_name: str, intent: str = ''):
        """Grant role memberships.

        Args:
            memberships: Role names to grant
            role_name: Role to grant memberships to
            intent: What the grant is for, used in the error when it fails
        """

    @abstractmethod
    def revoke_memberships(self, memberships: Iterable[str], role_name: str, intent: str = ''):
        """Revoke role memberships.

        Args:
            memberships: Role names to revoke
            role_name: Role to revoke memberships from
            intent: What the revoke is for, used in the error when it fails
        """

    @abstractmethod
    def create_schema(self, schema_name: str, owner: str = '', if_not_exists: bool = False):
        """Create a new schema, optionally owned by ``owner``."""

    @abstractmethod
    def rename_schema(self, schema_name: str, new_name: str):
        """Rename a schema."""

    @abstractmethod
    def grant_ownership(self, schema_name: str, role_name: str):
        """Make a role the owner of a schema."""

    @abstractmethod
    def drop_schema(self, schema_name: str, cascade: bool = False):
        """Drop a schema, and with ``cascade`` every object in it."""

    @abstractmethod
    def create_extension(self, extension_name: str, schema_name: str = '', version: str = ''):
        """Install an extension if it is not installed."""

    @abstractmethod
    def set_extension_schema(self, extension_name: str, schema_name: str):
        """Move an extension's objects to another schema."""

    @abstractmethod
    def update_extension(self, extension_name: str, version: str = ''):
        """Update an extension to ``version``, or to the default version if empty."""

    @abstractmethod
    def drop_extension(self, extension_name: str):
        """Uninstall an extension."""
