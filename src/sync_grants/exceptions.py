"""Errors raised by sync_grants."""


class SyncGrantsError(Exception):
    """Base class for every error raised by sync_grants."""


class ParseError(SyncGrantsError, ValueError):
    """A native ACL entry could not be decoded."""


class ConfigError(SyncGrantsError, ValueError):
    """Declared resource configuration failed validation."""


class ConsistencyError(SyncGrantsError):
    """Two values that must agree do not, e.g. merging ACLs of different roles."""


class StatementError(SyncGrantsError):
    """A SQL statement failed.

    The message carries the intent of the statement (for example "granting
    owner membership for schema app") rather than the statement itself, so
    literal values never end up in logs. The driver error is chained as
    ``__cause__``.

    Attributes:
        intent (str): What the failed statement was meant to do.
    """

    def __init__(self, intent: str, detail: str = ''):
        self.intent = intent
        super().__init__(f'Error {intent}: {detail}' if detail else f'Error {intent}')


class NotFoundError(SyncGrantsError):
    """An object, role or schema no longer exists.

    Reconcilers treat this as "already deleted" and clear the resource id
    instead of failing.
    """


class UnsupportedFeatureError(SyncGrantsError):
    """The target server version lacks a capability an operation needs."""
