"""Server capabilities that depend on the PostgreSQL version."""

from enum import Enum

from sync_grants.exceptions import ConfigError

# Assumed when neither an expected version is configured nor the server reports one
DEFAULT_EXPECTED_VERSION = (9, 0, 0)


class Feature(Enum):
    """A capability together with the first server version that has it."""

    PRIVILEGES = (9, 0, 0)
    EXTENSION = (9, 1, 0)
    SCHEMA_CREATE_IF_NOT_EXISTS = (9, 3, 0)

    @property
    def minimum_version(self) -> tuple[int, ...]:
        return self.value


def parse_version(version: str | tuple[int, ...]) -> tuple[int, ...]:
    """Parse a version such as ``'9.6'``, ``'16.2'`` or ``'15.4 (Debian 15.4-1)'`` into a tuple of three ints."""
    if isinstance(version, tuple):
        parts = tuple(int(part) for part in version)
    else:
        numeric = version.strip().split(' ', 1)[0]
        try:
            parts = tuple(int(part) for part in numeric.split('.') if part)
        except ValueError:
            raise ConfigError(f'Invalid PostgreSQL version {version!r}') from None
    if not parts:
        raise ConfigError(f'Invalid PostgreSQL version {version!r}')
    return (parts + (0, 0, 0))[:3]


def format_version(version: tuple[int, ...]) -> str:
    return '.'.join(str(part) for part in version)


def supported(version: tuple[int, ...], feature: Feature) -> bool:
    """Whether a server of ``version`` has ``feature``."""
    return version >= feature.minimum_version
