"""Sync Grants package."""

from sync_grants.client import Client
from sync_grants.models import Acl
from sync_grants.models import ObjectKind
from sync_grants.models import PolicyDeclaration
from sync_grants.models import Privilege
from sync_grants.models import ResourceData
from sync_grants.models import Target

SELECT = Privilege.SELECT
INSERT = Privilege.INSERT
UPDATE = Privilege.UPDATE
DELETE = Privilege.DELETE
TRUNCATE = Privilege.TRUNCATE
REFERENCES = Privilege.REFERENCES
TRIGGER = Privilege.TRIGGER
CREATE = Privilege.CREATE
CONNECT = Privilege.CONNECT
TEMPORARY = Privilege.TEMPORARY
EXECUTE = Privilege.EXECUTE
USAGE = Privilege.USAGE
SET = Privilege.SET
ALTER_SYSTEM = Privilege.ALTER_SYSTEM
MAINTAIN = Privilege.MAINTAIN

__all__ = [
    'Acl',
    'Client',
    'ObjectKind',
    'PolicyDeclaration',
    'Privilege',
    'ResourceData',
    'Target',
]
