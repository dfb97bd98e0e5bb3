from __future__ import annotations


class DbKeeperError(Exception):
    """Base error for dbkeeper."""


class RecordNotFoundError(DbKeeperError):
    """Requested record does not exist in the record store."""


class RecordAlreadyExistsError(DbKeeperError):
    """A record with the same kind/namespace/name already exists."""


class RecordConflictError(DbKeeperError):
    """Write was based on a stale resource version; re-fetch and retry."""


class InvalidSpecError(DbKeeperError):
    """Caller input error; the record must be edited to recover."""


class InvalidCronError(InvalidSpecError):
    """Malformed cron expression."""


class TemplateError(InvalidSpecError):
    """Path or filename template cannot be rendered."""


class DependencyNotReadyError(DbKeeperError):
    """A referenced database, cluster or storage is absent or not ready."""


class SourceResolutionError(DbKeeperError):
    """Restore source cannot be resolved to a backup object."""


class UnitAlreadyExistsError(DbKeeperError):
    """Execution unit with the same name was created by another actor."""


class UnitNotFoundError(DbKeeperError):
    """Execution unit does not exist (never created or already cleaned up)."""


class ObjectStorageError(DbKeeperError):
    """Object storage listing or configuration failure."""


class UnscopedPrefixError(DbKeeperError):
    """Storage path template does not narrow listings to a single database."""
