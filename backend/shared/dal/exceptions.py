"""Persistence-level exceptions raised by repository implementations.

Repositories translate driver errors into these types so the service layer
never depends on a specific database module.
"""


class RepositoryError(Exception):
    """Base class for persistence failures."""


class VersionConflictError(RepositoryError):
    """A versioned write found a different version than the one it read.

    Attributes:
        kind: Record kind ("bot", "user", "game", "match").
        record_id: Primary key of the record.
        expected_version: Version the caller based its write on.

    """

    def __init__(self, *, kind: str, record_id: str, expected_version: int) -> None:
        self.kind = kind
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(f"{kind} '{record_id}' changed since version {expected_version}")


class DuplicateRecordError(RepositoryError):
    """A uniqueness constraint rejected an insert."""


class PersistenceError(RepositoryError):
    """The store could not complete an operation (locked, unavailable, I/O failure).

    Transient: callers may retry the whole operation later.
    """
