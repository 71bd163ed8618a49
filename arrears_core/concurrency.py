"""
Optimistic concurrency guard.

All mutations of versioned entities go through ConcurrencyGuard. A commit
presents the version read at load time; the storage layer writes only if the
stored version still matches and otherwise raises ConflictError without
touching anything. The guard never retries.
"""

from typing import Any, Dict, List, NamedTuple, Optional, Protocol, Sequence

from .errors import ConflictError
from .logging_config import get_logger
from .storage import StorageInterface


class Versioned(Protocol):
    id: str
    version: int

    def to_dict(self) -> Dict[str, Any]:
        ...


class Change(NamedTuple):
    """One entity write inside a grouped commit"""
    table: str
    entity: Any
    expected_version: Optional[int]


class ConcurrencyGuard:
    """Compare-and-swap commits for single entities and groups of entities"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("arrears.concurrency")

    def commit(self, table: str, entity: Versioned, expected_version: Optional[int]) -> int:
        """
        Persist ``entity`` if the stored version equals ``expected_version``.

        ``expected_version=None`` inserts a new record. Returns the new version
        and stores it on the entity; on ConflictError the entity is unchanged.
        """
        try:
            new_version = self.storage.compare_and_swap(
                table, entity.id, expected_version, entity.to_dict()
            )
        except ConflictError as e:
            self.logger.warning(f"Concurrency conflict on {table}/{entity.id}: {e}")
            raise

        entity.version = new_version
        return new_version

    def insert(self, table: str, entity: Versioned) -> int:
        """Persist a new entity; fails with ConflictError if the id is taken"""
        return self.commit(table, entity, None)

    def commit_all(self, changes: Sequence[Change]) -> List[int]:
        """
        Commit several entities as one unit.

        Either every write lands or none does. Entity versions are updated
        only once the whole group has been written.
        """
        try:
            with self.storage.atomic():
                versions = [
                    self.storage.compare_and_swap(
                        change.table, change.entity.id, change.expected_version, change.entity.to_dict()
                    )
                    for change in changes
                ]
        except ConflictError as e:
            self.logger.warning(f"Grouped commit rolled back: {e}")
            raise

        for change, version in zip(changes, versions):
            change.entity.version = version
        return versions
