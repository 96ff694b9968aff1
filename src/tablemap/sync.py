"""
Storage provisioning for tables.

``SyncOrchestrator`` walks one table through

    NOT_CHECKED -> TABLE_ENSURED -> INDEXES_ENSURED

Every step is a composed query executed and awaited before the next one is
issued: index builds on the same table are never run concurrently, and each
``index_create`` is followed by an ``index_wait`` barrier.
"""
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List

from tablemap.common.logger import get_logger, sync_scope
from tablemap.schema.indexes import IndexDefinition

if TYPE_CHECKING:
    from tablemap.table import Table

logger = get_logger(__name__)


class SyncState(str, Enum):
    NOT_CHECKED = "NOT_CHECKED"
    TABLE_ENSURED = "TABLE_ENSURED"
    INDEXES_ENSURED = "INDEXES_ENSURED"


class SyncOrchestrator:
    """Sequences table creation and index provisioning for one table."""

    def __init__(self, table: "Table"):
        self.table = table
        self.state = SyncState.NOT_CHECKED

    def run(self, connection) -> SyncState:
        """Ensures the table, its indexes and its relations' indexes.

        A failing step propagates its error and leaves ``state`` at the last
        completed step.
        """
        with sync_scope(table=self.table.name):
            try:
                self.ensure_table(connection)
                self.state = SyncState.TABLE_ENSURED
                self.ensure_all_indexes(connection)
                self.sync_relations(connection)
                self.state = SyncState.INDEXES_ENSURED
            except Exception:
                logger.error(
                    "Sync of table %s halted at state %s", self.table.name, self.state.value
                )
                raise
        logger.info("Table %s is in sync", self.table.name)
        return self.state

    def ensure_table(self, connection) -> None:
        with sync_scope(table=self.table.name, step="table"):
            if self.table.ensure_table_query().run(connection):
                logger.info("Created table %s", self.table.name)

    def ensure_index(self, connection, index: str) -> None:
        if index == self.table.pk:
            return
        definition = self.table.index_plan().get(index) or IndexDefinition(
            name=index, fields=[index]
        )
        with sync_scope(table=self.table.name, step="indexes"):
            self._ensure_index(connection, definition)

    def _ensure_index(self, connection, definition: IndexDefinition) -> None:
        with sync_scope(index=definition.name):
            created = self.table.ensure_index_query(definition).run(connection)
            self.table.query().index_wait(definition.name).run(connection)
            logger.debug("Index %s is ready (%s)", definition.name, "created" if created else "existing")

    def ensure_all_indexes(self, connection) -> List[str]:
        plan = self.table.index_plan()
        with sync_scope(table=self.table.name, step="indexes"):
            for definition in plan.values():
                self._ensure_index(connection, definition)
        return list(plan)

    def sync_relations(self, connection) -> None:
        with sync_scope(table=self.table.name, step="relations"):
            for name, relation in self.table.relations.items():
                logger.debug("Syncing relation %s.%s", self.table.name, name)
                relation.sync(connection)


def sync_all(tables: Iterable["Table"], connection) -> List[SyncState]:
    """Syncs tables one after another; the first failure stops the run."""
    return [table.sync(connection) for table in tables]
