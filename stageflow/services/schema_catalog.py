from __future__ import annotations

import logging
from time import perf_counter
from typing import Iterable, Optional

from stageflow.schemas import (
    ConnectionConfig,
    ConnectionTestResult,
    JoinedTableDefinition,
    SourceField,
    SourceSchema,
    SourceTable,
)
from stageflow.services.errors import SourceConnectionError
from stageflow.services.source_connectors import SourceConnector, get_connector

logger = logging.getLogger(__name__)


def discover_schema(config: ConnectionConfig, connector: Optional[SourceConnector] = None) -> SourceSchema:
    """Read the table and field catalog of a source.

    The connector receives a copy of ``config``. Failures surface as
    :class:`SourceConnectionError`; no partial schema is returned.
    """

    connector = connector or get_connector(config.source_type)
    schema = connector.discover_schema(config.model_copy(deep=True))
    logger.info(
        "Discovered %s tables from %s source",
        len(schema.tables),
        config.source_type.value,
    )
    return schema


def check_source_connection(
    config: ConnectionConfig, connector: Optional[SourceConnector] = None
) -> ConnectionTestResult:
    start = perf_counter()
    try:
        connector = connector or get_connector(config.source_type)
        check = connector.test_connection(config.model_copy(deep=True))
    except SourceConnectionError as exc:
        elapsed_ms = (perf_counter() - start) * 1000.0
        logger.warning("Connection test for %s source failed: %s", config.source_type.value, exc)
        return ConnectionTestResult(success=False, message=str(exc), duration_ms=elapsed_ms)

    elapsed_ms = (perf_counter() - start) * 1000.0
    return ConnectionTestResult(
        success=True,
        message=check.message,
        duration_ms=elapsed_ms,
        record_count=check.record_count,
    )


class SchemaCatalog:
    """Lookup helpers over a discovered :class:`SourceSchema`."""

    def __init__(self, schema: Optional[SourceSchema]):
        self._schema = schema or SourceSchema()
        self._tables = {table.name: table for table in self._schema.tables}

    @classmethod
    def discover(cls, config: ConnectionConfig, connector: Optional[SourceConnector] = None) -> "SchemaCatalog":
        return cls(discover_schema(config, connector))

    @property
    def schema(self) -> SourceSchema:
        return self._schema

    def get_table(self, name: str) -> Optional[SourceTable]:
        return self._tables.get(name)

    def table_names(self) -> list[str]:
        return list(self._tables)

    def is_physical(self, name: str) -> bool:
        return name in self._tables

    def field_names(self, table_name: str) -> list[str]:
        table = self._tables.get(table_name)
        return table.field_names() if table else []

    def resolve_fields(
        self, name: str, joined_tables: Iterable[JoinedTableDefinition] = ()
    ) -> Optional[list[SourceField]]:
        """Return the fields of a physical table or of a joined table definition.

        Joined fields carry the ``alias.column`` names the join preview produces.
        ``None`` means the name is unknown or refers to an unknown table.
        """

        table = self._tables.get(name)
        if table is not None:
            return list(table.fields)

        definition = next((item for item in joined_tables if item.name == name or item.id == name), None)
        if definition is None:
            return None

        primary = self._tables.get(definition.primary_table)
        if primary is None:
            return None
        fields = list(primary.fields)
        for join in definition.joins:
            joined = self._tables.get(join.table_name)
            if joined is None:
                return None
            fields.extend(
                field.model_copy(
                    update={"name": f"{join.label}.{field.name}", "is_primary_key": False, "nullable": True}
                )
                for field in joined.fields
            )
        if definition.selected_fields:
            wanted = set(definition.selected_fields)
            fields = [field for field in fields if field.name in wanted]
        return fields
