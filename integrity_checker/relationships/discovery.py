from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from integrity_checker.clickzetta_utils.utils import (
    normalize_identifier,
    split_table_identifier,
)
from integrity_checker.data_processing.data_types import (
    DimensionKey,
    FactCandidateColumn,
    MetadataProvider,
    RelationshipCandidate,
    TableDescriptor,
    TableKind,
    strip_identifier_quotes,
)

DEFAULT_DIMENSION_PREFIX = "dim"
DEFAULT_FACT_PREFIX = "fact"


@dataclass
class RelationshipSummary:
    total_dimensions: int
    total_facts: int
    skipped_dimensions: int
    total_relationships_found: int
    processing_time_ms: int


@dataclass
class RelationshipDiscoveryResult:
    relationships: List[RelationshipCandidate]
    dimensions: List[DimensionKey]
    facts: List[TableDescriptor]
    summary: RelationshipSummary


def has_name_prefix(table: TableDescriptor, prefix: str) -> bool:
    name = strip_identifier_quotes(table.table_name).lower()
    return name.startswith(prefix.lower())


def column_embeds_key(column: str, primary_key: str) -> bool:
    """Case-sensitive substring rule used to propose a foreign key."""
    key = strip_identifier_quotes(primary_key)
    if not key:
        return False
    return key in strip_identifier_quotes(column)


def collect_dimension_keys(
    provider: MetadataProvider,
    prefix: str = DEFAULT_DIMENSION_PREFIX,
) -> Tuple[List[DimensionKey], int]:
    """
    Returns the dimensions usable for inference and the number skipped because
    they lack exactly one primary-key column.
    """

    dimensions: List[DimensionKey] = []
    skipped = 0
    for table in provider.list_tables(prefix):
        if not has_name_prefix(table, prefix):
            continue
        primary_key = provider.primary_key_column(table)
        if not primary_key:
            logger.debug(
                "Skipping dimension {}: no single-column primary key", table.name
            )
            skipped += 1
            continue
        dimensions.append(
            DimensionKey(table=table.classified(TableKind.DIMENSION), primary_key=primary_key)
        )
    dimensions.sort(key=lambda item: (item.table.name, item.primary_key))
    return dimensions, skipped


def collect_fact_tables(
    provider: MetadataProvider,
    prefix: str = DEFAULT_FACT_PREFIX,
) -> List[TableDescriptor]:
    facts: List[TableDescriptor] = []
    for table in provider.list_tables(prefix):
        if not has_name_prefix(table, prefix):
            continue
        columns = tuple(table.columns) or tuple(provider.columns(table))
        facts.append(
            TableDescriptor(
                schema_name=table.schema_name,
                table_name=table.table_name,
                columns=columns,
                kind=TableKind.FACT,
                database=table.database,
            )
        )
    facts.sort(key=lambda table: table.name)
    return facts


def iter_fact_candidate_columns(
    dimension: DimensionKey, facts: Sequence[TableDescriptor]
) -> Iterator[FactCandidateColumn]:
    for fact in facts:
        for column in sorted(fact.columns):
            if column_embeds_key(column, dimension.primary_key):
                yield FactCandidateColumn(table=fact, column=column)


def iter_relationship_candidates(
    dimensions: Sequence[DimensionKey],
    facts: Sequence[TableDescriptor],
) -> Iterator[RelationshipCandidate]:
    """
    Lazily crosses dimensions with fact columns. Restartable: each call walks the
    same inputs again in (dimension, fact, column) order.
    """

    for dimension in sorted(dimensions, key=lambda item: (item.table.name, item.primary_key)):
        for fact_column in iter_fact_candidate_columns(
            dimension, sorted(facts, key=lambda table: table.name)
        ):
            yield RelationshipCandidate(
                dimension=dimension.table,
                primary_key=dimension.primary_key,
                fact=fact_column.table,
                foreign_key=fact_column.column,
            )


def discover_relationships(
    provider: MetadataProvider,
    *,
    dimension_prefix: str = DEFAULT_DIMENSION_PREFIX,
    fact_prefix: str = DEFAULT_FACT_PREFIX,
) -> RelationshipDiscoveryResult:
    """
    Infers dimension/fact relationships from naming conventions alone.

    A fact column becomes a candidate foreign key for every dimension whose
    primary-key name it contains. Loose keys such as ``Key`` will over-match;
    the rule is kept as is so no foreign-key declarations are needed.
    """

    start = time.perf_counter()
    dimensions, skipped = collect_dimension_keys(provider, dimension_prefix)
    facts = collect_fact_tables(provider, fact_prefix)
    relationships = list(iter_relationship_candidates(dimensions, facts))
    end = time.perf_counter()

    logger.debug(
        "Inferred {} candidates from {} dimensions and {} facts ({} dimensions skipped)",
        len(relationships),
        len(dimensions),
        len(facts),
        skipped,
    )
    summary = RelationshipSummary(
        total_dimensions=len(dimensions),
        total_facts=len(facts),
        skipped_dimensions=skipped,
        total_relationships_found=len(relationships),
        processing_time_ms=int((end - start) * 1000),
    )
    return RelationshipDiscoveryResult(
        relationships=relationships,
        dimensions=dimensions,
        facts=facts,
        summary=summary,
    )


class TableDefinitionMetadataProvider:
    """
    Metadata provider over plain table-definition mappings, for offline use.

    Each entry needs ``table_name`` (optionally ``schema.table``) and a non-empty
    ``columns`` list whose items carry ``name`` and optionally ``is_primary_key``.
    """

    def __init__(
        self,
        tables: Sequence[Mapping[str, Any]],
        *,
        default_schema: str = "dbo",
    ) -> None:
        self._tables: List[TableDescriptor] = []
        self._primary_keys: Dict[str, List[str]] = {}
        for table_entry in tables:
            table, primary_keys = _table_definition_to_descriptor(
                table_entry, default_schema=default_schema
            )
            self._tables.append(table)
            self._primary_keys[table.name] = primary_keys

    def list_tables(self, name_prefix: str) -> List[TableDescriptor]:
        return [table for table in self._tables if has_name_prefix(table, name_prefix)]

    def primary_key_column(self, table: TableDescriptor) -> Optional[str]:
        keys = self._primary_keys.get(table.name, [])
        if len(keys) != 1:
            return None
        return keys[0]

    def columns(self, table: TableDescriptor) -> List[str]:
        return list(table.columns)


def _table_definition_to_descriptor(
    table_entry: Mapping[str, Any], *, default_schema: str
) -> Tuple[TableDescriptor, List[str]]:
    if not isinstance(table_entry, Mapping):
        raise TypeError("Each table definition must be a mapping of table metadata")

    raw_identifier = str(
        table_entry.get("table_name") or table_entry.get("name") or ""
    ).strip()
    if not raw_identifier:
        raise ValueError("Table definition missing 'table_name'")
    database, identifier_schema, table_name = split_table_identifier(raw_identifier)
    schema = str(
        table_entry.get("schema") or identifier_schema or default_schema
    ).strip()

    columns_payload = table_entry.get("columns")
    if not isinstance(columns_payload, Sequence) or not columns_payload:
        raise ValueError(f"Table '{table_name}' must include a non-empty 'columns' list")

    columns: List[str] = []
    primary_keys: List[str] = []
    for column_entry in _iter_column_entries(table_name, columns_payload):
        column_name = normalize_identifier(
            column_entry.get("name") or column_entry.get("column_name")
        )
        if not column_name:
            raise ValueError(f"Column definition in table '{table_name}' missing 'name'")
        columns.append(column_name)
        if column_entry.get("is_primary_key") or column_entry.get("primary_key"):
            primary_keys.append(column_name)

    descriptor = TableDescriptor(
        schema_name=normalize_identifier(schema),
        table_name=table_name,
        columns=tuple(columns),
        database=database,
    )
    return descriptor, primary_keys


def _iter_column_entries(
    table_name: str, columns_payload: Iterable[Any]
) -> Iterator[Mapping[str, Any]]:
    for column_entry in columns_payload:
        if isinstance(column_entry, str):
            yield {"name": column_entry}
            continue
        if not isinstance(column_entry, Mapping):
            raise TypeError(f"Column definition for table '{table_name}' must be a mapping")
        yield column_entry
