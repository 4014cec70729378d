"""
Builds the orphan-statistics statement for one inferred relationship.

The fact table is left-joined to the dimension on ``foreign key = primary key``
and grouped by (primary key value, foreign key value). A group whose primary key
value is NULL had no dimension match; every aggregate below is computed over
those groups, so the outer SELECT always yields exactly one row, even for an
empty fact table.

The maximum orphaned value compares keys by their own type. A NULL foreign key
among the orphans outranks every value and is reported as ``'Null'``.
"""

from __future__ import annotations

from typing import Callable

from integrity_checker.clickzetta_utils.utils import (
    quote_identifier,
    quote_literal,
)
from integrity_checker.data_processing.data_types import (
    NOT_APPLICABLE,
    NULL_VALUE_TEXT,
    RelationshipCandidate,
    ScanStatement,
    TableDescriptor,
)

RUN_TIME_COL = "RUN_TIME"
FACT_ROWS_COL = "FACT_ROWS"
NBR_OF_ORPHANS_COL = "NBR_OF_ORPHANS"
NBR_OF_ORPHANED_VALUES_COL = "NBR_OF_ORPHANED_VALUES"
MAX_ORPHANED_VALUE_COL = "MAX_ORPHANED_VALUE"
NBR_OF_SPECIAL_ROWS_COL = "NBR_OF_SPECIAL_ROWS"

RESULT_COLUMNS = (
    RUN_TIME_COL,
    FACT_ROWS_COL,
    NBR_OF_ORPHANS_COL,
    NBR_OF_ORPHANED_VALUES_COL,
    MAX_ORPHANED_VALUE_COL,
    NBR_OF_SPECIAL_ROWS_COL,
)

_FACT_ALIAS = "f"
_DIMENSION_ALIAS = "d"
_ORPHAN_GROUP = "primary_key_value IS NULL"

_SCAN_TEMPLATE = """WITH ri AS (
    SELECT
        {dimension_alias}.{primary_key} AS primary_key_value,
        {fact_alias}.{foreign_key} AS foreign_key_value,
        COUNT(*) AS nbr_of_rows
    FROM {fact_table} {fact_alias}
    LEFT JOIN {dimension_table} {dimension_alias}
      ON {fact_alias}.{foreign_key} = {dimension_alias}.{primary_key}
    GROUP BY
        {dimension_alias}.{primary_key},
        {fact_alias}.{foreign_key}
)
SELECT
    CURRENT_TIMESTAMP() AS {run_time_col},
    COALESCE(SUM(nbr_of_rows), 0) AS {fact_rows_col},
    COALESCE(SUM(CASE WHEN {orphan} THEN nbr_of_rows END), 0) AS {orphans_col},
    COUNT(CASE WHEN {orphan} THEN 1 END) AS {orphaned_values_col},
    CASE
        WHEN COUNT(CASE WHEN {orphan} THEN 1 END) = 0 THEN {not_applicable}
        WHEN COUNT(CASE WHEN {orphan} AND foreign_key_value IS NULL THEN 1 END) > 0
            THEN {null_text}
        ELSE CAST(MAX(CASE WHEN {orphan} THEN foreign_key_value END) AS STRING)
    END AS {max_orphaned_value_col},
    COALESCE(SUM(CASE WHEN foreign_key_value < 0 THEN nbr_of_rows END), 0) AS {special_rows_col}
FROM ri"""


def _table_reference(table: TableDescriptor, quote: Callable[[str], str]) -> str:
    reference = ".".join(
        quote(part)
        for part in (table.database, table.schema_name, table.table_name)
        if part
    )
    if not reference:
        raise ValueError(f"Table descriptor has no name: {table!r}")
    return reference


def _column_reference(column: str, quote: Callable[[str], str]) -> str:
    reference = quote(column)
    if not reference:
        raise ValueError("Column name must not be empty")
    return reference


def build_scan_statement(
    candidate: RelationshipCandidate,
    *,
    quote: Callable[[str], str] = quote_identifier,
) -> ScanStatement:
    """
    Renders the orphan-statistics query for ``candidate``.

    Table and column names are only ever emitted through ``quote``, so catalog
    names containing quotes, dots or spaces stay identifiers.
    """

    sql = _SCAN_TEMPLATE.format(
        fact_table=_table_reference(candidate.fact, quote),
        dimension_table=_table_reference(candidate.dimension, quote),
        foreign_key=_column_reference(candidate.foreign_key, quote),
        primary_key=_column_reference(candidate.primary_key, quote),
        fact_alias=_FACT_ALIAS,
        dimension_alias=_DIMENSION_ALIAS,
        orphan=_ORPHAN_GROUP,
        not_applicable=quote_literal(NOT_APPLICABLE),
        null_text=quote_literal(NULL_VALUE_TEXT),
        run_time_col=RUN_TIME_COL,
        fact_rows_col=FACT_ROWS_COL,
        orphans_col=NBR_OF_ORPHANS_COL,
        orphaned_values_col=NBR_OF_ORPHANED_VALUES_COL,
        max_orphaned_value_col=MAX_ORPHANED_VALUE_COL,
        special_rows_col=NBR_OF_SPECIAL_ROWS_COL,
    )
    return ScanStatement(candidate=candidate, sql=sql)
