from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import pandas as pd

NOT_APPLICABLE = "n/a"
NULL_VALUE_TEXT = "Null"

_QUOTE_CHARS = "[]`\""

# Column names of the published report, in output order.
REPORT_COLUMNS: Tuple[str, ...] = (
    "RunTime",
    "DimensionTable",
    "PrimaryKey",
    "FactTable",
    "ForeignKey",
    "FactRows",
    "NbrOfOrphans",
    "NbrOfOrphanedValues",
    "MaxOrphanedValue",
    "NbrOfSpecialRows",
)

FAILURE_COLUMNS: Tuple[str, ...] = (
    "DimensionTable",
    "PrimaryKey",
    "FactTable",
    "ForeignKey",
    "ErrorType",
    "Error",
)


def strip_identifier_quotes(value: Any) -> str:
    """Removes every bracket, backtick and double quote from an identifier."""
    if value is None:
        return ""
    text = str(value).strip()
    for char in _QUOTE_CHARS:
        text = text.replace(char, "")
    return text


class TableKind(str, Enum):
    DIMENSION = "dimension"
    FACT = "fact"


@dataclass(frozen=True)
class TableDescriptor:
    """A catalog table as seen by one scan run."""

    schema_name: str
    table_name: str
    columns: Tuple[str, ...] = ()
    kind: Optional[TableKind] = None
    database: str = ""

    @property
    def name(self) -> str:
        parts = [part for part in (self.database, self.schema_name, self.table_name) if part]
        return ".".join(parts)

    def classified(self, kind: TableKind) -> "TableDescriptor":
        return replace(self, kind=kind)


@dataclass(frozen=True)
class DimensionKey:
    table: TableDescriptor
    primary_key: str


@dataclass(frozen=True)
class FactCandidateColumn:
    table: TableDescriptor
    column: str


@dataclass(frozen=True)
class RelationshipCandidate:
    dimension: TableDescriptor
    primary_key: str
    fact: TableDescriptor
    foreign_key: str

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.dimension.name, self.fact.name, self.foreign_key)

    @property
    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.dimension.name, self.fact.name, self.foreign_key, self.primary_key)

    def describe(self) -> str:
        return (
            f"{self.fact.name}.{self.foreign_key} -> "
            f"{self.dimension.name}.{self.primary_key}"
        )


@dataclass(frozen=True)
class ScanStatement:
    """Executable orphan-statistics statement for exactly one candidate."""

    candidate: RelationshipCandidate
    sql: str


@dataclass(frozen=True)
class IntegrityResult:
    run_time: datetime
    dimension_table: str
    primary_key: str
    fact_table: str
    foreign_key: str
    fact_rows: int
    nbr_of_orphans: int
    nbr_of_orphaned_values: int
    max_orphaned_value: str
    nbr_of_special_rows: int

    @property
    def severity_key(self) -> Tuple[int, int]:
        return (-self.nbr_of_orphans, -self.fact_rows)

    def to_record(self) -> Dict[str, Any]:
        values = asdict(self)
        return dict(zip(REPORT_COLUMNS, values.values()))


@dataclass(frozen=True)
class ScanFailure:
    candidate: RelationshipCandidate
    error: str
    error_type: str

    def to_record(self) -> Dict[str, Any]:
        return {
            "DimensionTable": self.candidate.dimension.name,
            "PrimaryKey": self.candidate.primary_key,
            "FactTable": self.candidate.fact.name,
            "ForeignKey": self.candidate.foreign_key,
            "ErrorType": self.error_type,
            "Error": self.error,
        }


@dataclass
class RunSummary:
    total_candidates: int
    scanned: int
    failed: int
    cancelled: int
    processing_time_ms: int
    notes: Optional[str] = None


@dataclass
class Report:
    results: List[IntegrityResult]
    failures: List[ScanFailure] = field(default_factory=list)
    cancelled: List[RelationshipCandidate] = field(default_factory=list)
    summary: Optional[RunSummary] = None

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            [result.to_record() for result in self.results],
            columns=list(REPORT_COLUMNS),
        )

    def failures_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            [failure.to_record() for failure in self.failures],
            columns=list(FAILURE_COLUMNS),
        )


class MetadataUnavailableError(RuntimeError):
    """The catalog could not be read; no candidate can be inferred."""


class ScanExecutionError(RuntimeError):
    """A scan statement failed or did not produce its single result row."""


class MetadataProvider(Protocol):
    def list_tables(self, name_prefix: str) -> Sequence[TableDescriptor]:
        ...

    def primary_key_column(self, table: TableDescriptor) -> Optional[str]:
        ...

    def columns(self, table: TableDescriptor) -> Sequence[str]:
        ...


class ScanExecutor(Protocol):
    def execute(self, statement: ScanStatement) -> Mapping[str, Any]:
        ...
