from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, List, Optional

import pandas as pd
from clickzetta.zettapark.session import Session
from loguru import logger

from integrity_checker.clickzetta_utils import env_vars
from integrity_checker.clickzetta_utils.utils import (
    normalize_identifier,
    quote_identifier,
    quote_literal,
)
from integrity_checker.data_processing.data_types import (
    MetadataUnavailableError,
    ScanExecutionError,
    ScanStatement,
    TableDescriptor,
)
from integrity_checker.relationships.discovery import has_name_prefix

_COLUMN_NAME_COL = "COLUMN_NAME"
_TABLE_SCHEMA_COL = "TABLE_SCHEMA"
_TABLE_NAME_COL = "TABLE_NAME"
_IS_PRIMARY_KEY_COL = "IS_PRIMARY_KEY"
_ORDINAL_POSITION_COL = "ORDINAL_POSITION"


def _execute_query_to_pandas(connection: Any, query: str) -> pd.DataFrame:
    """
    Executes a SQL query and returns a pandas DataFrame while supporting both ClickZetta
    sessions and DB-API style connections.
    """

    logger.debug("Executing query: {}", query)

    if hasattr(connection, "sql"):
        return connection.sql(query).to_pandas()

    cursor = connection.cursor()
    try:
        cursor.execute(query)
        if hasattr(cursor, "fetch_pandas_all"):
            return cursor.fetch_pandas_all()
        rows = cursor.fetchall()
        columns = [col[0] for col in cursor.description]
        return pd.DataFrame(rows, columns=columns)
    finally:
        cursor.close()


def _normalize_pk(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    normalized = str(value).strip().upper()
    return normalized in {"TRUE", "YES", "1"}


def _build_information_schema_query(
    table_schema: Optional[str],
    exclude_schema: Optional[str],
    include_primary_key: bool = True,
) -> str:
    primary_key_select = (
        f",\n    c.is_primary_key AS {_IS_PRIMARY_KEY_COL}" if include_primary_key else ""
    )
    where_conditions: List[str] = ["1=1"]
    if table_schema:
        where_conditions.append(
            f"upper(t.table_schema) = {quote_literal(table_schema.upper())}"
        )
    if exclude_schema:
        where_conditions.append(
            f"upper(t.table_schema) <> {quote_literal(exclude_schema.upper())}"
        )
    where_clause = " AND ".join(where_conditions)
    return f"""
SELECT
    t.table_schema AS {_TABLE_SCHEMA_COL},
    t.table_name AS {_TABLE_NAME_COL},
    c.column_name AS {_COLUMN_NAME_COL},
    c.ordinal_position AS {_ORDINAL_POSITION_COL}{primary_key_select}
FROM information_schema.tables t
JOIN information_schema.columns c
  ON t.table_schema = c.table_schema
 AND t.table_name = c.table_name
WHERE {where_clause}
  AND upper(t.table_type) NOT LIKE '%VIEW%'
"""


def get_valid_schemas_tables_columns_df(
    session: Session,
    table_schema: Optional[str] = None,
    exclude_schema: Optional[str] = None,
) -> pd.DataFrame:
    """
    Reads one column-level snapshot of the catalog.

    Catalogs without ``columns.is_primary_key`` are read without it; primary keys
    then come from the constraint views. Raises MetadataUnavailableError when the
    catalog cannot be read at all.
    """

    query = _build_information_schema_query(
        table_schema=table_schema, exclude_schema=exclude_schema
    )
    try:
        result = _execute_query_to_pandas(session, query)
    except Exception as exc:
        logger.debug(
            "Catalog query with is_primary_key failed; retrying without it: {}", exc
        )
        query = _build_information_schema_query(
            table_schema=table_schema,
            exclude_schema=exclude_schema,
            include_primary_key=False,
        )
        try:
            result = _execute_query_to_pandas(session, query)
        except Exception as retry_exc:
            raise MetadataUnavailableError(
                f"Unable to read catalog metadata: {retry_exc}"
            ) from retry_exc

    result.columns = [str(col).upper() for col in result.columns]
    missing = {_TABLE_SCHEMA_COL, _TABLE_NAME_COL, _COLUMN_NAME_COL} - set(result.columns)
    if missing:
        raise MetadataUnavailableError(
            f"Catalog query did not return expected columns: {sorted(missing)}"
        )
    if _IS_PRIMARY_KEY_COL in result.columns:
        result[_IS_PRIMARY_KEY_COL] = result[_IS_PRIMARY_KEY_COL].apply(_normalize_pk)
    if _ORDINAL_POSITION_COL in result.columns:
        result = result.sort_values(
            [_TABLE_SCHEMA_COL, _TABLE_NAME_COL, _ORDINAL_POSITION_COL], kind="stable"
        )
    return result.reset_index(drop=True)


def get_table_primary_keys(
    session: Session,
    schema_name: str,
    table_name: str,
) -> Optional[List[str]]:
    query = f"""
SELECT kc.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kc
  ON tc.constraint_schema = kc.constraint_schema
 AND tc.constraint_name = kc.constraint_name
WHERE tc.constraint_type = 'PRIMARY KEY'
  AND upper(tc.table_schema) = {quote_literal(schema_name.upper())}
  AND upper(tc.table_name) = {quote_literal(table_name.upper())}
ORDER BY kc.ordinal_position
"""
    try:
        df = _execute_query_to_pandas(session, query)
    except Exception as exc:
        raise MetadataUnavailableError(
            f"Primary key lookup failed for {schema_name}.{table_name}: {exc}"
        ) from exc
    if df.empty:
        return None
    return [str(value) for value in df.iloc[:, 0].tolist()]


class ClickzettaMetadataProvider:
    """
    Catalog reader over a ClickZetta session.

    The catalog is read once, on first use, and that snapshot serves every later
    call so one run sees one consistent set of tables.
    """

    def __init__(
        self,
        session: Session,
        *,
        workspace: str = "",
        schema: Optional[str] = None,
        exclude_schema: Optional[str] = None,
    ):
        self._session = session
        self._workspace = normalize_identifier(workspace)
        self._schema = schema
        self._exclude_schema = exclude_schema
        self._snapshot: Optional[pd.DataFrame] = None
        self._tables: Optional[List[TableDescriptor]] = None

    def _load_snapshot(self) -> pd.DataFrame:
        if self._snapshot is None:
            self._snapshot = get_valid_schemas_tables_columns_df(
                self._session,
                table_schema=self._schema,
                exclude_schema=self._exclude_schema,
            )
        return self._snapshot

    def _load(self) -> List[TableDescriptor]:
        if self._tables is not None:
            return self._tables
        snapshot = self._load_snapshot()
        tables: List[TableDescriptor] = []
        for (schema_name, table_name), group in snapshot.groupby(
            [_TABLE_SCHEMA_COL, _TABLE_NAME_COL], sort=True
        ):
            tables.append(
                TableDescriptor(
                    schema_name=str(schema_name),
                    table_name=str(table_name),
                    columns=tuple(str(name) for name in group[_COLUMN_NAME_COL]),
                    database=self._workspace,
                )
            )
        logger.debug("Catalog snapshot holds {} tables", len(tables))
        self._tables = tables
        return tables

    def list_tables(self, name_prefix: str) -> List[TableDescriptor]:
        return [table for table in self._load() if has_name_prefix(table, name_prefix)]

    def primary_key_column(self, table: TableDescriptor) -> Optional[str]:
        snapshot = self._load_snapshot()
        if _IS_PRIMARY_KEY_COL in snapshot.columns:
            rows = snapshot[
                (snapshot[_TABLE_SCHEMA_COL] == table.schema_name)
                & (snapshot[_TABLE_NAME_COL] == table.table_name)
                & (snapshot[_IS_PRIMARY_KEY_COL])
            ]
            keys = [str(value) for value in rows[_COLUMN_NAME_COL].tolist()]
        else:
            keys = (
                get_table_primary_keys(
                    self._session, table.schema_name, table.table_name
                )
                or []
            )
        if len(keys) != 1:
            return None
        return keys[0]

    def columns(self, table: TableDescriptor) -> List[str]:
        for known in self._load():
            if (known.schema_name, known.table_name) == (
                table.schema_name,
                table.table_name,
            ):
                return list(known.columns)
        return []


class ClickzettaScanExecutor:
    """
    Runs scan statements and returns their single result row as a dict.

    Given a ``session_factory`` every worker thread opens its own session, which
    allows concurrent scans; a plain ``session`` is shared and must only be used
    from one thread at a time. Exactly one of the two is accepted.
    """

    def __init__(
        self,
        session: Optional[Session] = None,
        *,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        if (session is None) == (session_factory is None):
            raise ValueError("Exactly one of session or session_factory is required")
        self._session = session
        self._session_factory = session_factory
        self._local = threading.local()
        self._opened: List[Session] = []
        self._lock = threading.Lock()

    def _current_session(self) -> Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            self._local.session = session
            with self._lock:
                self._opened.append(session)
        return session

    def execute(self, statement: ScanStatement) -> Dict[str, Any]:
        try:
            df = _execute_query_to_pandas(self._current_session(), statement.sql)
        except Exception as exc:
            raise ScanExecutionError(
                f"Scan of {statement.candidate.describe()} failed: {exc}"
            ) from exc
        if df.empty:
            raise ScanExecutionError(
                f"Scan of {statement.candidate.describe()} returned no rows"
            )
        row = df.iloc[0]
        return {str(column).upper(): row[column] for column in df.columns}

    def close(self) -> None:
        with self._lock:
            opened, self._opened = self._opened, []
        for session in opened:
            session.close()


def _build_session_config(
    *,
    service: str,
    instance: str,
    workspace: str,
    schema: str,
    username: str,
    password: str,
    vcluster: str,
    hints: Dict[str, str] | None = None,
) -> Dict[str, object]:
    config: Dict[str, object] = {
        "service": service,
        "instance": instance,
        "workspace": workspace,
        "schema": schema,
        "username": username,
        "password": password,
        "vcluster": vcluster,
    }
    merged_hints = dict(env_vars.CLICKZETTA_HINTS)
    if hints:
        merged_hints.update({k: str(v) for k, v in hints.items()})
    config["hints"] = merged_hints
    return config


def create_session(
    *,
    service: str,
    instance: str,
    workspace: str,
    schema: str,
    username: str,
    password: str,
    vcluster: str,
    hints: Dict[str, str] | None = None,
) -> Session:
    """
    Creates a ClickZetta Session pre-configured with schema/vcluster context.
    """

    session = Session.builder.configs(
        _build_session_config(
            service=service,
            instance=instance,
            workspace=workspace,
            schema=schema,
            username=username,
            password=password,
            vcluster=vcluster,
            hints=hints,
        )
    ).create()
    for component, value in (("schema", schema), ("vcluster", vcluster)):
        if value:
            session.sql(f"USE {component.upper()} {quote_identifier(value)}")
    return session


class ClickzettaConnector:
    def __init__(
        self,
        *,
        overrides: Optional[Dict[str, str]] = None,
        hints: Optional[Dict[str, str]] = None,
    ):
        self._base_config = env_vars.build_base_connection_config()
        if overrides:
            self._base_config.update({k: v for k, v in overrides.items() if v})
        self._hints = hints or env_vars.CLICKZETTA_HINTS.copy()

    def _require(self, key: str) -> str:
        value = self._base_config.get(key, "")
        if not value:
            raise ValueError(f"Missing ClickZetta configuration value for {key}")
        return str(value)

    @property
    def workspace(self) -> str:
        return self._require("workspace")

    def open_session(
        self,
        workspace: Optional[str] = None,
        schema_name: Optional[str] = None,
    ) -> Session:
        return create_session(
            service=self._require("service"),
            instance=self._require("instance"),
            workspace=workspace or self._require("workspace"),
            schema=schema_name or str(self._base_config.get("schema") or ""),
            username=self._require("username"),
            password=self._require("password"),
            vcluster=str(self._base_config.get("vcluster") or "default_ap"),
            hints=self._hints,
        )

    @contextmanager
    def connect(
        self,
        workspace: Optional[str] = None,
        schema_name: Optional[str] = None,
    ) -> Generator[Session, None, None]:
        session = self.open_session(workspace=workspace, schema_name=schema_name)
        try:
            yield session
        finally:
            session.close()

    def scan_executor(self) -> ClickzettaScanExecutor:
        """Executor with one session per worker thread."""
        return ClickzettaScanExecutor(session_factory=self.open_session)
