from __future__ import annotations

import csv
import io
import json
import logging
import operator
import re
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol, Sequence

import requests
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy import MetaData, Table as SqlTable, and_, create_engine, func, inspect, select, table, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.sql import sqltypes

from stageflow.config import get_settings
from stageflow.schemas import (
    ApiAuthType,
    ConnectionConfig,
    JoinOperator,
    JoinType,
    SourceField,
    SourceSchema,
    SourceTable,
    SourceType,
    TableJoin,
)
from stageflow.services.connection_resolver import (
    UnsupportedConnectionError,
    build_connect_args,
    resolve_sqlalchemy_url,
)
from stageflow.services.errors import PreviewError, SourceConnectionError

logger = logging.getLogger(__name__)

API_TABLE_NAME = "api_data"
RECORD_WRAPPER_KEYS = ("data", "items", "results")
INFERENCE_SAMPLE_ROWS = 100

TRUE_VALUES = {"true", "t", "yes", "y"}
FALSE_VALUES = {"false", "f", "no", "n"}
NULL_TOKENS = {"null", "none", "nan"}

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATETIME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}")
_NUMBER_PATTERN = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?$")


@dataclass(frozen=True)
class TablePreview:
    columns: list[str]
    rows: list[dict[str, object]]
    total_count: int | None = None


@dataclass(frozen=True)
class ConnectionCheck:
    message: str
    record_count: int | None = None


class SourceConnector(Protocol):
    def test_connection(self, config: ConnectionConfig) -> ConnectionCheck:
        ...

    def discover_schema(self, config: ConnectionConfig) -> SourceSchema:
        ...

    def preview_table(self, config: ConnectionConfig, table_name: str, limit: int) -> TablePreview:
        ...

    def preview_join(
        self,
        config: ConnectionConfig,
        primary_table: str,
        joins: Sequence[TableJoin],
        limit: int,
    ) -> TablePreview:
        ...


def get_connector(source_type: SourceType) -> SourceConnector:
    family = source_type.family
    if family == "database":
        return DatabaseConnector()
    if family == "file":
        return FileConnector()
    if family == "api":
        return RestApiConnector()
    raise SourceConnectionError(f"Unsupported source type: {source_type.value}")


# ---------------------------------------------------------------------------
# Type inference
# ---------------------------------------------------------------------------


def map_sql_type(column_type: object) -> str:
    """Translate a reflected SQLAlchemy column type into the generic field vocabulary."""

    if isinstance(column_type, sqltypes.Boolean):
        return "boolean"
    if isinstance(column_type, (sqltypes.Integer, sqltypes.Numeric)):
        return "number"
    if isinstance(column_type, sqltypes.DateTime):
        return "datetime"
    if isinstance(column_type, sqltypes.Date):
        return "date"
    if isinstance(column_type, sqltypes.JSON):
        return "json"
    if isinstance(column_type, (sqltypes.LargeBinary, sqltypes.BINARY, sqltypes.VARBINARY)):
        return "binary"
    type_name = getattr(column_type, "__visit_name__", None) or type(column_type).__name__
    return map_native_type_name(str(type_name))


def map_native_type_name(type_name: str) -> str:
    lowered = (type_name or "").lower()
    if "bool" in lowered or lowered.startswith("bit"):
        return "boolean"
    if any(token in lowered for token in ("int", "decimal", "numeric", "float", "double", "real", "money")):
        return "number"
    if "timestamp" in lowered or "datetime" in lowered:
        return "datetime"
    if "date" in lowered:
        return "date"
    if "json" in lowered:
        return "json"
    if any(token in lowered for token in ("blob", "binary", "bytea")):
        return "binary"
    return "string"


def infer_value_type(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, date):
        return "date"
    if isinstance(value, (dict, list)):
        return "json"
    if isinstance(value, bytes):
        return "binary"

    candidate = str(value).strip()
    if not candidate:
        return None
    lowered = candidate.lower()
    if lowered in TRUE_VALUES or lowered in FALSE_VALUES:
        return "boolean"
    if _NUMBER_PATTERN.match(candidate):
        return "number"
    if _DATETIME_PATTERN.match(candidate):
        return "datetime"
    if _DATE_PATTERN.match(candidate):
        return "date"
    return "string"


def infer_field_type(values: Iterable[object]) -> str:
    detected: set[str] = set()
    for value in values:
        value_type = infer_value_type(value)
        if value_type is not None:
            detected.add(value_type)
    if not detected:
        return "string"
    if len(detected) == 1:
        return detected.pop()
    if detected <= {"date", "datetime"}:
        return "datetime"
    return "string"


def _build_fields(columns: Sequence[str], rows: Sequence[dict[str, object]]) -> list[SourceField]:
    sample = rows[:INFERENCE_SAMPLE_ROWS]
    fields: list[SourceField] = []
    for column in columns:
        values = [row.get(column) for row in sample]
        fields.append(
            SourceField(
                name=column,
                type=infer_field_type(values),
                nullable=not sample or any(value is None for value in values),
            )
        )
    return fields


def _serialize_preview_value(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value.hex()
    return value


# ---------------------------------------------------------------------------
# Relational databases
# ---------------------------------------------------------------------------


_JOIN_COMPARATORS = {
    JoinOperator.EQ: operator.eq,
    JoinOperator.NE: operator.ne,
    JoinOperator.GT: operator.gt,
    JoinOperator.LT: operator.lt,
    JoinOperator.GE: operator.ge,
    JoinOperator.LE: operator.le,
}


class DatabaseConnector:
    def __init__(self, timeout_seconds: int | None = None):
        self._timeout_seconds = timeout_seconds

    def test_connection(self, config: ConnectionConfig) -> ConnectionCheck:
        engine, url = self._create_engine(config)
        sanitized = url.render_as_string(hide_password=True)
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            message = str(getattr(exc, "orig", exc))
            raise SourceConnectionError(f"Unable to reach database for {sanitized}: {message}") from exc
        finally:
            engine.dispose()
        return ConnectionCheck(message=f"Connected to {sanitized}")

    def discover_schema(self, config: ConnectionConfig) -> SourceSchema:
        engine, url = self._create_engine(config)
        try:
            inspector = inspect(engine)
            default_schema = inspector.default_schema_name
            estimates = _fetch_row_estimates(engine, url)
            tables: list[SourceTable] = []
            for table_name in sorted(inspector.get_table_names()):
                primary_keys = set(inspector.get_pk_constraint(table_name).get("constrained_columns") or [])
                references = _foreign_key_targets(inspector, table_name)
                fields: list[SourceField] = []
                for column in inspector.get_columns(table_name):
                    name = column["name"]
                    column_type = column.get("type")
                    length = getattr(column_type, "length", None)
                    target = references.get(name)
                    fields.append(
                        SourceField(
                            name=name,
                            type=map_sql_type(column_type),
                            is_primary_key=name in primary_keys,
                            nullable=bool(column.get("nullable", True)),
                            max_length=length if isinstance(length, int) else None,
                            is_foreign_key=target is not None,
                            referenced_table=target[0] if target else None,
                            referenced_field=target[1] if target else None,
                        )
                    )
                estimate = estimates.get(table_name)
                if estimate is None and url.get_backend_name() == "sqlite":
                    estimate = _count_rows(engine, table_name)
                tables.append(
                    SourceTable(
                        name=table_name,
                        schema_name=default_schema,
                        fields=fields,
                        estimated_record_count=estimate,
                    )
                )
            return SourceSchema(tables=tables)
        except SQLAlchemyError as exc:
            raise SourceConnectionError(str(getattr(exc, "orig", exc))) from exc
        finally:
            engine.dispose()

    def preview_table(self, config: ConnectionConfig, table_name: str, limit: int) -> TablePreview:
        if not table_name:
            raise PreviewError("Table name is required for preview.")
        if limit < 1:
            raise PreviewError("Preview limit must be positive.")

        engine, _ = self._create_engine(config)
        try:
            metadata = MetaData()
            source = SqlTable(table_name, metadata, autoload_with=engine)
            stmt = select(source).limit(limit)
            with engine.connect() as connection:
                result = connection.execute(stmt)
                columns = list(result.keys())
                rows = [
                    {key: _serialize_preview_value(value) for key, value in mapped.items()}
                    for mapped in result.mappings()
                ]
            return TablePreview(columns=columns, rows=rows)
        except NoSuchTableError as exc:
            raise PreviewError(f"Table '{table_name}' was not found.") from exc
        except SQLAlchemyError as exc:
            raise PreviewError(str(getattr(exc, "orig", exc))) from exc
        finally:
            engine.dispose()

    def preview_join(
        self,
        config: ConnectionConfig,
        primary_table: str,
        joins: Sequence[TableJoin],
        limit: int,
    ) -> TablePreview:
        if limit < 1:
            raise PreviewError("Preview limit must be positive.")
        for join in joins:
            if join.join_type == JoinType.RIGHT:
                raise PreviewError("Right joins are not evaluated by the source database.")
            if not join.conditions:
                raise PreviewError(f"Join on '{join.table_name}' has no conditions.")

        engine, _ = self._create_engine(config)
        try:
            metadata = MetaData()
            primary = SqlTable(primary_table, metadata, autoload_with=engine)
            from_clause = primary
            selected = [column.label(column.name) for column in primary.columns]
            for join in joins:
                joined = SqlTable(join.table_name, metadata, autoload_with=engine).alias(join.label)
                onclause = and_(*[_build_join_predicate(primary, joined, condition) for condition in join.conditions])
                if join.join_type == JoinType.INNER:
                    from_clause = from_clause.join(joined, onclause)
                elif join.join_type == JoinType.LEFT:
                    from_clause = from_clause.outerjoin(joined, onclause)
                else:
                    from_clause = from_clause.outerjoin(joined, onclause, full=True)
                selected.extend(column.label(f"{join.label}.{column.name}") for column in joined.columns)

            stmt = select(*selected).select_from(from_clause).limit(limit)
            with engine.connect() as connection:
                result = connection.execute(stmt)
                columns = list(result.keys())
                rows = [
                    {key: _serialize_preview_value(value) for key, value in mapped.items()}
                    for mapped in result.mappings()
                ]
            return TablePreview(columns=columns, rows=rows)
        except NoSuchTableError as exc:
            raise PreviewError(f"Table '{exc.args[0] if exc.args else ''}' was not found.") from exc
        except SQLAlchemyError as exc:
            raise PreviewError(str(getattr(exc, "orig", exc))) from exc
        finally:
            engine.dispose()

    def _create_engine(self, config: ConnectionConfig) -> tuple[Engine, URL]:
        try:
            url = resolve_sqlalchemy_url(config)
        except UnsupportedConnectionError as exc:
            raise SourceConnectionError(str(exc)) from exc

        if url.get_backend_name() == "sqlite" and not Path(url.database or "").is_file():
            raise SourceConnectionError(f"SQLite database file '{url.database}' does not exist.")

        timeout = self._timeout_seconds or get_settings().connection_timeout_seconds
        try:
            engine = create_engine(
                url,
                pool_pre_ping=True,
                connect_args=build_connect_args(url, timeout, ssl=config.ssl),
            )
        except (ImportError, SQLAlchemyError) as exc:
            raise SourceConnectionError(
                f"Database driver for '{url.drivername}' is not available: {exc}"
            ) from exc
        return engine, url


def _build_join_predicate(primary, joined, condition):
    try:
        left = primary.c[condition.source_field]
    except KeyError as exc:
        raise PreviewError(f"Column '{condition.source_field}' does not exist on the primary table.") from exc
    try:
        right = joined.c[condition.target_field]
    except KeyError as exc:
        raise PreviewError(f"Column '{condition.target_field}' does not exist on the joined table.") from exc

    if condition.operator == JoinOperator.LIKE:
        return func.lower(left).contains(func.lower(right))
    comparator = _JOIN_COMPARATORS.get(condition.operator)
    if comparator is None:
        raise PreviewError(f"Operator {condition.operator.value} is not evaluated by the source database.")
    return comparator(left, right)


def _foreign_key_targets(inspector, table_name: str) -> dict[str, tuple[str, str]]:
    targets: dict[str, tuple[str, str]] = {}
    for foreign_key in inspector.get_foreign_keys(table_name):
        referred_table = foreign_key.get("referred_table")
        for local, remote in zip(
            foreign_key.get("constrained_columns") or [],
            foreign_key.get("referred_columns") or [],
        ):
            if referred_table:
                targets[local] = (referred_table, remote)
    return targets


def _fetch_row_estimates(engine: Engine, url: URL) -> dict[str, int]:
    backend = url.get_backend_name()
    if backend == "postgresql":
        query = text(
            """
            SELECT cls.relname AS table_name,
                   COALESCE(cls.reltuples, 0)::bigint AS row_estimate
            FROM pg_class AS cls
            JOIN pg_namespace AS ns ON ns.oid = cls.relnamespace
            WHERE ns.nspname = current_schema()
              AND cls.relkind IN ('r', 'p')
            """
        )
    elif backend == "mysql":
        query = text(
            """
            SELECT table_name AS table_name,
                   table_rows AS row_estimate
            FROM information_schema.tables
            WHERE table_schema = DATABASE()
            """
        )
    else:
        return {}

    estimates: dict[str, int] = {}
    try:
        with engine.connect() as connection:
            for row in connection.execute(query):
                name = getattr(row, "table_name", None)
                value = getattr(row, "row_estimate", None)
                if name and value is not None:
                    estimates[name] = max(int(value), 0)
    except SQLAlchemyError:
        return {}
    return estimates


def _count_rows(engine: Engine, table_name: str) -> int | None:
    try:
        with engine.connect() as connection:
            return int(connection.execute(select(func.count()).select_from(table(table_name))).scalar_one())
    except SQLAlchemyError:
        return None


# ---------------------------------------------------------------------------
# Flat files
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _FileTable:
    columns: list[str]
    rows: list[dict[str, object]]


class FileConnector:
    def test_connection(self, config: ConnectionConfig) -> ConnectionCheck:
        path = _resolve_file_path(config)
        tables = self._load_tables(config)
        record_count = sum(len(item.rows) for item in tables.values())
        noun = "table" if len(tables) == 1 else "tables"
        return ConnectionCheck(
            message=f"Read {len(tables)} {noun} from {path.name}",
            record_count=record_count,
        )

    def discover_schema(self, config: ConnectionConfig) -> SourceSchema:
        tables = self._load_tables(config)
        return SourceSchema(
            tables=[
                SourceTable(
                    name=name,
                    fields=_build_fields(item.columns, item.rows),
                    estimated_record_count=len(item.rows),
                )
                for name, item in tables.items()
            ]
        )

    def preview_table(self, config: ConnectionConfig, table_name: str, limit: int) -> TablePreview:
        if limit < 1:
            raise PreviewError("Preview limit must be positive.")
        try:
            tables = self._load_tables(config)
        except SourceConnectionError as exc:
            raise PreviewError(str(exc)) from exc
        item = tables.get(table_name)
        if item is None:
            raise PreviewError(f"Table '{table_name}' was not found in the source file.")
        return TablePreview(
            columns=list(item.columns),
            rows=[dict(row) for row in item.rows[:limit]],
            total_count=len(item.rows),
        )

    def preview_join(
        self,
        config: ConnectionConfig,
        primary_table: str,
        joins: Sequence[TableJoin],
        limit: int,
    ) -> TablePreview:
        raise PreviewError("File sources cannot evaluate joins; use the local join preview.")

    def _load_tables(self, config: ConnectionConfig) -> dict[str, _FileTable]:
        path = _resolve_file_path(config)
        if config.source_type == SourceType.FILE_EXCEL:
            return _read_excel(path, has_headers=config.has_headers)

        text_data = _decode_bytes(_read_bytes(path), config.encoding)
        if config.source_type == SourceType.FILE_JSON:
            return {_table_name_for(path): _parse_json_records(text_data)}
        delimiter = _resolve_delimiter(path, text_data, config.delimiter)
        return {
            _table_name_for(path): _parse_csv(text_data, delimiter=delimiter, has_headers=config.has_headers)
        }


def _resolve_file_path(config: ConnectionConfig) -> Path:
    if not config.file_path:
        raise SourceConnectionError("A file path is required for file sources.")
    path = Path(config.file_path).expanduser()
    if not path.is_file():
        raise SourceConnectionError(f"File '{config.file_path}' does not exist.")
    return path


def _table_name_for(path: Path) -> str:
    return path.stem


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise SourceConnectionError(f"Unable to read '{path}': {exc}") from exc


def _decode_bytes(data: bytes, encoding: Optional[str] = None) -> str:
    candidates = [encoding] if encoding else []
    candidates.extend(["utf-8-sig", "utf-8", "latin-1"])
    for candidate in candidates:
        try:
            return data.decode(candidate)
        except LookupError as exc:
            raise SourceConnectionError(f"Unknown file encoding '{candidate}'.") from exc
        except UnicodeDecodeError:
            continue
    raise SourceConnectionError("Unable to decode file. Use UTF-8 encoding.")


def _resolve_delimiter(path: Path, text_data: str, override: Optional[str]) -> str:
    if override:
        return override
    if path.suffix.lower() in {".tsv", ".tab"}:
        return "\t"
    try:
        return csv.Sniffer().sniff(text_data[:4096], delimiters=",;\t|").delimiter
    except csv.Error:
        return ","


def _normalize_cell(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed or trimmed.lower() in NULL_TOKENS:
            return None
        return trimmed
    return _serialize_preview_value(value)


def _build_headers(header_row: Sequence[object], column_count: int) -> list[str]:
    seen: set[str] = set()
    headers: list[str] = []
    for index in range(column_count):
        raw = header_row[index] if index < len(header_row) else None
        candidate = str(raw).strip() if raw is not None else ""
        if not candidate:
            candidate = f"column_{index + 1}"
        base = candidate
        suffix = 1
        while candidate in seen:
            candidate = f"{base}_{suffix}"
            suffix += 1
        seen.add(candidate)
        headers.append(candidate)
    return headers


def _rows_to_table(raw_rows: list[Sequence[object]], has_headers: bool) -> _FileTable:
    if not raw_rows:
        return _FileTable(columns=[], rows=[])
    column_count = max(len(row) for row in raw_rows)
    if has_headers:
        headers = _build_headers(raw_rows[0], column_count)
        data_rows = raw_rows[1:]
    else:
        headers = _build_headers([], column_count)
        data_rows = raw_rows

    rows: list[dict[str, object]] = []
    for raw in data_rows:
        rows.append(
            {
                header: _normalize_cell(raw[index] if index < len(raw) else None)
                for index, header in enumerate(headers)
            }
        )
    return _FileTable(columns=headers, rows=rows)


def _parse_csv(text_data: str, *, delimiter: str, has_headers: bool) -> _FileTable:
    reader = csv.reader(io.StringIO(text_data), delimiter=delimiter)
    try:
        raw_rows = [row for row in reader if any(cell.strip() for cell in row)]
    except csv.Error as exc:
        raise SourceConnectionError(f"Unable to parse CSV file: {exc}") from exc
    return _rows_to_table(raw_rows, has_headers)


def _read_excel(path: Path, *, has_headers: bool) -> dict[str, _FileTable]:
    try:
        workbook = load_workbook(filename=str(path), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as exc:
        raise SourceConnectionError(f"Unable to read Excel workbook '{path.name}': {exc}") from exc

    tables: dict[str, _FileTable] = {}
    try:
        for sheet in workbook.worksheets:
            raw_rows: list[Sequence[object]] = []
            for row in sheet.iter_rows(values_only=True):
                values = list(row)
                while values and (values[-1] is None or str(values[-1]).strip() == ""):
                    values.pop()
                if values:
                    raw_rows.append(values)
            tables[sheet.title] = _rows_to_table(raw_rows, has_headers)
    finally:
        workbook.close()
    return tables


def extract_records(payload: Any) -> list[dict[str, Any]]:
    """Return the list of record objects carried by a JSON document."""

    if isinstance(payload, dict):
        for key in RECORD_WRAPPER_KEYS:
            wrapped = payload.get(key)
            if isinstance(wrapped, list):
                payload = wrapped
                break
        else:
            return [payload]
    if not isinstance(payload, list):
        raise SourceConnectionError("JSON payload must be an array of objects.")
    return [item if isinstance(item, dict) else {"value": item} for item in payload]


def _records_to_table(records: Sequence[dict[str, Any]]) -> _FileTable:
    columns: list[str] = []
    seen: set[str] = set()
    for record in records:
        for key in record:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    rows = [{column: record.get(column) for column in columns} for record in records]
    return _FileTable(columns=columns, rows=rows)


def _parse_json_records(text_data: str) -> _FileTable:
    try:
        payload = json.loads(text_data)
    except json.JSONDecodeError as exc:
        raise SourceConnectionError(f"File is not valid JSON: {exc.msg}") from exc
    return _records_to_table(extract_records(payload))


# ---------------------------------------------------------------------------
# REST endpoints
# ---------------------------------------------------------------------------


class RestApiConnector:
    def __init__(self, timeout_seconds: int | None = None):
        self._timeout_seconds = timeout_seconds

    def test_connection(self, config: ConnectionConfig) -> ConnectionCheck:
        records = self._fetch_records(config)
        return ConnectionCheck(
            message=f"Received {len(records)} records from {config.api_url}",
            record_count=len(records),
        )

    def discover_schema(self, config: ConnectionConfig) -> SourceSchema:
        table_data = _records_to_table(self._fetch_records(config))
        return SourceSchema(
            tables=[
                SourceTable(
                    name=API_TABLE_NAME,
                    fields=_build_fields(table_data.columns, table_data.rows),
                    estimated_record_count=len(table_data.rows),
                )
            ]
        )

    def preview_table(self, config: ConnectionConfig, table_name: str, limit: int) -> TablePreview:
        if table_name != API_TABLE_NAME:
            raise PreviewError(f"REST sources expose a single table named '{API_TABLE_NAME}'.")
        if limit < 1:
            raise PreviewError("Preview limit must be positive.")
        try:
            records = self._fetch_records(config, limit=limit)
        except SourceConnectionError as exc:
            raise PreviewError(str(exc)) from exc
        table_data = _records_to_table(records)
        return TablePreview(
            columns=table_data.columns,
            rows=table_data.rows[:limit],
            total_count=len(table_data.rows),
        )

    def preview_join(
        self,
        config: ConnectionConfig,
        primary_table: str,
        joins: Sequence[TableJoin],
        limit: int,
    ) -> TablePreview:
        raise PreviewError("REST sources cannot evaluate joins; use the local join preview.")

    def _fetch_records(self, config: ConnectionConfig, limit: int | None = None) -> list[dict[str, Any]]:
        url = (config.api_url or "").strip()
        if not url:
            raise SourceConnectionError("An API URL is required for REST sources.")

        headers, params, auth = build_api_request(config)
        if limit is not None and config.limit_param:
            params[config.limit_param] = str(limit)

        timeout = self._timeout_seconds or get_settings().connection_timeout_seconds
        try:
            response = requests.request(
                config.method,
                url,
                headers=headers,
                params=params or None,
                auth=auth,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise SourceConnectionError(f"Unable to reach {url}: {exc}") from exc

        if not response.ok:
            raise SourceConnectionError(
                f"API request failed with status {response.status_code} {response.reason or ''}".rstrip()
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceConnectionError("API response is not valid JSON.") from exc
        records = extract_records(payload)
        logger.debug("Fetched %s records from %s", len(records), url)
        return records


def build_api_request(
    config: ConnectionConfig,
) -> tuple[dict[str, str], dict[str, str], Optional[tuple[str, str]]]:
    headers = {"Accept": "application/json", **config.headers}
    params: dict[str, str] = {}
    auth: Optional[tuple[str, str]] = None

    auth_type = config.auth_type
    if auth_type != ApiAuthType.NONE and auth_type != ApiAuthType.BASIC and not config.api_key:
        raise SourceConnectionError(f"An API key is required for {auth_type.value} authentication.")

    if auth_type == ApiAuthType.BEARER:
        headers["Authorization"] = f"Bearer {config.api_key}"
    elif auth_type == ApiAuthType.API_KEY:
        headers[config.api_key_header or "X-API-Key"] = config.api_key or ""
    elif auth_type == ApiAuthType.QUERY_PARAM:
        params[config.api_key_param or "api_key"] = config.api_key or ""
    elif auth_type == ApiAuthType.BASIC:
        username = config.username or config.api_key
        if not username:
            raise SourceConnectionError("A username is required for basic authentication.")
        auth = (username, config.api_password or config.password or "")
    return headers, params, auth
