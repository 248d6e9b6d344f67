import json

import pytest
import requests
from openpyxl import Workbook
from sqlalchemy import create_engine, text

from stageflow.schemas import (
    ApiAuthType,
    ConnectionConfig,
    JoinCondition,
    JoinType,
    SourceType,
    TableJoin,
)
from stageflow.services import source_connectors
from stageflow.services.errors import PreviewError, SourceConnectionError
from stageflow.services.schema_catalog import check_source_connection, discover_schema
from stageflow.services.source_connectors import (
    DatabaseConnector,
    FileConnector,
    RestApiConnector,
    build_api_request,
    extract_records,
    get_connector,
    infer_field_type,
)


class _FakeResponse:
    def __init__(self, payload, status_code: int = 200, reason: str = "OK"):
        self._payload = payload
        self.status_code = status_code
        self.reason = reason

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        return self._payload


@pytest.fixture()
def sqlite_source(tmp_path) -> ConnectionConfig:
    path = tmp_path / "crm.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as connection:
        connection.execute(text("CREATE TABLE customers (id INTEGER PRIMARY KEY, name VARCHAR(50) NOT NULL)"))
        connection.execute(
            text(
                "CREATE TABLE orders (id INTEGER PRIMARY KEY, "
                "customer_id INTEGER REFERENCES customers(id), total NUMERIC(10, 2))"
            )
        )
        connection.execute(text("INSERT INTO customers (id, name) VALUES (1, 'Acme'), (2, 'Globex')"))
        connection.execute(text("INSERT INTO orders (id, customer_id, total) VALUES (10, 1, 99.5)"))
    engine.dispose()
    return ConnectionConfig(source_type=SourceType.DATABASE_SQLITE, file_path=str(path))


def test_get_connector_picks_by_family():
    assert isinstance(get_connector(SourceType.DATABASE_MYSQL), DatabaseConnector)
    assert isinstance(get_connector(SourceType.FILE_EXCEL), FileConnector)
    assert isinstance(get_connector(SourceType.API_REST), RestApiConnector)


def test_infer_field_type():
    assert infer_field_type(["1", "2.5", None]) == "number"
    assert infer_field_type(["yes", "no"]) == "boolean"
    assert infer_field_type(["2024-01-02", "2024-01-03T10:00:00"]) == "datetime"
    assert infer_field_type(["abc", "1"]) == "string"
    assert infer_field_type([None, ""]) == "string"


def test_sqlite_schema_discovery(sqlite_source):
    schema = discover_schema(sqlite_source)

    assert [table.name for table in schema.tables] == ["customers", "orders"]
    orders = schema.get_table("orders")
    assert orders.estimated_record_count == 1
    customer_id = orders.field("customer_id")
    assert customer_id.type == "number"
    assert customer_id.is_foreign_key
    assert customer_id.referenced_table == "customers"
    assert schema.get_table("customers").field("id").is_primary_key


def test_sqlite_connection_check(sqlite_source):
    result = check_source_connection(sqlite_source)

    assert result.success is True
    assert result.duration_ms is not None


def test_missing_sqlite_file_fails_without_raising(tmp_path):
    config = ConnectionConfig(source_type=SourceType.DATABASE_SQLITE, file_path=str(tmp_path / "missing.db"))

    result = check_source_connection(config)

    assert result.success is False
    assert "does not exist" in result.message


def test_sqlite_preview_and_server_join(sqlite_source):
    connector = DatabaseConnector()

    preview = connector.preview_table(sqlite_source, "customers", 1)
    assert preview.columns == ["id", "name"]
    assert preview.rows == [{"id": 1, "name": "Acme"}]

    joined = connector.preview_join(
        sqlite_source,
        "customers",
        [
            TableJoin(
                table_name="orders",
                join_type=JoinType.LEFT,
                conditions=[JoinCondition(source_field="id", target_field="customer_id")],
            )
        ],
        10,
    )
    assert joined.columns == ["id", "name", "orders.id", "orders.customer_id", "orders.total"]
    assert len(joined.rows) == 2
    assert joined.rows[0]["orders.total"] == pytest.approx(99.5)


def test_server_join_refuses_right_joins(sqlite_source):
    with pytest.raises(PreviewError):
        DatabaseConnector().preview_join(
            sqlite_source,
            "customers",
            [
                TableJoin(
                    table_name="orders",
                    join_type=JoinType.RIGHT,
                    conditions=[JoinCondition(source_field="id", target_field="customer_id")],
                )
            ],
            5,
        )


def test_preview_unknown_table(sqlite_source):
    with pytest.raises(PreviewError, match="not found"):
        DatabaseConnector().preview_table(sqlite_source, "nope", 5)


def test_csv_discovery_and_preview(tmp_path):
    path = tmp_path / "accounts.csv"
    path.write_text("id;name;active\n1;Acme;yes\n2;Globex;no\n3;;NULL\n", encoding="utf-8")
    config = ConnectionConfig(source_type=SourceType.FILE_CSV, file_path=str(path))

    schema = discover_schema(config)
    table = schema.get_table("accounts")
    assert table.field_names() == ["id", "name", "active"]
    assert table.field("id").type == "number"
    assert table.field("active").type == "boolean"
    assert table.estimated_record_count == 3

    preview = FileConnector().preview_table(config, "accounts", 2)
    assert preview.total_count == 3
    assert preview.rows[1] == {"id": "2", "name": "Globex", "active": "no"}


def test_csv_without_headers_generates_column_names(tmp_path):
    path = tmp_path / "raw.csv"
    path.write_text("1,Acme\n2,Globex\n", encoding="utf-8")
    config = ConnectionConfig(source_type=SourceType.FILE_CSV, file_path=str(path), has_headers=False)

    schema = discover_schema(config)

    assert schema.get_table("raw").field_names() == ["column_1", "column_2"]


def test_csv_latin1_fallback(tmp_path):
    path = tmp_path / "names.csv"
    path.write_bytes("name\nJos\xe9\n".encode("latin-1"))
    config = ConnectionConfig(source_type=SourceType.FILE_CSV, file_path=str(path))

    preview = FileConnector().preview_table(config, "names", 5)

    assert preview.rows == [{"name": "Jos\xe9"}]


def test_json_file_records(tmp_path):
    path = tmp_path / "users.json"
    path.write_text(json.dumps({"data": [{"email": "a@example.com"}, {"email": "b@example.com", "age": 3}]}))
    config = ConnectionConfig(source_type=SourceType.FILE_JSON, file_path=str(path))

    schema = discover_schema(config)

    assert schema.get_table("users").field_names() == ["email", "age"]


def test_excel_sheets_become_tables(tmp_path):
    path = tmp_path / "book.xlsx"
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Rates"
    sheet.append(["name", "rate"])
    sheet.append(["Standard", 120])
    other = workbook.create_sheet("Users")
    other.append(["email"])
    other.append(["a@example.com"])
    workbook.save(path)
    config = ConnectionConfig(source_type=SourceType.FILE_EXCEL, file_path=str(path))

    schema = discover_schema(config)

    assert [table.name for table in schema.tables] == ["Rates", "Users"]
    assert schema.get_table("Rates").field("rate").type == "number"


def test_missing_file_raises_connection_error(tmp_path):
    config = ConnectionConfig(source_type=SourceType.FILE_CSV, file_path=str(tmp_path / "nope.csv"))

    with pytest.raises(SourceConnectionError):
        discover_schema(config)


def test_file_sources_do_not_join_server_side(tmp_path):
    config = ConnectionConfig(source_type=SourceType.FILE_CSV, file_path=str(tmp_path / "x.csv"))

    with pytest.raises(PreviewError):
        FileConnector().preview_join(config, "x", [], 5)


def test_rest_discovery_uses_auth_and_unwraps_records(monkeypatch):
    captured = {}

    def fake_request(method, url, **kwargs):
        captured.update(method=method, url=url, **kwargs)
        return _FakeResponse({"items": [{"id": 1, "title": "First"}, {"id": 2, "title": "Second"}]})

    monkeypatch.setattr(source_connectors.requests, "request", fake_request)
    config = ConnectionConfig(
        source_type=SourceType.API_REST,
        api_url="https://api.example.com/tickets",
        auth_type=ApiAuthType.BEARER,
        api_key="token-123",
    )

    schema = discover_schema(config)

    assert schema.tables[0].name == "api_data"
    assert schema.tables[0].field_names() == ["id", "title"]
    assert captured["method"] == "GET"
    assert captured["headers"]["Authorization"] == "Bearer token-123"


def test_rest_preview_passes_limit_param(monkeypatch):
    captured = {}

    def fake_request(method, url, **kwargs):
        captured.update(kwargs)
        return _FakeResponse([{"id": 1}, {"id": 2}, {"id": 3}])

    monkeypatch.setattr(source_connectors.requests, "request", fake_request)
    config = ConnectionConfig(
        source_type=SourceType.API_REST,
        api_url="https://api.example.com/items",
        limit_param="per_page",
    )

    preview = RestApiConnector().preview_table(config, "api_data", 2)

    assert captured["params"] == {"per_page": "2"}
    assert len(preview.rows) == 2


def test_rest_http_errors_become_connection_failures(monkeypatch):
    monkeypatch.setattr(
        source_connectors.requests,
        "request",
        lambda method, url, **kwargs: _FakeResponse({}, status_code=401, reason="Unauthorized"),
    )
    config = ConnectionConfig(source_type=SourceType.API_REST, api_url="https://api.example.com")

    result = check_source_connection(config)

    assert result.success is False
    assert "401" in result.message


def test_rest_network_errors_become_connection_failures(monkeypatch):
    def boom(method, url, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(source_connectors.requests, "request", boom)
    config = ConnectionConfig(source_type=SourceType.API_REST, api_url="https://api.example.com")

    with pytest.raises(SourceConnectionError, match="Unable to reach"):
        RestApiConnector().test_connection(config)


def test_build_api_request_variants():
    base = {"source_type": SourceType.API_REST, "api_url": "https://api.example.com", "api_key": "k"}

    headers, _, _ = build_api_request(ConnectionConfig(**base, auth_type=ApiAuthType.API_KEY))
    assert headers["X-API-Key"] == "k"

    _, params, _ = build_api_request(
        ConnectionConfig(**base, auth_type=ApiAuthType.QUERY_PARAM, api_key_param="token")
    )
    assert params == {"token": "k"}

    _, _, auth = build_api_request(
        ConnectionConfig(**base, auth_type=ApiAuthType.BASIC, username="user", api_password="pw")
    )
    assert auth == ("user", "pw")

    with pytest.raises(SourceConnectionError):
        build_api_request(
            ConnectionConfig(source_type=SourceType.API_REST, api_url="x", auth_type=ApiAuthType.BEARER)
        )


def test_extract_records():
    assert extract_records([{"a": 1}, 2]) == [{"a": 1}, {"value": 2}]
    assert extract_records({"results": [{"a": 1}]}) == [{"a": 1}]
    assert extract_records({"a": 1}) == [{"a": 1}]
    with pytest.raises(SourceConnectionError):
        extract_records("text")
