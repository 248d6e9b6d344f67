from http import HTTPStatus

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook

from stageflow.main import app


@pytest.fixture()
def rates_file(tmp_path):
    path = tmp_path / "rates.csv"
    path.write_text("name,rate,enabled\nStandard,120,yes\nPremium,150,no\n", encoding="utf-8")
    return path


def _create_configuration(client, rates_file) -> dict:
    response = client.post(
        "/import/configurations",
        json={
            "name": "Billing rates",
            "source_type": "file_csv",
            "connection_config": {"source_type": "file_csv", "file_path": str(rates_file)},
        },
    )
    assert response.status_code == HTTPStatus.CREATED, response.text
    return response.json()


def _prepare_rates_stage(client, configuration_id: str) -> None:
    assert client.post(f"/import/configurations/{configuration_id}/discover-schema").status_code == HTTPStatus.OK
    stage_resp = client.post(
        f"/import/configurations/{configuration_id}/stages",
        json={"id": "rates", "name": "Rates", "source_table": "rates", "target_entity": "BillingRate"},
    )
    assert stage_resp.status_code == HTTPStatus.CREATED, stage_resp.text
    for source_field, target_field in (("name", "name"), ("rate", "rate")):
        mapping_resp = client.post(
            f"/import/configurations/{configuration_id}/stages/rates/mappings",
            json={"source_field": source_field, "target_field": target_field},
        )
        assert mapping_resp.status_code == HTTPStatus.CREATED, mapping_resp.text


def test_health_endpoint():
    response = TestClient(app).get("/health")

    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"status": "ok"}


def test_target_entities_are_listed(client):
    response = client.get("/target-entities")

    assert response.status_code == HTTPStatus.OK
    names = [entity["name"] for entity in response.json()]
    assert names == ["Account", "User", "Ticket", "TimeEntry", "BillingRate"]
    assert client.get("/target-entities/Spaceship").status_code == HTTPStatus.NOT_FOUND


def test_ad_hoc_connection_test(client, rates_file, tmp_path):
    ok = client.post("/import/test-connection", json={"source_type": "file_csv", "file_path": str(rates_file)})
    assert ok.json()["success"] is True
    assert ok.json()["record_count"] == 2

    missing = client.post(
        "/import/test-connection", json={"source_type": "file_csv", "file_path": str(tmp_path / "nope.csv")}
    )
    assert missing.status_code == HTTPStatus.OK
    assert missing.json()["success"] is False


def test_configuration_crud(client, rates_file):
    created = _create_configuration(client, rates_file)
    configuration_id = created["id"]
    assert created["status"] == "draft"
    assert created["connection_test_passed"] is False

    listed = client.get("/import/configurations").json()
    assert [item["id"] for item in listed] == [configuration_id]

    updated = client.put(f"/import/configurations/{configuration_id}", json={"description": "Nightly"})
    assert updated.status_code == HTTPStatus.OK
    assert updated.json()["description"] == "Nightly"

    assert client.delete(f"/import/configurations/{configuration_id}").status_code == HTTPStatus.NO_CONTENT
    assert client.get(f"/import/configurations/{configuration_id}").status_code == HTTPStatus.NOT_FOUND


def test_mismatched_source_type_is_rejected(client, rates_file):
    response = client.post(
        "/import/configurations",
        json={
            "name": "Broken",
            "source_type": "file_json",
            "connection_config": {"source_type": "file_csv", "file_path": str(rates_file)},
        },
    )

    assert response.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


def test_connection_test_and_schema_discovery(client, rates_file):
    configuration_id = _create_configuration(client, rates_file)["id"]

    result = client.post(f"/import/configurations/{configuration_id}/test-connection").json()
    assert result["success"] is True
    assert client.get(f"/import/configurations/{configuration_id}").json()["connection_test_passed"] is True

    schema = client.post(f"/import/configurations/{configuration_id}/discover-schema").json()
    table = schema["tables"][0]
    assert table["name"] == "rates"
    assert {field["name"]: field["type"] for field in table["fields"]} == {
        "name": "string",
        "rate": "number",
        "enabled": "boolean",
    }

    stored = client.get(f"/import/configurations/{configuration_id}").json()
    assert stored["source_schema"]["tables"][0]["name"] == "rates"


def test_mapping_before_discovery_is_rejected(client, rates_file):
    configuration_id = _create_configuration(client, rates_file)["id"]
    client.post(
        f"/import/configurations/{configuration_id}/stages",
        json={"id": "rates", "name": "Rates", "source_table": "rates", "target_entity": "BillingRate"},
    )

    response = client.post(
        f"/import/configurations/{configuration_id}/stages/rates/mappings",
        json={"source_field": "name", "target_field": "name"},
    )

    assert response.status_code == HTTPStatus.BAD_REQUEST


def test_validate_save_and_plan(client, rates_file):
    configuration_id = _create_configuration(client, rates_file)["id"]
    _prepare_rates_stage(client, configuration_id)

    report = client.post(f"/import/configurations/{configuration_id}/validate").json()
    assert report["is_valid"] is True
    assert report["errors"] == []
    assert client.get(f"/import/configurations/{configuration_id}").json()["status"] == "validated"

    saved = client.post(f"/import/configurations/{configuration_id}/save")
    assert saved.status_code == HTTPStatus.OK
    assert saved.json()["status"] == "saved"

    plan = client.get(f"/import/configurations/{configuration_id}/plan").json()
    assert [stage["stage_id"] for stage in plan["stages"]] == ["rates"]
    assert [mapping["target_field"] for mapping in plan["stages"][0]["field_mappings"]] == ["name", "rate"]


def test_save_with_errors_is_a_conflict(client, rates_file):
    configuration_id = _create_configuration(client, rates_file)["id"]
    _prepare_rates_stage(client, configuration_id)
    client.post(
        f"/import/configurations/{configuration_id}/stages",
        json={"id": "rates_copy", "name": "Rates copy", "source_table": "rates", "target_entity": "BillingRate"},
    )

    response = client.post(f"/import/configurations/{configuration_id}/save")

    assert response.status_code == HTTPStatus.CONFLICT
    codes = [issue["code"] for issue in response.json()["detail"]["report"]["errors"]]
    assert "duplicate_table" in codes
    assert client.get(f"/import/configurations/{configuration_id}").json()["status"] == "rejected"

    plan = client.get(f"/import/configurations/{configuration_id}/plan")
    assert plan.status_code == HTTPStatus.BAD_REQUEST


def test_stage_and_relationship_editing(client, rates_file):
    configuration_id = _create_configuration(client, rates_file)["id"]
    base = f"/import/configurations/{configuration_id}"
    client.post(f"{base}/stages", json={"id": "accounts", "name": "Accounts", "source_table": "rates", "target_entity": "Account"})
    client.post(
        f"{base}/stages",
        json={
            "id": "tickets",
            "name": "Tickets",
            "source_table": "tickets",
            "target_entity": "Ticket",
            "depends_on_stages": ["accounts"],
        },
    )

    duplicate = client.post(f"{base}/stages", json={"id": "accounts", "name": "Again", "target_entity": "Account"})
    assert duplicate.status_code == HTTPStatus.BAD_REQUEST

    relationship = client.post(
        f"{base}/relationships",
        json={"from_stage_id": "tickets", "to_stage_id": "accounts", "source_field": "account", "target_field": "id"},
    )
    assert relationship.status_code == HTTPStatus.CREATED
    assert relationship.json()["join_type"] == "right"

    updated = client.put(f"{base}/stages/tickets", json={"order": 5})
    assert updated.json()["order"] == 5
    assert client.put(f"{base}/stages/ghost", json={"order": 6}).status_code == HTTPStatus.NOT_FOUND

    warnings = client.delete(f"{base}/stages/accounts").json()
    assert {warning["code"] for warning in warnings} == {"relationship_removed", "dependency_removed"}

    stored = client.get(base).json()
    assert [stage["id"] for stage in stored["stages"]] == ["tickets"]
    assert stored["relationships"] == []
    assert client.delete(f"{base}/relationships/ghost").status_code == HTTPStatus.NOT_FOUND


def test_table_preview(client, rates_file):
    configuration_id = _create_configuration(client, rates_file)["id"]

    response = client.post(
        f"/import/configurations/{configuration_id}/preview/table",
        json={"table_name": "rates", "limit": 1},
    )

    assert response.status_code == HTTPStatus.OK
    body = response.json()
    assert body["columns"] == ["name", "rate", "enabled"]
    assert body["rows"] == [{"name": "Standard", "rate": "120", "enabled": "yes"}]
    assert body["total_count"] == 2

    missing = client.post(
        f"/import/configurations/{configuration_id}/preview/table",
        json={"table_name": "unknown"},
    )
    assert missing.status_code == HTTPStatus.BAD_REQUEST


@pytest.fixture()
def helpdesk_workbook(tmp_path):
    path = tmp_path / "helpdesk.xlsx"
    workbook = Workbook()
    accounts = workbook.active
    accounts.title = "accounts"
    accounts.append(["id", "name"])
    accounts.append([1, "Acme"])
    accounts.append([2, "Globex"])
    tickets = workbook.create_sheet("tickets")
    tickets.append(["id", "account_id", "title"])
    tickets.append([10, 1, "Login"])
    tickets.append([11, 3, "Billing"])
    workbook.save(path)
    return path


def test_joined_table_and_relationship_previews(client, helpdesk_workbook):
    configuration_id = client.post(
        "/import/configurations",
        json={
            "name": "Helpdesk",
            "source_type": "file_excel",
            "connection_config": {"source_type": "file_excel", "file_path": str(helpdesk_workbook)},
        },
    ).json()["id"]
    base = f"/import/configurations/{configuration_id}"
    created = client.post(
        f"{base}/joined-tables",
        json={
            "id": "tickets-accounts",
            "name": "tickets_with_accounts",
            "primary_table": "tickets",
            "joins": [
                {
                    "table_name": "accounts",
                    "join_type": "left",
                    "alias": "acct",
                    "conditions": [{"source_field": "account_id", "target_field": "id"}],
                }
            ],
        },
    )
    assert created.status_code == HTTPStatus.CREATED, created.text

    joined = client.post(f"{base}/preview/joined-tables/tickets-accounts", json={"limit": 5})
    assert joined.status_code == HTTPStatus.OK, joined.text
    body = joined.json()
    assert body["source"] == "local"
    assert body["superseded"] is False
    assert [row["acct.name"] for row in body["rows"]] == ["Acme", None]
    assert client.post(f"{base}/preview/joined-tables/ghost").status_code == HTTPStatus.NOT_FOUND

    client.post(f"{base}/stages", json={"id": "accounts", "name": "Accounts", "source_table": "accounts", "target_entity": "Account"})
    client.post(f"{base}/stages", json={"id": "tickets", "name": "Tickets", "source_table": "tickets", "target_entity": "Ticket"})
    client.post(
        f"{base}/relationships",
        json={
            "id": "ticket-account",
            "from_stage_id": "tickets",
            "to_stage_id": "accounts",
            "source_field": "account_id",
            "target_field": "id",
        },
    )

    relationship = client.post(f"{base}/preview/relationships/ticket-account").json()
    assert relationship["match_rate"] == pytest.approx(0.5)
    assert relationship["matched_records"] == 1
    assert relationship["matched"][0]["to_row"]["name"] == "Acme"
    assert relationship["unmatched"][0]["reason"] == "No row with id = 3"
    assert client.post(f"{base}/preview/relationships/ghost").status_code == HTTPStatus.NOT_FOUND

    assert client.delete(f"{base}/joined-tables/tickets-accounts").json() == []


def test_duplicate_child_ids_are_rejected(client, rates_file):
    payload = {
        "name": "Duplicated",
        "source_type": "file_csv",
        "connection_config": {"source_type": "file_csv", "file_path": str(rates_file)},
        "stages": [
            {"id": "a", "order": 1, "name": "First", "source_table": "rates", "target_entity": "BillingRate"},
            {"id": "a", "order": 2, "name": "Second", "source_table": "other", "target_entity": "Account"},
        ],
    }

    response = client.post("/import/configurations", json=payload)

    assert response.status_code == HTTPStatus.BAD_REQUEST
    assert "Duplicate stage ids: a" in response.json()["detail"]
    assert client.get("/import/configurations").json() == []


def test_duplicate_joined_table_ids_are_rejected(client, rates_file):
    joined = {
        "id": "j",
        "name": "rates_joined",
        "primary_table": "rates",
        "joins": [{"table_name": "other", "conditions": [{"source_field": "name", "target_field": "name"}]}],
    }
    response = client.post(
        "/import/configurations",
        json={
            "name": "Duplicated joins",
            "source_type": "file_csv",
            "connection_config": {"source_type": "file_csv", "file_path": str(rates_file)},
            "joined_tables": [joined, {**joined, "name": "rates_joined_again"}],
        },
    )

    assert response.status_code == HTTPStatus.BAD_REQUEST
    assert "Duplicate joined table ids: j" in response.json()["detail"]


def test_mapping_rules_are_stored_and_planned(client, rates_file):
    configuration_id = _create_configuration(client, rates_file)["id"]
    _prepare_rates_stage(client, configuration_id)
    base = f"/import/configurations/{configuration_id}/stages/rates/mappings"
    stage = client.get(f"/import/configurations/{configuration_id}").json()["stages"][0]
    rate_mapping = next(mapping for mapping in stage["field_mappings"] if mapping["target_field"] == "rate")

    updated = client.put(
        f"{base}/{rate_mapping['id']}",
        json={
            "transform": {"type": "format", "format": "{value:.2f}"},
            "validation": [{"type": "range", "min": 0}],
        },
    )
    assert updated.status_code == HTTPStatus.OK, updated.text
    assert updated.json()["transform"]["type"] == "format"

    rejected = client.put(
        f"{base}/{rate_mapping['id']}",
        json={"transform": {"type": "concatenate", "source_fields": ["name", "ghost"]}},
    )
    assert rejected.status_code == HTTPStatus.BAD_REQUEST
    assert client.put(f"{base}/ghost", json={"required": True}).status_code == HTTPStatus.NOT_FOUND

    plan = client.get(f"/import/configurations/{configuration_id}/plan").json()
    planned = {mapping["target_field"]: mapping for mapping in plan["stages"][0]["field_mappings"]}
    assert planned["rate"]["transform"]["type"] == "format"
    assert planned["rate"]["transform"]["format"] == "{value:.2f}"
    assert planned["rate"]["validation"][0]["min"] == 0
