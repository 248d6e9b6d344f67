import pytest

from stageflow import models
from stageflow.schemas import (
    ConnectionConfig,
    FieldOverride,
    ImportConfigurationCreate,
    JoinCondition,
    JoinedTableDefinition,
    Relationship,
    SourceType,
    Stage,
    TableJoin,
)
from stageflow.services.configuration_store import (
    from_record,
    load_configuration,
    new_configuration,
    store_configuration,
    to_record,
)
from stageflow.services.errors import ConfigurationEditError


def _payload() -> ImportConfigurationCreate:
    return ImportConfigurationCreate(
        name="Helpdesk",
        source_type=SourceType.FILE_CSV,
        connection_config=ConnectionConfig(source_type=SourceType.FILE_CSV, file_path="tickets.csv", delimiter=";"),
        stages=[
            Stage(id="accounts", order=1, name="Accounts", source_table="accounts", target_entity="Account"),
            Stage(
                id="tickets",
                order=2,
                name="Tickets",
                source_table="tickets",
                target_entity="Ticket",
                depends_on_stages=["accounts"],
                cross_stage_mapping={"accountId": "accounts.id"},
                field_overrides={"legacy": FieldOverride(field_name="legacy", skip_field=True)},
            ),
        ],
        relationships=[
            Relationship(
                id="ticket-account",
                from_stage_id="tickets",
                to_stage_id="accounts",
                source_field="account_id",
                target_field="id",
                relation_type="many_to_one",
            )
        ],
        joined_tables=[
            JoinedTableDefinition(
                id="tickets-with-accounts",
                name="tickets_with_accounts",
                primary_table="tickets",
                joins=[
                    TableJoin(
                        table_name="accounts",
                        alias="acct",
                        conditions=[JoinCondition(source_field="account_id", target_field="id")],
                    )
                ],
            )
        ],
    )


def test_record_round_trip():
    config = new_configuration(_payload())

    record = to_record(config)

    assert record["stages"][1]["cross_stage_mapping"] == {"accountId": "accounts.id"}
    assert record["relationships"][0]["join_type"] == "right"
    assert from_record(record) == config


def test_store_and_load_rows(db_session):
    config = new_configuration(_payload())

    row = store_configuration(db_session, config)
    db_session.commit()

    stored = db_session.get(models.ImportConfiguration, config.id)
    assert [stage.stage_key for stage in stored.stages] == ["accounts", "tickets"]

    loaded = load_configuration(row)
    assert loaded.stages == config.stages
    assert loaded.relationships == config.relationships
    assert loaded.joined_tables == config.joined_tables
    assert loaded.connection_config.delimiter == ";"


def test_store_reuses_and_prunes_child_rows(db_session):
    config = new_configuration(_payload())
    row = store_configuration(db_session, config)
    db_session.commit()
    original_stage_row_id = row.stages[0].id

    config.stages = [config.stages[0].model_copy(update={"name": "Companies"})]
    config.relationships = []
    store_configuration(db_session, config, row)
    db_session.commit()

    assert db_session.query(models.ImportStage).count() == 1
    assert db_session.query(models.ImportStageRelationship).count() == 0
    assert row.stages[0].id == original_stage_row_id
    assert row.stages[0].name == "Companies"


def test_deleting_configuration_removes_children(db_session):
    config = new_configuration(_payload())
    row = store_configuration(db_session, config)
    db_session.commit()

    db_session.delete(row)
    db_session.commit()

    assert db_session.query(models.ImportStage).count() == 0
    assert db_session.query(models.ImportJoinedTable).count() == 0


def test_new_configuration_rejects_repeated_relationship_ids():
    payload = _payload()
    payload.relationships.append(payload.relationships[0].model_copy())

    with pytest.raises(ConfigurationEditError, match="Duplicate relationship ids: ticket-account"):
        new_configuration(payload)
