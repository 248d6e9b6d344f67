import pytest

from stageflow.schemas import (
    ConfigurationStatus,
    ConnectionConfig,
    ConnectionTestResult,
    FieldMappingCreate,
    ImportConfiguration,
    ImportConfigurationUpdate,
    JoinCondition,
    JoinedTableDefinition,
    Relationship,
    SourceType,
    StageCreate,
    StageUpdate,
    TableJoin,
)
from stageflow.services import configuration_editor as editor
from stageflow.services.errors import ConfigurationEditError, MappingError, RecordNotFoundError


@pytest.fixture()
def config(crm_schema) -> ImportConfiguration:
    config = ImportConfiguration(
        name="CRM import",
        source_type=SourceType.DATABASE_SQLITE,
        connection_config=ConnectionConfig(source_type=SourceType.DATABASE_SQLITE, file_path="crm.db"),
        source_schema=crm_schema,
    )
    editor.add_stage(config, StageCreate(id="accounts", name="Accounts", source_table="customers", target_entity="Account"))
    editor.add_stage(
        config,
        StageCreate(
            id="tickets",
            name="Tickets",
            source_table="orders",
            target_entity="Ticket",
            depends_on_stages=["accounts"],
            cross_stage_mapping={"accountId": "accounts.id"},
        ),
    )
    return config


def test_add_stage_assigns_next_order(config):
    assert [stage.order for stage in config.stages] == [1, 2]

    with pytest.raises(ConfigurationEditError):
        editor.add_stage(config, StageCreate(id="accounts", name="Again", target_entity="Account"))


def test_edits_reset_status_to_draft(config):
    config.status = ConfigurationStatus.VALIDATED

    editor.update_stage(config, "accounts", StageUpdate(name="Companies"))

    assert config.status == ConfigurationStatus.DRAFT
    assert config.get_stage("accounts").name == "Companies"


def test_rebinding_stage_clears_mappings(config):
    editor.add_field_mapping(config, "accounts", FieldMappingCreate(source_field="name", target_field="name"))
    assert config.get_stage("accounts").field_mappings

    editor.update_stage(config, "accounts", StageUpdate(source_table="orders"))

    assert config.get_stage("accounts").field_mappings == []


def test_deleting_stage_cascades(config):
    editor.add_relationship(
        config,
        Relationship(id="rel", from_stage_id="tickets", to_stage_id="accounts", source_field="customer_id", target_field="id"),
    )

    warnings = editor.delete_stage(config, "accounts")

    assert {warning.code for warning in warnings} == {
        "relationship_removed",
        "dependency_removed",
        "cross_stage_mapping_removed",
    }
    tickets = config.get_stage("tickets")
    assert tickets.depends_on_stages == []
    assert tickets.cross_stage_mapping == {}
    assert config.relationships == []


def test_unknown_ids_raise_not_found(config):
    with pytest.raises(RecordNotFoundError):
        editor.delete_stage(config, "ghost")
    with pytest.raises(RecordNotFoundError):
        editor.delete_relationship(config, "ghost")
    with pytest.raises(RecordNotFoundError):
        editor.remove_field_mapping(config, "accounts", "ghost")


def test_relationship_requires_existing_stages(config):
    with pytest.raises(ConfigurationEditError):
        editor.add_relationship(
            config,
            Relationship(from_stage_id="tickets", to_stage_id="ghost", source_field="a", target_field="b"),
        )


def test_mapping_requires_discovered_schema(config):
    config.source_schema = None

    with pytest.raises(MappingError, match="Discover"):
        editor.add_field_mapping(config, "accounts", FieldMappingCreate(source_field="name", target_field="name"))


def test_mapping_lifecycle(config):
    mapping = editor.add_field_mapping(
        config, "accounts", FieldMappingCreate(source_field="signup", target_field="customFields")
    )
    assert mapping.compatibility.value == "incompatible"

    acknowledged = editor.acknowledge_field_mapping(config, "accounts", mapping.id)
    assert acknowledged.acknowledged

    editor.remove_field_mapping(config, "accounts", mapping.id)
    assert config.get_stage("accounts").field_mappings == []


def test_auto_map_stage(config):
    created = editor.auto_map_stage(config, "accounts")

    assert [mapping.target_field for mapping in created] == ["name"]


def test_joined_tables_bind_and_unbind(config):
    definition = JoinedTableDefinition(
        id="co",
        name="customer_orders",
        primary_table="customers",
        joins=[TableJoin(table_name="orders", conditions=[JoinCondition(source_field="id", target_field="customer_id")])],
    )
    editor.add_joined_table(config, definition)
    editor.update_stage(config, "accounts", StageUpdate(source_table="customer_orders"))

    mapping = editor.add_field_mapping(
        config, "accounts", FieldMappingCreate(source_field="orders.title", target_field="name")
    )
    assert mapping.source_type == "string"

    warnings = editor.delete_joined_table(config, "co")

    assert [warning.code for warning in warnings] == ["stage_unbound"]
    assert config.get_stage("accounts").source_table == ""


def test_joined_table_name_cannot_shadow_source_table(config):
    definition = JoinedTableDefinition(
        name="customers",
        primary_table="orders",
        joins=[TableJoin(table_name="customers", conditions=[JoinCondition(source_field="customer_id", target_field="id")])],
    )

    with pytest.raises(ConfigurationEditError):
        editor.add_joined_table(config, definition)


def test_connection_changes_reset_test_flag(config):
    editor.record_connection_test(config, ConnectionTestResult(success=True, message="ok"))
    assert config.connection_test_passed

    editor.update_configuration(
        config,
        ImportConfigurationUpdate(
            connection_config=ConnectionConfig(source_type=SourceType.FILE_CSV, file_path="crm.csv"),
        ),
    )

    assert config.connection_test_passed is False
    assert config.source_type == SourceType.FILE_CSV
    assert config.source_schema is None
