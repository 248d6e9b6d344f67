"""create import configuration tables

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261017_000001"
down_revision = None
branch_labels = None
depends_on = None

SOURCE_TYPES = (
    "database_postgresql",
    "database_mysql",
    "database_sqlite",
    "file_csv",
    "file_excel",
    "file_json",
    "api_rest",
)
STATUSES = ("draft", "validated", "saved", "rejected")
RELATION_TYPES = ("one-to-one", "one-to-many", "many-to-one", "many-to-many")
JOIN_TYPES = ("inner", "left", "right", "full")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _configuration_fk() -> sa.Column:
    return sa.Column(
        "import_configuration_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("import_configurations.import_configuration_id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "import_configurations",
        sa.Column("import_configuration_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_type", sa.Enum(*SOURCE_TYPES, name="import_source_type_enum"), nullable=False),
        sa.Column("connection_config", sa.JSON(), nullable=False),
        sa.Column("source_schema", sa.JSON(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*STATUSES, name="import_configuration_status_enum"),
            nullable=False,
            server_default="draft",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("connection_test_passed", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "import_stages",
        sa.Column("import_stage_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        _configuration_fk(),
        sa.Column("stage_key", sa.String(length=100), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stage_order", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_table", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("target_entity", sa.String(length=100), nullable=False),
        sa.Column("field_mappings", sa.JSON(), nullable=False),
        sa.Column("field_overrides", sa.JSON(), nullable=False),
        sa.Column("target_defaults", sa.JSON(), nullable=False),
        sa.Column("depends_on_stages", sa.JSON(), nullable=False),
        sa.Column("cross_stage_mapping", sa.JSON(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("import_configuration_id", "stage_key", name="uq_import_stage_key"),
    )

    op.create_table(
        "import_stage_relationships",
        sa.Column("import_stage_relationship_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        _configuration_fk(),
        sa.Column("relationship_key", sa.String(length=100), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("from_stage_key", sa.String(length=100), nullable=False),
        sa.Column("to_stage_key", sa.String(length=100), nullable=False),
        sa.Column("source_field", sa.String(length=200), nullable=False),
        sa.Column("target_field", sa.String(length=200), nullable=False),
        sa.Column(
            "relation_type",
            sa.Enum(*RELATION_TYPES, name="import_relation_type_enum"),
            nullable=False,
            server_default="many-to-one",
        ),
        sa.Column(
            "join_type",
            sa.Enum(*JOIN_TYPES, name="import_join_type_enum"),
            nullable=False,
            server_default="inner",
        ),
        sa.Column("conditions", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "import_configuration_id",
            "relationship_key",
            name="uq_import_stage_relationship_key",
        ),
    )

    op.create_table(
        "import_joined_tables",
        sa.Column("import_joined_table_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        _configuration_fk(),
        sa.Column("joined_table_key", sa.String(length=100), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("primary_table", sa.String(length=200), nullable=False),
        sa.Column("joins", sa.JSON(), nullable=False),
        sa.Column("selected_fields", sa.JSON(), nullable=False),
        sa.Column("where_conditions", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "import_configuration_id",
            "joined_table_key",
            name="uq_import_joined_table_key",
        ),
    )


def downgrade() -> None:
    op.drop_table("import_joined_tables")
    op.drop_table("import_stage_relationships")
    op.drop_table("import_stages")
    op.drop_table("import_configurations")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in (
            "import_join_type_enum",
            "import_relation_type_enum",
            "import_configuration_status_enum",
            "import_source_type_enum",
        ):
            sa.Enum(name=enum_name).drop(bind, checkfirst=True)
