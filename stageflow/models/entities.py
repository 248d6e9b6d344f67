import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stageflow.database import Base


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class ImportConfiguration(Base, TimestampMixin):
    __tablename__ = "import_configurations"

    id: Mapped[uuid.UUID] = mapped_column(
        "import_configuration_id",
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_type: Mapped[str] = mapped_column(
        sa.Enum(
            "database_postgresql",
            "database_mysql",
            "database_sqlite",
            "file_csv",
            "file_excel",
            "file_json",
            "api_rest",
            name="import_source_type_enum",
        ),
        nullable=False,
    )
    connection_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    source_schema: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        sa.Enum(
            "draft",
            "validated",
            "saved",
            "rejected",
            name="import_configuration_status_enum",
        ),
        nullable=False,
        default="draft",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    connection_test_passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    stages: Mapped[list["ImportStage"]] = relationship(
        "ImportStage",
        back_populates="configuration",
        cascade="all, delete-orphan",
        order_by="ImportStage.position",
    )
    relationships: Mapped[list["ImportStageRelationship"]] = relationship(
        "ImportStageRelationship",
        back_populates="configuration",
        cascade="all, delete-orphan",
        order_by="ImportStageRelationship.position",
    )
    joined_tables: Mapped[list["ImportJoinedTable"]] = relationship(
        "ImportJoinedTable",
        back_populates="configuration",
        cascade="all, delete-orphan",
        order_by="ImportJoinedTable.position",
    )


class ImportStage(Base, TimestampMixin):
    __tablename__ = "import_stages"
    __table_args__ = (
        sa.UniqueConstraint("import_configuration_id", "stage_key", name="uq_import_stage_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        "import_stage_id",
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    configuration_id: Mapped[uuid.UUID] = mapped_column(
        "import_configuration_id",
        UUID(as_uuid=True),
        ForeignKey("import_configurations.import_configuration_id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_key: Mapped[str] = mapped_column(String(100), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stage_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_table: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    target_entity: Mapped[str] = mapped_column(String(100), nullable=False)
    field_mappings: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    field_overrides: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    target_defaults: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    depends_on_stages: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    cross_stage_mapping: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    configuration: Mapped[ImportConfiguration] = relationship("ImportConfiguration", back_populates="stages")


class ImportStageRelationship(Base, TimestampMixin):
    __tablename__ = "import_stage_relationships"
    __table_args__ = (
        sa.UniqueConstraint(
            "import_configuration_id",
            "relationship_key",
            name="uq_import_stage_relationship_key",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        "import_stage_relationship_id",
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    configuration_id: Mapped[uuid.UUID] = mapped_column(
        "import_configuration_id",
        UUID(as_uuid=True),
        ForeignKey("import_configurations.import_configuration_id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship_key: Mapped[str] = mapped_column(String(100), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    from_stage_key: Mapped[str] = mapped_column(String(100), nullable=False)
    to_stage_key: Mapped[str] = mapped_column(String(100), nullable=False)
    source_field: Mapped[str] = mapped_column(String(200), nullable=False)
    target_field: Mapped[str] = mapped_column(String(200), nullable=False)
    relation_type: Mapped[str] = mapped_column(
        sa.Enum(
            "one-to-one",
            "one-to-many",
            "many-to-one",
            "many-to-many",
            name="import_relation_type_enum",
        ),
        nullable=False,
        default="many-to-one",
    )
    join_type: Mapped[str] = mapped_column(
        sa.Enum("inner", "left", "right", "full", name="import_join_type_enum"),
        nullable=False,
        default="inner",
    )
    conditions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    configuration: Mapped[ImportConfiguration] = relationship(
        "ImportConfiguration", back_populates="relationships"
    )


class ImportJoinedTable(Base, TimestampMixin):
    __tablename__ = "import_joined_tables"
    __table_args__ = (
        sa.UniqueConstraint(
            "import_configuration_id",
            "joined_table_key",
            name="uq_import_joined_table_key",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        "import_joined_table_id",
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    configuration_id: Mapped[uuid.UUID] = mapped_column(
        "import_configuration_id",
        UUID(as_uuid=True),
        ForeignKey("import_configurations.import_configuration_id", ondelete="CASCADE"),
        nullable=False,
    )
    joined_table_key: Mapped[str] = mapped_column(String(100), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    primary_table: Mapped[str] = mapped_column(String(200), nullable=False)
    joins: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    selected_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    where_conditions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    configuration: Mapped[ImportConfiguration] = relationship(
        "ImportConfiguration", back_populates="joined_tables"
    )
