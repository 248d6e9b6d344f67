from __future__ import annotations

from typing import Optional

from stageflow.schemas import RelationType, TargetEntity, TargetField, TargetRelationship


def _field(name: str, field_type: str, *, required: bool = False, unique: bool = False, description: str = "", enum=None) -> TargetField:
    return TargetField(
        name=name,
        type=field_type,
        required=required,
        unique=unique,
        description=description,
        enum=list(enum) if enum else None,
    )


def _relation(name: str, relation_type: RelationType, target: str, description: str) -> TargetRelationship:
    return TargetRelationship(name=name, type=relation_type, target=target, description=description)


TARGET_ENTITIES: tuple[TargetEntity, ...] = (
    TargetEntity(
        name="Account",
        description="Business accounts and organizations",
        fields=[
            _field("name", "string", required=True, description="Account name"),
            _field(
                "accountType",
                "enum",
                enum=("INDIVIDUAL", "ORGANIZATION", "SUBSIDIARY"),
                description="Account type",
            ),
            _field("parentId", "string", description="Parent account ID for hierarchy"),
            _field("companyName", "string", description="Company name"),
            _field("address", "string", description="Business address"),
            _field("phone", "string", description="Phone number"),
            _field("domains", "string", description="Email domains (comma-separated)"),
            _field("customFields", "json", description="Additional custom fields"),
        ],
        relationships=[
            _relation("parent", RelationType.ONE_TO_ONE, "Account", "Parent account"),
            _relation("children", RelationType.ONE_TO_MANY, "Account", "Child accounts"),
        ],
    ),
    TargetEntity(
        name="User",
        description="System users",
        fields=[
            _field("name", "string", description="Full name"),
            _field("email", "string", required=True, unique=True, description="Email address"),
            _field("password", "string", description="Password (will be hashed)"),
        ],
    ),
    TargetEntity(
        name="Ticket",
        description="Support tickets and tasks",
        fields=[
            _field("title", "string", required=True, description="Ticket title"),
            _field("description", "string", description="Ticket description"),
            _field(
                "status",
                "enum",
                enum=("OPEN", "IN_PROGRESS", "RESOLVED", "CLOSED", "CANCELLED", "ON_HOLD"),
                description="Ticket status",
            ),
            _field("priority", "enum", enum=("LOW", "MEDIUM", "HIGH", "CRITICAL"), description="Priority level"),
            _field("accountId", "string", required=True, description="Associated account ID"),
            _field("assigneeId", "string", description="Assigned user ID"),
            _field("creatorId", "string", required=True, description="Creator user ID"),
            _field("customFields", "json", description="Additional custom fields"),
        ],
        relationships=[
            _relation("account", RelationType.MANY_TO_ONE, "Account", "Associated account"),
            _relation("assignee", RelationType.MANY_TO_ONE, "User", "Assigned user"),
            _relation("creator", RelationType.MANY_TO_ONE, "User", "Creator user"),
        ],
    ),
    TargetEntity(
        name="TimeEntry",
        description="Time tracking entries",
        fields=[
            _field("description", "string", description="Work description"),
            _field("minutes", "number", required=True, description="Time in minutes"),
            _field("date", "date", required=True, description="Date of work"),
            _field("noCharge", "boolean", description="Non-billable flag"),
            _field("ticketId", "string", description="Associated ticket ID"),
            _field("accountId", "string", description="Direct account association"),
            _field("userId", "string", required=True, description="User who logged time"),
            _field("billingRateId", "string", description="Billing rate ID"),
        ],
        relationships=[
            _relation("ticket", RelationType.MANY_TO_ONE, "Ticket", "Associated ticket"),
            _relation("account", RelationType.MANY_TO_ONE, "Account", "Associated account"),
            _relation("user", RelationType.MANY_TO_ONE, "User", "User who logged time"),
        ],
    ),
    TargetEntity(
        name="BillingRate",
        description="Billing rate definitions",
        fields=[
            _field("name", "string", required=True, unique=True, description="Rate name"),
            _field("rate", "number", required=True, description="Hourly rate amount"),
            _field("description", "string", description="Rate description"),
            _field("isDefault", "boolean", description="Default rate flag"),
            _field("isEnabled", "boolean", description="Active rate flag"),
        ],
    ),
)


def list_target_entities() -> list[TargetEntity]:
    return list(TARGET_ENTITIES)


def get_target_entity(name: str) -> Optional[TargetEntity]:
    for entity in TARGET_ENTITIES:
        if entity.name == name:
            return entity
    return None
