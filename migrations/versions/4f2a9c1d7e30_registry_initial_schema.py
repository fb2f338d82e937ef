"""property registry initial schema

Revision ID: 4f2a9c1d7e30
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "4f2a9c1d7e30"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_MOVEMENT_WHERE = "movement_status IN ('RELEASED', 'IN_TRANSIT', 'RECEIVED', 'PENDING_RETURN')"
PENDING_TRANSFER_WHERE = "status = 'PENDING' AND workflow_type = 'TITLE_TRANSFER'"
PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT")


def upgrade():
    op.create_table(
        "permission",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column("module", sa.String(length=40), nullable=False),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sa.UniqueConstraint("module", "action", name="uq_permission_module_action"),
    )
    op.create_table(
        "role",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_table(
        "role_permission",
        sa.Column("role_id", sa.Integer(), nullable=False),
        sa.Column("permission_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["permission_id"], ["permission.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["role.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("role_id", "permission_id"),
    )
    op.create_table(
        "user_account",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=80), nullable=False),
        sa.Column("last_name", sa.String(length=80), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role_id", sa.Integer(), nullable=True),
        sa.Column("department", sa.String(length=120), nullable=False),
        sa.Column("position", sa.String(length=120), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["role.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_user_account_role_id", "user_account", ["role_id"])

    op.create_table(
        "property",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title_number", sa.String(length=100), nullable=False),
        sa.Column("lot_number", sa.String(length=100), nullable=False),
        sa.Column("lot_area", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=False),
        sa.Column("barangay", sa.String(length=100), nullable=False),
        sa.Column("city", sa.String(length=100), nullable=False),
        sa.Column("province", sa.String(length=100), nullable=False),
        sa.Column("zip_code", sa.String(length=10), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column(
            "classification",
            sa.Enum(
                "RESIDENTIAL",
                "COMMERCIAL",
                "INDUSTRIAL",
                "AGRICULTURAL",
                "INSTITUTIONAL",
                "MIXED_USE",
                name="property_classification",
            ),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(
                "ACTIVE",
                "INACTIVE",
                "PENDING_TRANSFER",
                "SOLD",
                "FORECLOSED",
                "UNDER_DEVELOPMENT",
                "COLLATERAL",
                "DISPOSED",
                name="property_status",
            ),
            nullable=False,
        ),
        sa.Column("registered_owner", sa.String(length=200), nullable=False),
        sa.Column("bank", sa.String(length=100), nullable=False),
        sa.Column("custody_of_title", sa.String(length=200), nullable=False),
        sa.Column("encumbrance", sa.Text(), nullable=False),
        sa.Column("mortgage_details", sa.Text(), nullable=False),
        sa.Column("borrower_mortgagor", sa.String(length=200), nullable=False),
        sa.Column("tax_declaration", sa.String(length=100), nullable=False),
        sa.Column("remarks", sa.Text(), nullable=False),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("updated_by_id", sa.Integer(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("lot_area > 0", name="ck_property_lot_area"),
        sa.ForeignKeyConstraint(["created_by_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["updated_by_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("title_number"),
    )
    op.create_index("ix_property_status_classification", "property", ["status", "classification"])
    op.create_index("ix_property_deleted_created", "property", ["is_deleted", "created_at"])

    op.create_table(
        "real_property_tax",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column("tax_year", sa.Integer(), nullable=False),
        sa.Column("tax_quarter", sa.Integer(), nullable=True),
        sa.Column("tax_amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("period_from", sa.Date(), nullable=True),
        sa.Column("period_to", sa.Date(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING",
                "DUE",
                "PAID",
                "PARTIALLY_PAID",
                "OVERDUE",
                "WAIVED",
                "EXEMPTED",
                "CONTESTED",
                name="tax_status",
            ),
            nullable=False,
        ),
        sa.Column("is_paid", sa.Boolean(), nullable=False),
        sa.Column("amount_paid", sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column("payment_date", sa.Date(), nullable=True),
        sa.Column("official_receipt_number", sa.String(length=100), nullable=True),
        sa.Column(
            "payment_method",
            sa.Enum(
                "CASH",
                "CHECK",
                "BANK_TRANSFER",
                "CREDIT_CARD",
                "DEBIT_CARD",
                "ONLINE_PAYMENT",
                name="payment_method",
            ),
            nullable=True,
        ),
        sa.Column("discount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("penalty", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("interest", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("recorded_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("tax_amount >= 0", name="ck_tax_amount"),
        sa.CheckConstraint("tax_quarter IS NULL OR (tax_quarter >= 1 AND tax_quarter <= 4)", name="ck_tax_quarter"),
        sa.CheckConstraint(
            "period_from IS NULL OR period_to IS NULL OR period_to >= period_from",
            name="ck_tax_period",
        ),
        sa.ForeignKeyConstraint(["property_id"], ["property.id"]),
        sa.ForeignKeyConstraint(["recorded_by_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("property_id", "tax_year", "tax_quarter", name="uq_tax_property_year_quarter"),
    )
    op.create_index("ix_real_property_tax_property_id", "real_property_tax", ["property_id"])
    op.create_index("ix_tax_status_due", "real_property_tax", ["status", "due_date"])

    op.create_table(
        "approval_workflow",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column(
            "workflow_type",
            sa.Enum(
                "PROPERTY_UPDATE",
                "STATUS_CHANGE",
                "OWNER_CHANGE",
                "LOCATION_UPDATE",
                "ENCUMBRANCE_UPDATE",
                "TITLE_TRANSFER",
                name="workflow_type",
            ),
            nullable=False,
        ),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "APPROVED", "REJECTED", "CANCELLED", "EXPIRED", name="approval_status"),
            nullable=False,
        ),
        sa.Column("priority", sa.Enum(*PRIORITIES, name="priority"), nullable=False),
        sa.Column("proposed_changes", sa.JSON(), nullable=False),
        sa.Column("initiated_by_id", sa.Integer(), nullable=False),
        sa.Column("assigned_to_id", sa.Integer(), nullable=True),
        sa.Column("approved_by_id", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejected_reason", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["approved_by_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["assigned_to_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["initiated_by_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["property_id"], ["property.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_approval_workflow_property_id", "approval_workflow", ["property_id"])
    op.create_index("ix_approval_workflow_initiated_by_id", "approval_workflow", ["initiated_by_id"])
    op.create_index("ix_workflow_status_created", "approval_workflow", ["status", "created_at"])
    op.create_index("ix_workflow_type_status", "approval_workflow", ["workflow_type", "status"])
    op.create_index(
        "ix_workflow_property_pending_title_transfer",
        "approval_workflow",
        ["property_id"],
        unique=True,
        sqlite_where=sa.text(PENDING_TRANSFER_WHERE),
        postgresql_where=sa.text(PENDING_TRANSFER_WHERE),
    )

    op.create_table(
        "title_movement",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column(
            "movement_status",
            sa.Enum(
                "RELEASED",
                "IN_TRANSIT",
                "RECEIVED",
                "PENDING_RETURN",
                "RETURNED",
                "LOST",
                name="movement_status",
            ),
            nullable=False,
        ),
        sa.Column("date_released", sa.DateTime(), nullable=False),
        sa.Column("released_by", sa.String(length=200), nullable=False),
        sa.Column("purpose_of_release", sa.String(length=1000), nullable=False),
        sa.Column("approved_by", sa.String(length=200), nullable=False),
        sa.Column("received_by_transmittal", sa.String(length=100), nullable=False),
        sa.Column("received_by_name", sa.String(length=200), nullable=False),
        sa.Column("turned_over_date", sa.DateTime(), nullable=True),
        sa.Column("turned_over_by", sa.String(length=200), nullable=False),
        sa.Column("received_by_person", sa.String(length=200), nullable=False),
        sa.Column("date_returned", sa.DateTime(), nullable=True),
        sa.Column("returned_by", sa.String(length=200), nullable=False),
        sa.Column("received_by_on_return", sa.String(length=200), nullable=False),
        sa.Column(
            "return_condition",
            sa.Enum("GOOD", "FAIR", "POOR", "DAMAGED", name="return_condition"),
            nullable=True,
        ),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("moved_by_id", sa.Integer(), nullable=True),
        sa.Column("workflow_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["moved_by_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["property_id"], ["property.id"]),
        sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflow.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("received_by_transmittal"),
    )
    op.create_index("ix_title_movement_property_id", "title_movement", ["property_id"])
    op.create_index("ix_title_movement_status_released", "title_movement", ["movement_status", "date_released"])
    op.create_index(
        "ix_title_movement_property_active",
        "title_movement",
        ["property_id"],
        unique=True,
        sqlite_where=sa.text(ACTIVE_MOVEMENT_WHERE),
        postgresql_where=sa.text(ACTIVE_MOVEMENT_WHERE),
    )

    op.create_table(
        "property_document",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column(
            "document_type",
            sa.Enum(
                "TITLE_DEED",
                "TAX_DECLARATION",
                "TAX_RECEIPT",
                "SURVEY_PLAN",
                "MORTGAGE_CONTRACT",
                "SALE_AGREEMENT",
                "LEASE_AGREEMENT",
                "APPRAISAL_REPORT",
                "PHOTO",
                "OTHER",
                name="document_type",
            ),
            nullable=False,
        ),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_url", sa.String(length=1000), nullable=True),
        sa.Column("file_path", sa.String(length=500), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("mime_type", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=1000), nullable=False),
        sa.Column("uploaded_by_id", sa.Integer(), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["property_id"], ["property.id"]),
        sa.ForeignKeyConstraint(["uploaded_by_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_property_document_property_id", "property_document", ["property_id"])
    op.create_index("ix_property_document_property_type", "property_document", ["property_id", "document_type"])

    op.create_table(
        "change_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column("field_name", sa.String(length=100), nullable=False),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column(
            "change_type",
            sa.Enum("CREATE", "UPDATE", "DELETE", "STATUS_CHANGE", name="change_type"),
            nullable=False,
        ),
        sa.Column("reason", sa.String(length=500), nullable=False),
        sa.Column("changed_by_id", sa.Integer(), nullable=True),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["changed_by_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["property_id"], ["property.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_change_history_property_changed", "change_history", ["property_id", "changed_at"])
    op.create_index("ix_change_history_type_changed", "change_history", ["change_type", "changed_at"])

    op.create_table(
        "notification",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.String(length=1000), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "PROPERTY",
                "TAX",
                "APPROVAL",
                "TITLE_MOVEMENT",
                "DOCUMENT",
                "SYSTEM",
                "MAINTENANCE",
                name="notification_type",
            ),
            nullable=False,
        ),
        # the priority type already exists once approval_workflow is created
        sa.Column("priority", postgresql.ENUM(*PRIORITIES, name="priority", create_type=False), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("action_url", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=60), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_user_read_created", "notification", ["user_id", "is_read", "created_at"])
    op.create_index("ix_notification_entity", "notification", ["entity_type", "entity_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("entity_type", sa.String(length=60), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_type", "entity_id"])
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])

    op.create_table(
        "system_config",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("key", sa.String(length=100), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key"),
    )


def downgrade():
    op.drop_table("system_config")

    op.drop_index("ix_audit_log_created_at", table_name="audit_log")
    op.drop_index("ix_audit_log_entity", table_name="audit_log")
    op.drop_table("audit_log")

    op.drop_index("ix_notification_entity", table_name="notification")
    op.drop_index("ix_notification_user_read_created", table_name="notification")
    op.drop_table("notification")

    op.drop_index("ix_change_history_type_changed", table_name="change_history")
    op.drop_index("ix_change_history_property_changed", table_name="change_history")
    op.drop_table("change_history")

    op.drop_index("ix_property_document_property_type", table_name="property_document")
    op.drop_index("ix_property_document_property_id", table_name="property_document")
    op.drop_table("property_document")

    op.drop_index("ix_title_movement_property_active", table_name="title_movement")
    op.drop_index("ix_title_movement_status_released", table_name="title_movement")
    op.drop_index("ix_title_movement_property_id", table_name="title_movement")
    op.drop_table("title_movement")

    op.drop_index("ix_workflow_property_pending_title_transfer", table_name="approval_workflow")
    op.drop_index("ix_workflow_type_status", table_name="approval_workflow")
    op.drop_index("ix_workflow_status_created", table_name="approval_workflow")
    op.drop_index("ix_approval_workflow_initiated_by_id", table_name="approval_workflow")
    op.drop_index("ix_approval_workflow_property_id", table_name="approval_workflow")
    op.drop_table("approval_workflow")

    op.drop_index("ix_tax_status_due", table_name="real_property_tax")
    op.drop_index("ix_real_property_tax_property_id", table_name="real_property_tax")
    op.drop_table("real_property_tax")

    op.drop_index("ix_property_deleted_created", table_name="property")
    op.drop_index("ix_property_status_classification", table_name="property")
    op.drop_table("property")

    op.drop_index("ix_user_account_role_id", table_name="user_account")
    op.drop_table("user_account")
    op.drop_table("role_permission")
    op.drop_table("role")
    op.drop_table("permission")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in (
            "notification_type",
            "change_type",
            "document_type",
            "return_condition",
            "movement_status",
            "priority",
            "approval_status",
            "workflow_type",
            "payment_method",
            "tax_status",
            "property_status",
            "property_classification",
        ):
            op.execute(f"DROP TYPE IF EXISTS {enum_name}")
