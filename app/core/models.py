from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import CheckConstraint, Enum as SAEnum, ForeignKey, Index, UniqueConstraint, event, inspect, text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from werkzeug.security import generate_password_hash

from app.core.extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PropertyClassification(str, Enum):
    RESIDENTIAL = "RESIDENTIAL"
    COMMERCIAL = "COMMERCIAL"
    INDUSTRIAL = "INDUSTRIAL"
    AGRICULTURAL = "AGRICULTURAL"
    INSTITUTIONAL = "INSTITUTIONAL"
    MIXED_USE = "MIXED_USE"


class PropertyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PENDING_TRANSFER = "PENDING_TRANSFER"
    SOLD = "SOLD"
    FORECLOSED = "FORECLOSED"
    UNDER_DEVELOPMENT = "UNDER_DEVELOPMENT"
    COLLATERAL = "COLLATERAL"
    DISPOSED = "DISPOSED"


class TaxStatus(str, Enum):
    PENDING = "PENDING"
    DUE = "DUE"
    PAID = "PAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    OVERDUE = "OVERDUE"
    WAIVED = "WAIVED"
    EXEMPTED = "EXEMPTED"
    CONTESTED = "CONTESTED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CHECK = "CHECK"
    BANK_TRANSFER = "BANK_TRANSFER"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    ONLINE_PAYMENT = "ONLINE_PAYMENT"


class MovementStatus(str, Enum):
    RELEASED = "RELEASED"
    IN_TRANSIT = "IN_TRANSIT"
    RECEIVED = "RECEIVED"
    PENDING_RETURN = "PENDING_RETURN"
    RETURNED = "RETURNED"
    LOST = "LOST"


ACTIVE_MOVEMENT_STATUSES = (
    MovementStatus.RELEASED,
    MovementStatus.IN_TRANSIT,
    MovementStatus.RECEIVED,
    MovementStatus.PENDING_RETURN,
)


class ReturnCondition(str, Enum):
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    DAMAGED = "DAMAGED"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class WorkflowType(str, Enum):
    PROPERTY_UPDATE = "PROPERTY_UPDATE"
    STATUS_CHANGE = "STATUS_CHANGE"
    OWNER_CHANGE = "OWNER_CHANGE"
    LOCATION_UPDATE = "LOCATION_UPDATE"
    ENCUMBRANCE_UPDATE = "ENCUMBRANCE_UPDATE"
    TITLE_TRANSFER = "TITLE_TRANSFER"


PROPERTY_CHANGE_WORKFLOWS = (
    WorkflowType.PROPERTY_UPDATE,
    WorkflowType.STATUS_CHANGE,
    WorkflowType.OWNER_CHANGE,
    WorkflowType.LOCATION_UPDATE,
    WorkflowType.ENCUMBRANCE_UPDATE,
)


class Priority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


PRIORITY_RANK: dict[Priority, int] = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class ChangeType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"


class DocumentType(str, Enum):
    TITLE_DEED = "TITLE_DEED"
    TAX_DECLARATION = "TAX_DECLARATION"
    TAX_RECEIPT = "TAX_RECEIPT"
    SURVEY_PLAN = "SURVEY_PLAN"
    MORTGAGE_CONTRACT = "MORTGAGE_CONTRACT"
    SALE_AGREEMENT = "SALE_AGREEMENT"
    LEASE_AGREEMENT = "LEASE_AGREEMENT"
    APPRAISAL_REPORT = "APPRAISAL_REPORT"
    PHOTO = "PHOTO"
    OTHER = "OTHER"


class NotificationType(str, Enum):
    PROPERTY = "PROPERTY"
    TAX = "TAX"
    APPROVAL = "APPROVAL"
    TITLE_MOVEMENT = "TITLE_MOVEMENT"
    DOCUMENT = "DOCUMENT"
    SYSTEM = "SYSTEM"
    MAINTENANCE = "MAINTENANCE"


PERMISSION_MATRIX: dict[str, tuple[str, ...]] = {
    "property": ("create", "read", "update", "delete"),
    "tax": ("create", "read", "update", "delete"),
    "title_movement": ("create", "read", "update", "delete"),
    "approval": ("create", "read", "approve", "reject"),
    "document": ("create", "read", "delete"),
    "user": ("create", "read", "update", "delete", "manage_roles"),
    "role": ("create", "read", "update", "delete"),
    "audit": ("read", "export"),
    "report": ("read", "export"),
    "system": ("read", "update"),
}

ADMIN_MODULES = ("user", "role", "system")

ROLE_DEFINITIONS: dict[str, tuple[str, list[str]]] = {
    "Super Admin": (
        "Full access to every module",
        [f"{module}.{action}" for module, actions in PERMISSION_MATRIX.items() for action in actions],
    ),
    "Property Manager": (
        "Manages properties, taxes, title movements and documents",
        [
            *(f"property.{a}" for a in PERMISSION_MATRIX["property"]),
            *(f"tax.{a}" for a in PERMISSION_MATRIX["tax"]),
            *(f"title_movement.{a}" for a in PERMISSION_MATRIX["title_movement"]),
            *(f"document.{a}" for a in PERMISSION_MATRIX["document"]),
            "approval.create",
            "approval.read",
            "report.read",
            "report.export",
        ],
    ),
    "Approver": (
        "Reviews and decides approval requests",
        [
            "property.read",
            "tax.read",
            "title_movement.read",
            "document.read",
            "approval.read",
            "approval.approve",
            "approval.reject",
            "audit.read",
            "report.read",
        ],
    ),
    "Finance Manager": (
        "Records real property tax bills and payments",
        [
            *(f"tax.{a}" for a in PERMISSION_MATRIX["tax"]),
            "property.read",
            "title_movement.read",
            "document.read",
            "document.create",
            "approval.read",
            "audit.read",
            "report.read",
            "report.export",
        ],
    ),
    "Viewer": (
        "Read-only access",
        [f"{module}.read" for module in PERMISSION_MATRIX if module not in ADMIN_MODULES],
    ),
}


role_permission = db.Table(
    "role_permission",
    db.Column("role_id", db.Integer, ForeignKey("role.id", ondelete="CASCADE"), primary_key=True),
    db.Column("permission_id", db.Integer, ForeignKey("permission.id", ondelete="CASCADE"), primary_key=True),
)


class Permission(db.Model):
    __tablename__ = "permission"
    __table_args__ = (UniqueConstraint("module", "action", name="uq_permission_module_action"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(80), unique=True, nullable=False)
    module: Mapped[str] = mapped_column(db.String(40), nullable=False)
    action: Mapped[str] = mapped_column(db.String(40), nullable=False)
    description: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")


class Role(db.Model):
    __tablename__ = "role"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(80), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    is_system: Mapped[bool] = mapped_column(default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    permissions = relationship("Permission", secondary=role_permission, order_by="Permission.name")
    users = relationship("User", back_populates="role")

    @property
    def permission_names(self) -> set[str]:
        return {permission.name for permission in self.permissions}


class User(UserMixin, db.Model):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(db.String(80), nullable=False)
    last_name: Mapped[str] = mapped_column(db.String(80), nullable=False)
    password_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    role_id: Mapped[int | None] = mapped_column(ForeignKey("role.id"), nullable=True, index=True)
    department: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    position: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    role = relationship("Role", back_populates="users")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def permission_names(self) -> set[str]:
        if not self.role or not self.role.is_active:
            return set()
        return self.role.permission_names

    def has_permission(self, module: str, action: str) -> bool:
        return f"{module}.{action}" in self.permission_names

    @validates("email")
    def normalize_email(self, _key, value: str) -> str:
        return (value or "").strip().lower()


class Property(db.Model):
    __tablename__ = "property"
    __table_args__ = (
        CheckConstraint("lot_area > 0", name="ck_property_lot_area"),
        Index("ix_property_status_classification", "status", "classification"),
        Index("ix_property_deleted_created", "is_deleted", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    title_number: Mapped[str] = mapped_column(db.String(100), unique=True, nullable=False)
    lot_number: Mapped[str] = mapped_column(db.String(100), nullable=False)
    lot_area: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False)
    location: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    barangay: Mapped[str] = mapped_column(db.String(100), nullable=False)
    city: Mapped[str] = mapped_column(db.String(100), nullable=False)
    province: Mapped[str] = mapped_column(db.String(100), nullable=False)
    zip_code: Mapped[str] = mapped_column(db.String(10), nullable=False, default="")
    description: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    classification: Mapped[PropertyClassification] = mapped_column(
        SAEnum(PropertyClassification, name="property_classification"),
        nullable=False,
    )
    status: Mapped[PropertyStatus] = mapped_column(
        SAEnum(PropertyStatus, name="property_status"),
        nullable=False,
        default=PropertyStatus.ACTIVE,
    )
    registered_owner: Mapped[str] = mapped_column(db.String(200), nullable=False)
    bank: Mapped[str] = mapped_column(db.String(100), nullable=False, default="")
    custody_of_title: Mapped[str] = mapped_column(db.String(200), nullable=False, default="")
    encumbrance: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    mortgage_details: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    borrower_mortgagor: Mapped[str] = mapped_column(db.String(200), nullable=False, default="")
    tax_declaration: Mapped[str] = mapped_column(db.String(100), nullable=False, default="")
    remarks: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    updated_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    created_by = relationship("User", foreign_keys=[created_by_id])
    updated_by = relationship("User", foreign_keys=[updated_by_id])
    taxes = relationship(
        "RealPropertyTax",
        back_populates="property_record",
        cascade="all, delete-orphan",
        order_by="RealPropertyTax.tax_year.desc()",
    )
    movements = relationship(
        "TitleMovement",
        back_populates="property_record",
        cascade="all, delete-orphan",
        order_by="TitleMovement.created_at.desc()",
    )
    documents = relationship("PropertyDocument", back_populates="property_record", cascade="all, delete-orphan")
    workflows = relationship("ApprovalWorkflow", back_populates="property_record", cascade="all, delete-orphan")
    history = relationship(
        "ChangeHistory",
        back_populates="property_record",
        cascade="all, delete-orphan",
        order_by="ChangeHistory.changed_at.desc()",
    )

    @property
    def location_label(self) -> str:
        parts = [self.location, self.barangay, self.city, self.province]
        return ", ".join(part for part in parts if part)

    @validates("title_number", "lot_number")
    def strip_identifiers(self, _key, value: str) -> str:
        return (value or "").strip()


class RealPropertyTax(db.Model):
    __tablename__ = "real_property_tax"
    __table_args__ = (
        UniqueConstraint("property_id", "tax_year", "tax_quarter", name="uq_tax_property_year_quarter"),
        CheckConstraint("tax_amount >= 0", name="ck_tax_amount"),
        CheckConstraint("tax_quarter IS NULL OR (tax_quarter >= 1 AND tax_quarter <= 4)", name="ck_tax_quarter"),
        CheckConstraint(
            "period_from IS NULL OR period_to IS NULL OR period_to >= period_from",
            name="ck_tax_period",
        ),
        Index("ix_tax_status_due", "status", "due_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("property.id"), nullable=False, index=True)
    tax_year: Mapped[int] = mapped_column(nullable=False)
    tax_quarter: Mapped[int | None] = mapped_column(nullable=True)
    tax_amount: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False)
    due_date: Mapped[date] = mapped_column(nullable=False)
    period_from: Mapped[date | None] = mapped_column(nullable=True)
    period_to: Mapped[date | None] = mapped_column(nullable=True)
    status: Mapped[TaxStatus] = mapped_column(
        SAEnum(TaxStatus, name="tax_status"),
        nullable=False,
        default=TaxStatus.PENDING,
    )
    is_paid: Mapped[bool] = mapped_column(default=False, nullable=False)
    amount_paid: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 2), nullable=True)
    payment_date: Mapped[date | None] = mapped_column(nullable=True)
    official_receipt_number: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    payment_method: Mapped[PaymentMethod | None] = mapped_column(
        SAEnum(PaymentMethod, name="payment_method"),
        nullable=True,
    )
    discount: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    penalty: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    interest: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    notes: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    recorded_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    property_record = relationship("Property", back_populates="taxes")
    recorded_by = relationship("User")

    @property
    def period_label(self) -> str:
        return f"{self.tax_year} Q{self.tax_quarter}" if self.tax_quarter else f"{self.tax_year} (Annual)"

    @property
    def total_due(self) -> Decimal:
        return (
            Decimal(self.tax_amount or 0)
            + Decimal(self.penalty or 0)
            + Decimal(self.interest or 0)
            - Decimal(self.discount or 0)
        ).quantize(Decimal("0.01"))


class TitleMovement(db.Model):
    __tablename__ = "title_movement"
    __table_args__ = (
        Index(
            "ix_title_movement_property_active",
            "property_id",
            unique=True,
            sqlite_where=text("movement_status IN ('RELEASED', 'IN_TRANSIT', 'RECEIVED', 'PENDING_RETURN')"),
            postgresql_where=text("movement_status IN ('RELEASED', 'IN_TRANSIT', 'RECEIVED', 'PENDING_RETURN')"),
        ),
        Index("ix_title_movement_status_released", "movement_status", "date_released"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("property.id"), nullable=False, index=True)
    movement_status: Mapped[MovementStatus] = mapped_column(
        SAEnum(MovementStatus, name="movement_status"),
        nullable=False,
        default=MovementStatus.RELEASED,
    )
    date_released: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    released_by: Mapped[str] = mapped_column(db.String(200), nullable=False)
    purpose_of_release: Mapped[str] = mapped_column(db.String(1000), nullable=False)
    approved_by: Mapped[str] = mapped_column(db.String(200), nullable=False, default="")
    received_by_transmittal: Mapped[str] = mapped_column(db.String(100), unique=True, nullable=False)
    received_by_name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    turned_over_date: Mapped[datetime | None] = mapped_column(nullable=True)
    turned_over_by: Mapped[str] = mapped_column(db.String(200), nullable=False, default="")
    received_by_person: Mapped[str] = mapped_column(db.String(200), nullable=False, default="")
    date_returned: Mapped[datetime | None] = mapped_column(nullable=True)
    returned_by: Mapped[str] = mapped_column(db.String(200), nullable=False, default="")
    received_by_on_return: Mapped[str] = mapped_column(db.String(200), nullable=False, default="")
    return_condition: Mapped[ReturnCondition | None] = mapped_column(
        SAEnum(ReturnCondition, name="return_condition"),
        nullable=True,
    )
    notes: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    moved_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    workflow_id: Mapped[int | None] = mapped_column(ForeignKey("approval_workflow.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    property_record = relationship("Property", back_populates="movements")
    moved_by = relationship("User")
    workflow = relationship("ApprovalWorkflow")

    @property
    def is_active(self) -> bool:
        return self.movement_status in ACTIVE_MOVEMENT_STATUSES


class ApprovalWorkflow(db.Model):
    __tablename__ = "approval_workflow"
    __table_args__ = (
        Index(
            "ix_workflow_property_pending_title_transfer",
            "property_id",
            unique=True,
            sqlite_where=text("status = 'PENDING' AND workflow_type = 'TITLE_TRANSFER'"),
            postgresql_where=text("status = 'PENDING' AND workflow_type = 'TITLE_TRANSFER'"),
        ),
        Index("ix_workflow_status_created", "status", "created_at"),
        Index("ix_workflow_type_status", "workflow_type", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("property.id"), nullable=False, index=True)
    workflow_type: Mapped[WorkflowType] = mapped_column(
        SAEnum(WorkflowType, name="workflow_type"),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(db.String(500), nullable=False, default="")
    status: Mapped[ApprovalStatus] = mapped_column(
        SAEnum(ApprovalStatus, name="approval_status"),
        nullable=False,
        default=ApprovalStatus.PENDING,
    )
    priority: Mapped[Priority] = mapped_column(
        SAEnum(Priority, name="priority"),
        nullable=False,
        default=Priority.NORMAL,
    )
    proposed_changes: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    initiated_by_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False, index=True)
    assigned_to_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    approved_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_reason: Mapped[str | None] = mapped_column(db.String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    property_record = relationship("Property", back_populates="workflows")
    initiated_by = relationship("User", foreign_keys=[initiated_by_id])
    assigned_to = relationship("User", foreign_keys=[assigned_to_id])
    approved_by = relationship("User", foreign_keys=[approved_by_id])


class PropertyDocument(db.Model):
    __tablename__ = "property_document"
    __table_args__ = (Index("ix_property_document_property_type", "property_id", "document_type"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("property.id"), nullable=False, index=True)
    document_type: Mapped[DocumentType] = mapped_column(
        SAEnum(DocumentType, name="document_type"),
        nullable=False,
        default=DocumentType.OTHER,
    )
    file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    file_url: Mapped[str | None] = mapped_column(db.String(1000), nullable=True)
    file_path: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    file_size: Mapped[int | None] = mapped_column(nullable=True)
    mime_type: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    description: Mapped[str] = mapped_column(db.String(1000), nullable=False, default="")
    uploaded_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    property_record = relationship("Property", back_populates="documents")
    uploaded_by = relationship("User")


class ChangeHistory(db.Model):
    __tablename__ = "change_history"
    __table_args__ = (
        Index("ix_change_history_property_changed", "property_id", "changed_at"),
        Index("ix_change_history_type_changed", "change_type", "changed_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("property.id"), nullable=False)
    field_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    old_value: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    change_type: Mapped[ChangeType] = mapped_column(SAEnum(ChangeType, name="change_type"), nullable=False)
    reason: Mapped[str] = mapped_column(db.String(500), nullable=False, default="")
    changed_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    property_record = relationship("Property", back_populates="history")
    changed_by = relationship("User")


class Notification(db.Model):
    __tablename__ = "notification"
    __table_args__ = (
        Index("ix_notification_user_read_created", "user_id", "is_read", "created_at"),
        Index("ix_notification_entity", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False)
    title: Mapped[str] = mapped_column(db.String(200), nullable=False)
    message: Mapped[str] = mapped_column(db.String(1000), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        SAEnum(NotificationType, name="notification_type"),
        nullable=False,
        default=NotificationType.SYSTEM,
    )
    priority: Mapped[Priority] = mapped_column(
        SAEnum(Priority, name="priority"),
        nullable=False,
        default=Priority.NORMAL,
    )
    is_read: Mapped[bool] = mapped_column(default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(nullable=True)
    action_url: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    entity_type: Mapped[str] = mapped_column(db.String(60), nullable=False, default="")
    entity_id: Mapped[int | None] = mapped_column(nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    user = relationship("User")


class AuditLog(db.Model):
    __tablename__ = "audit_log"
    __table_args__ = (Index("ix_audit_log_entity", "entity_type", "entity_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    action: Mapped[str] = mapped_column(db.String(40), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(60), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(nullable=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    changes: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    details: Mapped[dict] = mapped_column("metadata", db.JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)

    user = relationship("User")


class SystemConfig(db.Model):
    __tablename__ = "system_config"

    id: Mapped[int] = mapped_column(primary_key=True)
    key: Mapped[str] = mapped_column(db.String(100), unique=True, nullable=False)
    value: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    description: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def category(self) -> str:
        return (self.key.split(".", 1)[0] or "general").capitalize()


@event.listens_for(RealPropertyTax, "after_update")
def tax_after_update(_mapper, connection, target: RealPropertyTax) -> None:
    state = inspect(target)
    history = state.attrs.status.history
    if history.has_changes():
        previous = history.deleted[0] if history.deleted else None
        connection.execute(
            ChangeHistory.__table__.insert().values(
                property_id=target.property_id,
                field_name="realPropertyTax.status",
                old_value=previous.value if previous is not None else None,
                new_value=target.status.value,
                change_type=ChangeType.STATUS_CHANGE,
                reason=f"Tax {target.period_label} -> {target.status.value}",
                changed_by_id=target.recorded_by_id,
                changed_at=utcnow(),
            )
        )


@event.listens_for(PropertyDocument, "after_insert")
def document_after_insert(_mapper, connection, target: PropertyDocument) -> None:
    connection.execute(
        ChangeHistory.__table__.insert().values(
            property_id=target.property_id,
            field_name="document",
            old_value=None,
            new_value=f"{target.document_type.value}: {target.file_name}",
            change_type=ChangeType.CREATE,
            reason="Document attached",
            changed_by_id=target.uploaded_by_id,
            changed_at=utcnow(),
        )
    )


def seed_permissions_and_roles(session) -> dict[str, Role]:
    permissions: dict[str, Permission] = {}
    for module, actions in PERMISSION_MATRIX.items():
        for action in actions:
            name = f"{module}.{action}"
            permission = Permission.query.filter_by(name=name).first()
            if permission is None:
                permission = Permission(
                    name=name,
                    module=module,
                    action=action,
                    description=f"{action.replace('_', ' ').title()} {module.replace('_', ' ')}",
                )
                session.add(permission)
            permissions[name] = permission
    session.flush()

    roles: dict[str, Role] = {}
    for role_name, (description, permission_names) in ROLE_DEFINITIONS.items():
        role = Role.query.filter_by(name=role_name).first()
        if role is None:
            role = Role(name=role_name, description=description, is_system=True)
            session.add(role)
        role.permissions = [permissions[name] for name in permission_names]
        roles[role_name] = role
    session.flush()
    return roles


def seed_demo_data(session) -> None:
    roles = seed_permissions_and_roles(session)

    admin = User(
        email="admin@registry.local",
        first_name="Ana",
        last_name="Reyes",
        password_hash=generate_password_hash("admin123"),
        role=roles["Super Admin"],
        department="Administration",
        position="System Administrator",
    )
    manager = User(
        email="manager@registry.local",
        first_name="Marco",
        last_name="Santos",
        password_hash=generate_password_hash("manager123"),
        role=roles["Property Manager"],
        department="Property Management",
        position="Property Officer",
    )
    approver = User(
        email="approver@registry.local",
        first_name="Liza",
        last_name="Cruz",
        password_hash=generate_password_hash("approver123"),
        role=roles["Approver"],
        department="Legal",
        position="Legal Counsel",
    )
    finance = User(
        email="finance@registry.local",
        first_name="Ramon",
        last_name="Garcia",
        password_hash=generate_password_hash("finance123"),
        role=roles["Finance Manager"],
        department="Finance",
        position="Treasury Analyst",
    )
    viewer = User(
        email="viewer@registry.local",
        first_name="Joy",
        last_name="Dela Cruz",
        password_hash=generate_password_hash("viewer123"),
        role=roles["Viewer"],
        department="Audit",
        position="Auditor",
    )
    session.add_all([admin, manager, approver, finance, viewer])
    session.flush()

    prop_1 = Property(
        title_number="TCT-001-2020",
        lot_number="LOT-12-B",
        lot_area=Decimal("350.00"),
        location="12 Mabini Street",
        barangay="San Antonio",
        city="Makati",
        province="Metro Manila",
        zip_code="1203",
        classification=PropertyClassification.RESIDENTIAL,
        registered_owner="Reyes Holdings Inc.",
        bank="BDO",
        custody_of_title="Vault - Head Office",
        tax_declaration="TD-2020-0001",
        created_by_id=admin.id,
    )
    prop_2 = Property(
        title_number="TCT-002-2021",
        lot_number="LOT-4",
        lot_area=Decimal("1200.50"),
        location="Km 14 National Road",
        barangay="Poblacion",
        city="Santa Rosa",
        province="Laguna",
        zip_code="4026",
        classification=PropertyClassification.COMMERCIAL,
        status=PropertyStatus.COLLATERAL,
        registered_owner="Santos Development Corp.",
        bank="Metrobank",
        custody_of_title="Metrobank - Loans Dept",
        encumbrance="Real estate mortgage",
        mortgage_details="REM 2021-88 PHP 5,000,000",
        borrower_mortgagor="Santos Development Corp.",
        tax_declaration="TD-2021-0456",
        created_by_id=admin.id,
    )
    prop_3 = Property(
        title_number="OCT-310-1998",
        lot_number="LOT-7-A",
        lot_area=Decimal("25000.00"),
        location="Sitio Malaya",
        barangay="Lumbia",
        city="Cagayan de Oro",
        province="Misamis Oriental",
        zip_code="9000",
        classification=PropertyClassification.AGRICULTURAL,
        registered_owner="Garcia Family Trust",
        custody_of_title="Vault - Head Office",
        created_by_id=admin.id,
    )
    session.add_all([prop_1, prop_2, prop_3])
    session.flush()

    for prop in (prop_1, prop_2, prop_3):
        session.add(
            ChangeHistory(
                property_id=prop.id,
                field_name="property",
                new_value=prop.title_number,
                change_type=ChangeType.CREATE,
                reason="New property record created",
                changed_by_id=admin.id,
            )
        )

    this_year = date.today().year
    session.add_all(
        [
            RealPropertyTax(
                property_id=prop_1.id,
                tax_year=this_year - 1,
                tax_quarter=None,
                tax_amount=Decimal("18500.00"),
                due_date=date(this_year - 1, 3, 31),
                period_from=date(this_year - 1, 1, 1),
                period_to=date(this_year - 1, 12, 31),
                status=TaxStatus.PAID,
                is_paid=True,
                amount_paid=Decimal("18500.00"),
                payment_date=date(this_year - 1, 3, 15),
                official_receipt_number="OR-0001",
                payment_method=PaymentMethod.BANK_TRANSFER,
                recorded_by_id=finance.id,
            ),
            RealPropertyTax(
                property_id=prop_1.id,
                tax_year=this_year,
                tax_quarter=1,
                tax_amount=Decimal("4800.00"),
                due_date=date(this_year, 3, 31),
                status=TaxStatus.PENDING,
                recorded_by_id=finance.id,
            ),
            RealPropertyTax(
                property_id=prop_2.id,
                tax_year=this_year - 1,
                tax_quarter=4,
                tax_amount=Decimal("12600.00"),
                due_date=date(this_year - 1, 12, 31),
                status=TaxStatus.OVERDUE,
                recorded_by_id=finance.id,
            ),
        ]
    )

    session.add(
        TitleMovement(
            property_id=prop_3.id,
            movement_status=MovementStatus.RELEASED,
            date_released=utcnow() - timedelta(days=10),
            released_by="Marco Santos",
            purpose_of_release="Annotation of survey at Registry of Deeds",
            approved_by=approver.full_name,
            received_by_transmittal=f"TM-{this_year % 100:02d}-0001",
            received_by_name="Atty. Pedro Lim",
            moved_by_id=manager.id,
        )
    )
    prop_3.custody_of_title = "Atty. Pedro Lim"

    session.add(
        ApprovalWorkflow(
            property_id=prop_1.id,
            workflow_type=WorkflowType.OWNER_CHANGE,
            description="Update 1 field(s): Registered Owner",
            priority=Priority.NORMAL,
            proposed_changes={
                "registered_owner": {
                    "old_value": "Reyes Holdings Inc.",
                    "new_value": "Reyes Realty Inc.",
                    "label": "Registered Owner",
                }
            },
            initiated_by_id=manager.id,
        )
    )
    session.add_all(
        [
            SystemConfig(key="tax.penalty_rate", value="0.02", description="Monthly penalty on overdue real property tax"),
            SystemConfig(key="title.unreturned_days", value="7", description="Days before a released title is flagged"),
            SystemConfig(key="notification.ttl_days", value="30", description="Days a notification stays visible"),
        ]
    )
    session.commit()
