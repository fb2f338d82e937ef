from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

from flask import current_app
from sqlalchemy import case, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload
from werkzeug.datastructures import FileStorage

from app.core.errors import NotFoundError, ValidationError
from app.core.extensions import db
from app.core.models import (
    ACTIVE_MOVEMENT_STATUSES,
    PROPERTY_CHANGE_WORKFLOWS,
    ApprovalStatus,
    ApprovalWorkflow,
    ChangeType,
    MovementStatus,
    Priority,
    Property,
    PropertyClassification,
    PropertyStatus,
    ReturnCondition,
    TitleMovement,
    User,
    WorkflowType,
    utcnow,
)
from app.registry.documents import prepare_property_document, store_document_file
from app.registry.notifications import (
    notify_approval_requested,
    notify_title_released,
    notify_workflow_decided,
)
from app.registry.services import (
    PROPERTY_FIELD_LABELS,
    _clean,
    _parse_bool,
    _parse_enum,
    _parse_int,
    _parse_iso_date,
    _parse_optional_iso_date,
    active_movement_for_property,
    as_aware,
    changed_property_fields,
    csv_bytes,
    day_bounds,
    ensure_unique_title_number,
    paginate_query,
    parse_property_payload,
    property_by_id,
    record_audit,
    record_change,
    simple_pdf,
    stringify,
)

logger = logging.getLogger(__name__)

LOCATION_FIELDS = {"location", "barangay", "city", "province", "zip_code"}
ENCUMBRANCE_FIELDS = {"encumbrance", "mortgage_details", "borrower_mortgagor", "bank"}

MOVEMENT_TRANSITIONS: dict[MovementStatus, set[MovementStatus]] = {
    MovementStatus.RELEASED: {
        MovementStatus.IN_TRANSIT,
        MovementStatus.RECEIVED,
        MovementStatus.PENDING_RETURN,
        MovementStatus.RETURNED,
        MovementStatus.LOST,
    },
    MovementStatus.IN_TRANSIT: {
        MovementStatus.RECEIVED,
        MovementStatus.PENDING_RETURN,
        MovementStatus.RETURNED,
        MovementStatus.LOST,
    },
    MovementStatus.RECEIVED: {
        MovementStatus.PENDING_RETURN,
        MovementStatus.RETURNED,
        MovementStatus.LOST,
    },
    MovementStatus.PENDING_RETURN: {MovementStatus.RETURNED, MovementStatus.LOST},
    MovementStatus.RETURNED: set(),
    MovementStatus.LOST: set(),
}

IN_TRANSIT_CUSTODY = "In Transit"
TRANSMITTAL_PATTERN = re.compile(r"^TM-(\d{2})-(\d+)$")

WORKFLOW_PRIORITY_ORDER = case(
    (ApprovalWorkflow.priority == Priority.URGENT, 3),
    (ApprovalWorkflow.priority == Priority.HIGH, 2),
    (ApprovalWorkflow.priority == Priority.NORMAL, 1),
    else_=0,
)


@dataclass
class TitleAvailability:
    is_available: bool
    reason: str = ""
    has_pending_workflow: bool = False
    has_active_movement: bool = False
    pending_initiator: str | None = None
    active_status: MovementStatus | None = None


def classify_workflow_type(fields: set[str]) -> WorkflowType:
    if fields == {"status"}:
        return WorkflowType.STATUS_CHANGE
    if fields == {"registered_owner"}:
        return WorkflowType.OWNER_CHANGE
    if fields and fields <= LOCATION_FIELDS:
        return WorkflowType.LOCATION_UPDATE
    if fields and fields <= ENCUMBRANCE_FIELDS:
        return WorkflowType.ENCUMBRANCE_UPDATE
    return WorkflowType.PROPERTY_UPDATE


def workflow_by_id(workflow_id: int) -> ApprovalWorkflow:
    workflow = (
        ApprovalWorkflow.query.options(
            joinedload(ApprovalWorkflow.property_record),
            joinedload(ApprovalWorkflow.initiated_by),
            joinedload(ApprovalWorkflow.approved_by),
        )
        .filter_by(id=workflow_id)
        .first()
    )
    if not workflow:
        raise NotFoundError("Approval request not found")
    return workflow


def pending_property_update(property_id: int) -> ApprovalWorkflow | None:
    return (
        ApprovalWorkflow.query.filter_by(property_id=property_id, status=ApprovalStatus.PENDING)
        .filter(ApprovalWorkflow.workflow_type.in_(PROPERTY_CHANGE_WORKFLOWS))
        .first()
    )


def pending_title_transfer(property_id: int) -> ApprovalWorkflow | None:
    return ApprovalWorkflow.query.filter_by(
        property_id=property_id,
        status=ApprovalStatus.PENDING,
        workflow_type=WorkflowType.TITLE_TRANSFER,
    ).first()


def request_property_update(property_id: int, payload: dict[str, str], user_id: int) -> ApprovalWorkflow:
    prop = property_by_id(property_id)
    values = parse_property_payload(payload, current=prop)
    changes = changed_property_fields(prop, values)
    if not changes:
        raise ValueError("No changes detected")
    if "title_number" in changes:
        ensure_unique_title_number(values["title_number"], exclude_id=prop.id)
    if pending_property_update(prop.id):
        raise ValueError("An update request for this property is already pending approval")
    priority = _parse_enum(Priority, payload.get("priority"), "priority", Priority.NORMAL)

    proposed = {
        field: {
            "old_value": stringify(old_value),
            "new_value": stringify(new_value),
            "label": PROPERTY_FIELD_LABELS[field],
        }
        for field, (old_value, new_value) in changes.items()
    }
    labels = ", ".join(change["label"] for change in proposed.values())
    workflow = ApprovalWorkflow(
        property_id=prop.id,
        workflow_type=classify_workflow_type(set(changes)),
        description=f"Update {len(proposed)} field(s): {labels}"[:500],
        priority=priority,
        proposed_changes=proposed,
        initiated_by_id=user_id,
    )
    db.session.add(workflow)
    db.session.flush()
    notify_approval_requested(workflow)
    db.session.commit()
    logger.info("Update request %s submitted for property %s", workflow.id, prop.title_number)
    return workflow


def _coerce_property_value(field: str, raw: str | None) -> object:
    if field == "lot_area":
        return Decimal(raw or "0").quantize(Decimal("0.01"))
    if field == "classification":
        return PropertyClassification[raw]
    if field == "status":
        return PropertyStatus[raw]
    return raw or ""


def _apply_property_changes(workflow: ApprovalWorkflow, user_id: int) -> None:
    prop = workflow.property_record
    if prop is None or prop.is_deleted:
        raise ValueError("The property for this request no longer exists")
    changes: dict[str, dict] = workflow.proposed_changes or {}
    title_change = changes.get("title_number")
    if title_change and title_change.get("new_value"):
        ensure_unique_title_number(title_change["new_value"], exclude_id=prop.id)
    reason = f"Property update approved via workflow {workflow.id}"
    for field, change in changes.items():
        if field not in PROPERTY_FIELD_LABELS:
            continue
        old_value = getattr(prop, field)
        new_value = _coerce_property_value(field, change.get("new_value"))
        setattr(prop, field, new_value)
        change_type = ChangeType.STATUS_CHANGE if field == "status" else ChangeType.UPDATE
        record_change(prop.id, field, old_value, new_value, change_type, reason, user_id)
    prop.updated_by_id = user_id


def check_title_availability(property_id: int) -> TitleAvailability:
    pending = pending_title_transfer(property_id)
    if pending:
        initiator = pending.initiated_by.full_name if pending.initiated_by else "another user"
        return TitleAvailability(
            is_available=False,
            reason=(
                "A title movement request is already pending approval for this property "
                f"(initiated by {initiator})"
            ),
            has_pending_workflow=True,
            pending_initiator=initiator,
        )
    active = active_movement_for_property(property_id)
    if active:
        return TitleAvailability(
            is_available=False,
            reason=(
                f"Cannot create new title movement. The property title is currently "
                f"{active.movement_status.value.replace('_', ' ').lower()} "
                f"(transmittal {active.received_by_transmittal}) and must be returned first"
            ),
            has_active_movement=True,
            active_status=active.movement_status,
        )
    return TitleAvailability(is_available=True)


def _pending_transfer_transmittals() -> list[str]:
    numbers: list[str] = []
    pending = ApprovalWorkflow.query.filter_by(
        status=ApprovalStatus.PENDING,
        workflow_type=WorkflowType.TITLE_TRANSFER,
    ).all()
    for workflow in pending:
        data = (workflow.proposed_changes or {}).get("title_movement") or {}
        if data.get("received_by_transmittal"):
            numbers.append(data["received_by_transmittal"])
    return numbers


def next_transmittal_number(today: date | None = None) -> str:
    today = today or date.today()
    year = f"{today.year % 100:02d}"
    prefix = f"TM-{year}-"
    existing = [
        number
        for (number,) in db.session.query(TitleMovement.received_by_transmittal)
        .filter(TitleMovement.received_by_transmittal.like(f"{prefix}%"))
        .all()
    ]
    highest = 0
    for number in existing + _pending_transfer_transmittals():
        match = TRANSMITTAL_PATTERN.match(number or "")
        if match and match.group(1) == year:
            highest = max(highest, int(match.group(2)))
    return f"{prefix}{highest + 1:04d}"


def _ensure_transmittal_unique(transmittal: str) -> None:
    taken = TitleMovement.query.filter(
        func.lower(TitleMovement.received_by_transmittal) == transmittal.lower()
    ).first()
    if taken or transmittal.lower() in {number.lower() for number in _pending_transfer_transmittals()}:
        raise ValidationError(
            {"received_by_transmittal": f"Transmittal number {transmittal} already exists"}
        )


def _parse_movement_payload(payload: dict[str, str], require_approver: bool) -> dict[str, object]:
    errors: dict[str, str] = {}
    values: dict[str, object] = {}
    try:
        values["property_id"] = _parse_int(payload.get("property_id"), "Property")
    except ValueError as exc:
        errors["property_id"] = str(exc)
    for field, label, max_length in (
        ("purpose_of_release", "Purpose of release", 1000),
        ("released_by", "Released by", 200),
        ("received_by_transmittal", "Transmittal number", 100),
        ("received_by_name", "Received by", 200),
    ):
        raw = _clean(payload.get(field))
        if not raw:
            errors[field] = f"{label} is required"
        elif len(raw) > max_length:
            errors[field] = f"{label} must be at most {max_length} characters"
        values[field] = raw
    if require_approver:
        try:
            values["approver_id"] = _parse_int(payload.get("approver_id"), "Approver")
        except ValueError as exc:
            errors["approver_id"] = str(exc)
    try:
        values["priority"] = _parse_enum(Priority, payload.get("priority"), "priority", Priority.NORMAL)
    except ValueError as exc:
        errors["priority"] = str(exc)
    if errors:
        raise ValidationError(errors)
    return values


def _ensure_title_available(property_id: int) -> None:
    availability = check_title_availability(property_id)
    if not availability.is_available:
        raise ValueError(availability.reason)


def _approver(user_id: int) -> User:
    approver = User.query.filter_by(id=user_id, is_active=True).first()
    if not approver or not approver.has_permission("approval", "approve"):
        raise ValidationError({"approver_id": "Selected approver is not an active approver"})
    return approver


def request_title_movement(payload: dict[str, str], user_id: int) -> ApprovalWorkflow:
    values = _parse_movement_payload(payload, require_approver=True)
    prop = property_by_id(values["property_id"])
    _ensure_title_available(prop.id)
    _ensure_transmittal_unique(values["received_by_transmittal"])
    approver = _approver(values["approver_id"])

    workflow = ApprovalWorkflow(
        property_id=prop.id,
        workflow_type=WorkflowType.TITLE_TRANSFER,
        description=(
            f"Release title {prop.title_number} to {values['received_by_name']}: "
            f"{values['purpose_of_release']}"
        )[:500],
        priority=values["priority"],
        proposed_changes={
            "action": "CREATE_MOVEMENT",
            "title_movement": {
                "purpose_of_release": values["purpose_of_release"],
                "released_by": values["released_by"],
                "received_by_transmittal": values["received_by_transmittal"],
                "received_by_name": values["received_by_name"],
                "approved_by": approver.full_name,
            },
        },
        initiated_by_id=user_id,
        assigned_to_id=approver.id,
    )
    db.session.add(workflow)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ValueError("A title movement request is already pending approval for this property") from exc
    notify_approval_requested(workflow)
    db.session.commit()
    logger.info("Title movement request %s submitted for %s", workflow.id, prop.title_number)
    return workflow


def _create_movement(
    prop: Property,
    data: dict[str, str],
    approved_by: str,
    user_id: int,
    workflow_id: int | None = None,
) -> TitleMovement:
    movement = TitleMovement(
        property_id=prop.id,
        movement_status=MovementStatus.RELEASED,
        date_released=utcnow(),
        released_by=data["released_by"],
        purpose_of_release=data["purpose_of_release"],
        approved_by=approved_by,
        received_by_transmittal=data["received_by_transmittal"],
        received_by_name=data["received_by_name"],
        moved_by_id=user_id,
        workflow_id=workflow_id,
    )
    db.session.add(movement)
    db.session.flush()
    record_change(
        prop.id,
        "titleMovement",
        None,
        f"{movement.received_by_transmittal} RELEASED to {movement.received_by_name}",
        ChangeType.CREATE,
        f"Title released: {movement.purpose_of_release}",
        user_id,
    )
    previous_custody = prop.custody_of_title
    if previous_custody != movement.received_by_name:
        prop.custody_of_title = movement.received_by_name
        record_change(
            prop.id,
            "custody_of_title",
            previous_custody,
            movement.received_by_name,
            ChangeType.UPDATE,
            f"Title released under transmittal {movement.received_by_transmittal}",
            user_id,
        )
    return movement


def release_title(
    payload: dict[str, str],
    user_id: int,
    files: list[FileStorage] | None = None,
) -> TitleMovement:
    values = _parse_movement_payload(payload, require_approver=False)
    prop = property_by_id(values["property_id"])
    _ensure_title_available(prop.id)
    _ensure_transmittal_unique(values["received_by_transmittal"])
    transmittal = values["received_by_transmittal"]
    attachments = [
        (
            prepare_property_document(
                prop,
                {"description": f"Document uploaded for title movement {transmittal}: {file_obj.filename}"},
                file_obj,
                user_id,
            ),
            file_obj,
        )
        for file_obj in files or []
        if file_obj and file_obj.filename
    ]

    stored: list[Path] = []
    try:
        approver = db.session.get(User, user_id)
        movement = _create_movement(prop, values, approver.full_name if approver else "", user_id)
        record_audit(
            "CREATE",
            "TitleMovement",
            movement.id,
            user_id,
            changes={"movement_status": MovementStatus.RELEASED.value},
            details={"transmittal": transmittal, "direct_release": True, "attachments": len(attachments)},
        )
        for document, file_obj in attachments:
            stored.append(store_document_file(document, file_obj))
            db.session.add(document)
        db.session.commit()
    except (ValueError, IntegrityError, OSError):
        db.session.rollback()
        for path in stored:
            path.unlink(missing_ok=True)
        raise
    logger.info("Title %s released directly under %s", prop.title_number, transmittal)
    return movement


def approve_workflow(workflow_id: int, user_id: int) -> ApprovalWorkflow:
    workflow = workflow_by_id(workflow_id)
    if workflow.status != ApprovalStatus.PENDING:
        raise ValueError("This request has already been processed")
    approver = db.session.get(User, user_id)
    try:
        workflow.status = ApprovalStatus.APPROVED
        workflow.approved_by_id = user_id
        workflow.approved_at = utcnow()
        if workflow.workflow_type in PROPERTY_CHANGE_WORKFLOWS:
            _apply_property_changes(workflow, user_id)
        elif workflow.workflow_type == WorkflowType.TITLE_TRANSFER:
            prop = workflow.property_record
            if prop is None or prop.is_deleted:
                raise ValueError("The property for this request no longer exists")
            active = active_movement_for_property(prop.id)
            if active:
                raise ValueError(
                    f"Cannot approve: the title is currently {active.movement_status.value.replace('_', ' ').lower()}"
                )
            data = (workflow.proposed_changes or {}).get("title_movement") or {}
            movement = _create_movement(
                prop,
                data,
                data.get("approved_by") or (approver.full_name if approver else ""),
                user_id,
                workflow_id=workflow.id,
            )
            notify_title_released(movement, workflow.initiated_by_id)
        notify_workflow_decided(workflow)
        record_audit(
            "APPROVE",
            "ApprovalWorkflow",
            workflow.id,
            user_id,
            changes={"status": ApprovalStatus.APPROVED.value},
            details={"workflow_type": workflow.workflow_type.value},
        )
        db.session.commit()
    except ValueError:
        db.session.rollback()
        raise
    logger.info("Workflow %s (%s) approved by user %s", workflow.id, workflow.workflow_type.value, user_id)
    return workflow


def reject_workflow(workflow_id: int, reason: str, user_id: int) -> ApprovalWorkflow:
    workflow = workflow_by_id(workflow_id)
    if workflow.status != ApprovalStatus.PENDING:
        raise ValueError("This request has already been processed")
    cleaned = _clean(reason)
    if not cleaned:
        raise ValidationError({"reason": "Rejection reason is required"})
    if len(cleaned) > 1000:
        raise ValidationError({"reason": "Rejection reason must be at most 1000 characters"})
    workflow.status = ApprovalStatus.REJECTED
    workflow.approved_by_id = user_id
    workflow.approved_at = utcnow()
    workflow.rejected_reason = cleaned
    notify_workflow_decided(workflow)
    record_audit(
        "REJECT",
        "ApprovalWorkflow",
        workflow.id,
        user_id,
        changes={"status": ApprovalStatus.REJECTED.value},
        details={"reason": cleaned},
    )
    db.session.commit()
    logger.info("Workflow %s rejected by user %s", workflow.id, user_id)
    return workflow


def cancel_workflow(workflow_id: int, user_id: int) -> ApprovalWorkflow:
    workflow = workflow_by_id(workflow_id)
    if workflow.initiated_by_id != user_id:
        raise ValueError("Only the requester can cancel this request")
    if workflow.status != ApprovalStatus.PENDING:
        raise ValueError("This request has already been processed")
    workflow.status = ApprovalStatus.CANCELLED
    db.session.commit()
    return workflow


def _workflow_query(filters: dict[str, str]):
    query = ApprovalWorkflow.query.options(
        joinedload(ApprovalWorkflow.property_record),
        joinedload(ApprovalWorkflow.initiated_by),
    )
    status = _clean(filters.get("status")).upper()
    if status in ApprovalStatus.__members__:
        query = query.filter(ApprovalWorkflow.status == ApprovalStatus[status])
    workflow_type = _clean(filters.get("workflow_type")).upper()
    if workflow_type in WorkflowType.__members__:
        query = query.filter(ApprovalWorkflow.workflow_type == WorkflowType[workflow_type])
    property_id = _clean(filters.get("property_id"))
    if property_id.isdigit():
        query = query.filter(ApprovalWorkflow.property_id == int(property_id))
    if status == ApprovalStatus.PENDING.value:
        return query.order_by(WORKFLOW_PRIORITY_ORDER.desc(), ApprovalWorkflow.created_at.asc())
    return query.order_by(ApprovalWorkflow.created_at.desc(), ApprovalWorkflow.id.desc())


def list_workflows(filters: dict[str, str], page: int = 1) -> dict[str, object]:
    return paginate_query(_workflow_query(filters), page, 20)


def pending_workflows(limit: int = 50) -> list[ApprovalWorkflow]:
    return _workflow_query({"status": ApprovalStatus.PENDING.value}).limit(limit).all()


def my_requests(user_id: int, filters: dict[str, str], page: int = 1) -> dict[str, object]:
    query = _workflow_query(filters).filter(ApprovalWorkflow.initiated_by_id == user_id)
    return paginate_query(query, page, 20)


def my_request_stats(user_id: int) -> dict[str, int]:
    counts = dict(
        db.session.query(ApprovalWorkflow.status, func.count(ApprovalWorkflow.id))
        .filter(ApprovalWorkflow.initiated_by_id == user_id)
        .group_by(ApprovalWorkflow.status)
        .all()
    )
    stats = {status.value: counts.get(status, 0) for status in ApprovalStatus}
    stats["total"] = sum(counts.values())
    return stats


def approval_stats(today: date | None = None) -> dict[str, object]:
    start, end = day_bounds(today or date.today())
    decided_today = ApprovalWorkflow.query.filter(ApprovalWorkflow.approved_at.between(start, end))
    pending_by_type = dict(
        db.session.query(ApprovalWorkflow.workflow_type, func.count(ApprovalWorkflow.id))
        .filter(ApprovalWorkflow.status == ApprovalStatus.PENDING)
        .group_by(ApprovalWorkflow.workflow_type)
        .all()
    )
    return {
        "pending": ApprovalWorkflow.query.filter_by(status=ApprovalStatus.PENDING).count(),
        "approved_today": decided_today.filter(ApprovalWorkflow.status == ApprovalStatus.APPROVED).count(),
        "rejected_today": decided_today.filter(ApprovalWorkflow.status == ApprovalStatus.REJECTED).count(),
        "pending_by_type": {
            workflow_type.value: pending_by_type.get(workflow_type, 0) for workflow_type in WorkflowType
        },
    }


def workflow_detail(workflow_id: int) -> dict[str, object]:
    workflow = workflow_by_id(workflow_id)
    proposed = workflow.proposed_changes or {}
    changes: list[dict[str, object]] = []
    if workflow.workflow_type == WorkflowType.TITLE_TRANSFER:
        for key, value in (proposed.get("title_movement") or {}).items():
            changes.append({"field": key, "label": key.replace("_", " ").title(), "old_value": None, "new_value": value})
    else:
        for field, change in proposed.items():
            changes.append(
                {
                    "field": field,
                    "label": change.get("label") or PROPERTY_FIELD_LABELS.get(field, field),
                    "old_value": change.get("old_value"),
                    "new_value": change.get("new_value"),
                }
            )
    movement = TitleMovement.query.filter_by(workflow_id=workflow.id).first()
    return {"workflow": workflow, "property": workflow.property_record, "changes": changes, "movement": movement}


def movement_by_id(movement_id: int) -> TitleMovement:
    movement = (
        TitleMovement.query.options(joinedload(TitleMovement.property_record), joinedload(TitleMovement.moved_by))
        .filter_by(id=movement_id)
        .first()
    )
    if not movement:
        raise NotFoundError("Title movement not found")
    return movement


def _event_datetime(value: date | None) -> datetime:
    if value is None:
        return utcnow()
    return datetime.combine(value, utcnow().timetz())


def _set_custody(movement: TitleMovement, custody: str, reason: str, user_id: int) -> None:
    prop = movement.property_record
    previous = prop.custody_of_title
    if custody and previous != custody:
        prop.custody_of_title = custody
        prop.updated_by_id = user_id
        record_change(prop.id, "custody_of_title", previous, custody, ChangeType.UPDATE, reason, user_id)


def _transition_movement(movement: TitleMovement, new_status: MovementStatus) -> MovementStatus:
    allowed = MOVEMENT_TRANSITIONS.get(movement.movement_status, set())
    if new_status not in allowed:
        raise ValueError(
            f"Invalid status transition: {movement.movement_status.value} -> {new_status.value}"
        )
    previous = movement.movement_status
    movement.movement_status = new_status
    return previous


def update_movement_status(movement_id: int, payload: dict[str, str], user_id: int) -> TitleMovement:
    movement = movement_by_id(movement_id)
    new_status = _parse_enum(MovementStatus, payload.get("movement_status"), "movement status")
    if new_status == MovementStatus.RETURNED:
        return return_title(movement_id, payload, user_id)

    errors: dict[str, str] = {}
    event_date = None
    try:
        event_date = _parse_optional_iso_date(payload.get("event_date"), "Date")
    except ValueError as exc:
        errors["event_date"] = str(exc)
    for field in ("turned_over_by", "received_by_person"):
        if len(_clean(payload.get(field))) > 200:
            errors[field] = "Must be at most 200 characters"
    if errors:
        raise ValidationError(errors)

    previous = _transition_movement(movement, new_status)
    reason = f"Transmittal {movement.received_by_transmittal}: {previous.value} -> {new_status.value}"
    if new_status == MovementStatus.IN_TRANSIT:
        _set_custody(movement, IN_TRANSIT_CUSTODY, reason, user_id)
    elif new_status == MovementStatus.RECEIVED:
        movement.turned_over_date = _event_datetime(event_date)
        movement.turned_over_by = _clean(payload.get("turned_over_by")) or movement.turned_over_by
        movement.received_by_person = _clean(payload.get("received_by_person")) or movement.received_by_person
        _set_custody(movement, movement.received_by_person or movement.received_by_name, reason, user_id)
    notes = _clean(payload.get("notes"))
    if notes:
        movement.notes = f"{movement.notes}\n{notes}".strip()
    movement.moved_by_id = user_id
    record_change(
        movement.property_id,
        "movementStatus",
        previous,
        new_status,
        ChangeType.STATUS_CHANGE,
        reason,
        user_id,
    )
    if new_status == MovementStatus.LOST:
        record_audit(
            "UPDATE",
            "TitleMovement",
            movement.id,
            user_id,
            changes={"movement_status": {"old": previous.value, "new": new_status.value}},
            details={"notes": notes},
        )
    db.session.commit()
    logger.info("Title movement %s moved to %s", movement.received_by_transmittal, new_status.value)
    return movement


def return_title(movement_id: int, payload: dict[str, str], user_id: int) -> TitleMovement:
    movement = movement_by_id(movement_id)
    if movement.movement_status not in ACTIVE_MOVEMENT_STATUSES:
        raise ValueError(
            f"Only titles that are out can be returned (current status {movement.movement_status.value})"
        )

    errors: dict[str, str] = {}
    returned_by = _clean(payload.get("returned_by"))
    if not returned_by:
        errors["returned_by"] = "Returned by is required"
    received_on_return = _clean(payload.get("received_by_on_return"))
    if not received_on_return:
        errors["received_by_on_return"] = "Received by on return is required"
    for field, value in (("returned_by", returned_by), ("received_by_on_return", received_on_return)):
        if len(value) > 200:
            errors[field] = "Must be at most 200 characters"
    return_date = None
    try:
        return_date = _parse_iso_date(payload.get("return_date"), "Return date")
        if return_date > date.today():
            errors["return_date"] = "Return date cannot be in the future"
        elif return_date < as_aware(movement.date_released).date():
            errors["return_date"] = "Return date cannot be before the release date"
    except ValueError as exc:
        errors["return_date"] = str(exc)
    condition = None
    try:
        condition = _parse_enum(ReturnCondition, payload.get("return_condition"), "return condition")
    except ValueError as exc:
        errors["return_condition"] = str(exc)
    notes = _clean(payload.get("notes"))
    if len(notes) > 1000:
        errors["notes"] = "Notes must be at most 1000 characters"
    if not _parse_bool(payload.get("documents_complete")):
        errors["documents_complete"] = "Confirm that all documents are complete"
    if not _parse_bool(payload.get("title_intact")):
        errors["title_intact"] = "Confirm that the title is intact"
    if errors:
        raise ValidationError(errors)

    previous_custody = movement.property_record.custody_of_title
    previous = _transition_movement(movement, MovementStatus.RETURNED)
    movement.date_returned = _event_datetime(return_date)
    movement.returned_by = returned_by
    movement.received_by_on_return = received_on_return
    movement.return_condition = condition
    movement.moved_by_id = user_id
    if notes:
        movement.notes = f"{movement.notes}\n{notes}".strip()
    reason = f"Title returned under transmittal {movement.received_by_transmittal}"
    _set_custody(movement, received_on_return, reason, user_id)
    record_change(
        movement.property_id,
        "movementStatus",
        previous,
        MovementStatus.RETURNED,
        ChangeType.STATUS_CHANGE,
        reason,
        user_id,
    )
    record_audit(
        "UPDATE",
        "TitleMovement",
        movement.id,
        user_id,
        changes={
            "movement_status": {"old": previous.value, "new": MovementStatus.RETURNED.value},
            "custody_of_title": {"old": previous_custody, "new": received_on_return},
        },
        details={
            "return_condition": condition.value,
            "documents_complete": True,
            "title_intact": True,
            "notes": notes,
        },
    )
    db.session.commit()
    logger.info("Title %s returned (%s)", movement.property_record.title_number, condition.value)
    return movement


def _movement_query(filters: dict[str, str]):
    query = TitleMovement.query.options(joinedload(TitleMovement.property_record)).join(
        Property, TitleMovement.property_id == Property.id
    )
    status = _clean(filters.get("status")).upper()
    if status == "ACTIVE":
        query = query.filter(TitleMovement.movement_status.in_(ACTIVE_MOVEMENT_STATUSES))
    elif status in MovementStatus.__members__:
        query = query.filter(TitleMovement.movement_status == MovementStatus[status])
    property_id = _clean(filters.get("property_id"))
    if property_id.isdigit():
        query = query.filter(TitleMovement.property_id == int(property_id))
    search = _clean(filters.get("search"))
    if search:
        like = f"%{search}%"
        query = query.filter(
            or_(
                TitleMovement.received_by_transmittal.ilike(like),
                TitleMovement.received_by_name.ilike(like),
                Property.title_number.ilike(like),
            )
        )
    return query.order_by(TitleMovement.date_released.desc(), TitleMovement.id.desc())


def list_movements(filters: dict[str, str], page: int = 1) -> dict[str, object]:
    return paginate_query(_movement_query(filters), page, 20)


def returnable_movements() -> list[TitleMovement]:
    return (
        TitleMovement.query.options(joinedload(TitleMovement.property_record))
        .filter(TitleMovement.movement_status.in_(ACTIVE_MOVEMENT_STATUSES))
        .order_by(TitleMovement.date_released.asc())
        .all()
    )


def movement_stats(now: datetime | None = None) -> dict[str, object]:
    now = now or utcnow()
    counts = dict(
        db.session.query(TitleMovement.movement_status, func.count(TitleMovement.id))
        .group_by(TitleMovement.movement_status)
        .all()
    )
    threshold = now - timedelta(days=current_app.config.get("UNRETURNED_TITLE_DAYS", 7))
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return {
        "by_status": {status.value: counts.get(status, 0) for status in MovementStatus},
        "active": sum(counts.get(status, 0) for status in ACTIVE_MOVEMENT_STATUSES),
        "overdue": TitleMovement.query.filter(TitleMovement.movement_status.in_(ACTIVE_MOVEMENT_STATUSES))
        .filter(TitleMovement.date_released < threshold)
        .count(),
        "returned_this_month": TitleMovement.query.filter(TitleMovement.movement_status == MovementStatus.RETURNED)
        .filter(TitleMovement.date_returned >= month_start)
        .count(),
    }


def movements_csv_bytes(filters: dict[str, str], export_limit: int = 5000) -> bytes:
    headers = [
        "transmittal",
        "title_number",
        "status",
        "date_released",
        "released_by",
        "purpose_of_release",
        "approved_by",
        "received_by_name",
        "turned_over_date",
        "received_by_person",
        "date_returned",
        "returned_by",
        "received_by_on_return",
        "return_condition",
    ]
    rows = []
    for movement in _movement_query(filters).limit(export_limit).all():
        rows.append(
            {
                "transmittal": movement.received_by_transmittal,
                "title_number": movement.property_record.title_number,
                "status": movement.movement_status.value,
                "date_released": stringify(movement.date_released),
                "released_by": movement.released_by,
                "purpose_of_release": movement.purpose_of_release,
                "approved_by": movement.approved_by,
                "received_by_name": movement.received_by_name,
                "turned_over_date": stringify(movement.turned_over_date) or "",
                "received_by_person": movement.received_by_person,
                "date_returned": stringify(movement.date_returned) or "",
                "returned_by": movement.returned_by,
                "received_by_on_return": movement.received_by_on_return,
                "return_condition": stringify(movement.return_condition) or "",
            }
        )
    return csv_bytes(headers, rows)


def transmittal_pdf(movement_id: int) -> bytes:
    movement = movement_by_id(movement_id)
    prop = movement.property_record
    lines = [
        "Title Transmittal",
        f"Transmittal No.: {movement.received_by_transmittal}",
        f"Title Number: {prop.title_number}",
        f"Lot: {prop.lot_number} ({prop.lot_area} sqm)",
        f"Location: {prop.location_label}",
        f"Registered Owner: {prop.registered_owner}",
        f"Date Released: {as_aware(movement.date_released).date().isoformat()}",
        f"Released By: {movement.released_by}",
        f"Approved By: {movement.approved_by or '-'}",
        f"Received By: {movement.received_by_name}",
        f"Purpose: {movement.purpose_of_release}",
        f"Status: {movement.movement_status.value}",
        "",
        "Received by signature: ______________________",
    ]
    return simple_pdf(lines)
