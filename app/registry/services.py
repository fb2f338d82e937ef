from __future__ import annotations

import csv
import logging
import unicodedata
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from io import StringIO
from typing import TypeVar

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.orm import joinedload

from app.core.errors import NotFoundError, ValidationError
from app.core.extensions import db
from app.core.models import (
    ACTIVE_MOVEMENT_STATUSES,
    ApprovalStatus,
    ApprovalWorkflow,
    AuditLog,
    ChangeHistory,
    ChangeType,
    MovementStatus,
    Property,
    PropertyClassification,
    PropertyDocument,
    PropertyStatus,
    RealPropertyTax,
    TaxStatus,
    TitleMovement,
    utcnow,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

LOT_AREA_MIN = Decimal("0.01")
LOT_AREA_MAX = Decimal("999999999.99")

# field -> (label, max length, required)
PROPERTY_TEXT_FIELDS: dict[str, tuple[str, int, bool]] = {
    "title_number": ("Title Number", 100, True),
    "lot_number": ("Lot Number", 100, True),
    "location": ("Location", 255, False),
    "barangay": ("Barangay", 100, True),
    "city": ("City", 100, True),
    "province": ("Province", 100, True),
    "zip_code": ("ZIP Code", 10, False),
    "description": ("Description", 2000, False),
    "registered_owner": ("Registered Owner", 200, True),
    "bank": ("Bank", 100, False),
    "custody_of_title": ("Custody of Title", 200, False),
    "encumbrance": ("Encumbrance", 2000, False),
    "mortgage_details": ("Mortgage Details", 2000, False),
    "borrower_mortgagor": ("Borrower/Mortgagor", 200, False),
    "tax_declaration": ("Tax Declaration", 100, False),
    "remarks": ("Remarks", 2000, False),
}

PROPERTY_FIELD_LABELS: dict[str, str] = {
    **{field: meta[0] for field, meta in PROPERTY_TEXT_FIELDS.items()},
    "lot_area": "Lot Area",
    "classification": "Classification",
    "status": "Status",
}

PROPERTY_SEARCH_COLUMNS = (
    Property.title_number,
    Property.registered_owner,
    Property.lot_number,
    Property.location,
    Property.barangay,
    Property.city,
    Property.province,
)


def _clean(value: object) -> str:
    return str(value or "").strip()


def _parse_iso_date(value: str | None, field_name: str) -> date:
    raw = _clean(value)
    if not raw:
        raise ValueError(f"{field_name} is required")
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid date format for {field_name}") from exc


def _parse_optional_iso_date(value: str | None, field_name: str = "date") -> date | None:
    raw = _clean(value)
    if not raw:
        return None
    return _parse_iso_date(raw, field_name)


def _parse_decimal(value: str | None, field_name: str) -> Decimal:
    raw = _clean(value).replace(",", "")
    if not raw:
        raise ValueError(f"{field_name} is required")
    try:
        return Decimal(raw).quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount for {field_name}") from exc


def _parse_optional_decimal(value: str | None, field_name: str) -> Decimal | None:
    raw = _clean(value)
    if not raw:
        return None
    return _parse_decimal(raw, field_name)


def _parse_int(value: str | None, field_name: str) -> int:
    raw = _clean(value)
    if not raw:
        raise ValueError(f"{field_name} is required")
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{field_name} must be a whole number") from exc


def _parse_enum(enum_cls: type[E], value: str | None, field_name: str, default: E | None = None) -> E:
    raw = _clean(value).upper()
    if not raw and default is not None:
        return default
    try:
        return enum_cls[raw]
    except KeyError as exc:
        raise ValueError(f"Invalid {field_name}") from exc


def _parse_bool(value: str | None) -> bool:
    return _clean(value).lower() in {"1", "true", "on", "yes"}


def stringify(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return f"{value.quantize(Decimal('0.01'))}"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min).replace(tzinfo=timezone.utc)
    end = datetime.combine(day, time.max).replace(tzinfo=timezone.utc)
    return start, end


def as_aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def record_change(
    property_id: int,
    field_name: str,
    old_value: object,
    new_value: object,
    change_type: ChangeType,
    reason: str,
    user_id: int | None,
) -> ChangeHistory:
    entry = ChangeHistory(
        property_id=property_id,
        field_name=field_name,
        old_value=stringify(old_value),
        new_value=stringify(new_value),
        change_type=change_type,
        reason=reason[:500],
        changed_by_id=user_id,
    )
    db.session.add(entry)
    return entry


def record_audit(
    action: str,
    entity_type: str,
    entity_id: int | None,
    user_id: int | None,
    changes: dict | None = None,
    details: dict | None = None,
) -> AuditLog:
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        changes=changes or {},
        details=details or {},
    )
    db.session.add(entry)
    return entry


def paginate_query(query, page: int, page_size: int | None = None) -> dict[str, object]:
    size = page_size or current_app.config.get("ITEMS_PER_PAGE", 10)
    safe_page = page if page and page > 0 else 1
    safe_size = max(1, min(size, 100))
    total = query.order_by(None).count()
    rows = query.offset((safe_page - 1) * safe_size).limit(safe_size).all()
    return {
        "rows": rows,
        "page": safe_page,
        "page_size": safe_size,
        "total": total,
        "pages": max(1, (total + safe_size - 1) // safe_size),
    }


def csv_bytes(headers: list[str], rows: list[dict[str, object]]) -> bytes:
    stream = StringIO()
    writer = csv.DictWriter(stream, fieldnames=headers)
    writer.writeheader()
    for row in rows:
        writer.writerow({key: row.get(key, "") for key in headers})
    return stream.getvalue().encode("utf-8")


PDF_LINES_PER_PAGE = 48
# letters with a stroke have no NFKD decomposition
_PDF_FOLD = str.maketrans({"Đ": "D", "đ": "d", "Ł": "L", "ł": "l", "Ħ": "H", "ħ": "h", "ı": "i"})


def _pdf_text(value: str) -> bytes:
    """Encode a line for a WinAnsi Type1 font, folding accents it cannot show."""
    encoded = bytearray()
    for char in value.translate(_PDF_FOLD):
        try:
            encoded += char.encode("cp1252")
        except UnicodeEncodeError:
            base = "".join(c for c in unicodedata.normalize("NFKD", char) if not unicodedata.combining(c))
            encoded += base.encode("cp1252", errors="replace")
    return bytes(encoded).replace(b"\\", b"\\\\").replace(b"(", b"\\(").replace(b")", b"\\)")


def _pdf_page_stream(lines: list[str]) -> bytes:
    body = b"".join(b"(" + _pdf_text(line) + b") Tj T*\n" for line in lines)
    return b"BT\n/F1 12 Tf\n16 TL\n50 800 Td\n" + body + b"ET"


def simple_pdf(lines: list[str]) -> bytes:
    pages = [lines[i : i + PDF_LINES_PER_PAGE] for i in range(0, len(lines), PDF_LINES_PER_PAGE)] or [[]]
    # 1 catalog, 2 page tree, 3 font, then a page object and its content stream per page
    page_refs = [3 + 2 * n + 1 for n in range(len(pages))]
    objects: list[bytes] = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [%s] /Count %d >>"
        % (b" ".join(b"%d 0 R" % ref for ref in page_refs), len(pages)),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica /Encoding /WinAnsiEncoding >>",
    ]
    for ref, page_lines in zip(page_refs, pages):
        stream = _pdf_page_stream(page_lines)
        objects.append(
            b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 595 842] "
            b"/Resources << /Font << /F1 3 0 R >> >> /Contents %d 0 R >>" % (ref + 1)
        )
        objects.append(b"<< /Length %d >>\nstream\n%s\nendstream" % (len(stream), stream))

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n%s\nendobj\n" % (number, body)
    xref_at = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    out += b"".join(b"%010d 00000 n \n" % offset for offset in offsets)
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF" % (len(objects) + 1, xref_at)
    return bytes(out)


def parse_property_payload(payload: dict[str, str], current: Property | None = None) -> dict[str, object]:
    errors: dict[str, str] = {}
    values: dict[str, object] = {}
    for field, (label, max_length, required) in PROPERTY_TEXT_FIELDS.items():
        raw = _clean(payload.get(field))
        if required and not raw:
            errors[field] = f"{label} is required"
        elif len(raw) > max_length:
            errors[field] = f"{label} must be at most {max_length} characters"
        values[field] = raw

    try:
        lot_area = _parse_decimal(payload.get("lot_area"), "Lot Area")
        if lot_area < LOT_AREA_MIN or lot_area > LOT_AREA_MAX:
            errors["lot_area"] = "Lot Area must be between 0.01 and 999,999,999.99"
        values["lot_area"] = lot_area
    except ValueError as exc:
        errors["lot_area"] = str(exc)

    try:
        values["classification"] = _parse_enum(
            PropertyClassification, payload.get("classification"), "classification"
        )
    except ValueError as exc:
        errors["classification"] = str(exc)

    try:
        default_status = current.status if current else PropertyStatus.ACTIVE
        values["status"] = _parse_enum(PropertyStatus, payload.get("status"), "status", default_status)
    except ValueError as exc:
        errors["status"] = str(exc)

    if errors:
        raise ValidationError(errors)
    return values


def ensure_unique_title_number(title_number: str, exclude_id: int | None = None) -> None:
    query = Property.query.filter(func.lower(Property.title_number) == title_number.lower())
    if exclude_id is not None:
        query = query.filter(Property.id != exclude_id)
    if query.first():
        raise ValidationError(
            {"title_number": f"A property with title number {title_number} already exists"}
        )


def property_by_id(property_id: int, include_deleted: bool = False) -> Property:
    query = Property.query.filter_by(id=property_id)
    if not include_deleted:
        query = query.filter_by(is_deleted=False)
    prop = query.first()
    if not prop:
        raise NotFoundError("Property not found")
    return prop


def create_property(payload: dict[str, str], user_id: int | None) -> Property:
    values = parse_property_payload(payload)
    ensure_unique_title_number(values["title_number"])
    prop = Property(**values, created_by_id=user_id, updated_by_id=user_id)
    db.session.add(prop)
    db.session.flush()
    record_change(
        prop.id,
        "property",
        None,
        prop.title_number,
        ChangeType.CREATE,
        "New property record created",
        user_id,
    )
    db.session.commit()
    logger.info("Property %s created by user %s", prop.title_number, user_id)
    return prop


def changed_property_fields(prop: Property, values: dict[str, object]) -> dict[str, tuple[object, object]]:
    changes: dict[str, tuple[object, object]] = {}
    for field, new_value in values.items():
        old_value = getattr(prop, field)
        if field == "lot_area":
            if Decimal(old_value or 0) != Decimal(new_value or 0):
                changes[field] = (old_value, new_value)
        elif stringify(old_value) != stringify(new_value):
            changes[field] = (old_value, new_value)
    return changes


def update_property(property_id: int, payload: dict[str, str], user_id: int | None) -> Property:
    prop = property_by_id(property_id)
    values = parse_property_payload(payload, current=prop)
    changes = changed_property_fields(prop, values)
    if not changes:
        raise ValueError("No changes detected")
    if "title_number" in changes:
        ensure_unique_title_number(values["title_number"], exclude_id=prop.id)
    reason = _clean(payload.get("reason")) or "Direct property update"
    for field, (old_value, new_value) in changes.items():
        setattr(prop, field, new_value)
        change_type = ChangeType.STATUS_CHANGE if field == "status" else ChangeType.UPDATE
        record_change(prop.id, field, old_value, new_value, change_type, reason, user_id)
    prop.updated_by_id = user_id
    db.session.commit()
    logger.info("Property %s updated (%s)", prop.title_number, ", ".join(sorted(changes)))
    return prop


def active_movement_for_property(property_id: int) -> TitleMovement | None:
    return (
        TitleMovement.query.filter_by(property_id=property_id)
        .filter(TitleMovement.movement_status.in_(ACTIVE_MOVEMENT_STATUSES))
        .first()
    )


def delete_property(property_id: int, user_id: int | None) -> Property:
    prop = property_by_id(property_id)
    active = active_movement_for_property(prop.id)
    if active:
        raise ValueError(
            f"Cannot delete property while its title is out ({active.movement_status.value})"
        )
    prop.is_deleted = True
    prop.deleted_at = utcnow()
    prop.updated_by_id = user_id
    record_change(prop.id, "property", prop.title_number, None, ChangeType.DELETE, "Property deleted", user_id)
    db.session.commit()
    logger.info("Property %s soft-deleted by user %s", prop.title_number, user_id)
    return prop


def _property_query(filters: dict[str, str]):
    query = Property.query.filter_by(is_deleted=False)
    search = _clean(filters.get("search"))
    if search:
        like = f"%{search}%"
        query = query.filter(or_(*(column.ilike(like) for column in PROPERTY_SEARCH_COLUMNS)))
    classification = _clean(filters.get("classification")).upper()
    if classification in PropertyClassification.__members__:
        query = query.filter(Property.classification == PropertyClassification[classification])
    status = _clean(filters.get("status")).upper()
    if status in PropertyStatus.__members__:
        query = query.filter(Property.status == PropertyStatus[status])
    return query.order_by(Property.created_at.desc(), Property.id.desc())


def list_properties(filters: dict[str, str], page: int = 1) -> dict[str, object]:
    return paginate_query(_property_query(filters), page)


def property_detail(property_id: int) -> dict[str, object]:
    prop = property_by_id(property_id)
    documents = (
        PropertyDocument.query.filter_by(property_id=prop.id, is_active=True)
        .order_by(PropertyDocument.uploaded_at.desc())
        .all()
    )
    workflows = (
        ApprovalWorkflow.query.options(joinedload(ApprovalWorkflow.initiated_by))
        .filter_by(property_id=prop.id)
        .order_by(ApprovalWorkflow.created_at.desc())
        .all()
    )
    history = (
        ChangeHistory.query.options(joinedload(ChangeHistory.changed_by))
        .filter_by(property_id=prop.id)
        .order_by(ChangeHistory.changed_at.desc(), ChangeHistory.id.desc())
        .limit(50)
        .all()
    )
    return {
        "property": prop,
        "taxes": list(prop.taxes),
        "movements": list(prop.movements),
        "documents": documents,
        "workflows": workflows,
        "history": history,
        "active_movement": active_movement_for_property(prop.id),
        "counts": {
            "taxes": len(prop.taxes),
            "unpaid_taxes": sum(1 for tax in prop.taxes if not tax.is_paid),
            "movements": len(prop.movements),
            "documents": len(documents),
            "pending_workflows": sum(1 for wf in workflows if wf.status == ApprovalStatus.PENDING),
        },
    }


def properties_csv_bytes(filters: dict[str, str], export_limit: int = 5000) -> bytes:
    headers = [
        "title_number",
        "lot_number",
        "lot_area",
        "location",
        "barangay",
        "city",
        "province",
        "classification",
        "status",
        "registered_owner",
        "custody_of_title",
        "bank",
        "tax_declaration",
    ]
    rows = [
        {header: stringify(getattr(prop, header)) or "" for header in headers}
        for prop in _property_query(filters).limit(export_limit).all()
    ]
    return csv_bytes(headers, rows)


def property_change_history(property_id: int) -> list[ChangeHistory]:
    prop = property_by_id(property_id, include_deleted=True)
    return (
        ChangeHistory.query.options(joinedload(ChangeHistory.changed_by))
        .filter_by(property_id=prop.id)
        .order_by(ChangeHistory.changed_at.desc(), ChangeHistory.id.desc())
        .all()
    )


def list_change_history(filters: dict[str, str], page: int = 1) -> dict[str, object]:
    query = ChangeHistory.query.options(
        joinedload(ChangeHistory.property_record),
        joinedload(ChangeHistory.changed_by),
    )
    property_id = _clean(filters.get("property_id"))
    if property_id.isdigit():
        query = query.filter(ChangeHistory.property_id == int(property_id))
    field_name = _clean(filters.get("field_name"))
    if field_name:
        query = query.filter(ChangeHistory.field_name.ilike(f"%{field_name}%"))
    change_type = _clean(filters.get("change_type")).upper()
    if change_type in ChangeType.__members__:
        query = query.filter(ChangeHistory.change_type == ChangeType[change_type])
    date_from = _parse_optional_iso_date(filters.get("date_from"), "date from")
    if date_from:
        query = query.filter(ChangeHistory.changed_at >= day_bounds(date_from)[0])
    date_to = _parse_optional_iso_date(filters.get("date_to"), "date to")
    if date_to:
        query = query.filter(ChangeHistory.changed_at <= day_bounds(date_to)[1])
    query = query.order_by(ChangeHistory.changed_at.desc(), ChangeHistory.id.desc())
    return paginate_query(query, page, 20)


def change_history_stats(today: date | None = None) -> dict[str, object]:
    today = today or date.today()
    start, end = day_bounds(today)
    by_type = dict(
        db.session.query(ChangeHistory.change_type, func.count(ChangeHistory.id))
        .group_by(ChangeHistory.change_type)
        .all()
    )
    return {
        "total": ChangeHistory.query.count(),
        "today": ChangeHistory.query.filter(ChangeHistory.changed_at.between(start, end)).count(),
        "by_type": {change_type.value: by_type.get(change_type, 0) for change_type in ChangeType},
    }


def list_audit_logs(filters: dict[str, str], page: int = 1) -> dict[str, object]:
    query = AuditLog.query.options(joinedload(AuditLog.user))
    entity_type = _clean(filters.get("entity_type"))
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    action = _clean(filters.get("action")).upper()
    if action:
        query = query.filter(AuditLog.action == action)
    return paginate_query(query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()), page, 20)


def dashboard_stats() -> dict[str, object]:
    from app.registry.taxes import tax_summary

    live = Property.query.filter_by(is_deleted=False)
    by_status = dict(
        db.session.query(Property.status, func.count(Property.id))
        .filter(Property.is_deleted.is_(False))
        .group_by(Property.status)
        .all()
    )
    by_classification = dict(
        db.session.query(Property.classification, func.count(Property.id))
        .filter(Property.is_deleted.is_(False))
        .group_by(Property.classification)
        .all()
    )
    recent_changes = (
        ChangeHistory.query.options(
            joinedload(ChangeHistory.property_record),
            joinedload(ChangeHistory.changed_by),
        )
        .order_by(ChangeHistory.changed_at.desc(), ChangeHistory.id.desc())
        .limit(10)
        .all()
    )
    return {
        "properties": {
            "total": live.count(),
            "by_status": {status.value: by_status.get(status, 0) for status in PropertyStatus},
            "by_classification": {
                classification.value: by_classification.get(classification, 0)
                for classification in PropertyClassification
            },
        },
        "taxes": tax_summary(),
        "pending_approvals": ApprovalWorkflow.query.filter_by(status=ApprovalStatus.PENDING).count(),
        "active_movements": TitleMovement.query.filter(
            TitleMovement.movement_status.in_(ACTIVE_MOVEMENT_STATUSES)
        ).count(),
        "lost_titles": TitleMovement.query.filter_by(movement_status=MovementStatus.LOST).count(),
        "documents": PropertyDocument.query.filter_by(is_active=True).count(),
        "recent_changes": recent_changes,
    }


def search_records(query_text: str, limit: int = 10) -> dict[str, list]:
    term = _clean(query_text)
    if len(term) < 2:
        return {"properties": [], "taxes": [], "movements": [], "documents": []}
    like = f"%{term}%"
    properties = (
        Property.query.filter_by(is_deleted=False)
        .filter(or_(*(column.ilike(like) for column in PROPERTY_SEARCH_COLUMNS)))
        .order_by(Property.title_number.asc())
        .limit(limit)
        .all()
    )
    taxes = (
        RealPropertyTax.query.join(Property, RealPropertyTax.property_id == Property.id)
        .filter(Property.is_deleted.is_(False))
        .filter(
            or_(
                Property.title_number.ilike(like),
                RealPropertyTax.official_receipt_number.ilike(like),
            )
        )
        .order_by(RealPropertyTax.tax_year.desc())
        .limit(limit)
        .all()
    )
    movements = (
        TitleMovement.query.filter(
            or_(
                TitleMovement.received_by_transmittal.ilike(like),
                TitleMovement.received_by_name.ilike(like),
                TitleMovement.purpose_of_release.ilike(like),
            )
        )
        .order_by(TitleMovement.date_released.desc())
        .limit(limit)
        .all()
    )
    documents = (
        PropertyDocument.query.filter_by(is_active=True)
        .filter(PropertyDocument.file_name.ilike(like))
        .order_by(PropertyDocument.uploaded_at.desc())
        .limit(limit)
        .all()
    )
    return {"properties": properties, "taxes": taxes, "movements": movements, "documents": documents}


def overdue_taxes_query(today: date | None = None):
    today = today or date.today()
    return (
        RealPropertyTax.query.join(Property, RealPropertyTax.property_id == Property.id)
        .filter(Property.is_deleted.is_(False))
        .filter(RealPropertyTax.is_paid.is_(False))
        .filter(RealPropertyTax.status.notin_([TaxStatus.WAIVED, TaxStatus.EXEMPTED]))
        .filter(RealPropertyTax.due_date < today)
    )
