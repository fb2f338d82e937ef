from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import joinedload

from app.core.errors import NotFoundError, ValidationError
from app.core.extensions import db
from app.core.models import ChangeType, PaymentMethod, Property, RealPropertyTax, TaxStatus
from app.registry.services import (
    _clean,
    _parse_decimal,
    _parse_enum,
    _parse_int,
    _parse_iso_date,
    _parse_optional_decimal,
    _parse_optional_iso_date,
    csv_bytes,
    overdue_taxes_query,
    paginate_query,
    property_by_id,
    record_audit,
    record_change,
    stringify,
)

logger = logging.getLogger(__name__)

OPEN_TAX_STATUSES = (TaxStatus.PENDING, TaxStatus.DUE)
PAYMENT_STATUSES = (TaxStatus.PAID, TaxStatus.PARTIALLY_PAID)
EDITABLE_TAX_FIELDS = ("tax_year", "tax_quarter", "tax_amount", "due_date", "period_from", "period_to", "status", "notes")


def tax_by_id(tax_id: int) -> RealPropertyTax:
    tax = RealPropertyTax.query.options(joinedload(RealPropertyTax.property_record)).filter_by(id=tax_id).first()
    if not tax:
        raise NotFoundError("Tax record not found")
    return tax


def _tax_period_label(year: int, quarter: int | None) -> str:
    return f"{year} Q{quarter}" if quarter else f"{year} (Annual)"


def parse_tax_payload(payload: dict[str, str], today: date | None = None) -> dict[str, object]:
    today = today or date.today()
    errors: dict[str, str] = {}
    values: dict[str, object] = {}

    try:
        year = _parse_int(payload.get("tax_year"), "Tax year")
        if year < 1900 or year > today.year + 1:
            errors["tax_year"] = f"Tax year must be between 1900 and {today.year + 1}"
        values["tax_year"] = year
    except ValueError as exc:
        errors["tax_year"] = str(exc)

    quarter_raw = _clean(payload.get("tax_quarter"))
    values["tax_quarter"] = None
    if quarter_raw:
        if quarter_raw not in {"1", "2", "3", "4"}:
            errors["tax_quarter"] = "Tax quarter must be 1-4 or blank for annual"
        else:
            values["tax_quarter"] = int(quarter_raw)

    try:
        amount = _parse_decimal(payload.get("tax_amount"), "Tax amount")
        if amount < 0:
            errors["tax_amount"] = "Tax amount cannot be negative"
        values["tax_amount"] = amount
    except ValueError as exc:
        errors["tax_amount"] = str(exc)

    try:
        values["due_date"] = _parse_iso_date(payload.get("due_date"), "Due date")
    except ValueError as exc:
        errors["due_date"] = str(exc)

    try:
        values["period_from"] = _parse_optional_iso_date(payload.get("period_from"), "Period from")
        values["period_to"] = _parse_optional_iso_date(payload.get("period_to"), "Period to")
        if values["period_from"] and values["period_to"] and values["period_to"] < values["period_from"]:
            errors["period_to"] = "Period end must be on or after period start"
    except ValueError as exc:
        errors["period_from"] = str(exc)

    try:
        status = _parse_enum(TaxStatus, payload.get("status"), "tax status", TaxStatus.PENDING)
        if status in PAYMENT_STATUSES:
            errors["status"] = "Use the payment form to record payments"
        values["status"] = status
    except ValueError as exc:
        errors["status"] = str(exc)

    values["notes"] = _clean(payload.get("notes"))[:2000]
    if errors:
        raise ValidationError(errors)
    return values


def _ensure_unique_period(property_id: int, year: int, quarter: int | None, exclude_id: int | None = None) -> None:
    query = RealPropertyTax.query.filter_by(property_id=property_id, tax_year=year, tax_quarter=quarter)
    if exclude_id is not None:
        query = query.filter(RealPropertyTax.id != exclude_id)
    if query.first():
        raise ValidationError(
            {"tax_quarter": f"Tax record already exists for {_tax_period_label(year, quarter)}"}
        )


def create_tax(property_id: int, payload: dict[str, str], user_id: int | None) -> RealPropertyTax:
    prop = property_by_id(property_id)
    values = parse_tax_payload(payload)
    _ensure_unique_period(prop.id, values["tax_year"], values["tax_quarter"])
    tax = RealPropertyTax(property_id=prop.id, recorded_by_id=user_id, **values)
    db.session.add(tax)
    db.session.flush()
    record_change(
        prop.id,
        "realPropertyTax",
        None,
        f"{tax.period_label}: {tax.tax_amount}",
        ChangeType.CREATE,
        "Tax record created",
        user_id,
    )
    db.session.commit()
    logger.info("Tax %s created for property %s", tax.period_label, prop.title_number)
    return tax


def update_tax(tax_id: int, payload: dict[str, str], user_id: int | None) -> RealPropertyTax:
    tax = tax_by_id(tax_id)
    if tax.is_paid or tax.amount_paid:
        raise ValueError("Tax records with recorded payments cannot be edited")
    values = parse_tax_payload(payload)
    _ensure_unique_period(tax.property_id, values["tax_year"], values["tax_quarter"], exclude_id=tax.id)

    changed = False
    for field in EDITABLE_TAX_FIELDS:
        old_value = getattr(tax, field)
        new_value = values[field]
        if stringify(old_value) == stringify(new_value):
            continue
        changed = True
        setattr(tax, field, new_value)
        if field != "status":
            record_change(
                tax.property_id,
                f"realPropertyTax.{field}",
                old_value,
                new_value,
                ChangeType.UPDATE,
                f"Tax {tax.period_label} updated",
                user_id,
            )
    if not changed:
        raise ValueError("No changes detected")
    db.session.commit()
    return tax


def mark_tax_paid(tax_id: int, payload: dict[str, str], user_id: int | None) -> RealPropertyTax:
    tax = tax_by_id(tax_id)
    if tax.is_paid:
        raise ValueError("This tax has already been paid")
    if tax.status in (TaxStatus.WAIVED, TaxStatus.EXEMPTED):
        raise ValueError(f"Cannot record payment for a {tax.status.value.lower()} tax")

    errors: dict[str, str] = {}
    amount = Decimal("0.00")
    try:
        amount = _parse_decimal(payload.get("amount_paid"), "Amount paid")
        if amount <= 0:
            errors["amount_paid"] = "Amount paid must be greater than zero"
    except ValueError as exc:
        errors["amount_paid"] = str(exc)
    payment_date = None
    try:
        payment_date = _parse_iso_date(payload.get("payment_date"), "Payment date")
    except ValueError as exc:
        errors["payment_date"] = str(exc)
    receipt = _clean(payload.get("official_receipt_number"))
    if not receipt:
        errors["official_receipt_number"] = "Official receipt number is required"
    elif len(receipt) > 100:
        errors["official_receipt_number"] = "Official receipt number must be at most 100 characters"
    method = None
    try:
        method = _parse_enum(PaymentMethod, payload.get("payment_method"), "payment method")
    except ValueError as exc:
        errors["payment_method"] = str(exc)
    adjustments: dict[str, Decimal] = {}
    for field in ("discount", "penalty", "interest"):
        try:
            value = _parse_optional_decimal(payload.get(field), field.title())
        except ValueError as exc:
            errors[field] = str(exc)
            continue
        if value is not None and value < 0:
            errors[field] = f"{field.title()} cannot be negative"
        adjustments[field] = value if value is not None else Decimal(getattr(tax, field) or 0)
    if errors:
        raise ValidationError(errors)

    previous_paid = Decimal(tax.amount_paid or 0)
    for field, value in adjustments.items():
        setattr(tax, field, value)
    tax.amount_paid = (previous_paid + amount).quantize(Decimal("0.01"))
    tax.payment_date = payment_date
    tax.official_receipt_number = receipt
    tax.payment_method = method
    tax.recorded_by_id = user_id
    if tax.amount_paid >= tax.total_due:
        tax.status = TaxStatus.PAID
        tax.is_paid = True
    else:
        tax.status = TaxStatus.PARTIALLY_PAID
        tax.is_paid = False
    notes = _clean(payload.get("notes"))
    if notes:
        tax.notes = f"{tax.notes}\n{notes}".strip()[:2000]

    record_change(
        tax.property_id,
        "realPropertyTax.amountPaid",
        previous_paid if previous_paid else None,
        tax.amount_paid,
        ChangeType.UPDATE,
        f"Payment recorded for {tax.period_label} (OR {receipt})",
        user_id,
    )
    record_audit(
        "PAYMENT",
        "RealPropertyTax",
        tax.id,
        user_id,
        changes={"amount_paid": str(tax.amount_paid), "status": tax.status.value},
        details={"official_receipt_number": receipt, "payment_method": method.value},
    )
    db.session.commit()
    logger.info("Payment %s recorded on tax %s (%s)", amount, tax.id, tax.status.value)
    return tax


def delete_tax(tax_id: int, user_id: int | None) -> None:
    tax = tax_by_id(tax_id)
    if tax.is_paid or tax.amount_paid:
        raise ValueError("Tax records with recorded payments cannot be deleted")
    record_change(
        tax.property_id,
        "realPropertyTax",
        f"{tax.period_label}: {tax.tax_amount}",
        None,
        ChangeType.DELETE,
        "Tax record deleted",
        user_id,
    )
    db.session.delete(tax)
    db.session.commit()


def _tax_query(filters: dict[str, str]):
    query = (
        RealPropertyTax.query.options(joinedload(RealPropertyTax.property_record))
        .join(Property, RealPropertyTax.property_id == Property.id)
        .filter(Property.is_deleted.is_(False))
    )
    status = _clean(filters.get("status")).upper()
    if status in TaxStatus.__members__:
        query = query.filter(RealPropertyTax.status == TaxStatus[status])
    year = _clean(filters.get("year"))
    if year.isdigit():
        query = query.filter(RealPropertyTax.tax_year == int(year))
    property_id = _clean(filters.get("property_id"))
    if property_id.isdigit():
        query = query.filter(RealPropertyTax.property_id == int(property_id))
    search = _clean(filters.get("search"))
    if search:
        query = query.filter(Property.title_number.ilike(f"%{search}%"))
    return query


def list_taxes(filters: dict[str, str], page: int = 1) -> dict[str, object]:
    query = _tax_query(filters).order_by(RealPropertyTax.due_date.desc(), RealPropertyTax.id.desc())
    return paginate_query(query, page, 20)


def payment_history(filters: dict[str, str], page: int = 1) -> dict[str, object]:
    query = (
        _tax_query(filters)
        .filter(RealPropertyTax.amount_paid.isnot(None))
        .order_by(RealPropertyTax.payment_date.desc(), RealPropertyTax.id.desc())
    )
    return paginate_query(query, page, 20)


def tax_summary(today: date | None = None) -> dict[str, object]:
    base = (
        db.session.query(RealPropertyTax)
        .join(Property, RealPropertyTax.property_id == Property.id)
        .filter(Property.is_deleted.is_(False))
    )
    total = base.count()
    paid = base.filter(RealPropertyTax.is_paid.is_(True)).count()
    total_amount = base.with_entities(func.coalesce(func.sum(RealPropertyTax.tax_amount), 0)).scalar()
    total_paid = base.with_entities(func.coalesce(func.sum(RealPropertyTax.amount_paid), 0)).scalar()
    unpaid_amount = (
        base.filter(RealPropertyTax.is_paid.is_(False))
        .filter(RealPropertyTax.status.notin_([TaxStatus.WAIVED, TaxStatus.EXEMPTED]))
        .with_entities(func.coalesce(func.sum(RealPropertyTax.tax_amount), 0))
        .scalar()
    )
    return {
        "total": total,
        "paid": paid,
        "unpaid": total - paid,
        "overdue": overdue_taxes_query(today).count(),
        "total_amount": Decimal(total_amount or 0).quantize(Decimal("0.01")),
        "total_paid": Decimal(total_paid or 0).quantize(Decimal("0.01")),
        "unpaid_amount": Decimal(unpaid_amount or 0).quantize(Decimal("0.01")),
    }


def mark_overdue_taxes(today: date | None = None) -> int:
    taxes = overdue_taxes_query(today).filter(RealPropertyTax.status.in_(OPEN_TAX_STATUSES)).all()
    for tax in taxes:
        tax.status = TaxStatus.OVERDUE
    db.session.commit()
    if taxes:
        logger.info("Marked %s tax record(s) as overdue", len(taxes))
    return len(taxes)


def taxes_csv_bytes(filters: dict[str, str], export_limit: int = 5000) -> bytes:
    headers = [
        "title_number",
        "period",
        "tax_amount",
        "due_date",
        "status",
        "amount_paid",
        "payment_date",
        "official_receipt_number",
        "payment_method",
    ]
    rows = []
    query = _tax_query(filters).order_by(RealPropertyTax.due_date.desc()).limit(export_limit)
    for tax in query.all():
        rows.append(
            {
                "title_number": tax.property_record.title_number,
                "period": tax.period_label,
                "tax_amount": stringify(tax.tax_amount),
                "due_date": stringify(tax.due_date),
                "status": tax.status.value,
                "amount_paid": stringify(tax.amount_paid) or "",
                "payment_date": stringify(tax.payment_date) or "",
                "official_receipt_number": tax.official_receipt_number or "",
                "payment_method": stringify(tax.payment_method) or "",
            }
        )
    return csv_bytes(headers, rows)
