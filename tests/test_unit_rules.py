from __future__ import annotations

from datetime import date
from decimal import Decimal
from io import BytesIO

import pytest
from werkzeug.datastructures import FileStorage
from werkzeug.security import check_password_hash

from app.admin.services import (
    create_role,
    create_user,
    deactivate_user,
    delete_role,
    update_profile,
    update_user,
)
from app.core.errors import NotFoundError, ValidationError
from app.core.extensions import db
from app.core.models import (
    AuditLog,
    ChangeHistory,
    ChangeType,
    DocumentType,
    PropertyStatus,
    RealPropertyTax,
    Role,
    TaxStatus,
)
from app.registry.documents import (
    add_property_document,
    delete_property_document,
    detect_document_type,
    document_by_id,
    document_download,
    document_stats,
)
from app.registry.services import (
    create_property,
    delete_property,
    list_properties,
    parse_property_payload,
    property_by_id,
    properties_csv_bytes,
    search_records,
    simple_pdf,
    update_property,
)
from app.registry.taxes import (
    create_tax,
    delete_tax,
    mark_overdue_taxes,
    mark_tax_paid,
    tax_summary,
    update_tax,
)


def _property_payload(**overrides) -> dict[str, str]:
    payload = {
        "title_number": "TCT-900-2024",
        "lot_number": "LOT-9",
        "lot_area": "450.75",
        "location": "88 Ayala Avenue",
        "barangay": "Bel-Air",
        "city": "Makati",
        "province": "Metro Manila",
        "registered_owner": "Test Holdings Inc.",
        "classification": "COMMERCIAL",
    }
    payload.update(overrides)
    return payload


def _pay(tax_id: int, amount: str, receipt: str = "OR-100", **extra):
    payload = {
        "amount_paid": amount,
        "payment_date": date.today().isoformat(),
        "official_receipt_number": receipt,
        "payment_method": "CASH",
    }
    payload.update(extra)
    return mark_tax_paid(tax_id, payload, None)


def _current_quarter_tax(properties) -> RealPropertyTax:
    return RealPropertyTax.query.filter_by(
        property_id=properties["TCT-001-2020"].id,
        tax_year=date.today().year,
        tax_quarter=1,
    ).one()


def test_create_property_records_creation_history(app, users):
    prop = create_property(_property_payload(), users["manager"].id)

    assert prop.status == PropertyStatus.ACTIVE
    assert prop.lot_area == Decimal("450.75")
    entry = ChangeHistory.query.filter_by(property_id=prop.id).one()
    assert entry.change_type == ChangeType.CREATE
    assert entry.new_value == "TCT-900-2024"
    assert entry.changed_by_id == users["manager"].id


def test_title_number_is_unique_ignoring_case(app):
    with pytest.raises(ValidationError) as exc:
        create_property(_property_payload(title_number="tct-001-2020"), None)
    assert "title_number" in exc.value.fields


def test_property_payload_reports_every_invalid_field(app):
    with pytest.raises(ValidationError) as exc:
        parse_property_payload({"lot_area": "0", "classification": "CASTLE", "zip_code": "12345678901"})
    fields = exc.value.fields
    for field in ("title_number", "lot_number", "barangay", "city", "province", "registered_owner"):
        assert field in fields
    assert fields["lot_area"].startswith("Lot Area must be between")
    assert fields["classification"] == "Invalid classification"
    assert "zip_code" in fields


def test_update_property_writes_one_history_row_per_field(app, properties, users):
    prop = properties["TCT-002-2021"]
    payload = _property_payload(
        title_number=prop.title_number,
        lot_number=prop.lot_number,
        lot_area=str(prop.lot_area),
        location=prop.location,
        barangay=prop.barangay,
        city=prop.city,
        province=prop.province,
        registered_owner=prop.registered_owner,
        classification=prop.classification.value,
        zip_code=prop.zip_code,
        bank=prop.bank,
        custody_of_title=prop.custody_of_title,
        encumbrance=prop.encumbrance,
        mortgage_details=prop.mortgage_details,
        borrower_mortgagor=prop.borrower_mortgagor,
        tax_declaration=prop.tax_declaration,
        status="ACTIVE",
        remarks="Loan fully paid",
    )
    update_property(prop.id, payload, users["admin"].id)

    rows = ChangeHistory.query.filter_by(property_id=prop.id).filter(
        ChangeHistory.field_name.in_(["status", "remarks"])
    ).all()
    by_field = {row.field_name: row for row in rows}
    assert by_field["status"].change_type == ChangeType.STATUS_CHANGE
    assert by_field["status"].old_value == "COLLATERAL"
    assert by_field["status"].new_value == "ACTIVE"
    assert by_field["remarks"].change_type == ChangeType.UPDATE

    with pytest.raises(ValueError, match="No changes detected"):
        update_property(prop.id, payload, users["admin"].id)


def test_delete_property_is_blocked_while_title_is_out(app, properties):
    with pytest.raises(ValueError, match="title is out"):
        delete_property(properties["OCT-310-1998"].id, None)


def test_delete_property_is_soft_and_hides_the_record(app, properties, users):
    prop_id = properties["TCT-002-2021"].id
    delete_property(prop_id, users["admin"].id)

    with pytest.raises(NotFoundError):
        property_by_id(prop_id)
    assert property_by_id(prop_id, include_deleted=True).is_deleted is True
    titles = [row.title_number for row in list_properties({})["rows"]]
    assert "TCT-002-2021" not in titles
    assert ChangeHistory.query.filter_by(property_id=prop_id, change_type=ChangeType.DELETE).count() == 1


def test_list_properties_filters_and_csv_export(app):
    data = list_properties({"classification": "agricultural"})
    assert [prop.title_number for prop in data["rows"]] == ["OCT-310-1998"]
    assert data["total"] == 1

    content = properties_csv_bytes({"search": "Santa Rosa"}).decode("utf-8").splitlines()
    assert content[0].startswith("title_number,lot_number,lot_area")
    assert len(content) == 2
    assert "TCT-002-2021" in content[1]


def test_search_requires_two_characters(app):
    assert search_records("T")["properties"] == []
    results = search_records("tct-00")
    assert {prop.title_number for prop in results["properties"]} == {"TCT-001-2020", "TCT-002-2021"}
    assert search_records("TM-")["movements"]


def test_tax_period_must_be_unique_including_annual(app, properties):
    prop = properties["TCT-001-2020"]
    this_year = date.today().year
    with pytest.raises(ValidationError) as exc:
        create_tax(
            prop.id,
            {"tax_year": str(this_year), "tax_quarter": "1", "tax_amount": "100", "due_date": f"{this_year}-03-31"},
            None,
        )
    assert "already exists" in exc.value.fields["tax_quarter"]

    with pytest.raises(ValidationError):
        create_tax(
            prop.id,
            {"tax_year": str(this_year - 1), "tax_amount": "100", "due_date": f"{this_year - 1}-03-31"},
            None,
        )

    tax = create_tax(
        prop.id,
        {"tax_year": str(this_year), "tax_quarter": "2", "tax_amount": "4800", "due_date": f"{this_year}-06-30"},
        None,
    )
    assert tax.period_label == f"{this_year} Q2"
    assert tax.status == TaxStatus.PENDING


def test_tax_payload_rejects_bad_quarter_and_payment_statuses(app, properties):
    with pytest.raises(ValidationError) as exc:
        create_tax(
            properties["OCT-310-1998"].id,
            {
                "tax_year": "2020",
                "tax_quarter": "5",
                "tax_amount": "-1",
                "due_date": "2020-13-01",
                "status": "PAID",
            },
            None,
        )
    fields = exc.value.fields
    assert set(fields) >= {"tax_quarter", "tax_amount", "due_date", "status"}


def test_partial_payments_accumulate_until_paid(app, properties):
    tax = _current_quarter_tax(properties)

    _pay(tax.id, "2000", "OR-201")
    assert tax.status == TaxStatus.PARTIALLY_PAID
    assert tax.is_paid is False
    assert tax.amount_paid == Decimal("2000.00")

    _pay(tax.id, "2800", "OR-202")
    assert tax.status == TaxStatus.PAID
    assert tax.is_paid is True
    assert tax.amount_paid == Decimal("4800.00")
    assert tax.official_receipt_number == "OR-202"

    assert AuditLog.query.filter_by(action="PAYMENT", entity_id=tax.id).count() == 2
    status_rows = ChangeHistory.query.filter_by(field_name="realPropertyTax.status").all()
    assert [row.new_value for row in status_rows] == ["PARTIALLY_PAID", "PAID"]

    with pytest.raises(ValueError, match="already been paid"):
        _pay(tax.id, "1")


def test_penalty_raises_the_amount_needed_to_settle(app, properties):
    tax = _current_quarter_tax(properties)
    _pay(tax.id, "4800", penalty="200")
    assert tax.total_due == Decimal("5000.00")
    assert tax.status == TaxStatus.PARTIALLY_PAID


def test_payment_validation_and_locked_records(app, properties):
    tax = _current_quarter_tax(properties)
    with pytest.raises(ValidationError) as exc:
        mark_tax_paid(tax.id, {"amount_paid": "0", "payment_method": "BARTER"}, None)
    assert set(exc.value.fields) >= {"amount_paid", "payment_date", "official_receipt_number", "payment_method"}

    _pay(tax.id, "100")
    with pytest.raises(ValueError, match="cannot be edited"):
        update_tax(tax.id, {"tax_year": str(tax.tax_year), "tax_amount": "1", "due_date": "2020-01-01"}, None)
    with pytest.raises(ValueError, match="cannot be deleted"):
        delete_tax(tax.id, None)


def test_waived_taxes_cannot_be_paid(app, properties):
    tax = create_tax(
        properties["OCT-310-1998"].id,
        {"tax_year": "2020", "tax_amount": "900", "due_date": "2020-03-31", "status": "WAIVED"},
        None,
    )
    with pytest.raises(ValueError, match="waived"):
        _pay(tax.id, "900")


def test_mark_overdue_and_summary(app, properties):
    this_year = date.today().year
    april_first = date(this_year, 4, 1)

    summary = tax_summary(april_first)
    assert summary["total"] == 3
    assert summary["paid"] == 1
    assert summary["overdue"] == 2
    assert summary["total_paid"] == Decimal("18500.00")

    assert mark_overdue_taxes(april_first) == 1
    assert _current_quarter_tax(properties).status == TaxStatus.OVERDUE
    assert mark_overdue_taxes(april_first) == 0


@pytest.mark.parametrize(
    ("file_name", "expected"),
    [
        ("tax_declaration_2020.pdf", DocumentType.TAX_DECLARATION),
        ("RPT tax receipt.pdf", DocumentType.TAX_RECEIPT),
        ("TCT title scan.pdf", DocumentType.TITLE_DEED),
        ("survey-map.pdf", DocumentType.SURVEY_PLAN),
        ("bank_loan.docx", DocumentType.MORTGAGE_CONTRACT),
        ("frontage.JPG", DocumentType.PHOTO),
        ("notes.txt", DocumentType.OTHER),
        ("tax_decl_2024.pdf", DocumentType.TAX_DECLARATION),
        ("tax_payment_q1.pdf", DocumentType.TAX_RECEIPT),
        ("receipt_hardware.pdf", DocumentType.OTHER),
        ("declaration_of_heirs.pdf", DocumentType.OTHER),
        ("tax_declaration_title.pdf", DocumentType.TITLE_DEED),
        ("deed_photo.png", DocumentType.TITLE_DEED),
        ("house_rental.doc", DocumentType.LEASE_AGREEMENT),
    ],
)
def test_detect_document_type(file_name, expected):
    assert detect_document_type(file_name) == expected


def test_upload_document_stores_file_and_logs_history(app, properties, users):
    prop = properties["TCT-001-2020"]
    upload = FileStorage(stream=BytesIO(b"%PDF-1.4 test"), filename="survey plan.pdf", content_type="application/pdf")
    document = add_property_document(prop.id, {"description": "Relocation survey"}, upload, users["manager"].id)

    assert document.document_type == DocumentType.SURVEY_PLAN
    assert document.file_name == "survey_plan.pdf"
    assert document.file_size == len(b"%PDF-1.4 test")
    assert document.file_path.startswith(f"storage/properties/{prop.id}/documents/")
    content, name, url = document_download(document.id)
    assert content == b"%PDF-1.4 test"
    assert name == "survey_plan.pdf"
    assert url is None
    assert ChangeHistory.query.filter_by(property_id=prop.id, field_name="document").count() == 1
    assert document_stats()["by_type"]["SURVEY_PLAN"] == 1

    delete_property_document(document.id, users["manager"].id)
    with pytest.raises(NotFoundError):
        document_by_id(document.id)


def test_document_rules_for_extensions_and_links(app, properties):
    prop = properties["TCT-002-2021"]
    with pytest.raises(ValidationError) as exc:
        add_property_document(prop.id, {}, FileStorage(stream=BytesIO(b"MZ"), filename="setup.exe"), None)
    assert "not allowed" in exc.value.fields["file"]

    with pytest.raises(ValidationError):
        add_property_document(prop.id, {}, None, None)
    with pytest.raises(ValidationError):
        add_property_document(prop.id, {"file_url": "ftp://files.example.com/a.pdf"}, None, None)

    linked = add_property_document(prop.id, {"file_url": "https://files.example.com/docs/appraisal.pdf"}, None, None)
    assert linked.document_type == DocumentType.APPRAISAL_REPORT
    assert linked.file_name == "appraisal.pdf"
    assert document_download(linked.id) == (None, "appraisal.pdf", "https://files.example.com/docs/appraisal.pdf")


def test_user_management_rules(app, users):
    viewer_role = Role.query.filter_by(name="Viewer").one()
    payload = {
        "email": "New.Clerk@Registry.local",
        "first_name": "Nina",
        "last_name": "Torres",
        "password": "secret1",
        "role_id": str(viewer_role.id),
    }
    user = create_user(payload, users["admin"].id)
    assert user.email == "new.clerk@registry.local"
    assert user.has_permission("property", "read")
    assert not user.has_permission("property", "create")

    with pytest.raises(ValidationError) as exc:
        create_user(payload, users["admin"].id)
    assert "already exists" in exc.value.fields["email"]
    with pytest.raises(ValidationError) as exc:
        create_user({**payload, "email": "other@registry.local", "password": "123"}, users["admin"].id)
    assert "password" in exc.value.fields

    admin = users["admin"]
    with pytest.raises(ValueError, match="your own account"):
        deactivate_user(admin.id, admin.id)
    with pytest.raises(ValueError, match="your own account"):
        update_user(
            admin.id,
            {"email": admin.email, "first_name": admin.first_name, "last_name": admin.last_name, "is_active": ""},
            admin.id,
        )

    deactivate_user(user.id, admin.id)
    assert user.is_active is False
    assert AuditLog.query.filter_by(action="DEACTIVATE", entity_type="User", entity_id=user.id).count() == 1


def test_role_rules(app, users):
    admin_id = users["admin"].id
    super_admin = Role.query.filter_by(name="Super Admin").one()
    with pytest.raises(ValueError, match="System roles cannot be deleted"):
        delete_role(super_admin.id, admin_id)

    role = create_role({"name": "Auditor"}, ["audit.read", "audit.export"], admin_id)
    assert role.permission_names == {"audit.read", "audit.export"}
    with pytest.raises(ValidationError):
        create_role({"name": "auditor"}, [], admin_id)
    with pytest.raises(ValidationError):
        create_role({"name": "Broken"}, ["audit.destroy"], admin_id)

    create_user(
        {
            "email": "auditor@registry.local",
            "first_name": "Al",
            "last_name": "Dit",
            "password": "secret1",
            "role_id": str(role.id),
        },
        admin_id,
    )
    with pytest.raises(ValueError, match="assigned to 1 user"):
        delete_role(role.id, admin_id)


def test_profile_password_change_requires_current_password(app, users):
    viewer = users["viewer"]
    base = {"first_name": viewer.first_name, "last_name": viewer.last_name}
    with pytest.raises(ValidationError) as exc:
        update_profile(viewer.id, {**base, "current_password": "wrong", "new_password": "newpass1", "confirm_password": "x"})
    assert set(exc.value.fields) == {"current_password", "confirm_password"}

    update_profile(
        viewer.id,
        {**base, "current_password": "viewer123", "new_password": "newpass1", "confirm_password": "newpass1"},
    )
    db.session.refresh(viewer)
    assert check_password_hash(viewer.password_hash, "newpass1")


def test_simple_pdf_folds_accents_and_paginates():
    pdf = simple_pdf(["Received by: Đặng Nguyễn", "Łukasz Peña (Atty.)"])
    assert b"/Encoding /WinAnsiEncoding" in pdf
    assert b"(Received by: Dang Nguyen) Tj" in pdf
    assert "(Lukasz Peña \\(Atty.\\)) Tj".encode("cp1252") in pdf
    assert b"/Count 1" in pdf

    long_pdf = simple_pdf([f"Line {n}" for n in range(100)])
    assert b"/Count 3" in long_pdf
    assert b"(Line 99) Tj" in long_pdf
    assert long_pdf.endswith(b"%%EOF")
