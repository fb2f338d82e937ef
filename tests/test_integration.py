from __future__ import annotations

from datetime import date
from io import BytesIO

from app.core.extensions import db
from app.core.models import (
    ApprovalStatus,
    ApprovalWorkflow,
    Notification,
    Property,
    PropertyDocument,
    PropertyStatus,
    RealPropertyTax,
    TaxStatus,
    TitleMovement,
    User,
    WorkflowType,
)
from app.registry.services import PROPERTY_TEXT_FIELDS
from app.registry.workflows import next_transmittal_number


def _edit_form(prop, **overrides) -> dict[str, str]:
    form = {field: getattr(prop, field) or "" for field in PROPERTY_TEXT_FIELDS}
    form["lot_area"] = str(prop.lot_area)
    form["classification"] = prop.classification.value
    form["status"] = prop.status.value
    form.update(overrides)
    return form


def _logout(client):
    return client.post("/auth/logout", follow_redirects=True)


def test_anonymous_users_are_sent_to_login(client):
    response = client.get("/properties")
    assert response.status_code == 302
    assert "/auth/login" in response.headers["Location"]

    response = client.get("/", follow_redirects=True)
    assert response.status_code == 200
    assert b"password" in response.data.lower()


def test_bad_credentials_and_deactivated_accounts(app, client, login_admin, users):
    response = client.post(
        "/auth/login",
        data={"email": "admin@registry.local", "password": "wrong"},
        follow_redirects=True,
    )
    assert b"Invalid email or password" in response.data

    login_admin()
    response = client.post(f"/admin/users/{users['viewer'].id}/deactivate", follow_redirects=True)
    assert response.status_code == 200
    assert users["viewer"].is_active is False
    _logout(client)

    response = client.post(
        "/auth/login",
        data={"email": "viewer@registry.local", "password": "viewer123"},
        follow_redirects=True,
    )
    assert b"deactivated" in response.data
    assert client.get("/dashboard").status_code == 302


def test_viewer_can_read_but_not_change(client, login_viewer, properties):
    login_viewer()
    assert client.get("/dashboard").status_code == 200
    assert client.get("/properties").status_code == 200
    assert client.get(f"/properties/{properties['TCT-001-2020'].id}").status_code == 200
    assert client.get("/taxes").status_code == 200
    assert client.get("/title-movements").status_code == 200
    assert client.get("/documents").status_code == 200

    assert client.get("/properties/new").status_code == 403
    assert client.get("/properties/export.csv").status_code == 403
    assert client.get("/title-movements/new").status_code == 403
    assert client.get("/admin/users").status_code == 403
    assert client.post(f"/properties/{properties['TCT-001-2020'].id}/delete").status_code == 403


def test_unknown_records_return_404(client, login_admin):
    login_admin()
    assert client.get("/properties/9999").status_code == 404
    assert client.get("/title-movements/9999").status_code == 404
    assert client.get("/approvals/9999").status_code == 404
    assert client.get("/properties/9999/availability").status_code == 404


def test_manager_creates_property(app, client, login_manager):
    created = {
        "title_number": "TCT-777-2025",
        "lot_number": "LOT-77",
        "lot_area": "320",
        "barangay": "San Antonio",
        "city": "Pasig",
        "province": "Metro Manila",
        "registered_owner": "Lopez Estates",
        "classification": "RESIDENTIAL",
    }
    login_manager()
    response = client.post("/properties/new", data=created, follow_redirects=True)
    assert response.status_code == 200
    assert b"TCT-777-2025" in response.data
    assert Property.query.filter_by(title_number="TCT-777-2025").count() == 1

    duplicate = {**created, "title_number": "tct-777-2025"}
    response = client.post("/properties/new", data=duplicate, follow_redirects=True)
    assert b"already exists" in response.data

    response = client.post("/properties/new", data={"classification": "RESIDENTIAL"}, follow_redirects=True)
    assert b"Lot Number is required" in response.data
    assert Property.query.count() == 4


def test_manager_edit_goes_through_approval(app, client, login_manager, login_approver, properties):
    prop = properties["TCT-002-2021"]
    login_manager()
    # managers cannot bypass approval even when asking for a direct edit
    response = client.post(
        f"/properties/{prop.id}/edit",
        data=_edit_form(prop, status="ACTIVE", mode="direct"),
        follow_redirects=True,
    )
    assert b"submitted for approval" in response.data
    assert prop.status == PropertyStatus.COLLATERAL
    workflow = ApprovalWorkflow.query.filter_by(property_id=prop.id).one()
    assert workflow.workflow_type == WorkflowType.STATUS_CHANGE

    assert client.get("/approvals/mine").status_code == 200
    assert client.post(f"/approvals/{workflow.id}/approve").status_code == 403
    _logout(client)

    login_approver()
    assert client.get("/approvals").status_code == 200
    assert client.get(f"/approvals/{workflow.id}").status_code == 200
    response = client.post(f"/approvals/{workflow.id}/approve", follow_redirects=True)
    assert response.status_code == 200
    assert workflow.status == ApprovalStatus.APPROVED
    assert prop.status == PropertyStatus.ACTIVE


def test_reject_without_reason_is_refused(client, login_approver):
    workflow = ApprovalWorkflow.query.filter_by(workflow_type=WorkflowType.OWNER_CHANGE).one()
    login_approver()
    response = client.post(f"/approvals/{workflow.id}/reject", data={"reason": ""}, follow_redirects=True)
    assert b"Rejection reason is required" in response.data
    assert workflow.status == ApprovalStatus.PENDING

    client.post(f"/approvals/{workflow.id}/reject", data={"reason": "Missing deed"})
    assert workflow.status == ApprovalStatus.REJECTED


def test_admin_edits_directly(client, login_admin, properties):
    prop = properties["TCT-002-2021"]
    login_admin()
    response = client.post(
        f"/properties/{prop.id}/edit",
        data=_edit_form(prop, bank="BDO Unibank", mode="direct"),
        follow_redirects=True,
    )
    assert b"Property updated" in response.data
    assert prop.bank == "BDO Unibank"
    assert ApprovalWorkflow.query.filter_by(property_id=prop.id).count() == 0

    response = client.get(f"/properties/{prop.id}/history")
    assert response.status_code == 200
    assert b"BDO Unibank" in response.data


def test_finance_records_tax_payment(client, login_finance, properties):
    prop = properties["TCT-002-2021"]
    tax = RealPropertyTax.query.filter_by(property_id=prop.id).one()
    login_finance()
    response = client.post(
        f"/taxes/{tax.id}/pay",
        data={
            "amount_paid": str(tax.total_due),
            "payment_date": date.today().isoformat(),
            "official_receipt_number": "OR-5521",
            "payment_method": "CHECK",
            "next": f"/properties/{prop.id}",
        },
    )
    assert response.status_code == 302
    assert response.headers["Location"].endswith(f"/properties/{prop.id}")
    assert tax.status == TaxStatus.PAID
    assert client.get("/taxes/payments").status_code == 200

    response = client.post(
        f"/taxes/{tax.id}/pay",
        data={"amount_paid": "1", "next": "//evil.example.com"},
    )
    assert response.headers["Location"].endswith("/taxes")

    csv_response = client.get("/taxes/export.csv")
    assert csv_response.status_code == 200
    assert csv_response.headers["Content-Type"].startswith("text/csv")
    assert b"OR-5521" in csv_response.data


def test_finance_adds_tax_record(client, login_finance, properties):
    prop = properties["TCT-002-2021"]
    login_finance()
    client.post(
        f"/properties/{prop.id}/taxes",
        data={
            "tax_year": str(date.today().year),
            "tax_quarter": "1",
            "tax_amount": "3200",
            "due_date": date(date.today().year, 3, 31).isoformat(),
        },
    )
    assert RealPropertyTax.query.filter_by(property_id=prop.id, tax_year=date.today().year).count() == 1


def test_title_movement_request_flow(client, login_manager, login_approver, properties, users):
    prop = properties["TCT-001-2020"]
    login_manager()
    assert client.get(f"/title-movements/new?property_id={prop.id}").status_code == 200
    transmittal = next_transmittal_number()
    response = client.post(
        "/title-movements/new",
        data={
            "property_id": str(prop.id),
            "purpose_of_release": "Bank appraisal",
            "released_by": "Marco Santos",
            "received_by_transmittal": transmittal,
            "received_by_name": "BPI Appraisal Unit",
            "approver_id": str(users["approver"].id),
        },
    )
    assert response.status_code == 302
    workflow = ApprovalWorkflow.query.filter_by(workflow_type=WorkflowType.TITLE_TRANSFER).one()
    assert response.headers["Location"].endswith(f"/approvals/{workflow.id}")

    availability = client.get(f"/properties/{prop.id}/availability").get_json()
    assert availability["is_available"] is False
    assert availability["has_pending_workflow"] is True
    _logout(client)

    login_approver()
    client.post(f"/approvals/{workflow.id}/approve")
    movement = TitleMovement.query.filter_by(workflow_id=workflow.id).one()
    assert movement.received_by_transmittal == transmittal
    assert prop.custody_of_title == "BPI Appraisal Unit"


def test_direct_release_status_and_return(client, login_admin, properties):
    prop = properties["TCT-002-2021"]
    login_admin()
    response = client.post(
        "/title-movements/new",
        data={
            "mode": "direct",
            "property_id": str(prop.id),
            "purpose_of_release": "Court submission",
            "released_by": "Ana Reyes",
            "received_by_transmittal": next_transmittal_number(),
            "received_by_name": "RTC Branch 12",
            "documents": (BytesIO(b"court order"), "court order.pdf"),
        },
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert response.status_code == 200
    movement = TitleMovement.query.filter_by(property_id=prop.id).one()
    assert PropertyDocument.query.filter_by(property_id=prop.id).count() == 1

    client.post(f"/title-movements/{movement.id}/status", data={"movement_status": "IN_TRANSIT"})
    assert prop.custody_of_title == "In Transit"

    response = client.post(
        f"/title-movements/{movement.id}/status",
        data={"movement_status": "RELEASED"},
        follow_redirects=True,
    )
    assert b"Invalid status transition" in response.data

    assert client.get("/title-movements/returns").status_code == 200
    assert client.get(f"/title-movements/{movement.id}/return").status_code == 200
    client.post(
        f"/title-movements/{movement.id}/return",
        data={
            "returned_by": "Court Sheriff",
            "received_by_on_return": "Vault - Head Office",
            "return_date": date.today().isoformat(),
            "return_condition": "GOOD",
            "documents_complete": "on",
            "title_intact": "on",
        },
    )
    assert prop.custody_of_title == "Vault - Head Office"
    assert client.get(f"/properties/{prop.id}/availability").get_json()["is_available"] is True


def test_direct_release_with_disallowed_attachment_keeps_title(client, login_admin, properties):
    prop = properties["TCT-002-2021"]
    login_admin()
    response = client.post(
        "/title-movements/new",
        data={
            "mode": "direct",
            "property_id": str(prop.id),
            "purpose_of_release": "Court submission",
            "released_by": "Ana Reyes",
            "received_by_transmittal": next_transmittal_number(),
            "received_by_name": "RTC Branch 12",
            "documents": (BytesIO(b"MZ"), "setup.exe"),
        },
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert response.status_code == 200
    assert b"File type .exe is not allowed" in response.data
    assert TitleMovement.query.filter_by(property_id=prop.id).count() == 0
    assert PropertyDocument.query.filter_by(property_id=prop.id).count() == 0
    assert client.get(f"/properties/{prop.id}/availability").get_json()["is_available"] is True


def test_availability_and_transmittal_pdf(client, login_viewer, properties):
    movement = TitleMovement.query.filter_by(property_id=properties["OCT-310-1998"].id).one()
    login_viewer()
    data = client.get(f"/properties/{properties['OCT-310-1998'].id}/availability").get_json()
    assert data["is_available"] is False
    assert data["has_active_movement"] is True
    assert data["active_status"] == "RELEASED"

    response = client.get(f"/title-movements/{movement.id}/transmittal.pdf")
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "application/pdf"
    assert response.data.startswith(b"%PDF")
    assert client.get(f"/title-movements/{movement.id}").status_code == 200


def test_document_upload_and_download(app, client, login_manager, properties):
    prop = properties["TCT-001-2020"]
    login_manager()
    response = client.post(
        f"/properties/{prop.id}/documents",
        data={"file": (BytesIO(b"%PDF-1.4 tax dec"), "tax declaration 2024.pdf"), "description": "Latest TD"},
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert response.status_code == 200
    document = PropertyDocument.query.filter_by(property_id=prop.id).one()
    assert document.document_type.value == "TAX_DECLARATION"

    download = client.get(f"/documents/{document.id}/download")
    assert download.status_code == 200
    assert download.data == b"%PDF-1.4 tax dec"

    response = client.post(
        f"/properties/{prop.id}/documents",
        data={"file": (BytesIO(b"MZ"), "setup.exe")},
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert b"not allowed" in response.data

    client.post(f"/documents/{document.id}/delete")
    assert document.is_active is False


def test_search_history_and_exports(client, login_manager, login_admin):
    login_manager()
    response = client.get("/search", query_string={"q": "Santa Rosa"})
    assert response.status_code == 200
    assert b"TCT-002-2021" in response.data

    response = client.get("/properties/export.csv?classification=AGRICULTURAL")
    assert response.status_code == 200
    assert b"OCT-310-1998" in response.data
    assert b"TCT-001-2020" not in response.data
    assert client.get("/title-movements/export.csv").status_code == 200
    assert client.get("/history").status_code == 403
    _logout(client)

    login_admin()
    assert client.get("/history").status_code == 200
    assert client.get("/admin/audit-log").status_code == 200


def test_admin_pages(client, login_admin, login_manager):
    login_manager()
    assert client.get("/admin/users").status_code == 403
    assert client.get("/admin/roles").status_code == 403
    assert client.get("/profile").status_code == 200
    _logout(client)

    login_admin()
    for url in ("/admin/users", "/admin/users/new", "/admin/roles", "/admin/roles/new"):
        assert client.get(url).status_code == 200, url

    viewer_role = User.query.filter_by(email="viewer@registry.local").one().role
    response = client.post(
        "/admin/users/new",
        data={
            "email": "Clerk@Registry.local",
            "password": "clerk1234",
            "first_name": "Nina",
            "last_name": "Ramos",
            "role_id": str(viewer_role.id),
        },
        follow_redirects=True,
    )
    assert response.status_code == 200
    assert User.query.filter_by(email="clerk@registry.local").count() == 1


def test_notification_inbox(client, login_finance, users):
    login_finance()
    response = client.post("/notifications/refresh", follow_redirects=True)
    assert response.status_code == 200
    assert b"new notification(s)" in response.data

    notification = Notification.query.filter_by(user_id=users["finance"].id).first()
    response = client.post(f"/notifications/{notification.id}/read", data={"open": "1"})
    assert response.headers["Location"].endswith(notification.action_url)
    assert notification.is_read is True

    client.post("/notifications/read-all")
    assert Notification.query.filter_by(user_id=users["finance"].id, is_read=False).count() == 0

    other = Notification(user_id=users["viewer"].id, title="Private", message="hidden")
    db.session.add(other)
    db.session.commit()
    assert client.post(f"/notifications/{other.id}/read").status_code == 404


def test_cli_commands(app):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["taxes-mark-overdue"])
    assert result.exit_code == 0
    assert "tax record(s) as overdue" in result.output

    result = runner.invoke(args=["notifications-refresh"])
    assert result.exit_code == 0
    assert "notification(s)" in result.output

    result = runner.invoke(args=["create-user", "--email", "audit@registry.local", "--password", "audit1234"])
    assert result.exit_code == 0
    assert "created with role Viewer" in result.output

    result = runner.invoke(args=["create-user", "--email", "x@registry.local", "--password", "pw12345678", "--role", "Nope"])
    assert result.exit_code != 0

    result = runner.invoke(args=["seed-demo"])
    assert "Seed skipped" in result.output
