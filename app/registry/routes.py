from __future__ import annotations

from dataclasses import asdict
from datetime import date
from io import BytesIO

from flask import abort, flash, jsonify, make_response, redirect, render_template, request, send_file, url_for
from flask_login import current_user, login_required

from app.core.errors import NotFoundError, ValidationError
from app.core.models import (
    ApprovalStatus,
    ChangeType,
    DocumentType,
    MovementStatus,
    PaymentMethod,
    Priority,
    Property,
    PropertyClassification,
    PropertyStatus,
    ReturnCondition,
    TaxStatus,
    WorkflowType,
)
from app.core.permissions import has_permission, require_any_permission, require_permission
from app.registry import registry_bp
from app.registry.documents import (
    add_property_document,
    delete_property_document,
    document_by_id,
    document_download,
    document_stats,
    list_documents,
    update_property_document,
)
from app.registry.notifications import (
    mark_all_read,
    mark_notification_read,
    notifications_for_user,
    refresh_system_notifications,
)
from app.registry.services import (
    change_history_stats,
    create_property,
    delete_property,
    list_change_history,
    list_properties,
    properties_csv_bytes,
    property_by_id,
    property_change_history,
    property_detail,
    update_property,
)
from app.registry.taxes import (
    create_tax,
    delete_tax,
    list_taxes,
    mark_tax_paid,
    payment_history,
    tax_by_id,
    tax_summary,
    taxes_csv_bytes,
    update_tax,
)
from app.registry.workflows import (
    approval_stats,
    approve_workflow,
    cancel_workflow,
    check_title_availability,
    list_movements,
    list_workflows,
    movement_by_id,
    movement_stats,
    movements_csv_bytes,
    my_request_stats,
    my_requests,
    next_transmittal_number,
    reject_workflow,
    release_title,
    request_property_update,
    request_title_movement,
    return_title,
    returnable_movements,
    transmittal_pdf,
    update_movement_status,
    workflow_detail,
)


def _payload() -> dict[str, str]:
    return {k: v for k, v in request.form.items()}


def _filters() -> dict[str, str]:
    return {k: v for k, v in request.args.items() if k != "page"}


def _page() -> int:
    return request.args.get("page", 1, type=int) or 1


def _flash_error(exc: ValueError) -> None:
    if isinstance(exc, ValidationError):
        for message in exc.fields.values():
            flash(message, "error")
    else:
        flash(str(exc), "error")


def _csv_response(content: bytes, filename: str):
    response = make_response(content)
    response.headers["Content-Type"] = "text/csv; charset=utf-8"
    response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return response


def _form_choices() -> dict[str, object]:
    return {
        "classifications": list(PropertyClassification),
        "statuses": list(PropertyStatus),
        "priorities": list(Priority),
    }


@registry_bp.get("/properties")
@login_required
@require_permission("property", "read")
def properties_page():
    filters = _filters()
    data = list_properties(filters, _page())
    return render_template("registry/properties.html", data=data, filters=filters, **_form_choices())


@registry_bp.get("/properties/export.csv")
@login_required
@require_permission("report", "export")
def properties_export():
    content = properties_csv_bytes(_filters())
    return _csv_response(content, f"properties-{date.today().isoformat()}.csv")


@registry_bp.route("/properties/new", methods=["GET", "POST"])
@login_required
@require_permission("property", "create")
def property_create():
    form = _payload()
    if request.method == "POST":
        try:
            prop = create_property(form, current_user.id)
            flash(f"Property {prop.title_number} created", "success")
            return redirect(url_for("registry.property_detail_page", property_id=prop.id))
        except ValueError as exc:
            _flash_error(exc)
    return render_template("registry/property_form.html", form=form, prop=None, **_form_choices())


@registry_bp.get("/properties/<int:property_id>")
@login_required
@require_permission("property", "read")
def property_detail_page(property_id: int):
    try:
        data = property_detail(property_id)
    except NotFoundError:
        abort(404)
    return render_template(
        "registry/property_detail.html",
        data=data,
        availability=check_title_availability(property_id),
        document_types=list(DocumentType),
        payment_methods=list(PaymentMethod),
        tax_statuses=[status for status in TaxStatus if status not in (TaxStatus.PAID, TaxStatus.PARTIALLY_PAID)],
        today=date.today(),
    )


@registry_bp.route("/properties/<int:property_id>/edit", methods=["GET", "POST"])
@login_required
@require_permission("property", "update")
def property_edit(property_id: int):
    try:
        prop = property_by_id(property_id)
    except NotFoundError:
        abort(404)
    direct_allowed = has_permission("approval", "approve")
    if request.method == "POST":
        form = _payload()
        try:
            if direct_allowed and form.get("mode") == "direct":
                update_property(prop.id, form, current_user.id)
                flash("Property updated", "success")
            else:
                workflow = request_property_update(prop.id, form, current_user.id)
                flash(f"Update request #{workflow.id} submitted for approval", "success")
            return redirect(url_for("registry.property_detail_page", property_id=prop.id))
        except ValueError as exc:
            _flash_error(exc)
    else:
        form = {field: getattr(prop, field) for field in Property.__table__.columns.keys()}
        form["classification"] = prop.classification.value
        form["status"] = prop.status.value
    return render_template(
        "registry/property_form.html",
        form=form,
        prop=prop,
        direct_allowed=direct_allowed,
        **_form_choices(),
    )


@registry_bp.post("/properties/<int:property_id>/delete")
@login_required
@require_permission("property", "delete")
def property_delete(property_id: int):
    try:
        prop = delete_property(property_id, current_user.id)
        flash(f"Property {prop.title_number} deleted", "success")
        return redirect(url_for("registry.properties_page"))
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("registry.property_detail_page", property_id=property_id))


@registry_bp.get("/properties/<int:property_id>/history")
@login_required
@require_permission("property", "read")
def property_history_page(property_id: int):
    try:
        prop = property_by_id(property_id, include_deleted=True)
        rows = property_change_history(property_id)
    except NotFoundError:
        abort(404)
    return render_template("registry/property_history.html", prop=prop, rows=rows)


@registry_bp.get("/properties/<int:property_id>/availability")
@login_required
@require_permission("title_movement", "read")
def property_availability(property_id: int):
    try:
        property_by_id(property_id)
    except NotFoundError:
        abort(404)
    availability = asdict(check_title_availability(property_id))
    if availability["active_status"] is not None:
        availability["active_status"] = availability["active_status"].value
    return jsonify(availability)


@registry_bp.post("/properties/<int:property_id>/taxes")
@login_required
@require_permission("tax", "create")
def tax_create(property_id: int):
    try:
        tax = create_tax(property_id, _payload(), current_user.id)
        flash(f"Tax {tax.period_label} recorded", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("registry.property_detail_page", property_id=property_id, tab="taxes"))


@registry_bp.get("/taxes")
@login_required
@require_permission("tax", "read")
def taxes_page():
    filters = _filters()
    return render_template(
        "registry/taxes.html",
        data=list_taxes(filters, _page()),
        summary=tax_summary(),
        filters=filters,
        tax_statuses=list(TaxStatus),
        payment_methods=list(PaymentMethod),
        today=date.today(),
    )


@registry_bp.get("/taxes/payments")
@login_required
@require_permission("tax", "read")
def tax_payments_page():
    filters = _filters()
    return render_template("registry/tax_payments.html", data=payment_history(filters, _page()), filters=filters)


@registry_bp.get("/taxes/export.csv")
@login_required
@require_permission("report", "export")
def taxes_export():
    return _csv_response(taxes_csv_bytes(_filters()), f"taxes-{date.today().isoformat()}.csv")


@registry_bp.route("/taxes/<int:tax_id>/edit", methods=["GET", "POST"])
@login_required
@require_permission("tax", "update")
def tax_edit(tax_id: int):
    try:
        tax = tax_by_id(tax_id)
    except NotFoundError:
        abort(404)
    if request.method == "POST":
        try:
            update_tax(tax.id, _payload(), current_user.id)
            flash("Tax record updated", "success")
            return redirect(url_for("registry.property_detail_page", property_id=tax.property_id, tab="taxes"))
        except ValueError as exc:
            _flash_error(exc)
    return render_template(
        "registry/tax_form.html",
        tax=tax,
        tax_statuses=[status for status in TaxStatus if status not in (TaxStatus.PAID, TaxStatus.PARTIALLY_PAID)],
    )


@registry_bp.post("/taxes/<int:tax_id>/pay")
@login_required
@require_permission("tax", "update")
def tax_pay(tax_id: int):
    try:
        tax = mark_tax_paid(tax_id, _payload(), current_user.id)
        flash(f"Payment recorded. Status: {tax.status.value}", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    next_url = request.form.get("next") or ""
    if next_url.startswith("/") and not next_url.startswith("//"):
        return redirect(next_url)
    return redirect(url_for("registry.taxes_page"))


@registry_bp.post("/taxes/<int:tax_id>/delete")
@login_required
@require_permission("tax", "delete")
def tax_delete(tax_id: int):
    try:
        tax = tax_by_id(tax_id)
        property_id = tax.property_id
        delete_tax(tax_id, current_user.id)
        flash("Tax record deleted", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
        return redirect(url_for("registry.taxes_page"))
    return redirect(url_for("registry.property_detail_page", property_id=property_id, tab="taxes"))


@registry_bp.get("/title-movements")
@login_required
@require_permission("title_movement", "read")
def movements_page():
    filters = _filters()
    return render_template(
        "registry/movements.html",
        data=list_movements(filters, _page()),
        stats=movement_stats(),
        filters=filters,
        movement_statuses=list(MovementStatus),
    )


@registry_bp.get("/title-movements/export.csv")
@login_required
@require_permission("report", "export")
def movements_export():
    return _csv_response(movements_csv_bytes(_filters()), f"title-movements-{date.today().isoformat()}.csv")


@registry_bp.get("/title-movements/returns")
@login_required
@require_permission("title_movement", "update")
def movement_returns_page():
    return render_template("registry/movement_returns.html", rows=returnable_movements())


@registry_bp.route("/title-movements/new", methods=["GET", "POST"])
@login_required
@require_permission("title_movement", "create")
def movement_create():
    from app.admin.services import approver_users

    can_release = has_permission("approval", "approve")
    form = _payload()
    if request.method == "POST":
        try:
            if can_release and form.get("mode") == "direct":
                movement = release_title(form, current_user.id, request.files.getlist("documents"))
                flash(f"Title released under transmittal {movement.received_by_transmittal}", "success")
                return redirect(url_for("registry.movement_detail", movement_id=movement.id))
            workflow = request_title_movement(form, current_user.id)
            flash(f"Title release request #{workflow.id} submitted for approval", "success")
            return redirect(url_for("registry.workflow_detail_page", workflow_id=workflow.id))
        except NotFoundError:
            abort(404)
        except ValueError as exc:
            _flash_error(exc)
    else:
        form.setdefault("property_id", request.args.get("property_id", ""))
        form.setdefault("received_by_transmittal", next_transmittal_number())
        form.setdefault("released_by", current_user.full_name)
    properties = Property.query.filter_by(is_deleted=False).order_by(Property.title_number.asc()).all()
    return render_template(
        "registry/movement_form.html",
        form=form,
        properties=properties,
        approvers=[user for user in approver_users() if user.id != current_user.id],
        can_release=can_release,
        priorities=list(Priority),
    )


@registry_bp.get("/title-movements/<int:movement_id>")
@login_required
@require_permission("title_movement", "read")
def movement_detail(movement_id: int):
    try:
        movement = movement_by_id(movement_id)
    except NotFoundError:
        abort(404)
    return render_template(
        "registry/movement_detail.html",
        movement=movement,
        movement_statuses=list(MovementStatus),
        return_conditions=list(ReturnCondition),
        today=date.today(),
    )


@registry_bp.post("/title-movements/<int:movement_id>/status")
@login_required
@require_permission("title_movement", "update")
def movement_status(movement_id: int):
    try:
        movement = update_movement_status(movement_id, _payload(), current_user.id)
        flash(f"Title movement is now {movement.movement_status.value}", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("registry.movement_detail", movement_id=movement_id))


@registry_bp.route("/title-movements/<int:movement_id>/return", methods=["GET", "POST"])
@login_required
@require_permission("title_movement", "update")
def movement_return(movement_id: int):
    try:
        movement = movement_by_id(movement_id)
    except NotFoundError:
        abort(404)
    form = _payload()
    if request.method == "POST":
        try:
            return_title(movement.id, form, current_user.id)
            flash(f"Title {movement.property_record.title_number} returned", "success")
            return redirect(url_for("registry.movement_detail", movement_id=movement.id))
        except ValueError as exc:
            _flash_error(exc)
    return render_template(
        "registry/movement_return.html",
        movement=movement,
        form=form,
        return_conditions=list(ReturnCondition),
        today=date.today(),
    )


@registry_bp.get("/title-movements/<int:movement_id>/transmittal.pdf")
@login_required
@require_permission("title_movement", "read")
def movement_transmittal_pdf(movement_id: int):
    try:
        pdf = transmittal_pdf(movement_id)
    except NotFoundError:
        abort(404)
    response = make_response(pdf)
    response.headers["Content-Type"] = "application/pdf"
    response.headers["Content-Disposition"] = f'inline; filename="transmittal-{movement_id}.pdf"'
    return response


@registry_bp.get("/approvals")
@login_required
@require_permission("approval", "read")
def approvals_page():
    filters = _filters()
    filters.setdefault("status", ApprovalStatus.PENDING.value)
    return render_template(
        "registry/approvals.html",
        data=list_workflows(filters, _page()),
        stats=approval_stats(),
        filters=filters,
        approval_statuses=list(ApprovalStatus),
        workflow_types=list(WorkflowType),
    )


@registry_bp.get("/approvals/mine")
@login_required
@require_any_permission("approval.create", "approval.read")
def my_requests_page():
    filters = _filters()
    return render_template(
        "registry/my_requests.html",
        data=my_requests(current_user.id, filters, _page()),
        stats=my_request_stats(current_user.id),
        filters=filters,
        approval_statuses=list(ApprovalStatus),
    )


@registry_bp.get("/approvals/<int:workflow_id>")
@login_required
def workflow_detail_page(workflow_id: int):
    try:
        data = workflow_detail(workflow_id)
    except NotFoundError:
        abort(404)
    if data["workflow"].initiated_by_id != current_user.id and not has_permission("approval", "read"):
        abort(403)
    return render_template("registry/workflow_detail.html", data=data)


@registry_bp.post("/approvals/<int:workflow_id>/approve")
@login_required
@require_permission("approval", "approve")
def workflow_approve(workflow_id: int):
    try:
        workflow = approve_workflow(workflow_id, current_user.id)
        flash(f"Request #{workflow.id} approved", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("registry.workflow_detail_page", workflow_id=workflow_id))


@registry_bp.post("/approvals/<int:workflow_id>/reject")
@login_required
@require_permission("approval", "reject")
def workflow_reject(workflow_id: int):
    try:
        workflow = reject_workflow(workflow_id, request.form.get("reason", ""), current_user.id)
        flash(f"Request #{workflow.id} rejected", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("registry.workflow_detail_page", workflow_id=workflow_id))


@registry_bp.post("/approvals/<int:workflow_id>/cancel")
@login_required
def workflow_cancel(workflow_id: int):
    try:
        cancel_workflow(workflow_id, current_user.id)
        flash("Request cancelled", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("registry.workflow_detail_page", workflow_id=workflow_id))


@registry_bp.get("/documents")
@login_required
@require_permission("document", "read")
def documents_page():
    filters = _filters()
    return render_template(
        "registry/documents.html",
        data=list_documents(filters, _page()),
        stats=document_stats(),
        filters=filters,
        document_types=list(DocumentType),
    )


@registry_bp.post("/properties/<int:property_id>/documents")
@login_required
@require_permission("document", "create")
def document_upload(property_id: int):
    try:
        document = add_property_document(property_id, _payload(), request.files.get("file"), current_user.id)
        flash(f"Document {document.file_name} added", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("registry.property_detail_page", property_id=property_id, tab="documents"))


@registry_bp.post("/documents/<int:document_id>/edit")
@login_required
@require_permission("document", "create")
def document_edit(document_id: int):
    try:
        document = update_property_document(document_id, _payload(), current_user.id)
        flash("Document updated", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
        return redirect(url_for("registry.documents_page"))
    return redirect(url_for("registry.property_detail_page", property_id=document.property_id, tab="documents"))


@registry_bp.post("/documents/<int:document_id>/delete")
@login_required
@require_permission("document", "delete")
def document_delete(document_id: int):
    try:
        document = delete_property_document(document_id, current_user.id)
        flash("Document removed", "success")
    except NotFoundError:
        abort(404)
    return redirect(url_for("registry.property_detail_page", property_id=document.property_id, tab="documents"))


@registry_bp.get("/documents/<int:document_id>/download")
@login_required
@require_permission("document", "read")
def document_file(document_id: int):
    try:
        document = document_by_id(document_id)
        content, file_name, external_url = document_download(document_id)
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
        return redirect(url_for("registry.documents_page"))
    if external_url:
        return redirect(external_url)
    return send_file(
        BytesIO(content),
        mimetype=document.mime_type or "application/octet-stream",
        as_attachment=True,
        download_name=file_name,
    )


@registry_bp.get("/history")
@login_required
@require_permission("audit", "read")
def history_page():
    filters = _filters()
    try:
        data = list_change_history(filters, _page())
    except ValueError as exc:
        _flash_error(exc)
        filters = {}
        data = list_change_history(filters, _page())
    return render_template(
        "registry/history.html",
        data=data,
        stats=change_history_stats(),
        filters=filters,
        change_types=list(ChangeType),
    )


@registry_bp.get("/notifications")
@login_required
def notifications_page():
    return render_template("registry/notifications.html", rows=notifications_for_user(current_user.id, limit=50))


@registry_bp.post("/notifications/refresh")
@login_required
def notifications_refresh():
    created = refresh_system_notifications(current_user)
    flash(f"{created} new notification(s)", "success")
    return redirect(url_for("registry.notifications_page"))


@registry_bp.post("/notifications/<int:notification_id>/read")
@login_required
def notification_read(notification_id: int):
    try:
        notification = mark_notification_read(notification_id, current_user.id)
    except NotFoundError:
        abort(404)
    target = notification.action_url
    if request.form.get("open") and target.startswith("/") and not target.startswith("//"):
        return redirect(target)
    return redirect(url_for("registry.notifications_page"))


@registry_bp.post("/notifications/read-all")
@login_required
def notifications_read_all():
    count = mark_all_read(current_user.id)
    flash(f"{count} notification(s) marked as read", "success")
    return redirect(url_for("registry.notifications_page"))
