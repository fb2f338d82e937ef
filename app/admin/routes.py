from __future__ import annotations

from flask import abort, flash, redirect, render_template, request, url_for
from flask_login import current_user, login_required

from app.admin import admin_bp
from app.admin.services import (
    all_permissions,
    approver_users,
    create_role,
    create_system_config,
    create_user,
    deactivate_user,
    delete_role,
    list_roles,
    list_users,
    profile_stats,
    reset_user_password,
    role_by_id,
    system_config_stats,
    system_configs_by_category,
    toggle_system_config,
    update_profile,
    update_role,
    update_system_config,
    update_user,
    user_by_id,
    user_stats,
)
from app.core.errors import NotFoundError, ValidationError
from app.core.models import Role
from app.core.permissions import require_permission
from app.registry.services import list_audit_logs


def _payload() -> dict[str, str]:
    return {k: v for k, v in request.form.items()}


def _flash_error(exc: ValueError) -> None:
    if isinstance(exc, ValidationError):
        for message in exc.fields.values():
            flash(message, "error")
    else:
        flash(str(exc), "error")


def _active_roles() -> list[Role]:
    return Role.query.filter_by(is_active=True).order_by(Role.name.asc()).all()


@admin_bp.get("/admin/users")
@login_required
@require_permission("user", "read")
def users_page():
    filters = {k: v for k, v in request.args.items() if k != "page"}
    return render_template(
        "admin/users.html",
        data=list_users(filters, request.args.get("page", 1, type=int)),
        stats=user_stats(),
        approvers=approver_users(),
        roles=_active_roles(),
        filters=filters,
    )


@admin_bp.route("/admin/users/new", methods=["GET", "POST"])
@login_required
@require_permission("user", "create")
def user_create():
    form = _payload()
    if request.method == "POST":
        try:
            user = create_user(form, current_user.id)
            flash(f"User {user.email} created", "success")
            return redirect(url_for("admin.users_page"))
        except ValueError as exc:
            _flash_error(exc)
    return render_template("admin/user_form.html", form=form, user=None, roles=_active_roles())


@admin_bp.route("/admin/users/<int:user_id>/edit", methods=["GET", "POST"])
@login_required
@require_permission("user", "update")
def user_edit(user_id: int):
    try:
        user = user_by_id(user_id)
    except NotFoundError:
        abort(404)
    if request.method == "POST":
        form = _payload()
        form.setdefault("is_active", "")
        try:
            update_user(user.id, form, current_user.id)
            flash("User updated", "success")
            return redirect(url_for("admin.users_page"))
        except ValueError as exc:
            _flash_error(exc)
    else:
        form = {
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "department": user.department,
            "position": user.position,
            "role_id": str(user.role_id or ""),
            "is_active": "1" if user.is_active else "",
        }
    return render_template("admin/user_form.html", form=form, user=user, roles=_active_roles())


@admin_bp.post("/admin/users/<int:user_id>/deactivate")
@login_required
@require_permission("user", "delete")
def user_deactivate(user_id: int):
    try:
        user = deactivate_user(user_id, current_user.id)
        flash(f"User {user.email} deactivated", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("admin.users_page"))


@admin_bp.post("/admin/users/<int:user_id>/password")
@login_required
@require_permission("user", "update")
def user_password(user_id: int):
    try:
        user = reset_user_password(user_id, request.form.get("password", ""), current_user.id)
        flash(f"Password reset for {user.email}", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("admin.user_edit", user_id=user_id))


@admin_bp.get("/admin/roles")
@login_required
@require_permission("role", "read")
def roles_page():
    return render_template("admin/roles.html", roles=list_roles())


@admin_bp.route("/admin/roles/new", methods=["GET", "POST"])
@login_required
@require_permission("role", "create")
def role_create():
    form = _payload()
    selected = request.form.getlist("permissions")
    if request.method == "POST":
        try:
            role = create_role(form, selected, current_user.id)
            flash(f"Role {role.name} created", "success")
            return redirect(url_for("admin.roles_page"))
        except ValueError as exc:
            _flash_error(exc)
    return render_template(
        "admin/role_form.html",
        form=form,
        role=None,
        selected=set(selected),
        permissions=all_permissions(),
    )


@admin_bp.route("/admin/roles/<int:role_id>/edit", methods=["GET", "POST"])
@login_required
@require_permission("role", "update")
def role_edit(role_id: int):
    try:
        role = role_by_id(role_id)
    except NotFoundError:
        abort(404)
    if request.method == "POST":
        form = _payload()
        form.setdefault("is_active", "")
        selected = request.form.getlist("permissions")
        try:
            update_role(role.id, form, selected, current_user.id)
            flash("Role updated", "success")
            return redirect(url_for("admin.roles_page"))
        except ValueError as exc:
            _flash_error(exc)
    else:
        form = {"name": role.name, "description": role.description, "is_active": "1" if role.is_active else ""}
        selected = sorted(role.permission_names)
    return render_template(
        "admin/role_form.html",
        form=form,
        role=role,
        selected=set(selected),
        permissions=all_permissions(),
    )


@admin_bp.post("/admin/roles/<int:role_id>/delete")
@login_required
@require_permission("role", "delete")
def role_delete(role_id: int):
    try:
        delete_role(role_id, current_user.id)
        flash("Role deleted", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("admin.roles_page"))


@admin_bp.get("/admin/settings")
@login_required
@require_permission("system", "read")
def settings_page():
    return render_template(
        "admin/settings.html",
        groups=system_configs_by_category(),
        stats=system_config_stats(),
    )


@admin_bp.post("/admin/settings/new")
@login_required
@require_permission("system", "update")
def setting_create():
    try:
        config = create_system_config(_payload(), current_user.id)
        flash(f"Setting {config.key} created", "success")
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("admin.settings_page"))


@admin_bp.post("/admin/settings/<int:config_id>/edit")
@login_required
@require_permission("system", "update")
def setting_edit(config_id: int):
    try:
        config = update_system_config(config_id, _payload(), current_user.id)
        flash(f"Setting {config.key} updated", "success")
    except NotFoundError:
        abort(404)
    except ValueError as exc:
        _flash_error(exc)
    return redirect(url_for("admin.settings_page"))


@admin_bp.post("/admin/settings/<int:config_id>/toggle")
@login_required
@require_permission("system", "update")
def setting_toggle(config_id: int):
    try:
        config = toggle_system_config(config_id, current_user.id)
    except NotFoundError:
        abort(404)
    flash(f"Setting {config.key} {'enabled' if config.is_active else 'disabled'}", "success")
    return redirect(url_for("admin.settings_page"))


@admin_bp.get("/admin/audit-log")
@login_required
@require_permission("audit", "read")
def audit_log_page():
    filters = {k: v for k, v in request.args.items() if k != "page"}
    return render_template(
        "admin/audit_log.html",
        data=list_audit_logs(filters, request.args.get("page", 1, type=int)),
        filters=filters,
    )


@admin_bp.route("/profile", methods=["GET", "POST"])
@login_required
def profile_page():
    if request.method == "POST":
        try:
            update_profile(current_user.id, _payload())
            flash("Profile updated", "success")
            return redirect(url_for("admin.profile_page"))
        except ValueError as exc:
            _flash_error(exc)
    return render_template("admin/profile.html", stats=profile_stats(current_user.id))
