from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta

from sqlalchemy import func, or_
from sqlalchemy.orm import joinedload
from werkzeug.security import check_password_hash, generate_password_hash

from app.core.errors import NotFoundError, ValidationError
from app.core.extensions import db
from app.core.models import (
    ApprovalStatus,
    ApprovalWorkflow,
    ChangeHistory,
    Permission,
    Property,
    PropertyDocument,
    RealPropertyTax,
    Role,
    SystemConfig,
    TitleMovement,
    User,
    utcnow,
)
from app.registry.notifications import users_with_permission
from app.registry.services import _clean, _parse_bool, paginate_query, record_audit

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6


def user_by_id(user_id: int) -> User:
    user = User.query.options(joinedload(User.role)).filter_by(id=user_id).first()
    if not user:
        raise NotFoundError("User not found")
    return user


def role_by_id(role_id: int) -> Role:
    role = db.session.get(Role, role_id)
    if not role:
        raise NotFoundError("Role not found")
    return role


def _validate_password(password: str, field: str = "password") -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError({field: f"Password must be at least {MIN_PASSWORD_LENGTH} characters"})


def _parse_user_payload(payload: dict[str, str], errors: dict[str, str]) -> dict[str, object]:
    values: dict[str, object] = {}
    email = _clean(payload.get("email")).lower()
    if not email:
        errors["email"] = "Email is required"
    elif not EMAIL_PATTERN.match(email) or len(email) > 255:
        errors["email"] = "Email is not valid"
    values["email"] = email
    for field, label in (("first_name", "First name"), ("last_name", "Last name")):
        raw = _clean(payload.get(field))
        if not raw:
            errors[field] = f"{label} is required"
        elif len(raw) > 80:
            errors[field] = f"{label} must be at most 80 characters"
        values[field] = raw
    for field in ("department", "position"):
        values[field] = _clean(payload.get(field))[:120]
    role_raw = _clean(payload.get("role_id"))
    values["role_id"] = None
    if role_raw:
        role = db.session.get(Role, int(role_raw)) if role_raw.isdigit() else None
        if not role or not role.is_active:
            errors["role_id"] = "Select an active role"
        else:
            values["role_id"] = role.id
    return values


def _ensure_unique_email(email: str, exclude_id: int | None = None) -> None:
    query = User.query.filter(func.lower(User.email) == email.lower())
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    if query.first():
        raise ValidationError({"email": f"A user with email {email} already exists"})


def create_user(payload: dict[str, str], actor_id: int | None) -> User:
    errors: dict[str, str] = {}
    values = _parse_user_payload(payload, errors)
    password = payload.get("password") or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        errors["password"] = f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if errors:
        raise ValidationError(errors)
    _ensure_unique_email(values["email"])
    user = User(**values, password_hash=generate_password_hash(password))
    db.session.add(user)
    db.session.flush()
    record_audit("CREATE", "User", user.id, actor_id, changes={"email": user.email, "role_id": user.role_id})
    db.session.commit()
    logger.info("User %s created", user.email)
    return user


def update_user(user_id: int, payload: dict[str, str], actor_id: int | None) -> User:
    user = user_by_id(user_id)
    errors: dict[str, str] = {}
    values = _parse_user_payload(payload, errors)
    if errors:
        raise ValidationError(errors)
    _ensure_unique_email(values["email"], exclude_id=user.id)
    is_active = _parse_bool(payload.get("is_active")) if "is_active" in payload else user.is_active
    if not is_active and user.id == actor_id:
        raise ValueError("You cannot deactivate your own account")
    values["is_active"] = is_active

    changes: dict[str, dict[str, object]] = {}
    for field, new_value in values.items():
        old_value = getattr(user, field)
        if old_value != new_value:
            changes[field] = {"old": old_value, "new": new_value}
            setattr(user, field, new_value)
    if not changes:
        raise ValueError("No changes detected")
    record_audit("UPDATE", "User", user.id, actor_id, changes=changes)
    db.session.commit()
    return user


def deactivate_user(user_id: int, actor_id: int | None) -> User:
    user = user_by_id(user_id)
    if user.id == actor_id:
        raise ValueError("You cannot deactivate your own account")
    if not user.is_active:
        raise ValueError("User is already inactive")
    user.is_active = False
    record_audit("DEACTIVATE", "User", user.id, actor_id, changes={"is_active": {"old": True, "new": False}})
    db.session.commit()
    logger.info("User %s deactivated by %s", user.email, actor_id)
    return user


def reset_user_password(user_id: int, password: str, actor_id: int | None) -> User:
    user = user_by_id(user_id)
    _validate_password(password)
    user.password_hash = generate_password_hash(password)
    record_audit("PASSWORD_RESET", "User", user.id, actor_id)
    db.session.commit()
    return user


def list_users(filters: dict[str, str], page: int = 1) -> dict[str, object]:
    query = User.query.options(joinedload(User.role))
    search = _clean(filters.get("search"))
    if search:
        like = f"%{search}%"
        query = query.filter(
            or_(User.email.ilike(like), User.first_name.ilike(like), User.last_name.ilike(like))
        )
    role_id = _clean(filters.get("role_id"))
    if role_id.isdigit():
        query = query.filter(User.role_id == int(role_id))
    status = _clean(filters.get("status")).lower()
    if status == "active":
        query = query.filter(User.is_active.is_(True))
    elif status == "inactive":
        query = query.filter(User.is_active.is_(False))
    return paginate_query(query.order_by(User.last_name.asc(), User.first_name.asc()), page, 20)


def user_stats() -> dict[str, object]:
    by_role = dict(
        db.session.query(Role.name, func.count(User.id))
        .join(User, User.role_id == Role.id)
        .group_by(Role.name)
        .all()
    )
    return {
        "total": User.query.count(),
        "active": User.query.filter_by(is_active=True).count(),
        "inactive": User.query.filter_by(is_active=False).count(),
        "by_role": by_role,
    }


def approver_users() -> list[User]:
    return users_with_permission("approval.approve")


def all_permissions() -> dict[str, list[Permission]]:
    grouped: dict[str, list[Permission]] = defaultdict(list)
    for permission in Permission.query.order_by(Permission.module.asc(), Permission.action.asc()).all():
        grouped[permission.module].append(permission)
    return dict(grouped)


def list_roles() -> list[Role]:
    return Role.query.options(joinedload(Role.permissions)).order_by(Role.name.asc()).all()


def _selected_permissions(permission_names: list[str]) -> list[Permission]:
    if not permission_names:
        return []
    permissions = Permission.query.filter(Permission.name.in_(permission_names)).all()
    unknown = set(permission_names) - {permission.name for permission in permissions}
    if unknown:
        raise ValidationError({"permissions": f"Unknown permission(s): {', '.join(sorted(unknown))}"})
    return permissions


def _parse_role_name(payload: dict[str, str], exclude_id: int | None = None) -> str:
    name = _clean(payload.get("name"))
    if not name:
        raise ValidationError({"name": "Role name is required"})
    if len(name) > 80:
        raise ValidationError({"name": "Role name must be at most 80 characters"})
    query = Role.query.filter(func.lower(Role.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Role.id != exclude_id)
    if query.first():
        raise ValidationError({"name": f"A role named {name} already exists"})
    return name


def create_role(payload: dict[str, str], permission_names: list[str], actor_id: int | None) -> Role:
    name = _parse_role_name(payload)
    role = Role(
        name=name,
        description=_clean(payload.get("description"))[:255],
        permissions=_selected_permissions(permission_names),
    )
    db.session.add(role)
    db.session.flush()
    record_audit("CREATE", "Role", role.id, actor_id, changes={"name": name, "permissions": sorted(permission_names)})
    db.session.commit()
    logger.info("Role %s created", role.name)
    return role


def update_role(role_id: int, payload: dict[str, str], permission_names: list[str], actor_id: int | None) -> Role:
    role = role_by_id(role_id)
    name = _clean(payload.get("name")) or role.name
    if role.is_system and name != role.name:
        raise ValueError("System roles cannot be renamed")
    if not role.is_system:
        role.name = _parse_role_name(payload, exclude_id=role.id)
    previous = sorted(role.permission_names)
    role.description = _clean(payload.get("description"))[:255]
    role.permissions = _selected_permissions(permission_names)
    if not role.is_system and "is_active" in payload:
        role.is_active = _parse_bool(payload.get("is_active"))
    record_audit(
        "UPDATE",
        "Role",
        role.id,
        actor_id,
        changes={"permissions": {"old": previous, "new": sorted(permission_names)}},
    )
    db.session.commit()
    return role


def delete_role(role_id: int, actor_id: int | None) -> None:
    role = role_by_id(role_id)
    if role.is_system:
        raise ValueError("System roles cannot be deleted")
    assigned = User.query.filter_by(role_id=role.id).count()
    if assigned:
        raise ValueError(f"Role {role.name} is assigned to {assigned} user(s)")
    record_audit("DELETE", "Role", role.id, actor_id, changes={"name": role.name})
    db.session.delete(role)
    db.session.commit()
    logger.info("Role %s deleted", role.name)


def update_profile(user_id: int, payload: dict[str, str]) -> User:
    user = user_by_id(user_id)
    errors: dict[str, str] = {}
    for field, label in (("first_name", "First name"), ("last_name", "Last name")):
        raw = _clean(payload.get(field))
        if not raw:
            errors[field] = f"{label} is required"
        elif len(raw) > 80:
            errors[field] = f"{label} must be at most 80 characters"
    new_password = payload.get("new_password") or ""
    if new_password:
        if not check_password_hash(user.password_hash, payload.get("current_password") or ""):
            errors["current_password"] = "Current password is incorrect"
        if len(new_password) < MIN_PASSWORD_LENGTH:
            errors["new_password"] = f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        elif new_password != (payload.get("confirm_password") or ""):
            errors["confirm_password"] = "Passwords do not match"
    if errors:
        raise ValidationError(errors)

    user.first_name = _clean(payload.get("first_name"))
    user.last_name = _clean(payload.get("last_name"))
    user.department = _clean(payload.get("department"))[:120]
    user.position = _clean(payload.get("position"))[:120]
    if new_password:
        user.password_hash = generate_password_hash(new_password)
    record_audit("UPDATE", "User", user.id, user.id, details={"profile": True, "password_changed": bool(new_password)})
    db.session.commit()
    return user


def profile_stats(user_id: int) -> dict[str, int]:
    requests = dict(
        db.session.query(ApprovalWorkflow.status, func.count(ApprovalWorkflow.id))
        .filter(ApprovalWorkflow.initiated_by_id == user_id)
        .group_by(ApprovalWorkflow.status)
        .all()
    )
    return {
        "properties_created": Property.query.filter_by(created_by_id=user_id).count(),
        "taxes_recorded": RealPropertyTax.query.filter_by(recorded_by_id=user_id).count(),
        "movements_handled": TitleMovement.query.filter_by(moved_by_id=user_id).count(),
        "documents_uploaded": PropertyDocument.query.filter_by(uploaded_by_id=user_id).count(),
        "changes_made": ChangeHistory.query.filter_by(changed_by_id=user_id).count(),
        "requests_pending": requests.get(ApprovalStatus.PENDING, 0),
        "requests_approved": requests.get(ApprovalStatus.APPROVED, 0),
        "requests_rejected": requests.get(ApprovalStatus.REJECTED, 0),
        "approvals_decided": ApprovalWorkflow.query.filter_by(approved_by_id=user_id).count(),
    }


CONFIG_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*$")
RECENT_CONFIG_DAYS = 7


def system_config_by_id(config_id: int) -> SystemConfig:
    config = db.session.get(SystemConfig, config_id)
    if not config:
        raise NotFoundError("Configuration not found")
    return config


def list_system_configs() -> list[SystemConfig]:
    return SystemConfig.query.order_by(SystemConfig.key.asc()).all()


def system_configs_by_category() -> list[tuple[str, list[SystemConfig]]]:
    groups: dict[str, list[SystemConfig]] = defaultdict(list)
    for config in list_system_configs():
        groups[config.category].append(config)
    return sorted(groups.items())


def system_config_stats(now: datetime | None = None) -> dict[str, int]:
    since = (now or utcnow()) - timedelta(days=RECENT_CONFIG_DAYS)
    total = SystemConfig.query.count()
    active = SystemConfig.query.filter_by(is_active=True).count()
    return {
        "total": total,
        "active": active,
        "inactive": total - active,
        "recently_updated": SystemConfig.query.filter(SystemConfig.updated_at >= since).count(),
    }


def create_system_config(payload: dict[str, str], actor_id: int | None) -> SystemConfig:
    key = _clean(payload.get("key"))
    value = payload.get("value") or ""
    errors: dict[str, str] = {}
    if not key:
        errors["key"] = "Configuration key is required"
    elif len(key) > 100 or not CONFIG_KEY_PATTERN.match(key):
        errors["key"] = "Key may only contain letters, digits, '_', '-' and dots between parts"
    if not value.strip():
        errors["value"] = "Value is required"
    if errors:
        raise ValidationError(errors)
    if SystemConfig.query.filter(func.lower(SystemConfig.key) == key.lower()).first():
        raise ValidationError({"key": "Configuration key already exists"})
    config = SystemConfig(key=key, value=value.strip(), description=_clean(payload.get("description"))[:255])
    db.session.add(config)
    db.session.flush()
    record_audit("CREATE", "SystemConfig", config.id, actor_id, changes={"key": key, "value": config.value})
    db.session.commit()
    logger.info("System setting %s created", key)
    return config


def update_system_config(config_id: int, payload: dict[str, str], actor_id: int | None) -> SystemConfig:
    config = system_config_by_id(config_id)
    value = (payload.get("value") or "").strip()
    if not value:
        raise ValidationError({"value": "Value is required"})
    # a missing description keeps the current one
    description = _clean(payload["description"])[:255] if "description" in payload else config.description
    changes: dict[str, dict[str, object]] = {}
    for field, new_value in (("value", value), ("description", description)):
        old_value = getattr(config, field)
        if old_value != new_value:
            changes[field] = {"old": old_value, "new": new_value}
            setattr(config, field, new_value)
    if not changes:
        raise ValueError("No changes detected")
    record_audit("UPDATE", "SystemConfig", config.id, actor_id, changes=changes, details={"key": config.key})
    db.session.commit()
    logger.info("System setting %s updated by %s", config.key, actor_id)
    return config


def toggle_system_config(config_id: int, actor_id: int | None) -> SystemConfig:
    config = system_config_by_id(config_id)
    config.is_active = not config.is_active
    record_audit(
        "UPDATE",
        "SystemConfig",
        config.id,
        actor_id,
        changes={"is_active": {"old": not config.is_active, "new": config.is_active}},
        details={"key": config.key},
    )
    db.session.commit()
    return config
