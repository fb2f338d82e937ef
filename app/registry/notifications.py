from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from flask import current_app
from sqlalchemy import case, or_

from app.core.errors import NotFoundError
from app.core.extensions import db
from app.core.models import (
    ACTIVE_MOVEMENT_STATUSES,
    ApprovalStatus,
    ApprovalWorkflow,
    Notification,
    NotificationType,
    Permission,
    Priority,
    Role,
    TitleMovement,
    User,
    role_permission,
    utcnow,
)
from app.registry.services import as_aware, overdue_taxes_query

logger = logging.getLogger(__name__)

PRIORITY_ORDER = case(
    (Notification.priority == Priority.URGENT, 3),
    (Notification.priority == Priority.HIGH, 2),
    (Notification.priority == Priority.NORMAL, 1),
    else_=0,
)


def create_notification(
    user_id: int,
    title: str,
    message: str,
    notification_type: NotificationType,
    priority: Priority = Priority.NORMAL,
    action_url: str = "",
    entity_type: str = "",
    entity_id: int | None = None,
) -> Notification:
    ttl_days = current_app.config.get("NOTIFICATION_TTL_DAYS", 30)
    notification = Notification(
        user_id=user_id,
        title=title[:200],
        message=message[:1000],
        type=notification_type,
        priority=priority,
        action_url=action_url,
        entity_type=entity_type,
        entity_id=entity_id,
        expires_at=utcnow() + timedelta(days=ttl_days),
    )
    db.session.add(notification)
    return notification


def users_with_permission(permission_name: str) -> list[User]:
    return (
        User.query.join(Role, User.role_id == Role.id)
        .join(role_permission, role_permission.c.role_id == Role.id)
        .join(Permission, Permission.id == role_permission.c.permission_id)
        .filter(Permission.name == permission_name)
        .filter(User.is_active.is_(True))
        .filter(Role.is_active.is_(True))
        .order_by(User.id.asc())
        .all()
    )


def notify_approval_requested(workflow: ApprovalWorkflow) -> None:
    if workflow.assigned_to_id:
        recipients = [workflow.assigned_to_id]
    else:
        recipients = [user.id for user in users_with_permission("approval.approve")]
    title_number = workflow.property_record.title_number if workflow.property_record else f"#{workflow.property_id}"
    for user_id in recipients:
        if user_id == workflow.initiated_by_id:
            continue
        create_notification(
            user_id,
            "Approval requested",
            f"{workflow.workflow_type.value.replace('_', ' ').title()} for {title_number}: {workflow.description}",
            NotificationType.APPROVAL,
            workflow.priority,
            action_url=f"/approvals/{workflow.id}",
            entity_type="ApprovalWorkflow",
            entity_id=workflow.id,
        )


def notify_workflow_decided(workflow: ApprovalWorkflow) -> None:
    title_number = workflow.property_record.title_number if workflow.property_record else f"#{workflow.property_id}"
    if workflow.status == ApprovalStatus.APPROVED:
        message = f"Your request for {title_number} was approved"
        priority = Priority.NORMAL
    else:
        message = f"Your request for {title_number} was rejected: {workflow.rejected_reason or ''}".strip()
        priority = Priority.HIGH
    create_notification(
        workflow.initiated_by_id,
        f"Request {workflow.status.value.lower()}",
        message,
        NotificationType.APPROVAL,
        priority,
        action_url=f"/approvals/{workflow.id}",
        entity_type="ApprovalWorkflow",
        entity_id=workflow.id,
    )


def notify_title_released(movement: TitleMovement, user_id: int) -> None:
    create_notification(
        user_id,
        "Title released",
        f"Title {movement.property_record.title_number} released to {movement.received_by_name} "
        f"(transmittal {movement.received_by_transmittal})",
        NotificationType.TITLE_MOVEMENT,
        Priority.NORMAL,
        action_url=f"/title-movements/{movement.id}",
        entity_type="TitleMovement",
        entity_id=movement.id,
    )


def _recently_notified(
    user_id: int,
    notification_type: NotificationType,
    entity_type: str,
    entity_id: int,
    since: datetime,
) -> bool:
    return (
        Notification.query.filter_by(
            user_id=user_id,
            type=notification_type,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        .filter(Notification.created_at >= since)
        .first()
        is not None
    )


def _overdue_tax_priority(days_overdue: int) -> Priority:
    if days_overdue > 90:
        return Priority.URGENT
    if days_overdue > 30:
        return Priority.HIGH
    return Priority.NORMAL


def _pending_approval_priority(workflow: ApprovalWorkflow, days_waiting: int) -> Priority:
    if workflow.priority == Priority.URGENT:
        return Priority.URGENT
    if days_waiting > 7:
        return Priority.HIGH
    return Priority.NORMAL


def _unreturned_title_priority(days_out: int) -> Priority:
    if days_out > 30:
        return Priority.URGENT
    if days_out > 14:
        return Priority.HIGH
    return Priority.NORMAL


def refresh_system_notifications(user: User, now: datetime | None = None) -> int:
    now = now or utcnow()
    today = now.date()
    created = 0

    if user.has_permission("tax", "read"):
        since = now - timedelta(days=7)
        for tax in overdue_taxes_query(today).all():
            if _recently_notified(user.id, NotificationType.TAX, "RealPropertyTax", tax.id, since):
                continue
            days_overdue = (today - tax.due_date).days
            create_notification(
                user.id,
                "Overdue real property tax",
                f"{tax.property_record.title_number} {tax.period_label} is {days_overdue} day(s) overdue",
                NotificationType.TAX,
                _overdue_tax_priority(days_overdue),
                action_url=f"/properties/{tax.property_id}",
                entity_type="RealPropertyTax",
                entity_id=tax.id,
            )
            created += 1

    if user.has_permission("approval", "approve"):
        since = now - timedelta(days=1)
        pending = (
            ApprovalWorkflow.query.filter_by(status=ApprovalStatus.PENDING)
            .filter(ApprovalWorkflow.initiated_by_id != user.id)
            .filter(or_(ApprovalWorkflow.assigned_to_id.is_(None), ApprovalWorkflow.assigned_to_id == user.id))
            .all()
        )
        for workflow in pending:
            if _recently_notified(user.id, NotificationType.APPROVAL, "ApprovalWorkflow", workflow.id, since):
                continue
            days_waiting = (now - as_aware(workflow.created_at)).days
            create_notification(
                user.id,
                "Pending approval",
                f"{workflow.description or workflow.workflow_type.value} has been waiting {days_waiting} day(s)",
                NotificationType.APPROVAL,
                _pending_approval_priority(workflow, days_waiting),
                action_url=f"/approvals/{workflow.id}",
                entity_type="ApprovalWorkflow",
                entity_id=workflow.id,
            )
            created += 1

    if user.has_permission("title_movement", "read"):
        since = now - timedelta(days=7)
        threshold = now - timedelta(days=current_app.config.get("UNRETURNED_TITLE_DAYS", 7))
        movements = (
            TitleMovement.query.filter(TitleMovement.movement_status.in_(ACTIVE_MOVEMENT_STATUSES))
            .filter(TitleMovement.date_released < threshold)
            .all()
        )
        for movement in movements:
            if _recently_notified(user.id, NotificationType.TITLE_MOVEMENT, "TitleMovement", movement.id, since):
                continue
            days_out = (now - as_aware(movement.date_released)).days
            create_notification(
                user.id,
                "Title not yet returned",
                f"Title {movement.property_record.title_number} has been with "
                f"{movement.received_by_name} for {days_out} day(s)",
                NotificationType.TITLE_MOVEMENT,
                _unreturned_title_priority(days_out),
                action_url=f"/title-movements/{movement.id}",
                entity_type="TitleMovement",
                entity_id=movement.id,
            )
            created += 1

    db.session.commit()
    if created:
        logger.info("Created %s system notification(s) for user %s", created, user.id)
    return created


def notifications_for_user(user_id: int, limit: int = 20, now: datetime | None = None) -> list[Notification]:
    now = now or utcnow()
    return (
        Notification.query.filter_by(user_id=user_id)
        .filter(or_(Notification.expires_at.is_(None), Notification.expires_at > now))
        .order_by(Notification.is_read.asc(), PRIORITY_ORDER.desc(), Notification.created_at.desc())
        .limit(limit)
        .all()
    )


def unread_count(user_id: int, now: datetime | None = None) -> int:
    now = now or utcnow()
    return (
        Notification.query.filter_by(user_id=user_id, is_read=False)
        .filter(or_(Notification.expires_at.is_(None), Notification.expires_at > now))
        .count()
    )


def mark_notification_read(notification_id: int, user_id: int) -> Notification:
    notification = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
    if not notification:
        raise NotFoundError("Notification not found")
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        db.session.commit()
    return notification


def mark_all_read(user_id: int) -> int:
    unread = Notification.query.filter_by(user_id=user_id, is_read=False).all()
    stamp = utcnow()
    for notification in unread:
        notification.is_read = True
        notification.read_at = stamp
    db.session.commit()
    return len(unread)


def refresh_all_users(today: date | None = None) -> int:
    now = utcnow() if today is None else datetime.combine(today, utcnow().timetz())
    total = 0
    for user in User.query.filter_by(is_active=True).order_by(User.id.asc()).all():
        total += refresh_system_notifications(user, now)
    return total
