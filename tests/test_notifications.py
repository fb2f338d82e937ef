from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.errors import NotFoundError
from app.core.extensions import db
from app.core.models import Notification, NotificationType, Priority, utcnow
from app.registry.notifications import (
    create_notification,
    mark_all_read,
    mark_notification_read,
    notifications_for_user,
    refresh_all_users,
    refresh_system_notifications,
    unread_count,
    users_with_permission,
)
from app.registry.services import overdue_taxes_query


def _overdue_count(now) -> int:
    return overdue_taxes_query(now.date()).count()


def _types(user_id: int) -> list[str]:
    return sorted(row.type.value for row in Notification.query.filter_by(user_id=user_id))


def test_refresh_follows_user_permissions(app, users):
    now = utcnow()
    overdue = _overdue_count(now)
    assert overdue >= 1

    assert refresh_system_notifications(users["finance"], now) == overdue + 1
    assert _types(users["finance"].id) == sorted(["TAX"] * overdue + ["TITLE_MOVEMENT"])

    assert refresh_system_notifications(users["approver"], now) == overdue + 2
    assert "APPROVAL" in _types(users["approver"].id)

    # the pending owner change was raised by the manager
    assert refresh_system_notifications(users["manager"], now) == overdue + 1
    assert "APPROVAL" not in _types(users["manager"].id)


def test_refresh_does_not_repeat_recent_alerts(app, users):
    now = utcnow()
    first = refresh_system_notifications(users["viewer"], now)
    assert first == _overdue_count(now) + 1
    assert refresh_system_notifications(users["viewer"], now + timedelta(hours=2)) == 0
    # a week later the overdue and unreturned alerts are raised again
    assert refresh_system_notifications(users["viewer"], now + timedelta(days=8)) >= first


def test_unreturned_title_alert_mentions_holder(app, users):
    refresh_system_notifications(users["viewer"])
    alert = Notification.query.filter_by(user_id=users["viewer"].id, type=NotificationType.TITLE_MOVEMENT).one()
    assert alert.title == "Title not yet returned"
    assert "OCT-310-1998" in alert.message
    assert "Atty. Pedro Lim" in alert.message
    assert alert.action_url.startswith("/title-movements/")


def test_approvers_are_looked_up_by_permission(app, users):
    approvers = {user.email for user in users_with_permission("approval.approve")}
    assert approvers == {"admin@registry.local", "approver@registry.local"}

    users["approver"].is_active = False
    db.session.commit()
    assert {user.email for user in users_with_permission("approval.approve")} == {"admin@registry.local"}


def test_inbox_orders_unread_and_priority_first(app, users):
    user_id = users["viewer"].id
    low = create_notification(user_id, "Low", "low", NotificationType.SYSTEM, Priority.LOW)
    urgent = create_notification(user_id, "Urgent", "urgent", NotificationType.SYSTEM, Priority.URGENT)
    read = create_notification(user_id, "Read", "read", NotificationType.SYSTEM, Priority.URGENT)
    expired = create_notification(user_id, "Old", "old", NotificationType.SYSTEM)
    expired.expires_at = utcnow() - timedelta(minutes=1)
    db.session.commit()
    mark_notification_read(read.id, user_id)

    rows = notifications_for_user(user_id)
    assert [row.id for row in rows] == [urgent.id, low.id, read.id]
    assert unread_count(user_id) == 2
    assert read.read_at is not None


def test_mark_read_is_scoped_to_owner(app, users):
    notification = create_notification(users["viewer"].id, "Hello", "hi", NotificationType.SYSTEM)
    db.session.commit()
    with pytest.raises(NotFoundError):
        mark_notification_read(notification.id, users["finance"].id)
    assert notification.is_read is False


def test_mark_all_read(app, users):
    user_id = users["finance"].id
    refresh_system_notifications(users["finance"])
    pending = unread_count(user_id)
    assert pending > 0
    assert mark_all_read(user_id) == pending
    assert unread_count(user_id) == 0
    assert mark_all_read(user_id) == 0


def test_notifications_expire_after_ttl(app, users):
    app.config["NOTIFICATION_TTL_DAYS"] = 2
    notification = create_notification(users["viewer"].id, "Soon gone", "bye", NotificationType.SYSTEM)
    db.session.commit()
    assert notifications_for_user(users["viewer"].id, now=utcnow() + timedelta(days=1)) == [notification]
    assert notifications_for_user(users["viewer"].id, now=utcnow() + timedelta(days=3)) == []


def test_refresh_all_users(app):
    now = utcnow()
    overdue = _overdue_count(now)
    # five active users see every overdue tax; admin and approver also get the pending approval
    assert refresh_all_users() == 5 * overdue + 7
    assert refresh_all_users() == 0
