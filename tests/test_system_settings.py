from __future__ import annotations

from datetime import timedelta

import pytest

from app.admin.services import (
    create_system_config,
    list_system_configs,
    system_config_by_id,
    system_config_stats,
    system_configs_by_category,
    toggle_system_config,
    update_system_config,
)
from app.core.errors import NotFoundError, ValidationError
from app.core.extensions import db
from app.core.models import AuditLog, SystemConfig, utcnow


def _config(key: str) -> SystemConfig:
    return SystemConfig.query.filter_by(key=key).one()


def test_settings_are_listed_by_key_and_grouped_by_prefix(app, users):
    create_system_config({"key": "upload.max_mb", "value": "10"}, users["admin"].id)
    create_system_config({"key": "maintenance", "value": "off"}, users["admin"].id)

    keys = [config.key for config in list_system_configs()]
    assert keys == sorted(keys)

    groups = dict(system_configs_by_category())
    assert list(groups) == sorted(groups)
    assert [config.key for config in groups["Title"]] == ["title.unreturned_days"]
    assert [config.key for config in groups["Maintenance"]] == ["maintenance"]
    assert "Upload" in groups


def test_create_setting_rejects_duplicate_and_malformed_keys(app, users):
    with pytest.raises(ValidationError) as exc:
        create_system_config({"key": "TAX.PENALTY_RATE", "value": "0.03"}, users["admin"].id)
    assert exc.value.fields["key"] == "Configuration key already exists"

    with pytest.raises(ValidationError) as exc:
        create_system_config({"key": "tax..rate", "value": ""}, users["admin"].id)
    assert set(exc.value.fields) == {"key", "value"}

    config = create_system_config(
        {"key": "report.footer", "value": " Confidential ", "description": "Printed on exports"},
        users["admin"].id,
    )
    assert config.value == "Confidential"
    assert config.is_active is True
    assert AuditLog.query.filter_by(action="CREATE", entity_type="SystemConfig", entity_id=config.id).count() == 1


def test_update_setting_keeps_description_when_omitted(app, users):
    config = _config("tax.penalty_rate")
    description = config.description
    update_system_config(config.id, {"value": "0.025"}, users["admin"].id)
    assert config.value == "0.025"
    assert config.description == description

    update_system_config(config.id, {"value": "0.025", "description": "Raised for 2026"}, users["admin"].id)
    assert config.description == "Raised for 2026"

    with pytest.raises(ValueError, match="No changes detected"):
        update_system_config(config.id, {"value": "0.025", "description": "Raised for 2026"}, users["admin"].id)
    with pytest.raises(ValidationError):
        update_system_config(config.id, {"value": "  "}, users["admin"].id)
    audit = (
        AuditLog.query.filter_by(action="UPDATE", entity_type="SystemConfig", entity_id=config.id)
        .order_by(AuditLog.id.asc())
        .first()
    )
    assert audit.changes["value"] == {"old": "0.02", "new": "0.025"}


def test_toggle_and_stats(app, users):
    config = _config("notification.ttl_days")
    toggle_system_config(config.id, users["admin"].id)
    assert config.is_active is False

    stats = system_config_stats()
    assert stats == {"total": 3, "active": 2, "inactive": 1, "recently_updated": 3}

    toggle_system_config(config.id, users["admin"].id)
    assert config.is_active is True
    assert system_config_stats(utcnow() + timedelta(days=8))["recently_updated"] == 0


def test_missing_setting_is_not_found(app):
    with pytest.raises(NotFoundError, match="Configuration not found"):
        system_config_by_id(9999)
    with pytest.raises(NotFoundError):
        toggle_system_config(9999, None)


def test_settings_page_requires_system_permission(client, login_admin, login_manager):
    login_manager()
    assert client.get("/admin/settings").status_code == 403
    assert client.post("/admin/settings/new", data={"key": "x.y", "value": "1"}).status_code == 403
    client.post("/auth/logout")

    login_admin()
    response = client.get("/admin/settings")
    assert response.status_code == 200
    assert b"tax.penalty_rate" in response.data
    assert b"<h2>Notification</h2>" in response.data


def test_admin_manages_settings_through_the_page(client, login_admin):
    login_admin()
    response = client.post(
        "/admin/settings/new",
        data={"key": "title.vault_location", "value": "Head Office", "description": "Default custody"},
        follow_redirects=True,
    )
    assert b"Setting title.vault_location created" in response.data
    config = _config("title.vault_location")

    response = client.post(
        "/admin/settings/new",
        data={"key": "title.vault_location", "value": "Branch"},
        follow_redirects=True,
    )
    assert b"Configuration key already exists" in response.data

    client.post(f"/admin/settings/{config.id}/edit", data={"value": "Makati Branch", "description": "Default custody"})
    db.session.refresh(config)
    assert config.value == "Makati Branch"

    response = client.post(f"/admin/settings/{config.id}/toggle", follow_redirects=True)
    assert b"Setting title.vault_location disabled" in response.data
    db.session.refresh(config)
    assert config.is_active is False
    assert client.post("/admin/settings/9999/toggle").status_code == 404
