from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import create_app
from app.core.config import Config
from app.core.extensions import db
from app.core.models import Property, User, seed_demo_data


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    LOG_LEVEL = "WARNING"


@pytest.fixture
def app(tmp_path):
    app = create_app(TestConfig)
    app.instance_path = str(tmp_path)
    with app.app_context():
        db.create_all()
        seed_demo_data(db.session)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _login_as(client, email: str, password: str):
    def _login():
        return client.post(
            "/auth/login",
            data={"email": email, "password": password},
            follow_redirects=True,
        )

    return _login


@pytest.fixture
def login_admin(client):
    return _login_as(client, "admin@registry.local", "admin123")


@pytest.fixture
def login_manager(client):
    return _login_as(client, "manager@registry.local", "manager123")


@pytest.fixture
def login_approver(client):
    return _login_as(client, "approver@registry.local", "approver123")


@pytest.fixture
def login_finance(client):
    return _login_as(client, "finance@registry.local", "finance123")


@pytest.fixture
def login_viewer(client):
    return _login_as(client, "viewer@registry.local", "viewer123")


@pytest.fixture
def users(app):
    return {user.email.split("@")[0]: user for user in User.query.all()}


@pytest.fixture
def properties(app):
    return {prop.title_number: prop for prop in Property.query.all()}
