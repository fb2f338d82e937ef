from __future__ import annotations

import logging
import sys

import click
from flask import Flask, redirect, render_template, request, url_for
from flask_login import current_user, login_required

from app.admin import admin_bp
from app.core.auth import auth_bp
from app.core.config import Config
from app.core.context import load_permission_context
from app.core.extensions import db, login_manager, migrate
from app.core.models import Role, User, seed_demo_data
from app.core.permissions import has_permission
from app.core.utils import label, money
from app.registry import registry_bp

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    app.before_request(load_permission_context)
    app.context_processor(_template_context)

    app.register_blueprint(auth_bp)
    app.register_blueprint(registry_bp)
    app.register_blueprint(admin_bp)

    register_cli(app)
    register_routes(app)
    register_error_handlers(app)
    return app


def configure_logging(app: Flask) -> None:
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger("app")
    root.setLevel(level)
    if not any(getattr(handler, "_registry_handler", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._registry_handler = True
        root.addHandler(handler)
    app.logger.setLevel(level)


def register_routes(app: Flask) -> None:
    @app.get("/")
    def home():
        return redirect(url_for("dashboard_page"))

    @app.get("/dashboard")
    @login_required
    def dashboard_page():
        from app.registry.services import dashboard_stats

        return render_template("dashboard.html", stats=dashboard_stats())

    @app.get("/search")
    @login_required
    def search_page():
        from app.registry.services import search_records

        query_text = request.args.get("q", "").strip()
        results = search_records(query_text) if query_text else None
        return render_template("search.html", q=query_text, results=results)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(401)
    def unauthorized(_error):
        return render_template("errors/401.html"), 401

    @app.errorhandler(403)
    def forbidden(_error):
        return render_template("errors/403.html"), 403

    @app.errorhandler(404)
    def not_found(_error):
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def too_large(_error):
        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        return render_template("errors/413.html", limit_mb=limit_mb), 413

    @app.errorhandler(500)
    def server_error(error):
        db.session.rollback()
        logger.exception("Unhandled error on %s %s: %s", request.method, request.path, error)
        return render_template("errors/500.html"), 500


def register_cli(app: Flask) -> None:
    @app.cli.command("seed-demo")
    @click.option("--reset", is_flag=True, help="Delete existing data before seed.")
    def seed_demo(reset: bool) -> None:
        """Seed roles, users and sample registry data."""
        if reset:
            db.drop_all()
            db.create_all()
        if not User.query.first():
            seed_demo_data(db.session)
            click.echo("Demo data seeded.")
        else:
            click.echo("Seed skipped: existing users found.")

    @app.cli.command("taxes-mark-overdue")
    def taxes_mark_overdue() -> None:
        """Flag unpaid taxes past their due date as overdue."""
        from app.registry.taxes import mark_overdue_taxes

        count = mark_overdue_taxes()
        click.echo(f"Marked {count} tax record(s) as overdue.")

    @app.cli.command("notifications-refresh")
    def notifications_refresh() -> None:
        """Generate overdue tax, pending approval and unreturned title alerts."""
        from app.registry.notifications import refresh_all_users

        created = refresh_all_users()
        click.echo(f"Created {created} notification(s).")

    @app.cli.command("create-user")
    @click.option("--email", required=True)
    @click.option("--password", required=True)
    @click.option("--role", "role_name", default="Viewer", show_default=True)
    @click.option("--first-name", default="Registry")
    @click.option("--last-name", default="User")
    def create_user_command(email: str, password: str, role_name: str, first_name: str, last_name: str) -> None:
        """Create a user account with the given role."""
        from app.admin.services import create_user
        from app.core.models import seed_permissions_and_roles

        if not Role.query.first():
            seed_permissions_and_roles(db.session)
        role = Role.query.filter_by(name=role_name).first()
        if not role:
            raise click.BadParameter(f"Unknown role {role_name}", param_hint="--role")
        payload = {
            "email": email,
            "password": password,
            "first_name": first_name,
            "last_name": last_name,
            "role_id": str(role.id),
        }
        try:
            user = create_user(payload, None)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"User {user.email} created with role {role.name}.")


def _template_context() -> dict[str, object]:
    unread = 0
    if current_user.is_authenticated:
        from app.registry.notifications import unread_count

        unread = unread_count(current_user.id)
    return {
        "money": money,
        "label": label,
        "has_permission": has_permission,
        "unread_notifications": unread,
    }


@login_manager.user_loader
def load_user(user_id: str) -> User | None:
    return db.session.get(User, int(user_id))
