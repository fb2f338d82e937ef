from __future__ import annotations

import logging

from flask import Blueprint, flash, redirect, render_template, request, url_for
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from app.core.extensions import db
from app.core.models import User, utcnow

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


@auth_bp.get("/login")
def login():
    if current_user.is_authenticated:
        return redirect(url_for("dashboard_page"))
    return render_template("auth/login.html")


@auth_bp.post("/login")
def login_post():
    email = request.form.get("email", "").strip().lower()
    password = request.form.get("password", "")
    user = User.query.filter_by(email=email).first()
    if not user or not check_password_hash(user.password_hash, password):
        logger.warning("Failed login for %s", email or "<blank>")
        flash("Invalid email or password", "error")
        return redirect(url_for("auth.login"))
    if not user.is_active:
        flash("Your account is deactivated. Contact an administrator.", "error")
        return redirect(url_for("auth.login"))
    login_user(user)
    user.last_login_at = utcnow()
    db.session.commit()
    logger.info("User %s logged in", user.email)
    next_url = request.args.get("next") or ""
    if next_url.startswith("/") and not next_url.startswith("//"):
        return redirect(next_url)
    return redirect(url_for("dashboard_page"))


@auth_bp.post("/logout")
@login_required
def logout():
    logout_user()
    return redirect(url_for("auth.login"))
