from __future__ import annotations

import os


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///registry.db",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(10 * 1024 * 1024)))
    UPLOAD_EXTENSIONS = tuple(
        ext.strip().lower()
        for ext in os.getenv(
            "UPLOAD_EXTENSIONS",
            "pdf,jpg,jpeg,png,gif,doc,docx,xls,xlsx,txt",
        ).split(",")
        if ext.strip()
    )
    NOTIFICATION_TTL_DAYS = int(os.getenv("NOTIFICATION_TTL_DAYS", "30"))
    UNRETURNED_TITLE_DAYS = int(os.getenv("UNRETURNED_TITLE_DAYS", "7"))
    ITEMS_PER_PAGE = int(os.getenv("ITEMS_PER_PAGE", "10"))
    APP_ENV = os.getenv("APP_ENV", "production")
