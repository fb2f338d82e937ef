from __future__ import annotations

from decimal import Decimal


def money(value: Decimal | float | int | None) -> str:
    return f"PHP {Decimal(value or 0):,.2f}"


def label(value: object) -> str:
    raw = getattr(value, "value", value) or ""
    return str(raw).replace("_", " ").title()
