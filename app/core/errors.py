from __future__ import annotations


class ValidationError(ValueError):
    def __init__(self, fields: dict[str, str] | str, message: str | None = None):
        if isinstance(fields, str):
            fields = {"__all__": fields}
        self.fields = fields
        super().__init__(message or "; ".join(fields.values()))


class NotFoundError(ValueError):
    pass
