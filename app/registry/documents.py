from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from urllib.parse import urlparse

from flask import current_app
from sqlalchemy import func
from sqlalchemy.orm import joinedload
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from app.core.errors import NotFoundError, ValidationError
from app.core.extensions import db
from app.core.models import ChangeType, DocumentType, Property, PropertyDocument
from app.registry.services import _clean, _parse_enum, paginate_query, property_by_id, record_change

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp"}

# (words that must all appear, words of which one must appear, type); checked in order
DOCUMENT_TYPE_RULES: list[tuple[tuple[str, ...], tuple[str, ...], DocumentType]] = [
    ((), ("title", "deed"), DocumentType.TITLE_DEED),
    (("tax",), ("declaration", "decl"), DocumentType.TAX_DECLARATION),
    (("tax",), ("receipt", "payment"), DocumentType.TAX_RECEIPT),
    ((), ("survey", "plan"), DocumentType.SURVEY_PLAN),
    ((), ("mortgage", "loan"), DocumentType.MORTGAGE_CONTRACT),
    ((), ("sale",), DocumentType.SALE_AGREEMENT),
    ((), ("lease", "rent"), DocumentType.LEASE_AGREEMENT),
    ((), ("appraisal", "valuation"), DocumentType.APPRAISAL_REPORT),
]


def detect_document_type(file_name: str) -> DocumentType:
    lowered = file_name.lower()
    for required, any_of, document_type in DOCUMENT_TYPE_RULES:
        if all(word in lowered for word in required) and any(word in lowered for word in any_of):
            return document_type
    extension = lowered.rsplit(".", 1)[-1] if "." in lowered else ""
    if extension in IMAGE_EXTENSIONS:
        return DocumentType.PHOTO
    return DocumentType.OTHER


def _document_storage_root(property_id: int) -> Path:
    return Path(current_app.instance_path) / "storage" / "properties" / str(property_id) / "documents"


def _validate_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError({"file_url": "Document URL must be a valid http(s) URL"})
    return value


def document_by_id(document_id: int, include_inactive: bool = False) -> PropertyDocument:
    query = PropertyDocument.query.options(joinedload(PropertyDocument.property_record)).filter_by(id=document_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    document = query.first()
    if not document:
        raise NotFoundError("Document not found")
    return document


def prepare_property_document(
    prop: Property,
    payload: dict[str, str],
    file_obj: FileStorage | None,
    user_id: int | None,
) -> PropertyDocument:
    """Validate an upload and build the unsaved document; nothing is written yet."""
    file_url = _clean(payload.get("file_url"))
    has_file = bool(file_obj and file_obj.filename)
    if not has_file and not file_url:
        raise ValidationError({"file": "Select a file to upload or provide a document URL"})
    description = _clean(payload.get("description"))
    if len(description) > 1000:
        raise ValidationError({"description": "Description must be at most 1000 characters"})

    if has_file:
        file_name = secure_filename(file_obj.filename) or "document.bin"
        extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
        allowed = current_app.config.get("UPLOAD_EXTENSIONS", ())
        if allowed and extension not in allowed:
            raise ValidationError({"file": f"File type .{extension or '?'} is not allowed"})
    else:
        _validate_url(file_url)
        file_name = _clean(payload.get("file_name")) or Path(urlparse(file_url).path).name or "document"

    document_type = _parse_enum(
        DocumentType,
        payload.get("document_type"),
        "document type",
        detect_document_type(file_name),
    )
    return PropertyDocument(
        property_id=prop.id,
        document_type=document_type,
        file_name=file_name[:255],
        description=description,
        uploaded_by_id=user_id,
        mime_type=(mimetypes.guess_type(file_name)[0] or "application/octet-stream"),
        file_url=None if has_file else file_url,
    )


def store_document_file(document: PropertyDocument, file_obj: FileStorage) -> Path:
    root = _document_storage_root(document.property_id)
    root.mkdir(parents=True, exist_ok=True)
    stem, suffix = Path(document.file_name).stem, Path(document.file_name).suffix
    absolute = root / document.file_name
    counter = 1
    while absolute.exists():
        absolute = root / f"{stem}-{counter}{suffix}"
        counter += 1
    file_obj.save(absolute)
    document.file_path = absolute.relative_to(Path(current_app.instance_path)).as_posix()
    document.file_size = absolute.stat().st_size
    if file_obj.mimetype and file_obj.mimetype != "application/octet-stream":
        document.mime_type = file_obj.mimetype
    return absolute


def add_property_document(
    property_id: int,
    payload: dict[str, str],
    file_obj: FileStorage | None,
    user_id: int | None,
) -> PropertyDocument:
    prop = property_by_id(property_id)
    document = prepare_property_document(prop, payload, file_obj, user_id)
    if document.file_url is None:
        store_document_file(document, file_obj)
    db.session.add(document)
    db.session.commit()
    logger.info("Document %s attached to property %s", document.file_name, prop.title_number)
    return document


def update_property_document(document_id: int, payload: dict[str, str], user_id: int | None) -> PropertyDocument:
    document = document_by_id(document_id)
    description = _clean(payload.get("description"))
    if len(description) > 1000:
        raise ValidationError({"description": "Description must be at most 1000 characters"})
    document_type = _parse_enum(DocumentType, payload.get("document_type"), "document type", document.document_type)
    if document_type != document.document_type:
        record_change(
            document.property_id,
            "document.type",
            document.document_type,
            document_type,
            ChangeType.UPDATE,
            f"Document {document.file_name} reclassified",
            user_id,
        )
    document.document_type = document_type
    document.description = description
    db.session.commit()
    return document


def delete_property_document(document_id: int, user_id: int | None) -> PropertyDocument:
    document = document_by_id(document_id)
    document.is_active = False
    record_change(
        document.property_id,
        "document",
        f"{document.document_type.value}: {document.file_name}",
        None,
        ChangeType.DELETE,
        "Document removed",
        user_id,
    )
    db.session.commit()
    logger.info("Document %s removed from property %s", document.id, document.property_id)
    return document


def document_download(document_id: int) -> tuple[bytes | None, str, str | None]:
    """Return (content, file name, external url); content is None for URL documents."""
    document = document_by_id(document_id)
    if document.file_url:
        return None, document.file_name, document.file_url
    if not document.file_path:
        raise ValueError("Document has no stored file")
    absolute = Path(current_app.instance_path) / document.file_path
    if not absolute.exists():
        raise NotFoundError("Document file not found")
    return absolute.read_bytes(), document.file_name, None


def list_documents(filters: dict[str, str], page: int = 1) -> dict[str, object]:
    query = (
        PropertyDocument.query.options(joinedload(PropertyDocument.property_record))
        .join(Property, PropertyDocument.property_id == Property.id)
        .filter(PropertyDocument.is_active.is_(True))
        .filter(Property.is_deleted.is_(False))
    )
    document_type = _clean(filters.get("document_type")).upper()
    if document_type in DocumentType.__members__:
        query = query.filter(PropertyDocument.document_type == DocumentType[document_type])
    property_id = _clean(filters.get("property_id"))
    if property_id.isdigit():
        query = query.filter(PropertyDocument.property_id == int(property_id))
    search = _clean(filters.get("search"))
    if search:
        query = query.filter(PropertyDocument.file_name.ilike(f"%{search}%"))
    query = query.order_by(PropertyDocument.uploaded_at.desc(), PropertyDocument.id.desc())
    return paginate_query(query, page, 20)


def document_stats() -> dict[str, object]:
    by_type = dict(
        db.session.query(PropertyDocument.document_type, func.count(PropertyDocument.id))
        .filter(PropertyDocument.is_active.is_(True))
        .group_by(PropertyDocument.document_type)
        .all()
    )
    total_size = (
        db.session.query(func.coalesce(func.sum(PropertyDocument.file_size), 0))
        .filter(PropertyDocument.is_active.is_(True))
        .scalar()
    )
    return {
        "total": sum(by_type.values()),
        "total_size": int(total_size or 0),
        "by_type": {document_type.value: by_type.get(document_type, 0) for document_type in DocumentType},
    }
