"""Manifestation intake, triage, redaction and public read paths."""
import re
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from flask import current_app, has_request_context, request
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import (
    DEFAULT_MANIFESTATION_TYPE,
    INITIAL_STATUS,
    MANIFESTATION_STATUSES,
    Attachment,
    AuditLog,
    Manifestation,
    ManifestationResponse,
    canonical_type,
    generate_protocol,
)
from utils.attachment_storage import StoredFile, summarize_media
from utils.classification_policy import compute_is_public
from utils.text_classifier import ClassificationResult, TextClassifier


class ManifestationValidationError(ValueError):
    """Raised when input is rejected before any state change."""


class ManifestationNotFoundError(LookupError):
    """Raised when no manifestation matches the given identity."""


def _resolve_type(type_: Optional[str]) -> str:
    if type_ is None or not str(type_).strip():
        return DEFAULT_MANIFESTATION_TYPE
    resolved = canonical_type(type_)
    if not resolved:
        raise ManifestationValidationError("Tipo de manifestação inválido.")
    return resolved


def _normalize_cpf(cpf: Optional[str]) -> Optional[str]:
    digits = re.sub(r"\D", "", cpf or "")
    return digits if len(digits) == 11 else None


def _commit() -> None:
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


def _audit(actor, action_type: str, manifestation: Manifestation) -> None:
    entry = AuditLog(
        user_id=getattr(actor, "id", None),
        action_type=action_type,
        context_entity=f"manifestation:{manifestation.id}",
    )
    if has_request_context():
        entry.ip_address = request.remote_addr
        entry.user_agent = request.headers.get("User-Agent", "unknown")[:255]
    db.session.add(entry)


def _locked(manifestation_id) -> Manifestation:
    """Load a manifestation with a row lock so concurrent staff writes are serialized."""
    manifestation = Manifestation.query.filter_by(id=manifestation_id).with_for_update().first()
    if manifestation is None:
        raise ManifestationNotFoundError(f"Manifestation {manifestation_id} not found")
    return manifestation


def analyze_only(classifier: TextClassifier, text: str, type_: Optional[str]) -> ClassificationResult:
    """Classification preview for the confirmation step; nothing is stored."""
    return classifier.analyze(text or "", _resolve_type(type_))


def submit_manifestation(
    classifier: TextClassifier,
    *,
    text: str,
    type_: Optional[str],
    is_anonymous: bool,
    name: Optional[str] = None,
    cpf: Optional[str] = None,
    attachments: Sequence[StoredFile] = (),
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
) -> Manifestation:
    text = (text or "").strip()
    if not text:
        raise ManifestationValidationError("O relato não pode estar vazio.")
    manifestation_type = _resolve_type(type_)

    if is_anonymous:
        name = None
        cpf = None
    else:
        name = (name or "").strip() or None
        cpf = _normalize_cpf(cpf)
        if not name:
            raise ManifestationValidationError("Informe seu nome completo.")
        if not cpf:
            raise ManifestationValidationError("Informe um CPF válido.")

    classification = classifier.analyze(text, manifestation_type)
    is_public = compute_is_public(is_anonymous, classification)
    media = summarize_media(a.file_type for a in attachments)

    manifestation = Manifestation(
        protocol=generate_protocol(current_app.config.get("PROTOCOL_PREFIX", "DF")),
        text=text,
        type=manifestation_type,
        is_anonymous=bool(is_anonymous),
        name=name,
        cpf=cpf,
        is_public=is_public,
        was_edited=False,
        status=INITIAL_STATUS,
        has_audio=media.has_audio,
        has_video=media.has_video,
        image_count=media.image_count,
        latitude=latitude,
        longitude=longitude,
    )
    for stored in attachments:
        manifestation.attachments.append(Attachment(file_path=stored.file_path, file_type=stored.file_type))
    db.session.add(manifestation)
    _commit()

    current_app.logger.info(
        "Manifestation stored",
        extra={
            "protocol": manifestation.protocol,
            "manifestation_id": manifestation.id,
            "attachments": len(attachments),
            "is_public": is_public,
            "pii_confidence": classification.pii_confidence,
        },
    )
    return manifestation


def set_status(manifestation_id, new_status: str, actor=None) -> Manifestation:
    if new_status not in MANIFESTATION_STATUSES:
        raise ManifestationValidationError("Status inválido.")
    manifestation = _locked(manifestation_id)
    previous = manifestation.status
    manifestation.status = new_status
    _audit(actor, "STATUS_CHANGED", manifestation)
    _commit()
    current_app.logger.info(
        "Manifestation status changed",
        extra={"manifestation_id": manifestation.id, "from": previous, "to": new_status},
    )
    return manifestation


def redact(manifestation_id, new_text: str, make_public: bool, actor=None) -> Manifestation:
    """Staff rewrite of the displayed text.

    The first pre-edit text is kept in ``original_text`` forever; later rounds
    never overwrite it. Publication follows ``make_public`` without consulting
    the classifier, since a person reviewed the new text.
    """
    if not (new_text or "").strip():
        raise ManifestationValidationError("O texto editado não pode estar vazio.")
    manifestation = _locked(manifestation_id)

    original_to_save = manifestation.original_text if manifestation.original_text is not None else manifestation.text
    manifestation.text = new_text
    manifestation.original_text = original_to_save
    manifestation.is_public = bool(make_public)
    manifestation.was_edited = True
    _audit(actor, "MANIFESTATION_REDACTED", manifestation)
    _commit()
    current_app.logger.info(
        "Manifestation redacted",
        extra={"manifestation_id": manifestation.id, "is_public": manifestation.is_public},
    )
    return manifestation


def add_response(manifestation_id, message: str, is_admin: bool = True, actor=None) -> ManifestationResponse:
    message = (message or "").strip()
    if not message:
        raise ManifestationValidationError("A resposta não pode estar vazia.")
    manifestation = _locked(manifestation_id)
    response = ManifestationResponse(manifestation=manifestation, message=message, is_admin=bool(is_admin))
    db.session.add(response)
    _audit(actor, "RESPONSE_ADDED", manifestation)
    _commit()
    return response


def list_public(limit: int = 20) -> List[Dict]:
    max_limit = int(current_app.config.get("PUBLIC_FEED_MAX", 50))
    limit = max(1, min(int(limit), max_limit))
    rows = (
        Manifestation.public_query()
        .order_by(Manifestation.created_at.desc(), Manifestation.id.desc())
        .limit(limit)
        .all()
    )
    return [row.public_feed_payload() for row in rows]


def get_by_protocol(protocol: str) -> Dict:
    manifestation = Manifestation.query.filter_by(protocol=(protocol or "").strip()).first()
    if manifestation is None:
        raise ManifestationNotFoundError("Protocolo não encontrado.")
    return manifestation.protocol_payload()


def get_for_staff(manifestation_id) -> Dict:
    manifestation = db.session.get(Manifestation, manifestation_id)
    if manifestation is None:
        raise ManifestationNotFoundError(f"Manifestation {manifestation_id} not found")
    return manifestation.staff_payload()


def list_for_staff(page: int = 1, per_page: int = 10, status: Optional[str] = None) -> Dict:
    if status and status not in MANIFESTATION_STATUSES:
        raise ManifestationValidationError("Status inválido.")
    max_per_page = int(current_app.config.get("ADMIN_PAGE_MAX", 100))
    page = max(1, int(page))
    per_page = max(1, min(int(per_page), max_per_page))

    query = Manifestation.query
    if status:
        query = query.filter(Manifestation.status == status)
    total = query.count()
    rows = (
        query.order_by(Manifestation.created_at.desc(), Manifestation.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "data": [row.staff_payload() for row in rows],
        "total": total,
        "page": page,
        "totalPages": (total + per_page - 1) // per_page,
    }


def _count_by(column, rows: Iterable) -> List[Dict]:
    return [{column: str(key), "count": count} for key, count in rows]


def dashboard_stats(now: Optional[datetime] = None) -> Dict:
    now = now or datetime.utcnow()
    since = now - timedelta(days=7)
    total = Manifestation.query.count()
    pending = Manifestation.query.filter(Manifestation.status == INITIAL_STATUS).count()
    by_type = (
        db.session.query(Manifestation.type, func.count(Manifestation.id))
        .group_by(Manifestation.type)
        .order_by(Manifestation.type)
        .all()
    )
    day = func.date(Manifestation.created_at)
    trend = (
        db.session.query(day, func.count(Manifestation.id))
        .filter(Manifestation.created_at >= since)
        .group_by(day)
        .order_by(day)
        .all()
    )
    return {
        "total": total,
        "pending": pending,
        "byType": _count_by("type", by_type),
        "trend": _count_by("date", trend),
    }
