"""Staff dashboard API: triage, redaction and response history."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from extensions import csrf
from utils.decorators import roles_required
from utils.manifestation_lifecycle import (
    ManifestationNotFoundError,
    ManifestationValidationError,
    add_response,
    dashboard_stats,
    get_for_staff,
    list_for_staff,
    redact,
    set_status,
)

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1/admin")
csrf.exempt(admin_bp)


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


@admin_bp.errorhandler(ManifestationValidationError)
def _validation_error(exc):
    return jsonify({"error": str(exc)}), 400


@admin_bp.errorhandler(ManifestationNotFoundError)
def _not_found(exc):
    return jsonify({"error": "Manifestação não encontrada."}), 404


@admin_bp.errorhandler(SQLAlchemyError)
def _database_error(exc):
    current_app.logger.exception("Database error in staff endpoint")
    return jsonify({"error": "Erro interno no servidor."}), 500


@admin_bp.route("/stats", methods=["GET"])
@roles_required("admin", "analyst")
def stats():
    return jsonify(dashboard_stats())


@admin_bp.route("/manifestations", methods=["GET"])
@roles_required("admin", "analyst")
def manifestations():
    page = request.args.get("page", default=1, type=int)
    limit = request.args.get("limit", default=10, type=int)
    status = request.args.get("status") or None
    return jsonify(list_for_staff(page=page, per_page=limit, status=status))


@admin_bp.route("/manifestations/<int:manifestation_id>", methods=["GET"])
@roles_required("admin", "analyst")
def manifestation_detail(manifestation_id):
    return jsonify(get_for_staff(manifestation_id))


@admin_bp.route("/manifestations/<int:manifestation_id>/status", methods=["PATCH"])
@roles_required("admin", "analyst")
def update_status(manifestation_id):
    payload = request.get_json(silent=True) or {}
    new_status = payload.get("status")
    set_status(manifestation_id, new_status, actor=current_user)
    return jsonify({"message": "Status atualizado com sucesso.", "status": new_status})


@admin_bp.route("/manifestations/<int:manifestation_id>/text", methods=["PATCH"])
@roles_required("admin")
def redact_text(manifestation_id):
    payload = request.get_json(silent=True) or {}
    manifestation = redact(
        manifestation_id,
        payload.get("text") or "",
        _as_bool(payload.get("isPublic", False)),
        actor=current_user,
    )
    return jsonify(
        {
            "message": "Manifestação atualizada com sucesso.",
            "is_public": manifestation.is_public,
            "was_edited": manifestation.was_edited,
        }
    )


@admin_bp.route("/manifestations/<int:manifestation_id>/responses", methods=["POST"])
@roles_required("admin", "analyst")
def create_response(manifestation_id):
    payload = request.get_json(silent=True) or {}
    response = add_response(manifestation_id, payload.get("message") or "", is_admin=True, actor=current_user)
    return jsonify({"message": "Resposta registrada.", "response": response.payload()}), 201
