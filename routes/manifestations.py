"""Public manifestation intake, AI pre-check, protocol look-up and public feed."""
from flask import Blueprint, abort, current_app, jsonify, request, send_file
from flask_wtf import FlaskForm
from flask_wtf.file import MultipleFileField
from sqlalchemy.exc import SQLAlchemyError
from wtforms import BooleanField, FloatField, StringField, TextAreaField
from wtforms.validators import Length, Optional

from extensions import csrf
from models import Attachment
from utils.attachment_storage import discard_uploads, resolve_upload_path, save_uploads
from utils.classification_policy import needs_confirmation
from utils.manifestation_lifecycle import (
    ManifestationNotFoundError,
    ManifestationValidationError,
    analyze_only,
    get_by_protocol,
    list_public,
    submit_manifestation,
)

manifestations_bp = Blueprint("manifestations", __name__, url_prefix="/api/v1")


class ManifestationForm(FlaskForm):
    class Meta:
        csrf = False

    text = TextAreaField("Relato", validators=[Length(max=10000)])
    manifestation_type = StringField("Tipo", name="type", validators=[Optional(), Length(max=50)])
    is_anonymous = BooleanField("Anônimo", name="isAnonymous")
    name = StringField("Nome", validators=[Optional(), Length(max=255)])
    cpf = StringField("CPF", validators=[Optional(), Length(max=20)])
    latitude = FloatField("Latitude", validators=[Optional()])
    longitude = FloatField("Longitude", validators=[Optional()])
    files = MultipleFileField("Anexos")
    analyze_only = BooleanField("Somente análise", name="analyzeOnly")


def _classifier():
    return current_app.extensions["text_classifier"]


@manifestations_bp.route("/manifestations", methods=["POST"])
@csrf.exempt
def create_manifestation():
    form = ManifestationForm()
    if not form.validate():
        return jsonify({"error": "Dados inválidos.", "fields": form.errors}), 400

    if form.analyze_only.data:
        # Uploads sent along with a pre-check are never written to disk.
        try:
            result = analyze_only(_classifier(), form.text.data, form.manifestation_type.data)
        except ManifestationValidationError as exc:
            return jsonify({"error": str(exc)}), 400
        payload = result.to_payload()
        payload.update({"status": "analysis", "needsConfirmation": needs_confirmation(result)})
        return jsonify(payload)

    upload_dir = current_app.config["UPLOAD_FOLDER"]
    try:
        stored = save_uploads(form.files.data or [], upload_dir, max_bytes=current_app.config["MAX_CONTENT_LENGTH"])
    except ValueError as exc:
        current_app.logger.warning("Attachment rejected", extra={"error": str(exc)})
        return jsonify({"error": str(exc)}), 400

    try:
        manifestation = submit_manifestation(
            _classifier(),
            text=form.text.data,
            type_=form.manifestation_type.data,
            is_anonymous=form.is_anonymous.data,
            name=form.name.data,
            cpf=form.cpf.data,
            attachments=stored,
            latitude=form.latitude.data,
            longitude=form.longitude.data,
        )
    except ManifestationValidationError as exc:
        discard_uploads(stored, upload_dir)
        return jsonify({"error": str(exc)}), 400
    except SQLAlchemyError:
        current_app.logger.exception("Database error while saving manifestation")
        discard_uploads(stored, upload_dir)
        return jsonify({"error": "Erro interno ao salvar manifestação."}), 500

    return (
        jsonify(
            {
                "status": "success",
                "protocol": manifestation.protocol,
                "message": "Manifestação registrada com sucesso.",
            }
        ),
        201,
    )


@manifestations_bp.route("/manifestations/public", methods=["GET"])
def public_manifestations():
    limit = request.args.get("limit", default=20, type=int)
    items = list_public(limit)
    current_app.logger.info("public_manifestations_list", extra={"count": len(items)})
    return jsonify(items)


@manifestations_bp.route("/manifestations/<string:protocol>", methods=["GET"])
def manifestation_by_protocol(protocol):
    try:
        return jsonify(get_by_protocol(protocol))
    except ManifestationNotFoundError as exc:
        return jsonify({"error": str(exc)}), 404


@manifestations_bp.route("/uploads/<path:file_path>", methods=["GET"])
def serve_upload(file_path):
    # Missing row and missing file both end in the same 404.
    attachment = Attachment.query.filter_by(file_path=file_path).first()
    if attachment is None:
        abort(404)
    path = resolve_upload_path(current_app.config["UPLOAD_FOLDER"], attachment.file_path)
    if path is None:
        abort(404)
    return send_file(path, mimetype=attachment.file_type, as_attachment=False)
