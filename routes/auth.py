"""Staff authentication blueprint (session based)."""
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf import FlaskForm
from werkzeug.security import check_password_hash, generate_password_hash
from wtforms import PasswordField, StringField
from wtforms.validators import DataRequired, Length

from extensions import csrf, db
from models import AuditLog, StaffUser
from utils.security import track_attempt

auth_bp = Blueprint("auth", __name__, url_prefix="/api/v1/auth")

# Compared against when the username is unknown so both paths cost one hash check.
_DUMMY_HASH = generate_password_hash("not-a-real-password", method="pbkdf2:sha256", salt_length=16)


class LoginForm(FlaskForm):
    class Meta:
        csrf = False

    username = StringField("Usuário", validators=[DataRequired(), Length(max=50)])
    password = PasswordField("Senha", validators=[DataRequired()])


def _audit(action_type: str, user_id=None, context: str | None = None) -> None:
    db.session.add(
        AuditLog(
            user_id=user_id,
            action_type=action_type,
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent", "unknown")[:255],
            context_entity=context,
        )
    )


@auth_bp.route("/login", methods=["POST"])
@csrf.exempt
def login():
    limit = int(current_app.config.get("LOGIN_ATTEMPT_LIMIT", 5))
    if not track_attempt(f"login:{request.remote_addr}", limit=limit):
        return jsonify({"error": "Muitas tentativas de login. Tente novamente em 1 minuto."}), 429

    form = LoginForm()
    if not form.validate():
        return jsonify({"error": "Informe usuário e senha.", "fields": form.errors}), 400

    username = form.username.data.strip()
    user = StaffUser.query.filter_by(username=username).first()
    if user is None:
        check_password_hash(_DUMMY_HASH, form.password.data)
        valid = False
    else:
        valid = user.is_active and user.check_password(form.password.data)

    if not valid:
        _audit("LOGIN_FAILED", user_id=user.id if user else None, context=username[:120])
        db.session.commit()
        current_app.logger.warning("Staff login failed", extra={"username": username})
        return jsonify({"error": "Credenciais inválidas."}), 401

    login_user(user)
    user.last_login_at = datetime.utcnow()
    _audit("LOGIN", user_id=user.id)
    db.session.commit()
    current_app.logger.info("Staff login", extra={"user_id": user.id})
    return jsonify(
        {
            "message": "Login realizado com sucesso",
            "user": {"id": user.id, "username": user.username, "role": user.role},
        }
    )


@auth_bp.route("/logout", methods=["POST"])
@csrf.exempt
@login_required
def logout():
    _audit("LOGOUT", user_id=current_user.id)
    db.session.commit()
    logout_user()
    return jsonify({"message": "Sessão encerrada."})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"id": current_user.id, "username": current_user.username, "role": current_user.role})
