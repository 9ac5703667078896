"""Flask application factory for the ombudsman manifestation intake service."""
import atexit
import os
from typing import Optional

import click
from flask import Flask, jsonify, request
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from dotenv import load_dotenv

from extensions import csrf, db, migrate, login_manager
from utils.logger import init_logging
from utils.security import apply_security_headers
from utils.text_classifier import TextClassifier


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({"error": "Requisição inválida."}), 400

    @app.errorhandler(403)
    def forbidden(error):
        app.logger.warning("403 Forbidden", extra={"path": request.path, "method": request.method})
        return jsonify({"error": "Acesso negado."}), 403

    @app.errorhandler(404)
    def not_found_error(error):
        app.logger.warning("404 Not Found", extra={"path": request.path, "method": request.method})
        return jsonify({"error": "Recurso não encontrado."}), 404

    @app.errorhandler(413)
    def too_large(error):
        return jsonify({"error": "Arquivo excede o tamanho permitido."}), 413

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.exception("500 Internal Server Error")
        return jsonify({"error": "Erro interno no servidor."}), 500


def ensure_default_admin(app: Flask) -> None:
    """Seed a staff admin so the dashboard is reachable on a fresh database."""
    from models import StaffUser  # Local import to avoid circular dependency

    username = (app.config.get("DEFAULT_ADMIN_USERNAME") or "").strip()
    password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not username or not password:
        return
    if StaffUser.query.filter_by(username=username).first():
        return

    admin_user = StaffUser(username=username, role="admin", is_active=True)
    admin_user.set_password(password)
    db.session.add(admin_user)
    db.session.commit()
    app.logger.warning("Default staff admin created", extra={"username": username})


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # If we cannot connect/create, let the normal app startup fail loudly later.
            pass
        finally:
            engine.dispose()


def register_cli(app: Flask) -> None:
    from models import STAFF_ROLES  # Local import to avoid circular dependency

    @app.cli.command("offline-replay")
    @click.option("--server", default=None, help="Base URL of the intake API.")
    @click.option("--queue", "queue_path", default=None, help="Path of the local offline queue file.")
    def offline_replay(server, queue_path):
        """Resubmit manifestations captured while the device was offline."""
        from utils.offline_sync import OfflineQueue, OfflineReconciler

        queue = OfflineQueue(queue_path or app.config["OFFLINE_QUEUE_PATH"])
        try:
            reconciler = OfflineReconciler(queue, server or app.config["OFFLINE_SERVER_URL"])
            report = reconciler.replay()
        finally:
            queue.close()
        if report.skipped_offline:
            click.echo("Server unreachable; queue left untouched.")
            return
        for protocol in report.synced:
            click.echo(f"synced {protocol}")
        click.echo(f"{len(report.synced)} synced, {len(report.failed)} still queued")

    @app.cli.command("create-staff")
    @click.argument("username")
    @click.option("--role", type=click.Choice(list(STAFF_ROLES)), default="analyst")
    @click.password_option()
    def create_staff(username, role, password):
        """Create a staff account for the dashboard."""
        from models import StaffUser

        if StaffUser.query.filter_by(username=username).first():
            raise click.ClickException(f"User {username} already exists")
        user = StaffUser(username=username, role=role, is_active=True)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created {role} {username}")


def create_app(config_name: Optional[str] = None, classifier: Optional[TextClassifier] = None) -> Flask:
    """Application factory with environment-aware configuration.

    ``classifier`` replaces the Gemini-backed client built from configuration.
    """
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    # Resolve configuration
    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])

    # Optional instance-specific overrides
    if not app.testing:
        app.config.from_pyfile("config.py", silent=True)
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    # Initialize logging early
    init_logging(app)

    # Initialize extensions
    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import StaffUser  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(StaffUser, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Acesso negado. Faça login."}), 401

    if classifier is None:
        classifier = TextClassifier.from_config(app.config)
        atexit.register(classifier.close)
    app.extensions["text_classifier"] = classifier

    # Blueprints
    from routes import admin_bp, auth_bp, main_bp, manifestations_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(manifestations_bp)
    app.register_blueprint(admin_bp)

    register_cli(app)
    register_error_handlers(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        db.create_all()
        ensure_default_admin(app)

    return app
