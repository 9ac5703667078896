"""Environment-aware configuration for the Flask application."""
import os
from datetime import timedelta


class BaseConfig:
    def __init__(self) -> None:
        # Defaults for local dev: SQLite db and a non-empty secret. Override via env for production.
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        db_url = os.getenv("DATABASE_URL")
        # If DATABASE_URL points to a placeholder host (e.g., db_host) or is missing, fall back to SQLite for local dev.
        if db_url and "db_host" not in db_url:
            self.SQLALCHEMY_DATABASE_URI = db_url
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                f"sqlite:///{os.path.join(os.getcwd(), 'instance', 'ouvidoria.db')}",
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        self.SQLALCHEMY_ENGINE_OPTIONS = {
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
            "pool_pre_ping": True,
        }
        self.SESSION_COOKIE_HTTPONLY = True
        self.REMEMBER_COOKIE_HTTPONLY = True
        self.SESSION_COOKIE_SAMESITE = "Lax"
        self.PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
        # The API is JSON-only; forms are validated without CSRF tokens.
        self.WTF_CSRF_ENABLED = os.getenv("WTF_CSRF_ENABLED", "false").lower() == "true"
        self.GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
        self.GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
        self.CLASSIFIER_MIN_TEXT_LENGTH = int(os.getenv("CLASSIFIER_MIN_TEXT_LENGTH", 5))
        self.CLASSIFIER_MAX_ATTEMPTS = int(os.getenv("CLASSIFIER_MAX_ATTEMPTS", 5))
        self.CLASSIFIER_DEFAULT_RETRY_SECONDS = float(os.getenv("CLASSIFIER_DEFAULT_RETRY_SECONDS", 10))
        self.CLASSIFIER_RETRY_BUFFER_SECONDS = float(os.getenv("CLASSIFIER_RETRY_BUFFER_SECONDS", 1))
        self.CLASSIFIER_MAX_TOTAL_WAIT_SECONDS = float(os.getenv("CLASSIFIER_MAX_TOTAL_WAIT_SECONDS", 60))
        self.PROTOCOL_PREFIX = os.getenv("PROTOCOL_PREFIX", "DF")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        self.DEFAULT_ADMIN_USERNAME = os.getenv("DEFAULT_ADMIN_USERNAME", "admin")
        self.DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "")
        self.LOGIN_ATTEMPT_LIMIT = int(os.getenv("LOGIN_ATTEMPT_LIMIT", 5))
        self.UPLOAD_FOLDER = os.getenv(
            "UPLOAD_FOLDER",
            os.path.join(os.getcwd(), "instance", "uploads"),
        )
        self.MAX_CONTENT_LENGTH = int(os.getenv("MAX_REQUEST_BYTES", 50 * 1024 * 1024))
        self.PUBLIC_FEED_MAX = int(os.getenv("PUBLIC_FEED_MAX", 50))
        self.ADMIN_PAGE_MAX = int(os.getenv("ADMIN_PAGE_MAX", 100))
        self.OFFLINE_QUEUE_PATH = os.getenv(
            "OFFLINE_QUEUE_PATH",
            os.path.join(os.getcwd(), "instance", "offline_queue.db"),
        )
        self.OFFLINE_SERVER_URL = os.getenv("OFFLINE_SERVER_URL", "http://localhost:5000")


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.ENV = "development"
        self.SESSION_COOKIE_SECURE = False
        self.REMEMBER_COOKIE_SECURE = False
        if not self.DEFAULT_ADMIN_PASSWORD:
            self.DEFAULT_ADMIN_PASSWORD = "admin123"


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.ENV = "production"
        self.SESSION_COOKIE_SECURE = True
        self.REMEMBER_COOKIE_SECURE = True


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.DEBUG = False
        self.ENV = "testing"
        self.SQLALCHEMY_DATABASE_URI = "sqlite://"
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        self.WTF_CSRF_ENABLED = False
        self.SESSION_COOKIE_SECURE = False
        self.DEFAULT_ADMIN_USERNAME = "admin"
        self.DEFAULT_ADMIN_PASSWORD = "admin-test-password"
        self.CLASSIFIER_DEFAULT_RETRY_SECONDS = 0
        self.CLASSIFIER_RETRY_BUFFER_SECONDS = 0
