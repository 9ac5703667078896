"""Shared fixtures: a Flask app on in-memory SQLite and a scripted stand-in for the remote model."""
import json

import pytest

from app import create_app
from extensions import db
from utils.security import reset_attempts
from utils.text_classifier import TextClassifier


class RateLimited(Exception):
    """Mimics the throttling error raised by the Gemini client."""

    def __init__(self, message="429 RESOURCE_EXHAUSTED", details=None):
        super().__init__(message)
        self.code = 429
        self.details = details


class ScriptedModel:
    """Returns queued replies (or raises queued errors); the last entry repeats."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


def model_reply(suggested="Reclamação", has_pii=False, reasoning="Relato de problema no serviço.", pii_analysis=None):
    return json.dumps(
        {
            "suggestedType": suggested,
            "reasoning": reasoning,
            "hasPii": has_pii,
            "piiAnalysis": pii_analysis or "Nenhum dado pessoal encontrado",
        },
        ensure_ascii=False,
    )


@pytest.fixture
def make_reply():
    return model_reply


@pytest.fixture
def rate_limited():
    return RateLimited


@pytest.fixture
def model():
    return ScriptedModel([model_reply()])


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def classifier(model, sleeps):
    return TextClassifier(
        generate=model,
        sleep=sleeps.append,
        min_text_length=5,
        max_attempts=5,
        default_retry_seconds=10,
        retry_buffer_seconds=1,
        max_total_wait_seconds=600,
    )


@pytest.fixture
def app(tmp_path, monkeypatch, classifier):
    monkeypatch.setenv("UPLOAD_FOLDER", str(tmp_path / "uploads"))
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    reset_attempts()
    app = create_app("testing", classifier=classifier)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


def _login(client, username, password):
    response = client.post("/api/v1/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.get_json()
    return client


@pytest.fixture
def admin_client(app):
    return _login(app.test_client(), "admin", app.config["DEFAULT_ADMIN_PASSWORD"])


@pytest.fixture
def analyst_client(app):
    from models import StaffUser

    with app.app_context():
        user = StaffUser(username="analista", role="analyst", is_active=True)
        user.set_password("analyst-test-password")
        db.session.add(user)
        db.session.commit()
    return _login(app.test_client(), "analista", "analyst-test-password")
