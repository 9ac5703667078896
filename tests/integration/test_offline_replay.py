"""Offline replay end to end: the reconciler talks to the real intake route through the Flask test client."""
import io
from urllib.parse import urlsplit

import pytest

from models import Manifestation
from utils.offline_sync import ManifestationDraft, MediaBlob, OfflineQueue, OfflineReconciler

BASE_URL = "http://ouvidoria.test"


class FlaskClientResponse:
    """The slice of ``requests.Response`` the reconciler reads."""

    def __init__(self, response):
        self.status_code = response.status_code
        self._response = response

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        body = self._response.get_json(silent=True)
        if body is None:
            raise ValueError("response is not JSON")
        return body


class FlaskClientSession:
    """Routes ``requests.Session`` style calls into a Flask test client."""

    def __init__(self, client):
        self.client = client

    def get(self, url, timeout=None):
        return FlaskClientResponse(self.client.get(urlsplit(url).path))

    def post(self, url, data=None, files=None, timeout=None):
        form = dict(data or {})
        if files:
            form["files"] = [(io.BytesIO(content), name, mime) for _, (name, content, mime) in files]
        response = self.client.post(urlsplit(url).path, data=form, content_type="multipart/form-data")
        return FlaskClientResponse(response)


@pytest.fixture
def queue(tmp_path):
    q = OfflineQueue(str(tmp_path / "queue.db"))
    yield q
    q.close()


@pytest.fixture
def reconciler(client, queue):
    return OfflineReconciler(queue, BASE_URL, session=FlaskClientSession(client))


@pytest.mark.integration
class TestOfflineReplay:
    def test_replay_creates_one_record_and_empties_queue(self, app, queue, reconciler):
        queue.enqueue(
            ManifestationDraft(
                text="Vazamento de água na comercial da 108 Norte.",
                type="Reclamação",
                media=[MediaBlob("foto.jpg", "image/jpeg", b"\xff\xd8\xffjpeg")],
            )
        )

        report = reconciler.replay()

        assert len(report.synced) == 1
        assert queue.count() == 0
        with app.app_context():
            stored = Manifestation.query.one()
            assert stored.protocol == report.synced[0]
            assert stored.image_count == 1
            assert stored.text == "Vazamento de água na comercial da 108 Norte."

    def test_rejected_replay_stores_nothing_and_keeps_item(self, app, queue, reconciler):
        item_id = queue.enqueue(ManifestationDraft(text="Relato com tipo desconhecido.", type="Pedido"))

        report = reconciler.replay()

        assert report.failed == [item_id]
        assert queue.count() == 1
        with app.app_context():
            assert Manifestation.query.count() == 0

    def test_identified_draft_keeps_identity_on_replay(self, app, queue, reconciler):
        queue.enqueue(
            ManifestationDraft(
                text="Poste caído em frente à minha casa.",
                type="Reclamação",
                is_anonymous=False,
                name="Maria Souza",
                cpf="12345678901",
            )
        )

        reconciler.replay()

        with app.app_context():
            stored = Manifestation.query.one()
            assert stored.name == "Maria Souza"
            assert stored.is_public is False
