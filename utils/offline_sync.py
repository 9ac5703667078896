"""Offline-first manifestation queue and replay orchestrator.

Submissions made without connectivity are written to a local SQLite file and
replayed through the live submission endpoint once the server answers again.
Queued items carry no idempotency key: if the server stores an item but the
acknowledgment is lost, the next replay submits it again.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import List, Optional

import requests
from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

queued_manifestations = Table(
    "offline_manifestations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("text", Text, nullable=False),
    Column("type", String(50), nullable=False),
    Column("is_anonymous", Boolean, nullable=False, default=True),
    Column("name", String(255), nullable=True),
    Column("cpf", String(20), nullable=True),
    Column("latitude", Float, nullable=True),
    Column("longitude", Float, nullable=True),
    Column("timestamp", Float, nullable=False),
)

queued_media = Table(
    "offline_media",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("item_id", Integer, ForeignKey("offline_manifestations.id"), nullable=False, index=True),
    Column("filename", String(255), nullable=False),
    Column("mime_type", String(100), nullable=False),
    Column("content", LargeBinary, nullable=False),
)


class OfflineSyncError(Exception):
    """Raised when the server does not acknowledge a submission as stored."""


@dataclass
class MediaBlob:
    filename: str
    mime_type: str
    content: bytes


@dataclass
class ManifestationDraft:
    text: str
    type: str
    is_anonymous: bool = True
    name: Optional[str] = None
    cpf: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    media: List[MediaBlob] = field(default_factory=list)


@dataclass
class OfflineQueueItem:
    id: int
    draft: ManifestationDraft
    timestamp: float


@dataclass
class SubmissionOutcome:
    queued: bool
    protocol: Optional[str] = None
    queue_id: Optional[int] = None


@dataclass
class ReplayReport:
    synced: List[str] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    skipped_offline: bool = False


class OfflineQueue:
    """Durable local store of manifestations waiting for connectivity."""

    def __init__(self, location: str) -> None:
        url = location if "://" in location else f"sqlite:///{location}"
        if url.startswith("sqlite:///") and location != ":memory:":
            directory = os.path.dirname(url[len("sqlite:///"):])
            if directory:
                os.makedirs(directory, exist_ok=True)
        self.engine = create_engine(url)
        metadata.create_all(self.engine)

    def enqueue(self, draft: ManifestationDraft, timestamp: Optional[float] = None) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(queued_manifestations).values(
                    text=draft.text,
                    type=draft.type,
                    is_anonymous=draft.is_anonymous,
                    name=None if draft.is_anonymous else draft.name,
                    cpf=None if draft.is_anonymous else draft.cpf,
                    latitude=draft.latitude,
                    longitude=draft.longitude,
                    timestamp=timestamp if timestamp is not None else time.time(),
                )
            )
            item_id = result.inserted_primary_key[0]
            for blob in draft.media:
                conn.execute(
                    insert(queued_media).values(
                        item_id=item_id,
                        filename=blob.filename,
                        mime_type=blob.mime_type,
                        content=blob.content,
                    )
                )
        logger.info("Manifestation queued offline", extra={"queue_id": item_id, "media": len(draft.media)})
        return item_id

    def pending(self) -> List[OfflineQueueItem]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(queued_manifestations).order_by(queued_manifestations.c.id)).mappings().all()
            media_rows = conn.execute(select(queued_media).order_by(queued_media.c.id)).mappings().all()

        media_by_item: dict[int, List[MediaBlob]] = {}
        for m in media_rows:
            media_by_item.setdefault(m["item_id"], []).append(
                MediaBlob(filename=m["filename"], mime_type=m["mime_type"], content=m["content"])
            )
        items = []
        for row in rows:
            draft = ManifestationDraft(
                text=row["text"],
                type=row["type"],
                is_anonymous=bool(row["is_anonymous"]),
                name=row["name"],
                cpf=row["cpf"],
                latitude=row["latitude"],
                longitude=row["longitude"],
                media=media_by_item.get(row["id"], []),
            )
            items.append(OfflineQueueItem(id=row["id"], draft=draft, timestamp=row["timestamp"]))
        return items

    def delete(self, item_id: int) -> None:
        """Remove an item and its media in one transaction."""
        with self.engine.begin() as conn:
            conn.execute(delete(queued_media).where(queued_media.c.item_id == item_id))
            conn.execute(delete(queued_manifestations).where(queued_manifestations.c.id == item_id))

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(queued_manifestations)).scalar_one()

    def close(self) -> None:
        self.engine.dispose()


class OfflineReconciler:
    """Submits drafts when the server is reachable and replays the queue when it comes back."""

    STATUS_PATH = "/api/v1/status"
    SUBMIT_PATH = "/api/v1/manifestations"

    def __init__(
        self,
        queue: OfflineQueue,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        probe_timeout: float = 3.0,
    ) -> None:
        self.queue = queue
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.probe_timeout = probe_timeout

    def is_online(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}{self.STATUS_PATH}", timeout=self.probe_timeout)
        except requests.RequestException:
            return False
        return response.ok

    @staticmethod
    def _form_fields(draft: ManifestationDraft) -> dict:
        data = {
            "text": draft.text,
            "type": draft.type,
            "isAnonymous": "true" if draft.is_anonymous else "false",
        }
        if not draft.is_anonymous:
            data["name"] = draft.name or ""
            data["cpf"] = draft.cpf or ""
        if draft.latitude is not None and draft.longitude is not None:
            data["latitude"] = str(draft.latitude)
            data["longitude"] = str(draft.longitude)
        return data

    def _post(self, draft: ManifestationDraft) -> str:
        files = [("files", (blob.filename, blob.content, blob.mime_type)) for blob in draft.media]
        response = self.session.post(
            f"{self.base_url}{self.SUBMIT_PATH}",
            data=self._form_fields(draft),
            files=files or None,
            timeout=self.timeout,
        )
        if not response.ok:
            raise OfflineSyncError(f"Server rejected manifestation with HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise OfflineSyncError("Server reply is not JSON") from exc
        if not isinstance(body, dict) or body.get("status") != "success" or not body.get("protocol"):
            raise OfflineSyncError("Server did not acknowledge the manifestation")
        return body["protocol"]

    def submit(self, draft: ManifestationDraft) -> SubmissionOutcome:
        """Send a draft now, or queue it when there is no connectivity."""
        if not self.is_online():
            return SubmissionOutcome(queued=True, queue_id=self.queue.enqueue(draft))
        try:
            protocol = self._post(draft)
        except (requests.ConnectionError, requests.Timeout):
            logger.warning("Connection lost during submission; queueing manifestation offline")
            return SubmissionOutcome(queued=True, queue_id=self.queue.enqueue(draft))
        return SubmissionOutcome(queued=False, protocol=protocol)

    def replay(self) -> ReplayReport:
        """Resubmit every queued item; each item succeeds or fails on its own."""
        report = ReplayReport()
        if not self.is_online():
            report.skipped_offline = True
            return report

        pending = self.queue.pending()
        if pending:
            logger.info("Replaying offline manifestations", extra={"count": len(pending)})
        for item in pending:
            try:
                protocol = self._post(item.draft)
            except (requests.RequestException, OfflineSyncError) as exc:
                logger.warning("Offline manifestation replay failed", extra={"queue_id": item.id, "error": str(exc)})
                report.failed.append(item.id)
                continue
            self.queue.delete(item.id)
            report.synced.append(protocol)
        if report.synced:
            logger.info("Offline manifestations synced", extra={"synced": len(report.synced), "failed": len(report.failed)})
        return report
