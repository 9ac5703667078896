"""Upload persistence for manifestation media (images, audio, video)."""
import os
import uuid
from dataclasses import dataclass
from typing import Iterable, List

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

ALLOWED_MIME_PREFIXES = ("image/", "audio/", "video/")
DEFAULT_MAX_FILE_BYTES = 50 * 1024 * 1024  # 50 MB


@dataclass
class StoredFile:
    file_path: str  # relative to the upload folder
    file_type: str


@dataclass
class MediaSummary:
    has_audio: bool = False
    has_video: bool = False
    image_count: int = 0


def _fail_if(condition: bool, message: str) -> None:
    if condition:
        raise ValueError(message)


def summarize_media(mime_types: Iterable[str]) -> MediaSummary:
    """Derive the media flags stored on a manifestation from its attachment types."""
    summary = MediaSummary()
    for mime in mime_types:
        mime = (mime or "").lower()
        if mime.startswith("audio/"):
            summary.has_audio = True
        elif mime.startswith("video/"):
            summary.has_video = True
        elif mime.startswith("image/"):
            summary.image_count += 1
    return summary


def stored_name_for(filename: str | None) -> str:
    """Random stored name; the sanitized client extension is the only part kept."""
    safe = secure_filename(filename or "")
    ext = safe.rsplit(".", 1)[1].lower() if "." in safe else "bin"
    return f"{uuid.uuid4().hex}.{ext}"


def save_upload(file: FileStorage, upload_dir: str, max_bytes: int = DEFAULT_MAX_FILE_BYTES) -> StoredFile:
    _fail_if(not file, "No file provided")
    mime_type = (file.mimetype or file.content_type or "").lower()
    _fail_if(not mime_type.startswith(ALLOWED_MIME_PREFIXES), "File type not allowed")

    content = file.read()
    _fail_if(len(content) == 0, "Empty file")
    _fail_if(len(content) > max_bytes, "File exceeds size limits")

    os.makedirs(upload_dir, exist_ok=True)
    name = stored_name_for(file.filename)
    with open(os.path.join(upload_dir, name), "wb") as f:
        f.write(content)
    return StoredFile(file_path=name, file_type=mime_type)


def save_uploads(files: Iterable[FileStorage], upload_dir: str, max_bytes: int = DEFAULT_MAX_FILE_BYTES) -> List[StoredFile]:
    """Persist every non-empty upload; on a rejected file the ones already written are removed."""
    stored: List[StoredFile] = []
    try:
        for file in files:
            if not file or not file.filename:
                continue
            stored.append(save_upload(file, upload_dir, max_bytes=max_bytes))
    except ValueError:
        discard_uploads(stored, upload_dir)
        raise
    return stored


def discard_uploads(stored: Iterable[StoredFile], upload_dir: str) -> None:
    for item in stored:
        try:
            os.remove(os.path.join(upload_dir, item.file_path))
        except FileNotFoundError:
            continue


def resolve_upload_path(upload_dir: str, relative_path: str) -> str | None:
    """Absolute path of a stored upload, or None if it escapes the folder or does not exist."""
    abs_root = os.path.abspath(upload_dir)
    abs_path = os.path.abspath(os.path.join(abs_root, relative_path))
    if os.path.commonpath([abs_root, abs_path]) != abs_root:
        return None
    if not os.path.isfile(abs_path):
        return None
    return abs_path
