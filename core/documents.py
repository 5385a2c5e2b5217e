"""
core/documents.py — Document Attachment Gateway
================================================
Stores uploaded files and hands back a `DocumentHandle`. The rest of the
system only ever keeps handles (id, url, name, uploaded_at); byte content
never reaches the database.

Files are grouped by scope (the registration session that owns them):
    <UPLOAD_DIR>/<scope>/<handle id>_<sanitized name>
"""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from pydantic import BaseModel

from config import settings
from core.errors import InvalidPayload

logger = logging.getLogger("cadastre.documents")


class DocumentHandle(BaseModel):
    id: str
    url: str
    name: str
    uploaded_at: datetime


def _sanitize_filename(raw: str) -> str:
    """Strip path components and keep only the basename."""
    name = PurePosixPath(raw).name
    name = Path(name).name  # also handles backslashes
    return name or "document"


def _sanitize_scope(scope: str) -> str:
    if not scope or "/" in scope or "\\" in scope or scope in {".", ".."}:
        raise InvalidPayload(f"Invalid document scope '{scope}'")
    return scope


class DocumentGateway:

    def __init__(self, root: str, url_prefix: str):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def store_handle(self, scope: str, filename: str, content: bytes) -> DocumentHandle:
        """Write the file under the scope's folder and return its handle."""
        if not content:
            raise InvalidPayload(f"Empty file: {filename}")
        scope = _sanitize_scope(scope)
        safe_name = _sanitize_filename(filename)
        handle_id = uuid.uuid4().hex
        folder = self.root / scope
        folder.mkdir(parents=True, exist_ok=True)
        dest = folder / f"{handle_id}_{safe_name}"

        with open(dest, "wb") as f:
            f.write(content)

        logger.info(f"Stored document {safe_name} → {scope}/{dest.name} ({len(content):,} bytes)")
        return DocumentHandle(
            id=handle_id,
            url=f"{self.url_prefix}/{scope}/{dest.name}",
            name=safe_name,
            uploaded_at=datetime.now(timezone.utc).replace(tzinfo=None),
        )

    def delete_handle(self, scope: str, handle_id: str) -> bool:
        """Remove the stored file for a handle. Returns False if it was already gone."""
        folder = self.root / _sanitize_scope(scope)
        matches = list(folder.glob(f"{handle_id}_*")) if folder.exists() else []
        for path in matches:
            path.unlink()
        if matches:
            logger.info(f"Deleted document {handle_id} from {scope}")
        return bool(matches)


# Singleton, import this everywhere:  from core.documents import document_gateway
document_gateway = DocumentGateway(settings.UPLOAD_DIR, settings.UPLOAD_URL_PREFIX)
