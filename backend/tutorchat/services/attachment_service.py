"""
Attachment lifecycle: validation, upload, and time-limited access URLs.
"""

import asyncio
import io
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

import aiofiles
from jose import JWTError, jwt
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..database import store_session
from ..errors import (
    FileTooLarge,
    MessageNotFound,
    NotParticipant,
    StoreUnavailable,
    UnsupportedType,
    UploadFailed,
)
from ..models.conversation import Conversation
from ..models.message import Message, MessageAttachment
from ..schemas.message import AttachmentReference
from ..utils.time import utcnow


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class UploadProgress:
    bytes_sent: int
    total_bytes: int
    reference: Optional[AttachmentReference] = None

    @property
    def percent(self) -> int:
        if not self.total_bytes:
            return 100
        return int(self.bytes_sent * 100 / self.total_bytes)


@dataclass
class AccessUrl:
    attachment_id: str
    url: str
    expires_at: datetime
    action: str


def access_action(mime_type: str, purpose: str = "preview") -> str:
    """Only images open inline; everything else is a download."""
    if purpose == "preview" and mime_type.startswith("image/"):
        return "preview"
    return "download"


class LocalObjectStorage:
    """Object storage on the local filesystem with JWT-signed access URLs."""

    def __init__(
        self,
        root: Optional[str] = None,
        bucket: Optional[str] = None,
        base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        chunk_size: Optional[int] = None,
        clock: Callable = utcnow,
    ):
        self.clock = clock
        self.root = Path(root or settings.UPLOAD_DIR)
        self.bucket = bucket or settings.STORAGE_BUCKET
        self.base_url = (base_url or settings.PUBLIC_BASE_URL).rstrip("/")
        self.secret_key = secret_key or settings.SECRET_KEY
        self.chunk_size = chunk_size or settings.UPLOAD_CHUNK_SIZE

    def resolve_path(self, reference: str) -> Path:
        base = (self.root / self.bucket).resolve()
        path = (base / reference).resolve()
        if base not in path.parents:
            raise ValueError(f"Storage reference escapes bucket: {reference}")
        return path

    async def put_object(
        self, data: bytes, reference: str, metadata: Optional[dict] = None, on_progress: Optional[ProgressCallback] = None
    ) -> str:
        path = self.resolve_path(reference)
        path.parent.mkdir(parents=True, exist_ok=True)
        total = len(data)
        sent = 0
        async with aiofiles.open(path, "wb") as f:
            for offset in range(0, total, self.chunk_size):
                chunk = data[offset:offset + self.chunk_size]
                await f.write(chunk)
                sent += len(chunk)
                if on_progress:
                    on_progress(sent, total)
        if total == 0 and on_progress:
            on_progress(0, 0)
        return reference

    async def get_signed_url(self, reference: str, ttl_seconds: int, now: Optional[datetime] = None) -> Tuple[str, datetime]:
        expires_at = (now or self.clock()) + timedelta(seconds=ttl_seconds)
        token = jwt.encode(
            {"path": reference, "bucket": self.bucket, "exp": expires_at},
            self.secret_key,
            algorithm=settings.ALGORITHM,
        )
        return f"{self.base_url}/api/files/{token}", expires_at

    def verify_token(self, token: str) -> Optional[Path]:
        """Path for a valid, unexpired token; None otherwise."""
        try:
            payload = jwt.decode(
                token, self.secret_key, algorithms=[settings.ALGORITHM], options={"verify_exp": False}
            )
        except JWTError as e:
            logger.debug("Rejected file token: %s", e)
            return None
        # expiry is checked against the storage clock
        if not isinstance(payload.get("exp"), (int, float)) or payload["exp"] <= self.clock().timestamp():
            return None
        if payload.get("bucket") != self.bucket or not payload.get("path"):
            return None
        try:
            path = self.resolve_path(payload["path"])
        except ValueError:
            return None
        return path if path.is_file() else None

    async def delete_object(self, reference: str) -> bool:
        path = self.resolve_path(reference)
        if path.exists():
            path.unlink()
            return True
        return False


class AttachmentManager:
    """Service for attachment uploads and access URL resolution."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: LocalObjectStorage,
        clock: Callable = utcnow,
        upload_timeout: Optional[float] = None,
        url_cache: Optional[Dict[str, Tuple[str, datetime]]] = None,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.clock = clock
        self.upload_timeout = upload_timeout or settings.UPLOAD_TIMEOUT_SECONDS
        # attachment id -> (url, expires_at)
        self._urls = {} if url_cache is None else url_cache

    @staticmethod
    def validate(file_size: int, mime_type: str) -> None:
        """Local checks; nothing reaches storage when these fail."""
        if file_size > settings.MAX_ATTACHMENT_SIZE:
            raise FileTooLarge(f"File is too large (maximum {settings.MAX_ATTACHMENT_SIZE // (1024 * 1024)}MB)")
        if mime_type not in settings.ALLOWED_ATTACHMENT_TYPES:
            raise UnsupportedType(f"Unsupported file type: {mime_type}")

    async def upload_attachment(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        owner_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AttachmentReference:
        self.validate(len(data), mime_type)

        reference = f"{owner_id}/{uuid.uuid4().hex}{Path(filename).suffix.lower()}"
        width, height = self._image_size(data) if mime_type.startswith("image/") else (None, None)
        try:
            await asyncio.wait_for(
                self.storage.put_object(
                    data, reference, {"filename": filename, "mime_type": mime_type}, on_progress
                ),
                timeout=self.upload_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UploadFailed("Upload timed out") from e
        except OSError as e:
            logger.warning("Upload of %s for %s failed: %s", filename, owner_id, e)
            raise UploadFailed(details=str(e)) from e

        logger.info("Uploaded %s (%d bytes) as %s", filename, len(data), reference)
        return AttachmentReference(
            storage_path=reference,
            storage_bucket=self.storage.bucket,
            original_filename=filename,
            mime_type=mime_type,
            file_size=len(data),
            image_width=width,
            image_height=height,
        )

    async def stream_upload(
        self, data: bytes, filename: str, mime_type: str, owner_id: str
    ) -> AsyncIterator[UploadProgress]:
        """Progress items while uploading; the last one carries the reference."""
        self.validate(len(data), mime_type)
        queue: asyncio.Queue = asyncio.Queue()
        done = object()

        task = asyncio.create_task(self.upload_attachment(
            data, filename, mime_type, owner_id,
            on_progress=lambda sent, total: queue.put_nowait(UploadProgress(sent, total)),
        ))
        task.add_done_callback(lambda _: queue.put_nowait(done))
        try:
            while True:
                item = await queue.get()
                if item is done:
                    break
                yield item
            reference = task.result()
            yield UploadProgress(len(data), len(data), reference)
        finally:
            if not task.done():
                task.cancel()

    @staticmethod
    def _image_size(data: bytes) -> Tuple[Optional[int], Optional[int]]:
        try:
            with Image.open(io.BytesIO(data)) as img:
                return img.width, img.height
        except (OSError, ValueError) as e:
            logger.debug("Could not read image dimensions: %s", e)
            return None, None

    async def resolve_access_url(self, attachment_id: str, viewer_id: str, purpose: str = "preview") -> AccessUrl:
        """Signed URL for a participant; cached URLs are reused only well before expiry."""
        async with store_session(self.session_factory) as db:
            attachment = await db.get(MessageAttachment, attachment_id)
            message = await db.get(Message, attachment.message_id) if attachment else None
            if message is None or message.is_deleted:
                raise MessageNotFound("Attachment not found")
            conversation = await db.get(Conversation, message.conversation_id)
            if conversation is None or not conversation.has_participant(viewer_id):
                raise NotParticipant()
            storage_path = attachment.storage_path
            mime_type = attachment.mime_type

        action = access_action(mime_type, purpose)
        now = self.clock()
        cached = self._urls.get(attachment_id)
        margin = timedelta(seconds=settings.SIGNED_URL_REFRESH_MARGIN_SECONDS)
        if cached and cached[1] - now > margin:
            return AccessUrl(attachment_id, cached[0], cached[1], action)

        try:
            url, expires_at = await asyncio.wait_for(
                self.storage.get_signed_url(storage_path, settings.SIGNED_URL_TTL_SECONDS, now=now),
                timeout=settings.STORE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailable("Timed out resolving attachment URL") from e
        self._urls[attachment_id] = (url, expires_at)
        return AccessUrl(attachment_id, url, expires_at, action)
