"""
Attachment upload and access URL routes.
"""

from typing import Literal

from fastapi import APIRouter, Depends, File, UploadFile, status

from ..dependencies import get_attachment_manager
from ..schemas.message import AccessUrlResponse, AttachmentReference
from ..services.attachment_service import AttachmentManager
from ..utils.security import get_current_user_id


router = APIRouter(prefix="/api/attachments", tags=["Attachments"])


@router.post("/upload", response_model=AttachmentReference, status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    manager: AttachmentManager = Depends(get_attachment_manager),
):
    """Upload a file; the returned reference is passed back when sending."""
    mime_type = file.content_type or "application/octet-stream"
    if file.size is not None:
        manager.validate(file.size, mime_type)
    data = await file.read()
    return await manager.upload_attachment(data, file.filename or "file", mime_type, user_id)


@router.get("/{attachment_id}/url", response_model=AccessUrlResponse)
async def resolve_access_url(
    attachment_id: str,
    purpose: Literal["preview", "download"] = "preview",
    user_id: str = Depends(get_current_user_id),
    manager: AttachmentManager = Depends(get_attachment_manager),
):
    """Time-limited URL for an attachment the caller can see."""
    access = await manager.resolve_access_url(attachment_id, user_id, purpose)
    return AccessUrlResponse(
        attachment_id=access.attachment_id,
        url=access.url,
        expires_at=access.expires_at,
        action=access.action,
    )

