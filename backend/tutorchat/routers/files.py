"""
Signed file serving routes.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse

from ..dependencies import get_object_storage
from ..services.attachment_service import LocalObjectStorage


router = APIRouter(prefix="/api/files", tags=["Files"])


@router.get("/{token}")
async def get_file(
    token: str,
    storage: LocalObjectStorage = Depends(get_object_storage),
):
    """Serve a file behind a signed, unexpired token."""
    file_path = storage.verify_token(token)
    if not file_path:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found or link expired"
        )
    return FileResponse(file_path)
