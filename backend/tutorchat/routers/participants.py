"""
Participant profile routes.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ..dependencies import get_conversation_store
from ..schemas.conversation import ParticipantProfile, ParticipantProfileUpdate
from ..services.conversation_store import ConversationStore
from ..utils.security import get_current_user_id


router = APIRouter(prefix="/api/participants", tags=["Participants"])


@router.put("/me", response_model=ParticipantProfile)
async def update_my_profile(
    data: ParticipantProfileUpdate,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    """Register or update the caller's display profile."""
    return await store.upsert_profile(
        user_id, data.full_name, is_instructor=data.is_instructor, avatar_url=data.avatar_url
    )


@router.get("/{participant_id}", response_model=ParticipantProfile)
async def get_profile(
    participant_id: str,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    profiles = await store.get_profiles([participant_id])
    if participant_id not in profiles:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Participant not found"
        )
    return profiles[participant_id]
