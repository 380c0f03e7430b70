"""
Conversation store adapter.

Conversations are keyed by the sorted participant pair; per-participant flags and
unread counters live on the conversation row.
"""

import logging
import uuid
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, update, func, case, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import store_session
from ..errors import ConversationNotFound, InvalidParticipant, NotParticipant
from ..models.conversation import Conversation
from ..models.participant import Participant
from ..utils.time import utcnow


logger = logging.getLogger(__name__)


def _per_slot(participant_id: str, column_prefix: str, value) -> object:
    """Condition on the caller's own ``<prefix>_1`` / ``<prefix>_2`` column."""
    return or_(
        and_(Conversation.participant_1_id == participant_id,
             getattr(Conversation, f"{column_prefix}_1") == value),
        and_(Conversation.participant_2_id == participant_id,
             getattr(Conversation, f"{column_prefix}_2") == value),
    )


class ConversationStore:
    """Service for conversation lifecycle and per-participant state."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def load(self, db: AsyncSession, conversation_id: str, participant_id: str) -> Conversation:
        """Fetch a conversation inside ``db`` and check the caller participates."""
        conversation = await db.get(Conversation, conversation_id)
        if conversation is None:
            raise ConversationNotFound()
        if not conversation.has_participant(participant_id):
            raise NotParticipant()
        return conversation

    async def get_conversation(self, conversation_id: str, participant_id: str) -> Conversation:
        async with store_session(self.session_factory) as db:
            return await self.load(db, conversation_id, participant_id)

    async def list_conversations(
        self,
        participant_id: str,
        archived: bool = False,
        muted: Optional[bool] = None,
        has_unread: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[Conversation]:
        """Conversations of ``participant_id``, newest activity first."""
        stmt = (
            select(Conversation)
            .where(or_(Conversation.participant_1_id == participant_id,
                       Conversation.participant_2_id == participant_id))
            .where(_per_slot(participant_id, "archived_by_participant", archived))
        )
        if muted is not None:
            stmt = stmt.where(_per_slot(participant_id, "muted_by_participant", muted))
        if has_unread is not None:
            unread = case(
                (Conversation.participant_1_id == participant_id, Conversation.unread_count_participant_1),
                else_=Conversation.unread_count_participant_2,
            )
            stmt = stmt.where(unread > 0 if has_unread else unread == 0)
        stmt = stmt.order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
        if limit:
            stmt = stmt.limit(limit)

        async with store_session(self.session_factory) as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def create_or_get_conversation(
        self, user_a: str, user_b: str, title: Optional[str] = None
    ) -> Conversation:
        """Return the conversation for the unordered pair, creating it on first use."""
        if not user_a or not user_b or user_a == user_b:
            raise InvalidParticipant("A conversation needs two different participants")
        low, high = Conversation.ordered_pair(user_a, user_b)

        async with store_session(self.session_factory) as db:
            existing = await self._find_pair(db, low, high)
            if existing is not None:
                return existing

            await self._check_pairing(db, low, high)
            now = self.clock()
            conversation = Conversation(
                id=str(uuid.uuid4()),
                participant_1_id=low,
                participant_2_id=high,
                title=title,
                last_message_at=now,
                archived_by_participant_1=False,
                archived_by_participant_2=False,
                muted_by_participant_1=False,
                muted_by_participant_2=False,
                unread_count_participant_1=0,
                unread_count_participant_2=0,
                created_at=now,
                updated_at=now,
            )
            db.add(conversation)
            try:
                await db.commit()
            except IntegrityError:
                # A concurrent caller created the pair first
                await db.rollback()
                existing = await self._find_pair(db, low, high)
                if existing is None:
                    raise
                logger.debug("Conversation for %s/%s created concurrently, reusing %s", low, high, existing.id)
                return existing

            logger.info("Conversation %s created between %s and %s", conversation.id, low, high)
            return conversation

    async def _find_pair(self, db: AsyncSession, low: str, high: str) -> Optional[Conversation]:
        result = await db.execute(
            select(Conversation).where(
                Conversation.participant_1_id == low,
                Conversation.participant_2_id == high,
            )
        )
        return result.scalar_one_or_none()

    async def _check_pairing(self, db: AsyncSession, user_a: str, user_b: str) -> None:
        # Only enforced when both profiles are known
        result = await db.execute(select(Participant).where(Participant.id.in_([user_a, user_b])))
        profiles = list(result.scalars().all())
        if len(profiles) == 2 and profiles[0].is_instructor == profiles[1].is_instructor:
            raise InvalidParticipant("Conversations are only allowed between a student and an instructor")

    async def set_archived(self, conversation_id: str, participant_id: str, value: bool) -> Conversation:
        return await self._set_flag("archived_by_participant", conversation_id, participant_id, value)

    async def set_muted(self, conversation_id: str, participant_id: str, value: bool) -> Conversation:
        return await self._set_flag("muted_by_participant", conversation_id, participant_id, value)

    async def _set_flag(self, prefix: str, conversation_id: str, participant_id: str, value: bool) -> Conversation:
        async with store_session(self.session_factory) as db:
            conversation = await self.load(db, conversation_id, participant_id)
            setattr(conversation, f"{prefix}_{conversation.slot(participant_id)}", bool(value))
            conversation.updated_at = self.clock()
            await db.commit()
            return conversation

    async def increment_unread(
        self, conversation_id: str, recipient_id: str, db: Optional[AsyncSession] = None
    ) -> None:
        """Add one to the recipient's unread counter.

        With ``db`` the update joins the caller's transaction and is committed with it.
        """
        if db is None:
            async with store_session(self.session_factory) as own:
                await self.increment_unread(conversation_id, recipient_id, db=own)
                await own.commit()
            return

        conversation = await self.load(db, conversation_id, recipient_id)
        column = getattr(Conversation, f"unread_count_participant_{conversation.slot(recipient_id)}")
        await db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values({column: column + 1})
            .execution_options(synchronize_session=False)
        )

    async def reset_unread(
        self,
        conversation_id: str,
        participant_id: str,
        db: Optional[AsyncSession] = None,
        remaining: int = 0,
    ) -> None:
        """Set the participant's unread counter to ``remaining`` (0 after a full read)."""
        if db is None:
            async with store_session(self.session_factory) as own:
                await self.reset_unread(conversation_id, participant_id, db=own, remaining=remaining)
                await own.commit()
            return

        conversation = await self.load(db, conversation_id, participant_id)
        column = getattr(Conversation, f"unread_count_participant_{conversation.slot(participant_id)}")
        await db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values({column: max(0, remaining)})
            .execution_options(synchronize_session=False)
        )

    async def total_unread(self, participant_id: str) -> int:
        """Unread messages across all of the participant's conversations."""
        unread = case(
            (Conversation.participant_1_id == participant_id, Conversation.unread_count_participant_1),
            else_=Conversation.unread_count_participant_2,
        )
        stmt = select(func.coalesce(func.sum(unread), 0)).where(
            or_(Conversation.participant_1_id == participant_id,
                Conversation.participant_2_id == participant_id)
        )
        async with store_session(self.session_factory) as db:
            result = await db.execute(stmt)
            return int(result.scalar_one())

    async def upsert_profile(
        self,
        participant_id: str,
        full_name: str,
        is_instructor: bool = False,
        avatar_url: Optional[str] = None,
    ) -> Participant:
        async with store_session(self.session_factory) as db:
            profile = await db.get(Participant, participant_id)
            if profile is None:
                profile = Participant(id=participant_id)
                db.add(profile)
            profile.full_name = full_name
            profile.is_instructor = is_instructor
            profile.avatar_url = avatar_url
            profile.updated_at = self.clock()
            await db.commit()
            return profile

    async def get_profiles(self, participant_ids: Iterable[str]) -> Dict[str, Participant]:
        ids = list(set(participant_ids))
        if not ids:
            return {}
        async with store_session(self.session_factory) as db:
            result = await db.execute(select(Participant).where(Participant.id.in_(ids)))
            return {profile.id: profile for profile in result.scalars().all()}
