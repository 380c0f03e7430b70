import asyncio

import pytest
from sqlalchemy import func, select

from tutorchat.errors import ConversationNotFound, InvalidParticipant, NotParticipant, StoreUnavailable
from tutorchat.database import create_engine, create_session_factory
from tutorchat.models.conversation import Conversation
from tutorchat.services.conversation_store import ConversationStore

from conftest import INSTRUCTOR, OUTSIDER, STUDENT


async def _conversation_count(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(Conversation))).scalar_one()


async def test_create_or_get_reuses_pair_in_either_order(conversations, session_factory):
    first = await conversations.create_or_get_conversation(STUDENT, INSTRUCTOR)
    second = await conversations.create_or_get_conversation(INSTRUCTOR, STUDENT)

    assert first.id == second.id
    assert first.participant_ids == tuple(sorted([STUDENT, INSTRUCTOR]))
    assert await _conversation_count(session_factory) == 1


async def test_concurrent_create_resolves_to_one_conversation(conversations, session_factory):
    results = await asyncio.gather(
        conversations.create_or_get_conversation(STUDENT, INSTRUCTOR),
        conversations.create_or_get_conversation(INSTRUCTOR, STUDENT),
    )

    assert results[0].id == results[1].id
    assert await _conversation_count(session_factory) == 1


async def test_conversation_with_self_is_rejected(conversations):
    with pytest.raises(InvalidParticipant):
        await conversations.create_or_get_conversation(STUDENT, STUDENT)


async def test_two_students_cannot_open_a_conversation(conversations):
    await conversations.upsert_profile(STUDENT, "Ayse Yilmaz", is_instructor=False)
    await conversations.upsert_profile(OUTSIDER, "Mehmet Kaya", is_instructor=False)

    with pytest.raises(InvalidParticipant):
        await conversations.create_or_get_conversation(STUDENT, OUTSIDER)


async def test_get_conversation_checks_participation(conversations, conversation):
    assert (await conversations.get_conversation(conversation.id, INSTRUCTOR)).id == conversation.id

    with pytest.raises(NotParticipant):
        await conversations.get_conversation(conversation.id, OUTSIDER)
    with pytest.raises(ConversationNotFound):
        await conversations.get_conversation("missing", STUDENT)


async def test_archive_only_changes_callers_flag(conversations, conversation):
    await conversations.set_archived(conversation.id, STUDENT, True)

    assert await conversations.list_conversations(STUDENT) == []
    archived = await conversations.list_conversations(STUDENT, archived=True)
    assert [c.id for c in archived] == [conversation.id]
    assert [c.id for c in await conversations.list_conversations(INSTRUCTOR)] == [conversation.id]


async def test_mute_by_outsider_is_rejected(conversations, conversation):
    with pytest.raises(NotParticipant):
        await conversations.set_muted(conversation.id, OUTSIDER, True)

    updated = await conversations.set_muted(conversation.id, INSTRUCTOR, True)
    assert updated.is_muted_for(INSTRUCTOR) is True
    assert updated.is_muted_for(STUDENT) is False
    muted = await conversations.list_conversations(INSTRUCTOR, muted=True)
    assert [c.id for c in muted] == [conversation.id]
    assert await conversations.list_conversations(STUDENT, muted=True) == []


async def test_list_orders_by_latest_activity(conversations, clock):
    older = await conversations.create_or_get_conversation(STUDENT, INSTRUCTOR)
    clock.advance(minutes=5)
    newer = await conversations.create_or_get_conversation(STUDENT, "instructor-2")

    listed = await conversations.list_conversations(STUDENT)
    assert [c.id for c in listed] == [newer.id, older.id]


async def test_unread_counters_join_the_callers_session(conversations, conversation, session_factory):
    async with session_factory() as db:
        await conversations.increment_unread(conversation.id, INSTRUCTOR, db=db)
        await conversations.increment_unread(conversation.id, INSTRUCTOR, db=db)
        await db.rollback()
    assert await conversations.total_unread(INSTRUCTOR) == 0

    await conversations.increment_unread(conversation.id, INSTRUCTOR)
    await conversations.increment_unread(conversation.id, INSTRUCTOR)
    assert await conversations.total_unread(INSTRUCTOR) == 2
    assert await conversations.total_unread(STUDENT) == 0

    unread = await conversations.list_conversations(INSTRUCTOR, has_unread=True)
    assert [c.unread_count_for(INSTRUCTOR) for c in unread] == [2]

    await conversations.reset_unread(conversation.id, INSTRUCTOR)
    assert await conversations.total_unread(INSTRUCTOR) == 0


async def test_profiles_are_upserted(conversations):
    await conversations.upsert_profile(INSTRUCTOR, "Dr. Demir", is_instructor=True)
    await conversations.upsert_profile(INSTRUCTOR, "Prof. Demir", is_instructor=True)

    profiles = await conversations.get_profiles([INSTRUCTOR, "unknown"])
    assert list(profiles) == [INSTRUCTOR]
    assert profiles[INSTRUCTOR].full_name == "Prof. Demir"


async def test_unreachable_database_raises_store_unavailable(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'db.sqlite'}")
    store = ConversationStore(create_session_factory(engine))
    try:
        with pytest.raises(StoreUnavailable) as excinfo:
            await store.list_conversations(STUDENT)
        assert excinfo.value.retryable is True
    finally:
        await engine.dispose()
