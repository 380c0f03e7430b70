import asyncio

import pytest
from sqlalchemy import func, select

from tutorchat.errors import (
    InvalidRequest,
    MessageNotFound,
    NotAuthor,
    NotEditable,
    NotParticipant,
    RateLimited,
)
from tutorchat.models.conversation import Conversation
from tutorchat.models.message import Message
from tutorchat.schemas.message import AttachmentReference
from tutorchat.services.message_store import MessageStore, RateLimiter, decode_cursor, encode_cursor
from tutorchat.services.realtime import conversation_topic

from conftest import INSTRUCTOR, OUTSIDER, STUDENT


async def _unread_rows(session_factory, conversation_id, sender_id):
    async with session_factory() as db:
        result = await db.execute(
            select(func.count()).select_from(Message).where(
                Message.conversation_id == conversation_id,
                Message.sender_id == sender_id,
                Message.is_read == False,  # noqa: E712
            )
        )
        return result.scalar_one()


async def _reload(session_factory, conversation_id):
    async with session_factory() as db:
        return await db.get(Conversation, conversation_id)


async def _next_event(subscription, timeout=1.0):
    return await asyncio.wait_for(subscription.__anext__(), timeout)


async def test_first_send_creates_conversation_and_counts_unread(messages, conversations, session_factory):
    sent = await messages.send_direct(STUDENT, INSTRUCTOR, "Merhaba")

    conversation = await _reload(session_factory, sent.conversation_id)
    assert conversation.unread_count_for(INSTRUCTOR) == 1
    assert conversation.unread_count_for(STUDENT) == 0
    assert conversation.last_message_id == sent.id
    assert conversation.last_message_snippet == "Merhaba"

    again = await messages.send_direct(INSTRUCTOR, STUDENT, "Hello")
    assert again.conversation_id == sent.conversation_id


async def test_sent_message_appears_exactly_once_in_first_page(messages, conversation):
    sent = await messages.append_message(conversation.id, STUDENT, "hi", client_message_id="temp-1")

    page = await messages.list_messages(conversation.id, INSTRUCTOR)
    assert [m.id for m in page.items] == [sent.id]
    assert page.items[0].client_message_id == "temp-1"
    assert page.has_more is False


async def test_append_publishes_insert_after_commit(messages, conversation, channel):
    subscription = await channel.subscribe(conversation_topic(conversation.id))

    sent = await messages.append_message(conversation.id, STUDENT, "hello")

    event = await _next_event(subscription)
    assert event.type == "insert"
    assert event.message.id == sent.id
    await subscription.close()


async def test_append_validates_content(messages, conversation):
    with pytest.raises(InvalidRequest):
        await messages.append_message(conversation.id, STUDENT, "   ")
    with pytest.raises(InvalidRequest):
        await messages.append_message(conversation.id, STUDENT, "x" * 10001)
    with pytest.raises(NotParticipant):
        await messages.append_message(conversation.id, OUTSIDER, "hi")


async def test_attachment_must_belong_to_sender(messages, conversation):
    foreign = AttachmentReference(
        storage_path=f"{INSTRUCTOR}/abc.pdf",
        storage_bucket="message-attachments",
        original_filename="notes.pdf",
        mime_type="application/pdf",
        file_size=100,
    )
    with pytest.raises(InvalidRequest):
        await messages.append_message(conversation.id, STUDENT, None, attachments=[foreign])


@pytest.mark.parametrize("storage_path", [
    f"{STUDENT}/../{OUTSIDER}/secret.pdf",
    f"{STUDENT}/./abc.pdf",
    f"{STUDENT}/sub/../../{OUTSIDER}/secret.pdf",
    f"/{STUDENT}/abc.pdf",
    f"{STUDENT}\\..\\{OUTSIDER}\\secret.pdf",
    STUDENT,
])
async def test_attachment_path_cannot_leave_senders_directory(messages, conversation, session_factory, storage_path):
    reference = AttachmentReference(
        storage_path=storage_path,
        storage_bucket="message-attachments",
        original_filename="secret.pdf",
        mime_type="application/pdf",
        file_size=100,
    )
    with pytest.raises(InvalidRequest):
        await messages.append_message(conversation.id, STUDENT, None, attachments=[reference])

    async with session_factory() as db:
        assert (await db.execute(select(func.count()).select_from(Message))).scalar_one() == 0


async def test_resend_with_same_client_id_returns_stored_message(messages, conversation, channel, session_factory):
    subscription = await channel.subscribe(conversation_topic(conversation.id))

    first = await messages.append_message(conversation.id, STUDENT, "Merhaba", client_message_id="temp-1")
    again = await messages.append_message(conversation.id, STUDENT, "Merhaba", client_message_id="temp-1")

    assert again.id == first.id
    page = await messages.list_messages(conversation.id, INSTRUCTOR)
    assert [m.content for m in page.items] == ["Merhaba"]
    assert (await _reload(session_factory, conversation.id)).unread_count_for(INSTRUCTOR) == 1
    assert (await _next_event(subscription)).message.id == first.id
    assert subscription.queue.empty()
    await subscription.close()

    # the key is per sender: the other side may reuse the same client id
    reply = await messages.append_message(conversation.id, INSTRUCTOR, "Hello", client_message_id="temp-1")
    assert reply.id != first.id


async def test_attachment_only_message(messages, conversation, session_factory):
    ref = AttachmentReference(
        storage_path=f"{STUDENT}/abc.pdf",
        storage_bucket="message-attachments",
        original_filename="notes.pdf",
        mime_type="application/pdf",
        file_size=100,
    )
    sent = await messages.append_message(conversation.id, STUDENT, None, attachments=[ref])

    assert sent.message_type == "attachment"
    assert sent.content is None
    assert [a.original_filename for a in sent.attachments] == ["notes.pdf"]
    assert sent.attachments[0].is_uploaded is True
    assert (await _reload(session_factory, conversation.id)).last_message_snippet == "[attachment] notes.pdf"


async def test_replies_track_thread_depth(messages, conversations, conversation):
    root = await messages.append_message(conversation.id, STUDENT, "question")
    reply = await messages.append_message(conversation.id, INSTRUCTOR, "answer", parent_message_id=root.id)
    assert reply.thread_depth == 1

    other = await conversations.create_or_get_conversation(STUDENT, "instructor-2")
    with pytest.raises(InvalidRequest):
        await messages.append_message(other.id, STUDENT, "wrong thread", parent_message_id=root.id)


async def test_last_message_at_never_moves_backwards(messages, conversation, session_factory, clock):
    first = await messages.append_message(conversation.id, STUDENT, "first")
    clock.advance(minutes=-5)
    await messages.append_message(conversation.id, INSTRUCTOR, "skewed")

    reloaded = await _reload(session_factory, conversation.id)
    assert reloaded.last_message_at == first.created_at
    assert reloaded.last_message_id == first.id


async def test_unread_count_matches_unread_rows(messages, conversation, session_factory, clock):
    sent = []
    for text in ("one", "two", "three"):
        sent.append(await messages.append_message(conversation.id, STUDENT, text))
        clock.advance(seconds=1)
    await messages.append_message(conversation.id, INSTRUCTOR, "reply")

    result = await messages.mark_read(conversation.id, INSTRUCTOR, up_to_message_id=sent[1].id)
    assert sorted(result.message_ids) == sorted([sent[0].id, sent[1].id])
    assert result.unread_count == 1

    reloaded = await _reload(session_factory, conversation.id)
    for participant, other in ((INSTRUCTOR, STUDENT), (STUDENT, INSTRUCTOR)):
        assert reloaded.unread_count_for(participant) == await _unread_rows(session_factory, conversation.id, other)


async def test_mark_read_is_idempotent_and_publishes_ids(messages, conversation, channel):
    sent = await messages.append_message(conversation.id, STUDENT, "hello")
    subscription = await channel.subscribe(conversation_topic(conversation.id), ["read"])

    first = await messages.mark_read(conversation.id, INSTRUCTOR)
    second = await messages.mark_read(conversation.id, INSTRUCTOR)

    assert first.message_ids == [sent.id]
    assert second.message_ids == []
    assert second.unread_count == 0
    event = await _next_event(subscription)
    assert event.type == "read"
    assert event.message_ids == [sent.id]
    assert event.user_id == INSTRUCTOR
    assert (await messages.get_message(sent.id, STUDENT)).is_read is True
    await subscription.close()


async def test_mark_read_ignores_own_messages(messages, conversation):
    await messages.append_message(conversation.id, STUDENT, "mine")
    result = await messages.mark_read(conversation.id, STUDENT)
    assert result.message_ids == []


async def test_edit_inside_window_succeeds(messages, conversation, session_factory, clock):
    sent = await messages.append_message(conversation.id, STUDENT, "draft")
    clock.advance(hours=24, seconds=-1)

    edited = await messages.edit_message(sent.id, STUDENT, "final")

    assert edited.content == "final"
    assert edited.is_edited is True
    assert edited.edited_at == clock.now
    async with session_factory() as db:
        assert (await db.get(Message, sent.id)).original_content == "draft"
    assert (await _reload(session_factory, conversation.id)).last_message_snippet == "final"


async def test_edit_after_window_fails(messages, conversation, clock):
    sent = await messages.append_message(conversation.id, STUDENT, "draft")
    clock.advance(hours=24, seconds=1)

    with pytest.raises(NotEditable):
        await messages.edit_message(sent.id, STUDENT, "too late")


async def test_only_sender_can_edit_live_messages(messages, conversation):
    sent = await messages.append_message(conversation.id, STUDENT, "draft")
    with pytest.raises(NotEditable):
        await messages.edit_message(sent.id, INSTRUCTOR, "hijack")

    await messages.delete_message(sent.id, STUDENT)
    with pytest.raises(NotEditable):
        await messages.edit_message(sent.id, STUDENT, "revive")


async def test_delete_keeps_the_message_resolvable(messages, conversation, session_factory, channel):
    sent = await messages.append_message(conversation.id, STUDENT, "oops")
    subscription = await channel.subscribe(conversation_topic(conversation.id), ["delete"])

    with pytest.raises(NotAuthor):
        await messages.delete_message(sent.id, INSTRUCTOR)
    deleted = await messages.delete_message(sent.id, STUDENT)

    assert deleted.is_deleted is True
    assert deleted.content == ""
    fetched = await messages.get_message(sent.id, INSTRUCTOR)
    assert fetched.id == sent.id
    assert fetched.created_at == sent.created_at
    assert fetched.content == ""
    assert (await _reload(session_factory, conversation.id)).last_message_snippet is None
    assert (await _next_event(subscription)).message.id == sent.id

    again = await messages.delete_message(sent.id, STUDENT)
    assert again.deleted_at == deleted.deleted_at
    await subscription.close()


async def test_missing_message(messages):
    with pytest.raises(MessageNotFound):
        await messages.get_message("missing", STUDENT)


async def test_pages_walk_backwards_oldest_first(messages, conversation, clock):
    sent = []
    for i in range(5):
        sent.append(await messages.append_message(conversation.id, STUDENT, f"m{i}"))
        clock.advance(seconds=1)

    latest = await messages.list_messages(conversation.id, STUDENT, limit=2)
    assert [m.content for m in latest.items] == ["m3", "m4"]
    assert latest.has_more is True

    older = await messages.list_messages(conversation.id, STUDENT, cursor=latest.next_cursor, limit=2)
    assert [m.content for m in older.items] == ["m1", "m2"]

    oldest = await messages.list_messages(conversation.id, STUDENT, cursor=older.next_cursor, limit=2)
    assert [m.content for m in oldest.items] == ["m0"]
    assert oldest.has_more is False

    newer = await messages.list_messages(
        conversation.id, STUDENT, after=encode_cursor(sent[2].created_at, sent[2].id)
    )
    assert [m.content for m in newer.items] == ["m3", "m4"]
    assert newer.next_cursor == encode_cursor(sent[4].created_at, sent[4].id)


async def test_cursor_round_trip_and_garbage(messages, conversation):
    sent = await messages.append_message(conversation.id, STUDENT, "x")
    assert decode_cursor(encode_cursor(sent.created_at, sent.id)) == (sent.created_at, sent.id)

    with pytest.raises(InvalidRequest):
        await messages.list_messages(conversation.id, STUDENT, cursor="not-a-cursor")


async def test_rate_limit_per_sender(session_factory, channel, conversations, conversation, clock):
    store = MessageStore(
        session_factory, channel, conversations=conversations, clock=clock,
        rate_limiter=RateLimiter(3, 60, clock=clock),
    )
    for i in range(3):
        await store.append_message(conversation.id, STUDENT, f"m{i}")
    with pytest.raises(RateLimited) as excinfo:
        await store.append_message(conversation.id, STUDENT, "one too many")
    assert excinfo.value.retryable is True

    await store.append_message(conversation.id, INSTRUCTOR, "other sender is fine")
    clock.advance(seconds=61)
    await store.append_message(conversation.id, STUDENT, "window passed")


async def test_search_is_scoped_to_callers_conversations(messages, conversations, conversation):
    await messages.append_message(conversation.id, STUDENT, "Homework about Derivatives")
    removed = await messages.append_message(conversation.id, STUDENT, "derivatives draft")
    await messages.delete_message(removed.id, STUDENT)
    elsewhere = await conversations.create_or_get_conversation(OUTSIDER, "instructor-9")
    await messages.append_message(elsewhere.id, OUTSIDER, "derivatives too")

    hits = await messages.search_messages(INSTRUCTOR, "DERIVATIVE")
    assert [h.content for h in hits] == ["Homework about Derivatives"]

    with pytest.raises(InvalidRequest):
        await messages.search_messages(INSTRUCTOR, "d")
