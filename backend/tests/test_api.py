import httpx
import pytest

from tutorchat.database import get_session_factory
from tutorchat.dependencies import get_object_storage
from tutorchat.main import app
from tutorchat.services.attachment_service import LocalObjectStorage
from tutorchat.services.realtime import get_channel_provider
from tutorchat.utils.security import create_access_token

from conftest import INSTRUCTOR, OUTSIDER, STUDENT


def _auth(user_id):
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


@pytest.fixture
async def client(session_factory, channel, tmp_path):
    storage = LocalObjectStorage(root=str(tmp_path / "files"), base_url="http://test")
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_channel_provider] = lambda: channel
    app.dependency_overrides[get_object_storage] = lambda: storage
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def _open_conversation(client):
    resp = await client.post("/api/conversations", json={"participant_id": INSTRUCTOR}, headers=_auth(STUDENT))
    assert resp.status_code == 201
    return resp.json()


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


async def test_requests_need_a_token(client):
    resp = await client.get("/api/conversations")
    assert resp.status_code in (401, 403)

    resp = await client.get("/api/conversations", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401


async def test_send_read_flow(client):
    conversation = await _open_conversation(client)
    assert conversation["other_participant_id"] == INSTRUCTOR
    assert conversation["unread_count"] == 0

    resp = await client.post(
        f"/api/conversations/{conversation['id']}/messages",
        json={"content": "Merhaba", "client_message_id": "temp-1"},
        headers=_auth(STUDENT),
    )
    assert resp.status_code == 201
    message = resp.json()
    assert message["client_message_id"] == "temp-1"

    listed = (await client.get("/api/conversations", headers=_auth(INSTRUCTOR))).json()
    assert [c["unread_count"] for c in listed] == [1]
    assert listed[0]["last_message_snippet"] == "Merhaba"
    assert (await client.get("/api/conversations/unread", headers=_auth(INSTRUCTOR))).json() == {"unread_count": 1}

    page = (await client.get(f"/api/conversations/{conversation['id']}/messages", headers=_auth(INSTRUCTOR))).json()
    assert [m["id"] for m in page["items"]] == [message["id"]]

    resp = await client.post(f"/api/conversations/{conversation['id']}/read", json={}, headers=_auth(INSTRUCTOR))
    assert resp.json()["message_ids"] == [message["id"]]
    assert resp.json()["unread_count"] == 0


async def test_errors_use_the_messaging_error_body(client):
    conversation = await _open_conversation(client)
    sent = (await client.post(
        f"/api/conversations/{conversation['id']}/messages",
        json={"content": "hello"},
        headers=_auth(STUDENT),
    )).json()

    resp = await client.patch(f"/api/messages/{sent['id']}", json={"content": "hijack"}, headers=_auth(INSTRUCTOR))
    assert resp.status_code == 403
    assert resp.json() == {"detail": "Only the sender can edit this message", "code": "NOT_EDITABLE", "retryable": False}

    resp = await client.get(f"/api/conversations/{conversation['id']}", headers=_auth(OUTSIDER))
    assert resp.status_code == 403
    assert resp.json()["code"] == "NOT_PARTICIPANT"

    resp = await client.get("/api/messages/search", params={"q": "h"}, headers=_auth(STUDENT))
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"

    resp = await client.delete(f"/api/messages/{sent['id']}", headers=_auth(INSTRUCTOR))
    assert resp.status_code == 403
    assert resp.json()["code"] == "NOT_AUTHOR"


async def test_direct_send_edit_and_delete(client):
    resp = await client.post(
        "/api/messages/direct",
        json={"recipient_id": INSTRUCTOR, "content": "first contact"},
        headers=_auth(STUDENT),
    )
    assert resp.status_code == 201
    sent = resp.json()

    edited = (await client.patch(f"/api/messages/{sent['id']}", json={"content": "edited"}, headers=_auth(STUDENT))).json()
    assert edited["is_edited"] is True
    assert edited["content"] == "edited"

    deleted = (await client.delete(f"/api/messages/{sent['id']}", headers=_auth(STUDENT))).json()
    assert deleted["is_deleted"] is True
    assert deleted["content"] == ""

    fetched = (await client.get(f"/api/messages/{sent['id']}", headers=_auth(INSTRUCTOR))).json()
    assert fetched["id"] == sent["id"]
    assert fetched["is_deleted"] is True


async def test_archive_mute_and_grouped_view(client):
    await client.put("/api/participants/me", json={"full_name": "Dr. Demir", "is_instructor": True},
                     headers=_auth(INSTRUCTOR))
    conversation = await _open_conversation(client)
    assert conversation["other_participant_name"] == "Dr. Demir"

    view = (await client.get("/api/conversations/view", headers=_auth(STUDENT))).json()
    assert [g["label"] for g in view["groups"]] == ["Today"]

    hits = (await client.get("/api/conversations/view", params={"q": "dem"}, headers=_auth(STUDENT))).json()
    assert [h["conversation"]["id"] for h in hits["hits"]] == [conversation["id"]]
    assert hits["hits"][0]["name_highlights"] == [{"start": 4, "end": 7}]

    updated = (await client.patch(
        f"/api/conversations/{conversation['id']}", json={"archived": True, "muted": True}, headers=_auth(STUDENT)
    )).json()
    assert updated["archived"] is True
    assert updated["muted"] is True
    assert (await client.get("/api/conversations", headers=_auth(STUDENT))).json() == []
    assert len((await client.get("/api/conversations", headers=_auth(INSTRUCTOR))).json()) == 1


async def test_attachment_upload_and_signed_download(client):
    conversation = await _open_conversation(client)
    resp = await client.post(
        "/api/attachments/upload",
        files={"file": ("notes.txt", b"derivative rules", "text/plain")},
        headers=_auth(STUDENT),
    )
    assert resp.status_code == 201
    reference = resp.json()

    sent = (await client.post(
        f"/api/conversations/{conversation['id']}/messages",
        json={"attachments": [reference]},
        headers=_auth(STUDENT),
    )).json()
    attachment_id = sent["attachments"][0]["id"]

    access = (await client.get(f"/api/attachments/{attachment_id}/url", headers=_auth(INSTRUCTOR))).json()
    assert access["action"] == "download"

    download = await client.get(access["url"].replace("http://test", ""))
    assert download.status_code == 200
    assert download.content == b"derivative rules"

    missing = await client.get("/api/files/not-a-token")
    assert missing.status_code == 404


async def test_unsupported_upload_is_rejected(client):
    resp = await client.post(
        "/api/attachments/upload",
        files={"file": ("tool.exe", b"MZ", "application/x-msdownload")},
        headers=_auth(STUDENT),
    )
    assert resp.status_code == 415
    assert resp.json()["code"] == "UNSUPPORTED_TYPE"


async def test_typing_signal_is_relayed(client, channel):
    conversation = await _open_conversation(client)
    subscription = await channel.subscribe(f"conversation:{conversation['id']}", ["typing"])

    resp = await client.post(
        f"/api/conversations/{conversation['id']}/typing", json={"is_typing": True}, headers=_auth(STUDENT)
    )
    assert resp.status_code == 204

    event = await subscription.__anext__()
    assert event.user_id == STUDENT
    assert event.is_typing is True
    await subscription.close()
