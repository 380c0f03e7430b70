import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

_TMP = tempfile.mkdtemp(prefix="tutorchat-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP, 'default.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["UPLOAD_DIR"] = os.path.join(_TMP, "uploads")
os.environ.pop("REDIS_URL", None)

from tutorchat.database import create_engine, create_session_factory, init_db  # noqa: E402
from tutorchat.services.conversation_store import ConversationStore  # noqa: E402
from tutorchat.services.message_store import MessageStore  # noqa: E402
from tutorchat.services.realtime import InMemoryChannelProvider  # noqa: E402


STUDENT = "student-1"
INSTRUCTOR = "instructor-1"
OUTSIDER = "student-2"


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def channel():
    return InMemoryChannelProvider()


@pytest.fixture
def conversations(session_factory, clock):
    return ConversationStore(session_factory, clock=clock)


@pytest.fixture
def messages(session_factory, channel, conversations, clock):
    return MessageStore(session_factory, channel, conversations=conversations, clock=clock)


@pytest.fixture
async def conversation(conversations):
    return await conversations.create_or_get_conversation(STUDENT, INSTRUCTOR)
