import asyncio

from tutorchat.schemas.message import MessagePage
from tutorchat.services.scroll import ScrollController

from conftest import INSTRUCTOR, STUDENT


def test_auto_scroll_follows_the_bottom_threshold():
    scroll = ScrollController(STUDENT)

    assert scroll.update_viewport(scroll_top=1400, viewport_height=500, content_height=2000) is True
    assert scroll.update_viewport(scroll_top=1399, viewport_height=500, content_height=2000) is False
    assert scroll.should_scroll_on_new_message(INSTRUCTOR) is False
    assert scroll.should_scroll_on_new_message(STUDENT) is True

    scroll.update_viewport(scroll_top=1450, viewport_height=500, content_height=2000)
    assert scroll.should_scroll_on_new_message(INSTRUCTOR) is True


def test_older_history_loads_near_the_top():
    scroll = ScrollController(STUDENT)

    assert scroll.should_load_older(scroll_top=80, has_more=True) is True
    assert scroll.should_load_older(scroll_top=80, has_more=False) is False
    assert scroll.should_load_older(scroll_top=300, has_more=True) is False


async def test_concurrent_loads_for_one_cursor_share_a_fetch():
    scroll = ScrollController(STUDENT)
    calls = []
    release = asyncio.Event()

    async def fetch(cursor):
        calls.append(cursor)
        await release.wait()
        return MessagePage(items=[], has_more=False, next_cursor=None)

    first = asyncio.create_task(scroll.load_older("100:abc", fetch))
    second = asyncio.create_task(scroll.load_older("100:abc", fetch))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert scroll.loading is True
    release.set()
    pages = await asyncio.gather(first, second)

    assert calls == ["100:abc"]
    assert pages[0] is pages[1]

    await scroll.load_older("100:abc", fetch)
    assert calls == ["100:abc", "100:abc"]


async def test_cancel_discards_late_results():
    scroll = ScrollController(STUDENT)
    started = asyncio.Event()

    async def fetch(cursor):
        started.set()
        await asyncio.sleep(10)
        return MessagePage(items=[], has_more=False)

    pending = asyncio.create_task(scroll.load_older(None, fetch))
    await started.wait()
    scroll.cancel()

    assert await pending is None
    assert scroll.loading is False
    assert scroll.should_load_older(scroll_top=0, has_more=True) is False
    assert await scroll.load_older(None, fetch) is None
