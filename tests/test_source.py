import pytest
import respx
from httpx import ConnectError, Response

from qnews.errors import SourceError
from qnews.source import HNFirebaseSource, parse_item

BASE = "https://hn.example.com/v0"


def _source():
    return HNFirebaseSource(BASE, retry_attempts=3, retry_wait_min=0, retry_wait_max=0)


def _item(sid, **fields):
    data = {"id": sid, "by": "pg", "title": f"Story {sid}", "score": 10, "time": 1_700_000_000}
    data.update(fields)
    return data


def test_parse_item():
    story = parse_item(8863, _item(8863, url="https://example.com", descendants=7))
    assert story.ok
    assert story.by == "pg"
    assert story.descendants == 7
    assert story.submission_time == 1_700_000_000


@pytest.mark.parametrize(
    "payload",
    [None, [], _item(1, dead=True), _item(1, deleted=True), _item(2), _item(1, score="lots")],
)
def test_parse_item_rejects_unusable_payloads(payload):
    assert parse_item(1, payload).id == 0


@pytest.mark.asyncio
@respx.mock
async def test_ranked_ids_truncated_to_three_pages():
    respx.get(f"{BASE}/topstories.json").mock(
        return_value=Response(200, json=list(range(1, 501)))
    )
    source = _source()
    ids = await source.ranked_ids("top")
    assert ids == list(range(1, 91))
    await source.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_ranked_ids_retries_server_errors():
    route = respx.get(f"{BASE}/newstories.json")
    route.side_effect = [Response(503), ConnectError("reset"), Response(200, json=[3, 2, 1])]
    source = _source()
    assert await source.ranked_ids("new") == [3, 2, 1]
    assert route.call_count == 3
    await source.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_ranked_ids_gives_up():
    route = respx.get(f"{BASE}/beststories.json").mock(return_value=Response(500))
    source = _source()
    with pytest.raises(SourceError):
        await source.ranked_ids("best")
    assert route.call_count == 3
    await source.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_client_errors_are_not_retried():
    route = respx.get(f"{BASE}/askstories.json").mock(return_value=Response(404))
    source = _source()
    with pytest.raises(SourceError):
        await source.ranked_ids("ask")
    assert route.call_count == 1
    await source.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_ranked_ids_rejects_non_list():
    respx.get(f"{BASE}/showstories.json").mock(return_value=Response(200, json={"oops": 1}))
    source = _source()
    with pytest.raises(SourceError):
        await source.ranked_ids("show")
    await source.aclose()


@pytest.mark.asyncio
async def test_unknown_category():
    source = _source()
    with pytest.raises(ValueError):
        await source.ranked_ids("jobs")
    await source.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_item_details_marks_failures():
    respx.get(f"{BASE}/item/1.json").mock(return_value=Response(200, json=_item(1)))
    respx.get(f"{BASE}/item/2.json").mock(return_value=Response(500))
    respx.get(f"{BASE}/item/3.json").mock(return_value=Response(200, json=None))
    source = _source()

    stories = await source.item_details([1, 2, 3])

    assert [s.id for s in stories] == [1, 0, 0]
    assert stories[0].title == "Story 1"
    await source.aclose()
