from __future__ import annotations

import json

import httpx
import pytest
import respx
from conftest import make_record

from mailbridge.config import DEFAULT_NATIVE_API_BASE
from mailbridge.errors import BackendError
from mailbridge.sources.models import Draft, DraftSource, DraftUpdate
from mailbridge.sources.native import NativeClient, NativeDraftSource, drafts_from_thread_list

THREAD_LIST = [
    {
        "thread": {
            "id": "thread-9",
            "messages": {
                "msg-1": {"id": "msg-1"},
                "draft00f1": {
                    "draft": {
                        "id": "draft00f1",
                        "subject": "Follow up",
                        "from": "me@example.com",
                        "to": ["a@example.com"],
                        "snippet": "Checking in",
                        "date": "2026-03-01T11:00:00Z",
                    }
                },
            },
        }
    },
    {"thread": {"id": "thread-10", "messages": {}}},
]


def native_token(**kwargs):
    async def getter():
        return make_record(proprietary_token="native-tok", proprietary_user_id="user-7", **kwargs)

    return getter


def test_drafts_from_thread_list() -> None:
    drafts = drafts_from_thread_list(THREAD_LIST)

    assert len(drafts) == 1
    draft = drafts[0]
    assert draft.id.startswith("draft00")
    assert draft.source is DraftSource.NATIVE
    assert draft.thread_id == "thread-9"
    assert draft.to == ["a@example.com"]
    assert draft.preview == "Checking in"


@pytest.mark.asyncio
@respx.mock
async def test_list_posts_draft_filter() -> None:
    route = respx.post(f"{DEFAULT_NATIVE_API_BASE}/userdata.getThreads").mock(
        return_value=httpx.Response(200, json={"threadList": THREAD_LIST})
    )

    drafts = await NativeDraftSource(native_token()).list_drafts(limit=20, offset=40)

    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer native-tok"
    assert json.loads(request.content) == {"filter": {"type": "draft"}, "offset": 40, "limit": 20}
    assert [d.id for d in drafts] == ["draft00f1"]


@pytest.mark.asyncio
@respx.mock
async def test_list_without_native_token_is_empty() -> None:
    async def getter():
        return make_record()

    assert await NativeDraftSource(getter).list_drafts() == []
    assert not respx.calls


@pytest.mark.asyncio
@respx.mock
async def test_list_http_error_raises() -> None:
    respx.post(f"{DEFAULT_NATIVE_API_BASE}/userdata.getThreads").mock(return_value=httpx.Response(401))
    with pytest.raises(BackendError) as excinfo:
        await NativeDraftSource(native_token()).list_drafts()
    assert excinfo.value.backend == "native"
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
@respx.mock
async def test_update_writes_draft_path() -> None:
    route = respx.post(f"{DEFAULT_NATIVE_API_BASE}/userdata.writeMessage").mock(
        return_value=httpx.Response(200, json={})
    )
    draft = drafts_from_thread_list(THREAD_LIST)[0]

    updated = await NativeDraftSource(native_token()).update_draft(draft, DraftUpdate(subject="Follow up (v2)"))

    write = json.loads(route.calls.last.request.content)["writes"][0]
    assert write["path"] == "users/user-7/threads/thread-9/messages/draft00f1/draft"
    assert write["value"]["subject"] == "Follow up (v2)"
    assert write["value"]["to"] == ["a@example.com"]
    assert write["value"]["body"] == "Checking in"
    assert write["value"]["labelIds"] == ["DRAFT"]
    assert updated.subject == "Follow up (v2)"


@pytest.mark.asyncio
@respx.mock
async def test_delete_writes_null_value() -> None:
    route = respx.post(f"{DEFAULT_NATIVE_API_BASE}/userdata.writeMessage").mock(
        return_value=httpx.Response(200, json={})
    )
    draft = drafts_from_thread_list(THREAD_LIST)[0]

    await NativeDraftSource(native_token()).delete_draft(draft)

    write = json.loads(route.calls.last.request.content)["writes"][0]
    assert write["value"] is None


@pytest.mark.asyncio
async def test_writes_need_thread_id_and_token() -> None:
    orphan = Draft(id="draft00x", subject="x", from_address="me@example.com", source=DraftSource.NATIVE)
    with pytest.raises(BackendError):
        await NativeDraftSource(native_token()).delete_draft(orphan)

    async def no_native():
        return make_record()

    threaded = Draft(id="draft00x", subject="x", from_address="", source=DraftSource.NATIVE, thread_id="t")
    with pytest.raises(BackendError):
        await NativeDraftSource(no_native).update_draft(threaded, DraftUpdate(subject="y"))


@pytest.mark.asyncio
@respx.mock
async def test_sync_posts_history_cursor() -> None:
    route = respx.post(f"{DEFAULT_NATIVE_API_BASE}/userdata.sync").mock(
        return_value=httpx.Response(200, json={"historyId": 42, "threads": []})
    )

    async with NativeClient("native-tok", user_id="user-7") as client:
        first = await client.sync()
        later = await client.sync(start_history_id=42)

    assert json.loads(route.calls[0].request.content) == {}
    assert json.loads(route.calls[1].request.content) == {"startHistoryId": 42}
    assert first["historyId"] == 42
    assert later["threads"] == []
