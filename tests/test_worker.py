import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from unittest.mock import patch
from zoneinfo import ZoneInfo

import anyio
import httpx
import pytest
from inline_snapshot import snapshot
from time_machine import travel

from imagecache import (
    AsyncImageCacheWorker,
    Headers,
    MethodFilter,
    Request,
    Response,
    URLPatternFilter,
    WorkerState,
    WorkerStateError,
    is_managed,
)
from imagecache.httpx import AsyncCacheWorker

IMAGE_URL = "https://x.supabase.co/storage/v1/object/sign/images/foo.png?token=abc"
OTHER_IMAGE_URL = "https://x.supabase.co/storage/v1/object/sign/images/bar.png?token=abc"


class FakeClient:
    def __init__(self) -> None:
        self.controller: Optional[AsyncImageCacheWorker] = None
        self.messages: List[Dict[str, Any]] = []

    def post_message(self, message: Mapping[str, Any]) -> None:
        self.messages.append(dict(message))


async def cached_urls(worker: AsyncImageCacheWorker) -> List[str]:
    cache = await worker.storage.open(worker.cache_name)
    return [request.url for request in await cache.keys()]


# Lifecycle


@pytest.mark.anyio
async def test_install_and_activate(network, storage):
    async with AsyncCacheWorker(network=httpx.MockTransport(network), storage=storage) as worker:
        assert worker.state is WorkerState.PARSED
        assert not worker.is_active

        await worker.install()
        assert worker.state is WorkerState.INSTALLED

        await worker.activate()
        assert worker.state is WorkerState.ACTIVATED
        assert worker.is_active
        await worker.ready()


@pytest.mark.anyio
async def test_lifecycle_order_is_enforced(network, storage):
    async with AsyncCacheWorker(network=httpx.MockTransport(network), storage=storage) as worker:
        with pytest.raises(WorkerStateError):
            await worker.activate()

        await worker.install()
        with pytest.raises(WorkerStateError):
            await worker.install()


@pytest.mark.anyio
async def test_worker_must_be_started(network, storage):
    worker = AsyncCacheWorker(network=httpx.MockTransport(network), storage=storage)
    await worker.install()

    with pytest.raises(WorkerStateError):
        await worker.activate()
    with pytest.raises(WorkerStateError):
        await worker.respond(Request(method="GET", url=IMAGE_URL))
    with pytest.raises(WorkerStateError):
        await worker.ready()


@pytest.mark.anyio
async def test_activation_deletes_old_caches(network, storage, make_worker, caplog):
    old_cache = await storage.open("photomate-image-cache-v2")
    await old_cache.put(Request(method="GET", url=IMAGE_URL), Response(status_code=200, content=b"old"))
    await storage.open("photomate-image-cache-v3")

    with caplog.at_level(logging.DEBUG, logger="imagecache"):
        async with make_worker(network, storage):
            assert await storage.cache_names() == ["photomate-image-cache-v3"]

    assert "Deleting old cache: photomate-image-cache-v2" in caplog.messages


@pytest.mark.anyio
async def test_failed_activation_makes_worker_redundant(network, storage):
    async with AsyncCacheWorker(network=httpx.MockTransport(network), storage=storage) as worker:
        await worker.install()
        with patch.object(storage, "cache_names", side_effect=RuntimeError("storage unavailable")):
            with pytest.raises(RuntimeError):
                await worker.activate()

        assert worker.state is WorkerState.REDUNDANT
        with pytest.raises(WorkerStateError):
            await worker.ready()


@pytest.mark.anyio
async def test_register_activates_and_claims_clients(network, storage):
    async with AsyncCacheWorker(network=httpx.MockTransport(network), storage=storage) as worker:
        first, second = FakeClient(), FakeClient()
        worker.register(first)
        worker.register(first)
        assert first.controller is None

        await worker.ready()
        assert worker.state is WorkerState.ACTIVATED
        assert first.controller is worker

        worker.register(second)
        assert second.controller is worker
        assert worker.clients == [first, second]

        worker.unregister(first)
        assert first.controller is None
        assert worker.clients == [second]


# Fetch handling


@pytest.mark.anyio
async def test_miss_then_hit(network, storage, make_worker):
    with travel(datetime(2024, 1, 1, 0, 0, 0, tzinfo=ZoneInfo("UTC")), tick=False):
        async with make_worker(network, storage) as worker:
            first = await worker.respond(Request(method="GET", url=IMAGE_URL))
            second = await worker.respond(Request(method="GET", url=IMAGE_URL))

    assert network.calls == 1

    assert first.status_code == 200
    assert first.content == second.content == b"<bytes>"
    assert first.headers == second.headers
    assert first.headers["X-Photomate-Cached"] == "true"
    assert first.headers["Cache-Control"] == "public, max-age=31536000, immutable"
    assert first.headers["X-Cache-Date"] == snapshot("2024-01-01T00:00:00.000Z")
    assert first.headers["Content-Type"] == "image/png"

    assert first.metadata == snapshot(
        {"imagecache_from_cache": False, "imagecache_stored": True, "imagecache_legacy": False}
    )
    assert second.metadata == snapshot(
        {"imagecache_from_cache": True, "imagecache_stored": False, "imagecache_legacy": False}
    )


@pytest.mark.anyio
async def test_supabase_signed_image_is_cached(network, storage, make_worker):
    request_filters = [MethodFilter(), URLPatternFilter([r"\.supabase\.co/storage/v1/object/sign/images/"])]
    async with make_worker(network, storage, request_filters=request_filters) as worker:
        request = Request(method="GET", url=IMAGE_URL)
        assert worker.should_handle(request)

        first = await worker.respond(request)
        cache = await storage.open("photomate-image-cache-v3")
        stored = await cache.match(request)
        second = await worker.respond(Request(method="GET", url=IMAGE_URL))

    assert stored is not None
    assert is_managed(stored)
    assert stored.headers["X-Photomate-Cached"] == "true"
    assert (second.content, second.headers) == (first.content, first.headers)
    assert network.calls == 1


@pytest.mark.anyio
async def test_non_200_is_not_stored(network, storage, make_worker, caplog):
    network.outcomes = [httpx.Response(404), httpx.Response(206, content=b"<partial>")]

    with caplog.at_level(logging.DEBUG, logger="imagecache"):
        async with make_worker(network, storage) as worker:
            not_found = await worker.respond(Request(method="GET", url=IMAGE_URL))
            partial = await worker.respond(Request(method="GET", url=IMAGE_URL))
            assert await cached_urls(worker) == []

    assert network.calls == 2
    assert not_found.status_code == 404
    assert "X-Photomate-Cached" not in not_found.headers
    assert partial.status_code == 206
    assert partial.metadata["imagecache_stored"] is False
    assert f"Response filtered out by response filter: 404 {IMAGE_URL}" in caplog.messages


@pytest.mark.anyio
async def test_network_error_propagates(network, storage, make_worker, caplog):
    network.outcomes = [httpx.ConnectError("offline")]

    async with make_worker(network, storage) as worker:
        with pytest.raises(httpx.ConnectError):
            await worker.respond(Request(method="GET", url=IMAGE_URL))
        assert await cached_urls(worker) == []
        assert len(worker.in_flight) == 0

        response = await worker.respond(Request(method="GET", url=IMAGE_URL))

    assert response.status_code == 200
    assert network.calls == 2
    assert f"Fetch error: ConnectError('offline') {IMAGE_URL}" in caplog.messages


@pytest.mark.anyio
async def test_concurrent_requests_share_one_fetch(network, storage, make_worker, wait_for):
    network.delay = 0.05
    responses: List[Response] = []

    async def fetch(worker: AsyncImageCacheWorker) -> None:
        responses.append(await worker.respond(Request(method="GET", url=IMAGE_URL)))

    async with make_worker(network, storage, in_flight_cleanup_delay=0.05) as worker:
        async with anyio.create_task_group() as tg:
            for _ in range(5):
                tg.start_soon(fetch, worker)

        assert network.calls == 1
        await wait_for(lambda: len(worker.in_flight) == 0)
        after_cleanup = await worker.respond(Request(method="GET", url=IMAGE_URL))

    assert len(responses) == 5
    assert {response.content for response in responses} == {b"<bytes>"}
    assert sum(bool(response.metadata.get("imagecache_coalesced")) for response in responses) == 4
    assert after_cleanup.metadata["imagecache_from_cache"] is True
    assert "imagecache_coalesced" not in after_cleanup.metadata
    assert network.calls == 1


@pytest.mark.anyio
async def test_concurrent_failures_are_shared(network, storage, make_worker):
    network.delay = 0.05
    network.outcomes = [httpx.ConnectError("offline")]
    errors: List[BaseException] = []

    async def fetch(worker: AsyncImageCacheWorker) -> None:
        try:
            await worker.respond(Request(method="GET", url=IMAGE_URL))
        except httpx.ConnectError as exc:
            errors.append(exc)

    async with make_worker(network, storage, in_flight_cleanup_delay=0.05) as worker:
        async with anyio.create_task_group() as tg:
            for _ in range(3):
                tg.start_soon(fetch, worker)

    assert network.calls == 1
    assert len(errors) == 3


@pytest.mark.anyio
async def test_cancelled_caller_does_not_abort_fetch(network, storage, make_worker, wait_for):
    network.delay = 0.05

    async with make_worker(network, storage) as worker:
        with anyio.move_on_after(0.01) as scope:
            await worker.respond(Request(method="GET", url=IMAGE_URL))
        assert scope.cancelled_caught

        async def is_cached() -> bool:
            return await cached_urls(worker) == [IMAGE_URL]

        await wait_for(is_cached)

    assert network.calls == 1


@pytest.mark.anyio
async def test_legacy_entry_is_served_and_refreshed(network, storage, make_worker, wait_for, caplog):
    network.outcomes = [httpx.Response(200, content=b"<fresh>", headers={"Content-Type": "image/png"})]
    request = Request(method="GET", url=IMAGE_URL)

    with caplog.at_level(logging.DEBUG, logger="imagecache"):
        async with make_worker(network, storage) as worker:
            cache = await storage.open(worker.cache_name)
            await cache.put(
                request,
                Response(status_code=200, headers=Headers({"Content-Type": "image/png"}), content=b"<legacy>"),
            )

            legacy = await worker.respond(request)

            async def is_refreshed() -> bool:
                stored = await cache.match(request)
                return stored is not None and is_managed(stored)

            await wait_for(is_refreshed)
            refreshed = await worker.respond(request)

    assert legacy.content == b"<legacy>"
    assert legacy.metadata == snapshot(
        {"imagecache_from_cache": True, "imagecache_stored": False, "imagecache_legacy": True}
    )
    assert refreshed.content == b"<fresh>"
    assert refreshed.headers["X-Photomate-Cached"] == "true"
    assert refreshed.metadata["imagecache_legacy"] is False
    assert network.calls == 1
    assert f"Updated cache in background: {IMAGE_URL}" in caplog.messages


@pytest.mark.anyio
async def test_failed_background_refresh_keeps_legacy_entry(network, storage, make_worker, wait_for, caplog):
    network.outcomes = [httpx.ConnectError("offline")]
    request = Request(method="GET", url=IMAGE_URL)

    async with make_worker(network, storage) as worker:
        cache = await storage.open(worker.cache_name)
        await cache.put(request, Response(status_code=200, content=b"<legacy>"))

        legacy = await worker.respond(request)
        await wait_for(lambda: network.calls == 1)
        await wait_for(lambda: any("Background fetch failed" in message for message in caplog.messages))
        stored = await cache.match(request)

    assert legacy.content == b"<legacy>"
    assert stored is not None
    assert stored.content == b"<legacy>"
    assert not is_managed(stored)


@pytest.mark.anyio
async def test_storage_write_failure_still_returns_response(network, storage, make_worker, caplog):
    async with make_worker(network, storage) as worker:
        with patch.object(storage, "put_entry", side_effect=RuntimeError("disk full")):
            response = await worker.respond(Request(method="GET", url=IMAGE_URL))

    assert response.status_code == 200
    assert response.content == b"<bytes>"
    assert response.metadata["imagecache_stored"] is False
    assert f"Failed to store response in cache: RuntimeError('disk full') {IMAGE_URL}" in caplog.messages


@pytest.mark.anyio
async def test_should_handle(network, storage, make_worker):
    async with make_worker(network, storage) as worker:
        assert worker.should_handle(Request(method="GET", url=IMAGE_URL))
        assert not worker.should_handle(Request(method="POST", url=IMAGE_URL))
        assert not worker.should_handle(Request(method="GET", url="https://example.com/a.png"))


# Control messages


@pytest.mark.anyio
async def test_delete_image_removes_exactly_one_entry(network, storage, make_worker, wait_for):
    client = FakeClient()

    async with make_worker(network, storage) as worker:
        await worker.respond(Request(method="GET", url=IMAGE_URL))
        await worker.respond(Request(method="GET", url=OTHER_IMAGE_URL))

        worker.post_message({"type": "DELETE_IMAGE", "url": IMAGE_URL}, source=client)
        await wait_for(lambda: client.messages)

        assert await cached_urls(worker) == [OTHER_IMAGE_URL]

    assert client.messages == [{"type": "IMAGE_DELETED", "url": IMAGE_URL, "success": True}]


@pytest.mark.anyio
async def test_delete_missing_image_reports_success(network, storage, make_worker, wait_for, caplog):
    client = FakeClient()

    with caplog.at_level(logging.DEBUG, logger="imagecache"):
        async with make_worker(network, storage) as worker:
            worker.post_message({"type": "DELETE_IMAGE", "url": IMAGE_URL}, source=client)
            await wait_for(lambda: client.messages)

    assert client.messages == [{"type": "IMAGE_DELETED", "url": IMAGE_URL, "success": True}]
    assert f"Image deleted from cache: {IMAGE_URL[:50]}... not found" in caplog.messages


@pytest.mark.anyio
async def test_delete_reports_success_on_storage_error(network, storage, make_worker, wait_for, caplog):
    client = FakeClient()

    async with make_worker(network, storage) as worker:
        with patch.object(storage, "remove_entry", side_effect=RuntimeError("locked")):
            worker.post_message({"type": "DELETE_IMAGE", "url": IMAGE_URL}, source=client)
            await wait_for(lambda: client.messages)

    assert client.messages == [{"type": "IMAGE_DELETED", "url": IMAGE_URL, "success": True}]
    assert "Error deleting image from cache: RuntimeError('locked')" in caplog.messages


@pytest.mark.anyio
async def test_clear_all_images_is_idempotent(network, storage, make_worker, wait_for):
    client = FakeClient()

    async with make_worker(network, storage) as worker:
        await worker.respond(Request(method="GET", url=IMAGE_URL))
        await worker.respond(Request(method="GET", url=OTHER_IMAGE_URL))

        worker.post_message({"type": "CLEAR_ALL_IMAGES"}, source=client)
        await wait_for(lambda: len(client.messages) == 1)
        assert await cached_urls(worker) == []

        worker.post_message({"type": "CLEAR_ALL_IMAGES"}, source=client)
        await wait_for(lambda: len(client.messages) == 2)
        assert await cached_urls(worker) == []

        assert await storage.has(worker.cache_name)

    assert client.messages == [
        {"type": "CACHE_CLEARED", "success": True},
        {"type": "CACHE_CLEARED", "success": True},
    ]


@pytest.mark.anyio
async def test_clear_reports_success_on_storage_error(network, storage, make_worker, wait_for, caplog):
    client = FakeClient()

    async with make_worker(network, storage) as worker:
        with patch.object(storage, "get_requests", side_effect=RuntimeError("locked")):
            worker.post_message({"type": "CLEAR_ALL_IMAGES"}, source=client)
            await wait_for(lambda: client.messages)

    assert client.messages == [{"type": "CACHE_CLEARED", "success": True}]
    assert "Error clearing cache: RuntimeError('locked')" in caplog.messages


@pytest.mark.anyio
async def test_unrecognized_messages_are_ignored(network, storage, make_worker):
    client = FakeClient()

    async with make_worker(network, storage) as worker:
        await worker.respond(Request(method="GET", url=IMAGE_URL))

        worker.post_message({"type": "SKIP_WAITING"}, source=client)
        worker.post_message("DELETE_IMAGE", source=client)
        worker.post_message({"type": "DELETE_IMAGE"}, source=client)
        worker.post_message({"type": "DELETE_IMAGE", "url": ""}, source=client)
        await anyio.sleep(0.05)

        assert await cached_urls(worker) == [IMAGE_URL]

    assert client.messages == []


@pytest.mark.anyio
async def test_message_without_source(network, storage, make_worker, wait_for):
    async with make_worker(network, storage) as worker:
        await worker.respond(Request(method="GET", url=IMAGE_URL))

        worker.post_message({"type": "DELETE_IMAGE", "url": IMAGE_URL})

        async def is_empty() -> bool:
            return await cached_urls(worker) == []

        await wait_for(is_empty)


@pytest.mark.anyio
async def test_terminated_worker_cannot_be_restarted(network, storage):
    client = FakeClient()
    worker = AsyncCacheWorker(network=httpx.MockTransport(network), storage=storage)

    async with worker:
        worker.register(client)
        await worker.ready()
        assert client.controller is worker

    assert worker.state is WorkerState.REDUNDANT
    assert client.controller is None

    with pytest.raises(WorkerStateError):
        async with worker:
            pass
    with pytest.raises(WorkerStateError):
        await worker.ready()


@pytest.mark.anyio
async def test_terminated_worker_forgets_in_flight_requests(network, storage, make_worker):
    with anyio.CancelScope() as scope:
        async with make_worker(network, storage, in_flight_cleanup_delay=10.0) as worker:
            await worker.respond(Request(method="GET", url=IMAGE_URL))
            assert len(worker.in_flight) == 1

            scope.cancel()
            await anyio.sleep(0)

    assert worker.state is WorkerState.REDUNDANT
    assert len(worker.in_flight) == 0


@pytest.mark.anyio
async def test_failed_background_refresh_response_is_not_stored(network, storage, make_worker, wait_for, caplog):
    network.outcomes = [httpx.Response(500)]
    request = Request(method="GET", url=IMAGE_URL)

    with caplog.at_level(logging.DEBUG, logger="imagecache"):
        async with make_worker(network, storage) as worker:
            cache = await storage.open(worker.cache_name)
            await cache.put(request, Response(status_code=200, content=b"<legacy>"))

            legacy = await worker.respond(request)
            await wait_for(
                lambda: "Background response filtered out by response filter: 500" in caplog.messages
            )
            stored = await cache.match(request)

    assert legacy.content == b"<legacy>"
    assert network.calls == 1
    assert stored is not None
    assert stored.status_code == 200
    assert stored.content == b"<legacy>"
    assert not is_managed(stored)


@pytest.mark.anyio
async def test_delete_image_matches_url_as_sent(network, storage, make_worker, wait_for):
    client = FakeClient()

    async with make_worker(network, storage) as worker:
        assert worker.request_for_url("https://X.supabase.co/images/foo bar.png").url == snapshot(
            "https://x.supabase.co/images/foo%20bar.png"
        )
        await worker.respond(Request(method="GET", url=IMAGE_URL))

        worker.post_message(
            {"type": "DELETE_IMAGE", "url": IMAGE_URL.replace("x.supabase.co", "X.supabase.co")}, source=client
        )
        await wait_for(lambda: client.messages)

        assert await cached_urls(worker) == []
