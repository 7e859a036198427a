from __future__ import annotations

import enum
import logging
import types
from dataclasses import replace
from typing import Any, Awaitable, Callable, List, Mapping, Optional

import anyio
from anyio.abc import TaskGroup
from typing_extensions import Protocol

from imagecache._core._storages._async_sqlite import AsyncSqliteStorage
from imagecache._core._storages._base import AsyncBaseStorage, AsyncCache
from imagecache._core.models import Request, Response, ResponseMetadata
from imagecache._exceptions import FetchAbortedError, WorkerStateError
from imagecache._inflight import InFlightRequest, InFlightRequests
from imagecache._messages import (
    CACHE_CLEARED,
    CLEAR_ALL_IMAGES,
    DELETE_IMAGE,
    IMAGE_DELETED,
    CacheClearedMessage,
    ImageDeletedMessage,
    MessageSource,
    message_type,
)
from imagecache._policies import ImageCachePolicy
from imagecache._utils import generate_iso_timestamp

logger = logging.getLogger("imagecache.worker")

MARKER_HEADER = "X-Photomate-Cached"
CACHE_DATE_HEADER = "X-Cache-Date"
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"


class WorkerState(str, enum.Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class WorkerClient(MessageSource, Protocol):
    """
    A page that the worker can control and reply to.
    """

    controller: Optional["AsyncImageCacheWorker"]


def is_managed(response: Response) -> bool:
    """
    Whether the response was written by the worker, as opposed to a legacy entry.
    """
    return response.headers.get(MARKER_HEADER) == "true"


def make_cacheable_response(response: Response) -> Response:
    headers = response.headers.copy()
    headers["Cache-Control"] = IMMUTABLE_CACHE_CONTROL
    headers[MARKER_HEADER] = "true"
    headers[CACHE_DATE_HEADER] = generate_iso_timestamp()
    return replace(response, headers=headers)


def _with_metadata(
    response: Response,
    *,
    from_cache: bool = False,
    stored: bool = False,
    legacy: bool = False,
) -> Response:
    metadata = ResponseMetadata(
        imagecache_from_cache=from_cache,
        imagecache_stored=stored,
        imagecache_legacy=legacy,
    )
    return replace(response, metadata={**response.metadata, **metadata})


class AsyncImageCacheWorker:
    """
    A cache-first image cache that sits between a page and the network.

    This class is independent of any specific HTTP library and works only with internal models.
    Network requests are delegated to a user-provided callable.

    The worker must be started with `async with` before use. The task group it opens
    keeps background work (activation, cache refreshes, control messages) alive
    until the worker is closed.

    Args:
        request_sender: Callable that sends requests to the network and returns responses.
        storage: Storage backend holding the cache stores. Defaults to AsyncSqliteStorage.
        policy: Decides which requests are intercepted and which responses are stored.
            Defaults to ImageCachePolicy().
    """

    def __init__(
        self,
        request_sender: Callable[[Request], Awaitable[Response]],
        storage: AsyncBaseStorage | None = None,
        policy: ImageCachePolicy | None = None,
    ) -> None:
        self.send_request = request_sender
        self.storage = storage if storage is not None else AsyncSqliteStorage()
        self.policy = policy if policy is not None else ImageCachePolicy()
        self.state = WorkerState.PARSED
        self.clients: List[WorkerClient] = []
        self.in_flight = InFlightRequests(cleanup_delay=self.policy.in_flight_cleanup_delay)
        self._task_group: Optional[TaskGroup] = None
        self._activated: Optional[anyio.Event] = None
        self._activation_scheduled = False

    @property
    def cache_name(self) -> str:
        return self.policy.cache_name

    async def __aenter__(self) -> "AsyncImageCacheWorker":
        if self.state is WorkerState.REDUNDANT:
            raise WorkerStateError("Image cache worker was terminated and cannot be started again")
        if self._task_group is not None:
            raise WorkerStateError("Image cache worker is already running")
        self._activated = anyio.Event()
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: types.TracebackType | None = None,
    ) -> Optional[bool]:
        assert self._task_group is not None
        try:
            return await self._task_group.__aexit__(exc_type, exc_value, traceback)
        finally:
            self._task_group = None
            self._terminate()
            await self.aclose()

    async def aclose(self) -> None:
        await self.storage.close()

    def _terminate(self) -> None:
        self.in_flight.clear()
        for client in self.clients:
            if client.controller is self:
                client.controller = None
        self._become_redundant()
        logger.debug("Image cache worker terminated")

    def _require_started(self) -> TaskGroup:
        if self._task_group is None:
            raise WorkerStateError("Image cache worker is not running, start it with 'async with'")
        return self._task_group

    def _wait_until(self, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """
        Run `func` in the background, keeping the worker alive until it finishes.
        """
        self._require_started().start_soon(func, *args)

    # Lifecycle

    async def install(self) -> None:
        if self.state is not WorkerState.PARSED:
            raise WorkerStateError(f"Cannot install a worker in state {self.state.value!r}")
        self.state = WorkerState.INSTALLING
        logger.debug("Installing image cache worker")
        # Nothing to precache, images are cached on demand. Skip waiting.
        self.state = WorkerState.INSTALLED

    async def activate(self) -> None:
        self._require_started()
        if self.state is not WorkerState.INSTALLED:
            raise WorkerStateError(f"Cannot activate a worker in state {self.state.value!r}")
        self.state = WorkerState.ACTIVATING
        logger.debug("Activating image cache worker")

        try:
            await self._delete_old_caches()
        except Exception:
            self._become_redundant()
            raise

        self.claim()
        self.state = WorkerState.ACTIVATED
        assert self._activated is not None
        self._activated.set()
        logger.debug(f"Image cache worker is active, using cache: {self.cache_name}")

    async def _delete_old_caches(self) -> None:
        cache_names = await self.storage.cache_names()
        async with anyio.create_task_group() as task_group:
            for cache_name in cache_names:
                if cache_name != self.cache_name:
                    logger.debug(f"Deleting old cache: {cache_name}")
                    task_group.start_soon(self.storage.remove_cache, cache_name)

    def _become_redundant(self) -> None:
        self.state = WorkerState.REDUNDANT
        if self._activated is not None:
            self._activated.set()

    async def _install_and_activate(self) -> None:
        try:
            await self.install()
            await self.activate()
        except Exception as exc:
            logger.error(f"Image cache worker failed to activate: {exc!r}")
            self._become_redundant()

    def claim(self) -> None:
        """
        Take control of every registered client.
        """
        for client in self.clients:
            client.controller = self

    def register(self, client: WorkerClient) -> None:
        """
        Register a client with the worker.

        The first registration installs and activates the worker in the background.
        Clients registered after activation are controlled right away.
        """
        self._require_started()
        if client not in self.clients:
            self.clients.append(client)

        if self.state is WorkerState.ACTIVATED:
            client.controller = self
        elif self.state is WorkerState.PARSED and not self._activation_scheduled:
            self._activation_scheduled = True
            self._wait_until(self._install_and_activate)

    def unregister(self, client: WorkerClient) -> None:
        if client in self.clients:
            self.clients.remove(client)
        if client.controller is self:
            client.controller = None

    async def ready(self) -> None:
        """
        Wait until the worker is active.
        """
        if self._activated is None:
            raise WorkerStateError("Image cache worker is not running, start it with 'async with'")
        await self._activated.wait()
        if self.state is WorkerState.REDUNDANT:
            raise WorkerStateError("Image cache worker failed to activate")

    @property
    def is_active(self) -> bool:
        return self.state is WorkerState.ACTIVATED

    # Fetch handling

    def should_handle(self, request: Request) -> bool:
        return self.policy.should_intercept(request)

    def request_for_url(self, url: str) -> Request:
        """
        Build the GET request an image URL is cached under.
        """
        return Request(method="GET", url=url)

    async def respond(self, request: Request) -> Response:
        """
        Return a response for an intercepted request, cache first.

        Concurrent calls for the same request identity share one operation.
        """
        task_group = self._require_started()

        in_flight = self.in_flight.get(request.identity)
        if in_flight is not None:
            logger.debug(f"Reusing in-flight request for: {request.url}")
            response = await in_flight.wait()
            return replace(response, metadata={**response.metadata, "imagecache_coalesced": True})

        in_flight = self.in_flight.start(request.identity)
        # Runs in the worker task group so it completes even if this caller goes away
        task_group.start_soon(self._fetch_and_cache, request, in_flight)
        return await in_flight.wait()

    async def _fetch_and_cache(self, request: Request, in_flight: InFlightRequest) -> None:
        try:
            response = await self._handle_cache_first(request)
        except Exception as exc:
            logger.error(f"Fetch error: {exc!r} {request.url}")
            in_flight.set_exception(exc)
        except BaseException:
            in_flight.set_exception(FetchAbortedError(f"Fetch was aborted: {request.url}"))
            raise
        else:
            in_flight.set_result(response)
        finally:
            self._schedule_forget(in_flight)

    def _schedule_forget(self, in_flight: InFlightRequest) -> None:
        if self.in_flight.cleanup_delay <= 0:
            self.in_flight.forget(in_flight)
        else:
            self._wait_until(self.in_flight.forget_later, in_flight)

    async def _handle_cache_first(self, request: Request) -> Response:
        cache = await self.storage.open(self.cache_name)
        cached_response = await cache.match(request)

        if cached_response is not None:
            if is_managed(cached_response):
                logger.debug(f"Serving from cache: {request.url}")
                return _with_metadata(cached_response, from_cache=True)

            # Legacy entry: answer right away, bring the entry up to date in the background
            logger.debug(f"Serving legacy entry from cache, updating: {request.url}")
            self._wait_until(self._refresh_in_background, cache, request)
            return _with_metadata(cached_response, from_cache=True, legacy=True)

        logger.debug(f"Fetching from network: {request.url}")
        response = await self.send_request(request)

        if not self.policy.should_store(response):
            logger.debug(f"Response filtered out by response filter: {response.status_code} {request.url}")
            return _with_metadata(response)

        cacheable_response = make_cacheable_response(response)
        stored = await self._store(cache, request, cacheable_response)
        return _with_metadata(cacheable_response, stored=stored)

    async def _store(self, cache: AsyncCache, request: Request, response: Response) -> bool:
        try:
            await cache.put(request, response)
        except Exception as exc:
            logger.warning(f"Failed to store response in cache: {exc!r} {request.url}")
            return False
        logger.debug(f"Caching new image: {request.url}")
        return True

    async def _refresh_in_background(self, cache: AsyncCache, request: Request) -> None:
        try:
            response = await self.send_request(request)
            if not self.policy.should_store(response):
                logger.debug(f"Background response filtered out by response filter: {response.status_code}")
                return
            await cache.put(request, make_cacheable_response(response))
        except Exception as exc:
            logger.warning(f"Background fetch failed: {exc!r} {request.url}")
            return
        logger.debug(f"Updated cache in background: {request.url}")

    # Control messages

    def post_message(self, message: Any, source: MessageSource | None = None) -> None:
        """
        Handle a control message posted by a page.

        Unrecognized messages are ignored. Replies are posted back to `source`.
        """
        kind = message_type(message)
        if kind == DELETE_IMAGE:
            url = message.get("url")
            if not url:
                return
            self._wait_until(self._delete_image, url, source)
        elif kind == CLEAR_ALL_IMAGES:
            self._wait_until(self._clear_all_images, source)
        else:
            logger.debug(f"Ignoring unrecognized message: {kind!r}")

    async def _delete_image(self, url: str, source: MessageSource | None) -> None:
        try:
            cache = await self.storage.open(self.cache_name)
            deleted = await cache.delete(self.request_for_url(url))
            logger.debug(f"Image deleted from cache: {url[:50]}... {'success' if deleted else 'not found'}")
        except Exception as exc:
            logger.error(f"Error deleting image from cache: {exc!r}")

        # A missing entry is only a cache miss, never a failure the page should see
        self._reply(source, ImageDeletedMessage(type=IMAGE_DELETED, url=url, success=True))

    async def _clear_all_images(self, source: MessageSource | None) -> None:
        try:
            cache = await self.storage.open(self.cache_name)
            requests = await cache.keys()
            logger.debug(f"Clearing {len(requests)} images from cache")
            async with anyio.create_task_group() as task_group:
                for request in requests:
                    task_group.start_soon(cache.delete, request)
            logger.debug("Image cache cleared")
        except Exception as exc:
            logger.error(f"Error clearing cache: {exc!r}")

        self._reply(source, CacheClearedMessage(type=CACHE_CLEARED, success=True))

    def _reply(self, source: MessageSource | None, message: Mapping[str, Any]) -> None:
        if source is None:
            return
        try:
            source.post_message(message)
        except Exception as exc:
            logger.warning(f"Could not deliver {message['type']} to client: {exc!r}")
