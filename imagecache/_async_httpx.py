from __future__ import annotations

import logging
import ssl
import types
import typing as t
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union, overload

import anyio

from imagecache._async_worker import AsyncImageCacheWorker
from imagecache._core._headers import Headers
from imagecache._core._storages._base import AsyncBaseStorage
from imagecache._core.models import Request, RequestMetadata, Response
from imagecache._exceptions import WorkerStateError
from imagecache._messages import (
    CACHE_CLEARED,
    CLEAR_ALL_IMAGES,
    DELETE_IMAGE,
    IMAGE_DELETED,
    ClearAllImagesMessage,
    DeleteImageMessage,
)
from imagecache._policies import ImageCachePolicy
from imagecache._utils import batched, filter_mapping

try:
    import httpx
except ImportError as e:
    raise ImportError(
        "httpx is required to use imagecache.httpx module. "
        "Please install it with 'pip install photomate-image-cache'."
    ) from e

logger = logging.getLogger("imagecache.client")

MessageListener = Callable[[Mapping[str, Any]], None]


@overload
def _internal_to_httpx(
    value: Request,
) -> httpx.Request: ...
@overload
def _internal_to_httpx(
    value: Response,
) -> httpx.Response: ...
def _internal_to_httpx(
    value: Union[Request, Response],
) -> Union[httpx.Request, httpx.Response]:
    """
    Convert internal Request/Response to httpx.Request/httpx.Response.
    """
    if isinstance(value, Request):
        request_extensions: dict[str, Any] = dict(value.metadata)
        timeout = request_extensions.pop("imagecache_timeout", None)
        if timeout is not None:
            request_extensions["timeout"] = timeout
        return httpx.Request(
            method=value.method,
            url=value.url,
            headers=value.headers.multi_items(),
            extensions=request_extensions,
        )
    elif isinstance(value, Response):
        extensions: dict[str, Any] = dict(value.metadata)
        if value.reason_phrase:
            extensions["reason_phrase"] = value.reason_phrase.encode("ascii", errors="replace")
        return httpx.Response(
            status_code=value.status_code,
            headers=value.headers.multi_items(),
            content=value.content,
            extensions=extensions,
        )


def _httpx_request_to_internal(value: httpx.Request) -> Request:
    """
    Convert httpx.Request to internal Request. The body is not carried over,
    only bodiless GET requests are ever intercepted.
    """
    metadata = RequestMetadata()
    if "timeout" in value.extensions:
        metadata["imagecache_timeout"] = dict(value.extensions["timeout"])
    return Request(
        method=value.method,
        url=str(value.url),
        headers=Headers.from_items(value.headers.multi_items()),
        metadata=metadata,
    )


async def _httpx_response_to_internal(value: httpx.Response) -> Response:
    """
    Read an httpx.Response completely and convert it to internal Response.
    """
    try:
        content = await value.aread()
    finally:
        await value.aclose()

    headers = Headers(
        filter_mapping(
            Headers.from_items(value.headers.multi_items())._headers,
            ["Transfer-Encoding"],
        )
    )
    if "content-encoding" in headers:
        # The body is already decoded, drop the encoding so it is not decoded twice
        headers = Headers(filter_mapping(headers._headers, ["content-encoding"]))
        headers["content-length"] = str(len(content))

    return Response(
        status_code=value.status_code,
        headers=headers,
        content=content,
        reason_phrase=value.reason_phrase,
        metadata={},
    )


class AsyncCacheWorker(AsyncImageCacheWorker):
    """
    An image cache worker that reaches the network through an httpx transport.

    Args:
        network: Transport used for network requests. Defaults to httpx.AsyncHTTPTransport().
        storage: Storage backend holding the cache stores.
        policy: Decides which requests are intercepted and which responses are stored.
    """

    def __init__(
        self,
        network: httpx.AsyncBaseTransport | None = None,
        storage: AsyncBaseStorage | None = None,
        policy: ImageCachePolicy | None = None,
    ) -> None:
        self.network = network if network is not None else httpx.AsyncHTTPTransport()
        super().__init__(request_sender=self.request_sender, storage=storage, policy=policy)

    def request_for_url(self, url: str) -> Request:
        # Entries are keyed by the URL as httpx normalizes it when the page sends the request
        return Request(method="GET", url=str(httpx.URL(url)))

    async def request_sender(self, request: Request) -> Response:
        httpx_response = await self.network.handle_async_request(_internal_to_httpx(request))
        return await _httpx_response_to_internal(httpx_response)

    async def aclose(self) -> None:
        await super().aclose()
        await self.network.aclose()


class AsyncImageCacheTransport(httpx.AsyncBaseTransport):
    """
    Routes a client's requests through the worker controlling it.

    Requests the worker does not intercept, and every request sent while no
    worker controls the client, go straight to `next_transport`.
    """

    def __init__(
        self,
        next_transport: httpx.AsyncBaseTransport,
        client: "AsyncImageCacheClient",
    ) -> None:
        self.next_transport = next_transport
        self.client = client

    async def handle_async_request(
        self,
        request: httpx.Request,
    ) -> httpx.Response:
        worker = self.client.controller
        if worker is None:
            return await self.next_transport.handle_async_request(request)

        internal_request = _httpx_request_to_internal(request)
        if not worker.should_handle(internal_request):
            return await self.next_transport.handle_async_request(request)

        internal_response = await worker.respond(internal_request)
        return _internal_to_httpx(internal_response)

    async def aclose(self) -> None:
        await self.next_transport.aclose()
        await super().aclose()


class AsyncImageCacheClient(httpx.AsyncClient):
    """
    An httpx client playing the part of a page controlled by an image cache worker.

    Besides sending requests, it registers the worker, sends it control messages
    and receives its replies.
    """

    def __init__(self, *args: t.Any, **kwargs: t.Any) -> None:
        self.network: httpx.AsyncBaseTransport | None = kwargs.pop("network", None)
        self.controller: Optional[AsyncImageCacheWorker] = None
        self.worker: Optional[AsyncImageCacheWorker] = None
        self._message_listeners: List[MessageListener] = []
        self._preloading: set[str] = set()
        super().__init__(*args, **kwargs)

    def _init_transport(
        self,
        verify: ssl.SSLContext | str | bool = True,
        cert: t.Union[str, t.Tuple[str, str], t.Tuple[str, str, str], None] = None,
        trust_env: bool = True,
        http1: bool = True,
        http2: bool = False,
        limits: httpx.Limits = httpx.Limits(max_connections=100, max_keepalive_connections=20),
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: t.Any,
    ) -> httpx.AsyncBaseTransport:
        if transport is not None:
            return transport

        return AsyncImageCacheTransport(
            next_transport=self.network
            if self.network is not None
            else httpx.AsyncHTTPTransport(
                verify=verify,
                cert=cert,
                trust_env=trust_env,
                http1=http1,
                http2=http2,
                limits=limits,
            ),
            client=self,
        )

    def _init_proxy_transport(
        self,
        proxy: httpx.Proxy,
        verify: ssl.SSLContext | str | bool = True,
        cert: t.Union[str, t.Tuple[str, str], t.Tuple[str, str, str], None] = None,
        trust_env: bool = True,
        http1: bool = True,
        http2: bool = False,
        limits: httpx.Limits = httpx.Limits(max_connections=100, max_keepalive_connections=20),
        **kwargs: t.Any,
    ) -> httpx.AsyncBaseTransport:
        return AsyncImageCacheTransport(
            next_transport=httpx.AsyncHTTPTransport(
                verify=verify,
                cert=cert,
                trust_env=trust_env,
                http1=http1,
                http2=http2,
                limits=limits,
                proxy=proxy,
            ),
            client=self,
        )

    def _detach(self) -> None:
        if self.worker is not None:
            self.worker.unregister(self)
            self.worker = None

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: types.TracebackType | None = None,
    ) -> None:
        self._detach()
        await super().__aexit__(exc_type, exc_value, traceback)

    async def aclose(self) -> None:
        self._detach()
        await super().aclose()

    # Messaging

    def post_message(self, message: Mapping[str, Any]) -> None:
        for listener in list(self._message_listeners):
            listener(message)

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener) -> None:
        if listener in self._message_listeners:
            self._message_listeners.remove(listener)

    async def _send_and_wait_for_reply(
        self,
        controller: AsyncImageCacheWorker,
        message: Mapping[str, Any],
        matches: Callable[[Mapping[str, Any]], bool],
        timeout: float,
    ) -> Optional[Mapping[str, Any]]:
        received = anyio.Event()
        replies: List[Mapping[str, Any]] = []

        def listener(reply: Mapping[str, Any]) -> None:
            if not received.is_set() and matches(reply):
                replies.append(reply)
                received.set()

        self.add_message_listener(listener)
        try:
            controller.post_message(message, source=self)
            with anyio.move_on_after(timeout):
                await received.wait()
        finally:
            self.remove_message_listener(listener)
        return replies[0] if replies else None

    # Worker helpers

    async def register_image_cache_worker(self, worker: AsyncImageCacheWorker) -> bool:
        """
        Register the worker and wait until it is active.

        Returns:
            True once the worker is ready, False if it could not be used.
        """
        try:
            worker.register(self)
            self.worker = worker
            logger.debug("Image cache worker registered")
            await worker.ready()
        except WorkerStateError as exc:
            logger.error(f"Image cache worker registration failed: {exc!r}")
            return False
        logger.debug("Image cache worker is active and ready")
        return True

    def is_worker_active(self) -> bool:
        return self.controller is not None

    async def delete_image(self, url: str, timeout: float = 10.0) -> bool:
        """
        Ask the controlling worker to drop one image from its cache.

        A missing confirmation is treated as success, the cache is only an optimization.
        """
        controller = self.controller
        if controller is None:
            logger.warning("Image cache worker not available or not controlling the client")
            return False

        reply = await self._send_and_wait_for_reply(
            controller,
            DeleteImageMessage(type=DELETE_IMAGE, url=url),
            lambda message: message.get("type") == IMAGE_DELETED and message.get("url") == url,
            timeout,
        )
        if reply is None:
            logger.warning(f"Timeout waiting for delete confirmation for: {url[:50]}...")
            return True
        return bool(reply.get("success"))

    async def delete_images(self, urls: Iterable[str], batch_size: int = 5, batch_delay: float = 0.1) -> bool:
        urls = list(urls)
        if not urls:
            return True

        if self.controller is None:
            logger.warning("Image cache worker not available or not controlling the client")
            return False

        logger.debug(f"Batch deleting {len(urls)} images from cache")
        for batch in batched(urls, batch_size):
            async with anyio.create_task_group() as task_group:
                for url in batch:
                    task_group.start_soon(self.delete_image, url)
            await anyio.sleep(batch_delay)
        return True

    async def clear_image_cache(self, timeout: float = 15.0) -> bool:
        controller = self.controller
        if controller is None:
            logger.warning("Image cache worker not available or not controlling the client")
            return False

        reply = await self._send_and_wait_for_reply(
            controller,
            ClearAllImagesMessage(type=CLEAR_ALL_IMAGES),
            lambda message: message.get("type") == CACHE_CLEARED,
            timeout,
        )
        if reply is None:
            logger.warning("Timeout waiting for cache clear confirmation, but continuing anyway")
            return True
        return bool(reply.get("success"))

    async def is_image_cached(self, url: str) -> bool:
        worker = self.worker
        if worker is None:
            return False

        try:
            cache = await worker.storage.open(worker.cache_name)
            return await cache.match(worker.request_for_url(url)) is not None
        except Exception as exc:
            logger.error(f"Error checking cache: {exc!r}")
            return False

    async def preload_images(self, urls: Iterable[str], limit: int = 2, delay: float = 0.3) -> None:
        """
        Warm the cache with the first `limit` images that are neither cached nor
        already being preloaded. Images are fetched one after another.
        """
        candidates = [url for url in list(urls)[:limit] if url and url not in self._preloading]
        if not candidates:
            logger.debug("All images already being preloaded, skipping")
            return

        self._preloading.update(candidates)
        try:
            urls_to_preload = [url for url in candidates if not await self.is_image_cached(url)]
            if not urls_to_preload:
                logger.debug("All images already cached, skipping preload")
                return

            logger.debug(f"Preloading images: {urls_to_preload}")
            for url in urls_to_preload:
                try:
                    response = await self.get(url)
                except httpx.HTTPError as exc:
                    logger.debug(f"Image preload failed (can be ignored): {url} {exc!r}")
                else:
                    if response.is_success:
                        logger.debug(f"Image preloaded successfully: {url}")
                    else:
                        logger.debug(f"Image preload failed (can be ignored): {url} {response.status_code}")
                await anyio.sleep(delay)
        finally:
            self._preloading.difference_update(candidates)
