from __future__ import annotations

import logging
from typing import Dict, Iterator, Optional

import anyio

from imagecache._core.models import Response

logger = logging.getLogger("imagecache.worker")


class InFlightRequest:
    """
    The pending result of one fetch-and-cache operation.

    Every caller that waits on it observes the same response or the same error.
    """

    def __init__(self, key: str) -> None:
        self.key = key
        self._done = anyio.Event()
        self._response: Optional[Response] = None
        self._exception: Optional[BaseException] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def set_result(self, response: Response) -> None:
        if self.done:
            raise RuntimeError(f"In-flight request {self.key!r} is already resolved")
        self._response = response
        self._done.set()

    def set_exception(self, exception: BaseException) -> None:
        if self.done:
            raise RuntimeError(f"In-flight request {self.key!r} is already resolved")
        self._exception = exception
        self._done.set()

    async def wait(self) -> Response:
        await self._done.wait()
        if self._exception is not None:
            raise self._exception
        assert self._response is not None
        return self._response


class InFlightRequests:
    """
    Request identity -> pending result, at most one per identity.
    """

    def __init__(self, cleanup_delay: float) -> None:
        self.cleanup_delay = cleanup_delay
        self._requests: Dict[str, InFlightRequest] = {}

    def get(self, key: str) -> Optional[InFlightRequest]:
        return self._requests.get(key)

    def start(self, key: str) -> InFlightRequest:
        if key in self._requests:
            raise RuntimeError(f"Request {key!r} is already in flight")
        in_flight = InFlightRequest(key)
        self._requests[key] = in_flight
        return in_flight

    def clear(self) -> None:
        self._requests.clear()

    def forget(self, in_flight: InFlightRequest) -> None:
        # A newer operation may own the key by now
        if self._requests.get(in_flight.key) is in_flight:
            del self._requests[in_flight.key]
            logger.debug(f"Removed in-flight request: {in_flight.key}")

    async def forget_later(self, in_flight: InFlightRequest) -> None:
        await anyio.sleep(self.cleanup_delay)
        self.forget(in_flight)

    def __contains__(self, key: object) -> bool:
        return key in self._requests

    def __len__(self) -> int:
        return len(self._requests)

    def __iter__(self) -> Iterator[str]:
        return iter(self._requests)
