import inspect
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Union

import anyio
import anysqlite
import httpx
import pytest

from imagecache import AsyncSqliteStorage, ImageCachePolicy
from imagecache.httpx import AsyncCacheWorker


class RecordingNetwork:
    """
    MockTransport handler that records every request and replays scripted outcomes.

    Once the script runs out, it answers 200 with an image body.
    """

    def __init__(
        self,
        outcomes: Optional[List[Union[httpx.Response, Exception]]] = None,
        delay: float = 0.0,
    ) -> None:
        self.requests: List[httpx.Request] = []
        self.outcomes = list(outcomes or [])
        self.delay = delay

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await anyio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return httpx.Response(200, content=b"<bytes>", headers={"Content-Type": "image/png"})

    @property
    def calls(self) -> int:
        return len(self.requests)


async def _wait_for(predicate: Callable[[], Union[bool, Awaitable[bool]]], timeout: float = 2.0) -> None:
    with anyio.fail_after(timeout):
        while True:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return
            await anyio.sleep(0.01)


@pytest.fixture()
def network() -> RecordingNetwork:
    return RecordingNetwork()


@pytest.fixture()
async def storage() -> AsyncIterator[AsyncSqliteStorage]:
    storage = AsyncSqliteStorage(connection=await anysqlite.connect(":memory:"))
    yield storage
    await storage.close()


@pytest.fixture()
def make_worker() -> Callable[..., Any]:
    """
    Factory for a started and activated worker backed by a mocked network.
    """

    @asynccontextmanager
    async def factory(
        network: RecordingNetwork,
        storage: AsyncSqliteStorage,
        **policy_options: Any,
    ) -> AsyncIterator[AsyncCacheWorker]:
        policy_options.setdefault("in_flight_cleanup_delay", 0.0)
        async with AsyncCacheWorker(
            network=httpx.MockTransport(network),
            storage=storage,
            policy=ImageCachePolicy(**policy_options),
        ) as worker:
            await worker.install()
            await worker.activate()
            yield worker

    return factory


@pytest.fixture()
def use_temp_dir(tmpdir):
    cur_dir = os.getcwd()
    os.chdir(tmpdir)
    yield
    os.chdir(cur_dir)


@pytest.fixture()
def wait_for() -> Callable[..., Awaitable[None]]:
    return _wait_for
