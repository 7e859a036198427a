from __future__ import annotations

import abc
import typing as tp

from imagecache._core.models import Entry, Request, Response


class AsyncBaseStorage(abc.ABC):
    """
    A collection of named cache stores.

    Each store maps a request identity (method and URL) to a single response.
    Stores are created lazily by `open` and live until `remove_cache` is called.
    """

    @abc.abstractmethod
    async def create_cache(self, name: str) -> None:
        """
        Create the named store if it does not exist yet.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    async def cache_names(self) -> tp.List[str]:
        """
        Return the names of every existing store, oldest first.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    async def remove_cache(self, name: str) -> bool:
        """
        Remove the named store together with its entries.

        Returns:
            True if the store existed, False otherwise.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    async def get_entry(self, cache_name: str, request: Request) -> tp.Optional[Entry]:
        raise NotImplementedError()

    @abc.abstractmethod
    async def put_entry(self, cache_name: str, request: Request, response: Response) -> Entry:
        """
        Store the response under the request identity, replacing any previous entry.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    async def remove_entry(self, cache_name: str, request: Request) -> bool:
        raise NotImplementedError()

    @abc.abstractmethod
    async def get_requests(self, cache_name: str) -> tp.List[Request]:
        raise NotImplementedError()

    async def close(self) -> None:
        pass

    async def open(self, name: str) -> "AsyncCache":
        await self.create_cache(name)
        return AsyncCache(self, name)

    async def has(self, name: str) -> bool:
        return name in await self.cache_names()


class AsyncCache:
    """
    Handle to a single named store, shaped after the browser `Cache` interface.
    """

    def __init__(self, storage: AsyncBaseStorage, name: str) -> None:
        self.storage = storage
        self.name = name

    async def match(self, request: Request) -> tp.Optional[Response]:
        entry = await self.storage.get_entry(self.name, request)
        return entry.response if entry is not None else None

    async def put(self, request: Request, response: Response) -> None:
        await self.storage.put_entry(self.name, request, response)

    async def delete(self, request: Request) -> bool:
        return await self.storage.remove_entry(self.name, request)

    async def keys(self) -> tp.List[Request]:
        return await self.storage.get_requests(self.name)

    def __repr__(self) -> str:
        return f"<AsyncCache name={self.name!r}>"
