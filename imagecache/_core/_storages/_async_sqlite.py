from __future__ import annotations

import time
from pathlib import Path
from typing import List, Optional, Union

import anyio
import anysqlite

from imagecache._core._storages._base import AsyncBaseStorage
from imagecache._core._storages._packing import pack_pair, unpack_pair
from imagecache._core.models import Entry, Request, Response
from imagecache._utils import ensure_cache_dict


class AsyncSqliteStorage(AsyncBaseStorage):
    def __init__(
        self,
        *,
        connection: Optional[anysqlite.Connection] = None,
        database_path: Union[str, Path] = "imagecache.db",
    ) -> None:
        self.connection = connection
        self.database_path: Path = database_path if isinstance(database_path, Path) else Path(database_path)
        self._initialized = False
        # One connection is shared by every task that touches the storage
        self._lock = anyio.Lock()

    async def _ensure_connection(self) -> anysqlite.Connection:
        """Ensure connection is established and database is initialized."""
        if self.connection is None:
            # Create cache directory and resolve full path on first connection
            parent = self.database_path.parent if self.database_path.parent != Path(".") else None
            full_path = ensure_cache_dict(parent) / self.database_path.name
            self.connection = await anysqlite.connect(str(full_path))
        if not self._initialized:
            await self._initialize_database()
            self._initialized = True
        return self.connection

    async def _initialize_database(self) -> None:
        """Initialize the database schema."""
        assert self.connection is not None
        cursor = await self.connection.cursor()

        # Table for the named stores
        await cursor.execute("""
            CREATE TABLE IF NOT EXISTS caches (
                name TEXT PRIMARY KEY,
                created_at REAL NOT NULL
            )
        """)

        # Table for request/response pairs, one per request identity and store
        await cursor.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                cache_name TEXT NOT NULL,
                method TEXT NOT NULL,
                url TEXT NOT NULL,
                data BLOB NOT NULL,
                body BLOB NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (cache_name, method, url)
            )
        """)

        await self.connection.commit()

    async def create_cache(self, name: str) -> None:
        async with self._lock:
            connection = await self._ensure_connection()
            cursor = await connection.cursor()
            await cursor.execute(
                "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                (name, time.time()),
            )
            await connection.commit()

    async def cache_names(self) -> List[str]:
        async with self._lock:
            connection = await self._ensure_connection()
            cursor = await connection.cursor()
            await cursor.execute("SELECT name FROM caches ORDER BY created_at, name")
            return [row[0] for row in await cursor.fetchall()]

    async def remove_cache(self, name: str) -> bool:
        async with self._lock:
            connection = await self._ensure_connection()
            cursor = await connection.cursor()
            await cursor.execute("SELECT 1 FROM caches WHERE name = ?", (name,))
            if await cursor.fetchone() is None:
                return False

            await cursor.execute("DELETE FROM entries WHERE cache_name = ?", (name,))
            await cursor.execute("DELETE FROM caches WHERE name = ?", (name,))
            await connection.commit()
            return True

    async def get_entry(self, cache_name: str, request: Request) -> Optional[Entry]:
        async with self._lock:
            connection = await self._ensure_connection()
            cursor = await connection.cursor()
            await cursor.execute(
                "SELECT data, body, created_at FROM entries WHERE cache_name = ? AND method = ? AND url = ?",
                (cache_name, request.method.upper(), request.url),
            )
            row = await cursor.fetchone()

        if row is None:
            return None

        stored_request, stored_response = unpack_pair(row[0], body=row[1])
        return Entry(
            cache_name=cache_name,
            request=stored_request,
            response=stored_response,
            created_at=row[2],
        )

    async def put_entry(self, cache_name: str, request: Request, response: Response) -> Entry:
        entry = Entry(cache_name=cache_name, request=request, response=response)

        async with self._lock:
            connection = await self._ensure_connection()
            cursor = await connection.cursor()
            await cursor.execute(
                "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                (cache_name, entry.created_at),
            )
            await cursor.execute(
                "INSERT OR REPLACE INTO entries (cache_name, method, url, data, body, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    cache_name,
                    request.method.upper(),
                    request.url,
                    pack_pair(request, response),
                    response.content,
                    entry.created_at,
                ),
            )
            await connection.commit()

        return entry

    async def remove_entry(self, cache_name: str, request: Request) -> bool:
        async with self._lock:
            connection = await self._ensure_connection()
            cursor = await connection.cursor()
            await cursor.execute(
                "SELECT 1 FROM entries WHERE cache_name = ? AND method = ? AND url = ?",
                (cache_name, request.method.upper(), request.url),
            )
            if await cursor.fetchone() is None:
                return False

            await cursor.execute(
                "DELETE FROM entries WHERE cache_name = ? AND method = ? AND url = ?",
                (cache_name, request.method.upper(), request.url),
            )
            await connection.commit()
            return True

    async def get_requests(self, cache_name: str) -> List[Request]:
        async with self._lock:
            connection = await self._ensure_connection()
            cursor = await connection.cursor()
            await cursor.execute(
                "SELECT data FROM entries WHERE cache_name = ? ORDER BY created_at, url",
                (cache_name,),
            )
            rows = await cursor.fetchall()

        requests: List[Request] = []
        for row in rows:
            stored_request, _ = unpack_pair(row[0], body=b"")
            requests.append(stored_request)
        return requests

    async def close(self) -> None:
        if self.connection is not None:
            await self.connection.close()
            self.connection = None
            self._initialized = False
