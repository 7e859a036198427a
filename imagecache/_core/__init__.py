from imagecache._core._headers import Headers as Headers
from imagecache._core._storages._async_sqlite import AsyncSqliteStorage as AsyncSqliteStorage
from imagecache._core._storages._base import AsyncBaseStorage as AsyncBaseStorage, AsyncCache as AsyncCache
from imagecache._core.models import (
    Entry as Entry,
    Request as Request,
    RequestMetadata as RequestMetadata,
    Response as Response,
    ResponseMetadata as ResponseMetadata,
)

__all__ = (
    "Headers",
    "AsyncBaseStorage",
    "AsyncCache",
    "AsyncSqliteStorage",
    "Entry",
    "Request",
    "RequestMetadata",
    "Response",
    "ResponseMetadata",
)
