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
from imagecache._async_worker import (
    CACHE_DATE_HEADER as CACHE_DATE_HEADER,
    IMMUTABLE_CACHE_CONTROL as IMMUTABLE_CACHE_CONTROL,
    MARKER_HEADER as MARKER_HEADER,
    AsyncImageCacheWorker as AsyncImageCacheWorker,
    WorkerState as WorkerState,
    is_managed as is_managed,
    make_cacheable_response as make_cacheable_response,
)
from imagecache._exceptions import (
    FetchAbortedError as FetchAbortedError,
    ImageCacheError as ImageCacheError,
    WorkerStateError as WorkerStateError,
)
from imagecache._messages import (
    CacheClearedMessage as CacheClearedMessage,
    ClearAllImagesMessage as ClearAllImagesMessage,
    DeleteImageMessage as DeleteImageMessage,
    ImageDeletedMessage as ImageDeletedMessage,
    MessageSource as MessageSource,
)
from imagecache._policies import (
    CACHE_NAME as CACHE_NAME,
    DEFAULT_CACHE_PATTERNS as DEFAULT_CACHE_PATTERNS,
    IN_FLIGHT_CLEANUP_DELAY as IN_FLIGHT_CLEANUP_DELAY,
    BaseFilter as BaseFilter,
    ImageCachePolicy as ImageCachePolicy,
    MethodFilter as MethodFilter,
    StatusCodeFilter as StatusCodeFilter,
    URLPatternFilter as URLPatternFilter,
)

__version__ = "0.1.0"

__all__ = (
    # Worker
    "AsyncImageCacheWorker",
    "WorkerState",
    "is_managed",
    "make_cacheable_response",
    "MARKER_HEADER",
    "CACHE_DATE_HEADER",
    "IMMUTABLE_CACHE_CONTROL",
    ## Models
    "Request",
    "Response",
    "Entry",
    "RequestMetadata",
    "ResponseMetadata",
    ## Headers
    "Headers",
    ## Storages
    "AsyncBaseStorage",
    "AsyncCache",
    "AsyncSqliteStorage",
    # Policies
    "BaseFilter",
    "ImageCachePolicy",
    "MethodFilter",
    "StatusCodeFilter",
    "URLPatternFilter",
    "CACHE_NAME",
    "DEFAULT_CACHE_PATTERNS",
    "IN_FLIGHT_CLEANUP_DELAY",
    # Messages
    "DeleteImageMessage",
    "ClearAllImagesMessage",
    "ImageDeletedMessage",
    "CacheClearedMessage",
    "MessageSource",
    # Errors
    "ImageCacheError",
    "WorkerStateError",
    "FetchAbortedError",
)
