try:
    import httpx  # noqa: F401
except ImportError as e:
    raise ImportError(
        "httpx is required to use imagecache.httpx module. "
        "Please install it with 'pip install photomate-image-cache'."
    ) from e


from ._async_httpx import (
    AsyncCacheWorker as AsyncCacheWorker,
    AsyncImageCacheClient as AsyncImageCacheClient,
    AsyncImageCacheTransport as AsyncImageCacheTransport,
)
