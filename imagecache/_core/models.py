from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, TypedDict

from imagecache._core._headers import Headers


class RequestMetadata(TypedDict, total=False):
    # All the names here should be prefixed with "imagecache_" to avoid collisions with user data
    imagecache_client_id: str
    """Identifier of the client (page) that issued the request."""

    imagecache_timeout: Dict[str, Optional[float]]
    """Timeouts of the originating client request, applied to the network fetch."""


@dataclass
class Request:
    method: str
    url: str
    headers: Headers = field(default_factory=Headers)
    metadata: RequestMetadata | Mapping[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        """
        The key used to look up and coalesce requests: method and URL.
        """
        return f"{self.method.upper()} {self.url}"


class ResponseMetadata(TypedDict, total=False):
    # All the names here should be prefixed with "imagecache_" to avoid collisions with user data
    imagecache_from_cache: bool
    """Indicates whether the response was served from the cache store."""

    imagecache_stored: bool
    """Indicates whether the response was written to the cache store."""

    imagecache_legacy: bool
    """Indicates whether a legacy entry (without the authorship marker) was served."""

    imagecache_coalesced: bool
    """Indicates whether the response was shared from another caller's in-flight request."""


@dataclass
class Response:
    status_code: int
    headers: Headers = field(default_factory=Headers)
    content: bytes = b""
    reason_phrase: str = ""
    metadata: ResponseMetadata | Mapping[str, Any] = field(default_factory=dict)


@dataclass
class Entry:
    cache_name: str
    request: Request
    response: Response
    created_at: float = field(default_factory=time.time)
