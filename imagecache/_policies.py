from __future__ import annotations

import abc
import re
import typing as t
from dataclasses import dataclass, field
from typing import Generic

from imagecache._core.models import Request, Response

T = t.TypeVar("T", Request, Response)

CACHE_NAME = "photomate-image-cache-v3"

# Signed URLs of the object storage bucket holding generated images
DEFAULT_CACHE_PATTERNS: t.Tuple[str, ...] = (r"\.supabase\.co/storage/v1/object/sign/images/",)

# Seconds an in-flight request stays shareable after it resolves
IN_FLIGHT_CLEANUP_DELAY = 1.0


class BaseFilter(abc.ABC, Generic[T]):
    @abc.abstractmethod
    def apply(self, item: T) -> bool:
        pass


class MethodFilter(BaseFilter[Request]):
    """
    Accepts requests using one of the given methods.
    """

    def __init__(self, methods: t.Iterable[str] = ("GET",)) -> None:
        self.methods = frozenset(method.upper() for method in methods)

    def apply(self, item: Request) -> bool:
        return item.method.upper() in self.methods

    def __repr__(self) -> str:
        return f"MethodFilter({sorted(self.methods)!r})"


class URLPatternFilter(BaseFilter[Request]):
    """
    Accepts requests whose URL matches at least one of the patterns.

    Patterns are searched anywhere in the URL, not anchored at its start.
    """

    def __init__(self, patterns: t.Iterable[t.Union[str, t.Pattern[str]]] = DEFAULT_CACHE_PATTERNS) -> None:
        self.patterns: t.List[t.Pattern[str]] = [re.compile(pattern) for pattern in patterns]

    def apply(self, item: Request) -> bool:
        return any(pattern.search(item.url) for pattern in self.patterns)

    def __repr__(self) -> str:
        return f"URLPatternFilter({[pattern.pattern for pattern in self.patterns]!r})"


class StatusCodeFilter(BaseFilter[Response]):
    """
    Accepts responses with one of the given status codes.
    """

    def __init__(self, status_codes: t.Iterable[int] = (200,)) -> None:
        self.status_codes = frozenset(status_codes)

    def apply(self, item: Response) -> bool:
        return item.status_code in self.status_codes

    def __repr__(self) -> str:
        return f"StatusCodeFilter({sorted(self.status_codes)!r})"


def default_request_filters() -> t.List[BaseFilter[Request]]:
    return [MethodFilter(("GET",)), URLPatternFilter(DEFAULT_CACHE_PATTERNS)]


def default_response_filters() -> t.List[BaseFilter[Response]]:
    return [StatusCodeFilter((200,))]


@dataclass
class ImageCachePolicy:
    """
    Decides which requests the worker intercepts and which responses it stores.

    Args:
        cache_name: Name of the current cache store generation. Stores with
            any other name are deleted when the worker activates.
        request_filters: Every filter must accept a request for it to be intercepted.
        response_filters: Every filter must accept a network response for it to be stored.
        in_flight_cleanup_delay: Seconds a resolved request stays in the in-flight table,
            so near-simultaneous duplicates share its result. Zero removes it right away.
    """

    cache_name: str = CACHE_NAME
    request_filters: t.List[BaseFilter[Request]] = field(default_factory=default_request_filters)
    response_filters: t.List[BaseFilter[Response]] = field(default_factory=default_response_filters)
    in_flight_cleanup_delay: float = IN_FLIGHT_CLEANUP_DELAY

    @classmethod
    def from_patterns(cls, *patterns: t.Union[str, t.Pattern[str]], **kwargs: t.Any) -> "ImageCachePolicy":
        return cls(
            request_filters=[MethodFilter(("GET",)), URLPatternFilter(patterns)],
            **kwargs,
        )

    def should_intercept(self, request: Request) -> bool:
        return all(request_filter.apply(request) for request_filter in self.request_filters)

    def should_store(self, response: Response) -> bool:
        return all(response_filter.apply(response) for response_filter in self.response_filters)
