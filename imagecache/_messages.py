from __future__ import annotations

from typing import Any, Mapping

from typing_extensions import Literal, Protocol, TypedDict

DELETE_IMAGE: Literal["DELETE_IMAGE"] = "DELETE_IMAGE"
CLEAR_ALL_IMAGES: Literal["CLEAR_ALL_IMAGES"] = "CLEAR_ALL_IMAGES"
IMAGE_DELETED: Literal["IMAGE_DELETED"] = "IMAGE_DELETED"
CACHE_CLEARED: Literal["CACHE_CLEARED"] = "CACHE_CLEARED"


class DeleteImageMessage(TypedDict):
    type: Literal["DELETE_IMAGE"]
    url: str


class ClearAllImagesMessage(TypedDict):
    type: Literal["CLEAR_ALL_IMAGES"]


class ImageDeletedMessage(TypedDict):
    type: Literal["IMAGE_DELETED"]
    url: str
    success: bool


class CacheClearedMessage(TypedDict):
    type: Literal["CACHE_CLEARED"]
    success: bool


class MessageSource(Protocol):
    """
    An execution context the worker can reply to.
    """

    def post_message(self, message: Mapping[str, Any]) -> None: ...


def message_type(message: Any) -> str | None:
    if not isinstance(message, Mapping):
        return None
    kind = message.get("type")
    return kind if isinstance(kind, str) else None
