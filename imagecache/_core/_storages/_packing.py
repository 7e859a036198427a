from __future__ import annotations

from typing import Any, Mapping, Optional, Tuple, Union, overload

import msgpack
from typing_extensions import Literal, cast

from imagecache._core._headers import Headers
from imagecache._core.models import Request, Response


def filter_out_imagecache_metadata(data: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if not k.startswith("imagecache_")}


@overload
def pack(
    value: Request,
    /,
    kind: Literal["request"],
) -> bytes: ...


@overload
def pack(
    value: Response,
    /,
    kind: Literal["response"],
) -> bytes: ...


def pack(
    value: Union[Request, Response],
    /,
    kind: Literal["request", "response"],
) -> bytes:
    """
    Serialize everything but the body; bodies are stored in their own column.
    """
    if kind == "request":
        assert isinstance(value, Request)
        return cast(
            bytes,
            msgpack.packb(
                {
                    "method": value.method,
                    "url": value.url,
                    "headers": value.headers._headers,
                    "extra": filter_out_imagecache_metadata(value.metadata),
                }
            ),
        )
    elif kind == "response":
        assert isinstance(value, Response)
        return cast(
            bytes,
            msgpack.packb(
                {
                    "status_code": value.status_code,
                    "reason_phrase": value.reason_phrase,
                    "headers": value.headers._headers,
                    "extra": filter_out_imagecache_metadata(value.metadata),
                }
            ),
        )
    assert False, f"Unexpected kind: {kind}"


def pack_pair(request: Request, response: Response) -> bytes:
    return cast(
        bytes,
        msgpack.packb(
            {
                "request": pack(request, kind="request"),
                "response": pack(response, kind="response"),
            }
        ),
    )


@overload
def unpack(
    value: bytes,
    /,
    kind: Literal["request"],
    body: bytes = b"",
) -> Request: ...


@overload
def unpack(
    value: bytes,
    /,
    kind: Literal["response"],
    body: bytes = b"",
) -> Response: ...


@overload
def unpack(
    value: Optional[bytes],
    /,
    kind: Literal["request", "response"],
    body: bytes = b"",
) -> Optional[Union[Request, Response]]: ...


def unpack(
    value: Optional[bytes],
    /,
    kind: Literal["request", "response"],
    body: bytes = b"",
) -> Union[Request, Response, None]:
    if value is None:
        return None
    data = msgpack.unpackb(value)
    if kind == "request":
        return Request(
            method=data["method"],
            url=data["url"],
            headers=Headers(data["headers"]),
            metadata=data["extra"],
        )
    elif kind == "response":
        return Response(
            status_code=data["status_code"],
            reason_phrase=data["reason_phrase"],
            headers=Headers(data["headers"]),
            content=body,
            metadata=data["extra"],
        )
    assert False, f"Unexpected kind: {kind}"


def unpack_pair(value: bytes, body: bytes) -> Tuple[Request, Response]:
    data = msgpack.unpackb(value)
    return (
        unpack(data["request"], kind="request"),
        unpack(data["response"], kind="response", body=body),
    )
