"""
Cache validators for read endpoints.

Responses carry a weak ETag over their serialized body; a matching
``If-None-Match`` gets an empty 304.
"""

import hashlib
from typing import Any, Optional

from fastapi import Request, Response
from pydantic import BaseModel


def weak_etag(body: bytes) -> str:
    return f'W/"{hashlib.sha256(body).hexdigest()[:32]}"'


def _matches(header: Optional[str], etag: str) -> bool:
    if not header:
        return False
    opaque = etag[2:] if etag.startswith("W/") else etag
    for candidate in header.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == opaque:
            return True
    return False


def validated_json(request: Request, model: BaseModel, etag_exclude: Optional[Any] = None) -> Response:
    """
    JSON response with a weak ETag, or 304 when the client copy is current.

    Args:
        etag_exclude: fields left out of the tag, e.g. per-request cursors
    """
    body = model.model_dump_json(by_alias=True).encode()
    tagged = body if etag_exclude is None else model.model_dump_json(by_alias=True, exclude=etag_exclude).encode()
    etag = weak_etag(tagged)
    headers = {"ETag": etag, "Cache-Control": "private, no-cache"}

    if _matches(request.headers.get("if-none-match"), etag):
        return Response(status_code=304, headers=headers)
    return Response(content=body, media_type="application/json", headers=headers)
