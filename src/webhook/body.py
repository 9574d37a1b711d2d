"""Raw body capture for signed webhooks.

The signature covers the exact bytes on the wire, so the body is read from
the ASGI stream directly instead of through any JSON/form parsing.
"""

from __future__ import annotations

from starlette.requests import ClientDisconnect, Request

from src.errors import RawBodyReadError


async def read_raw_body(request: Request, max_bytes: int | None = None) -> bytes:
    """Return the complete request body as received.

    Raises RawBodyReadError if the client disconnects, the stream fails, or
    the body exceeds ``max_bytes``.
    """
    chunks: list[bytes] = []
    size = 0
    try:
        async for chunk in request.stream():
            size += len(chunk)
            if max_bytes is not None and size > max_bytes:
                raise RawBodyReadError(f"Request body exceeds {max_bytes} bytes")
            chunks.append(chunk)
    except ClientDisconnect as exc:
        raise RawBodyReadError("Client disconnected before body was read") from exc
    except (RuntimeError, OSError) as exc:
        raise RawBodyReadError(f"Failed to read request body: {exc}") from exc
    return b"".join(chunks)
