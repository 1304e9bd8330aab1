"""
mcpchat - Newline-delimited JSON framing.

One JSON object per line, UTF-8, newline-terminated. The decoder keeps a
carry-over buffer across chunks so objects split at arbitrary byte
boundaries, including inside a multi-byte character, decode intact.
"""

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Union

logger = logging.getLogger("mcpchat.ndjson")

_SKIP = object()

NDJSON_MEDIA_TYPE = "application/x-ndjson"

Chunk = Union[bytes, bytearray, str]


def encode_line(obj: Any) -> bytes:
    """Encode one object as a newline-terminated UTF-8 JSON line.

    Objects with a ``to_dict()`` method (e.g. ResponseEvent) are converted first.
    """
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    return (json.dumps(obj, ensure_ascii=False, default=str) + "\n").encode("utf-8")


async def encode_stream(objects: AsyncIterable[Any]) -> AsyncIterator[bytes]:
    """Encode objects lazily, one line per object as each becomes available."""
    async for obj in objects:
        yield encode_line(obj)


def _parse_line(line: str) -> Any:
    try:
        return json.loads(line)
    except json.JSONDecodeError as e:
        logger.warning("Skipping undecodable NDJSON line (%s): %.200s", e, line)
        return _SKIP


async def decode_stream(chunks: AsyncIterable[Chunk]) -> AsyncIterator[Any]:
    """Decode a chunked byte (or text) stream into JSON values.

    Lines that fail to parse are logged and skipped.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        if isinstance(chunk, str):
            buffer += chunk
        else:
            buffer += decoder.decode(bytes(chunk))
        *lines, buffer = buffer.split("\n")
        for line in lines:
            if not line.strip():
                continue
            value = _parse_line(line)
            if value is not _SKIP:
                yield value

    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        value = _parse_line(buffer)
        if value is not _SKIP:
            yield value
