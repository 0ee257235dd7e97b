"""Wire codec for streamed agent test chunks.

Chunks go out as compact JSON objects, one per line. The decoder does not
rely on the newlines: it also accepts objects concatenated back to back and
objects split across arbitrary read boundaries.
"""

from __future__ import annotations

import json

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

_decoder = json.JSONDecoder()
_WHITESPACE = " \t\r\n"


def encode_chunk(chunk: BaseModel | Mapping[str, Any]) -> bytes:
    """Serialize one chunk as a JSON line."""
    if isinstance(chunk, BaseModel):
        payload = chunk.model_dump_json(by_alias=True, exclude_none=True)
    else:
        payload = json.dumps(dict(chunk), separators=(",", ":"), ensure_ascii=False)
    return (payload + "\n").encode("utf-8")


class StreamChunkDecoder:
    """Incremental decoder for a stream of JSON objects.

    Example:
        decoder = StreamChunkDecoder()
        for piece in response.iter_text():
            for chunk in decoder.feed(piece):
                handle(chunk)
        decoder.flush()
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Undecoded text carried over to the next feed."""
        return self._buffer

    def feed(self, text: str) -> list[dict[str, Any]]:
        """Add text and return every complete object now available."""
        self._buffer += text
        chunks: list[dict[str, Any]] = []
        pos = 0
        length = len(self._buffer)

        while True:
            while pos < length and self._buffer[pos] in _WHITESPACE:
                pos += 1
            if pos >= length:
                break
            try:
                obj, end = _decoder.raw_decode(self._buffer, pos)
            except json.JSONDecodeError as e:
                # An object cut off by a read boundary still has unclosed braces
                if _balance(self._buffer[pos:]) > 0:
                    break
                raise ValueError(f"Malformed stream chunk at offset {pos}: {e.msg}") from e
            if not isinstance(obj, dict):
                raise ValueError(f"Expected a JSON object at offset {pos}, got {type(obj).__name__}")
            chunks.append(obj)
            pos = end

        self._buffer = self._buffer[pos:]
        return chunks

    def flush(self) -> str:
        """Return and discard any partial data left in the buffer."""
        leftover = self._buffer.strip()
        self._buffer = ""
        return leftover


def _balance(text: str) -> int:
    """Count unclosed braces outside string literals."""
    depth = 0
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
    return depth
