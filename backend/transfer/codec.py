"""
Chunk codec: binary payload <-> transport-safe text.

Chunks are standard base64. A full chunk is 1 MiB, which is not a multiple
of three, so every encoded chunk may end in ``=`` padding. ``decode`` treats
each padded group as the end of a segment and keeps going, which makes the
concatenation of independently encoded chunks decode to the concatenation of
the raw chunks.
"""

import base64
import binascii
import math
import re
from typing import BinaryIO, Iterator

from config import CHUNK_SIZE
from errors import CodecError

# Whitespace and C0/DEL control characters are dropped before validation
_NOISE = re.compile(r"[\s\x00-\x1f\x7f]+")
_ALPHABET = re.compile(r"[A-Za-z0-9+/=]*")
# One segment: data characters followed by its own padding (if any)
_SEGMENT = re.compile(r"[^=]*=*")


def encode(data: bytes) -> str:
    """Encode raw bytes as base64 text."""
    return base64.b64encode(data).decode("ascii")


def decode(text: str) -> bytes:
    """
    Decode base64 text produced by one or more ``encode`` calls.

    Raises:
        CodecError: on characters outside the alphabet, misplaced padding,
            or a truncated final group.
    """
    cleaned = _NOISE.sub("", text)
    if not _ALPHABET.fullmatch(cleaned):
        bad = next(c for c in cleaned if not _ALPHABET.fullmatch(c))
        raise CodecError(f"Invalid character {bad!r} in encoded data")

    out = bytearray()
    for segment in _SEGMENT.findall(cleaned):
        if not segment:
            continue
        if len(segment) % 4:
            raise CodecError(
                f"Truncated group: segment of {len(segment)} characters"
            )
        if segment.count("=") > 2:
            raise CodecError("Too much padding in encoded data")
        try:
            out += base64.b64decode(segment, validate=True)
        except binascii.Error as e:
            raise CodecError(f"Malformed encoded data: {e}") from e
    return bytes(out)


def total_chunks(file_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """
    Number of chunks needed for ``file_size`` bytes.

    An empty file still travels as one empty chunk.
    """
    if file_size < 0:
        raise ValueError(f"file_size must be >= 0, got {file_size}")
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be > 0, got {chunk_size}")
    return max(1, math.ceil(file_size / chunk_size))


def iter_slices(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield successive slices of at most ``chunk_size`` bytes."""
    while True:
        piece = stream.read(chunk_size)
        if not piece:
            return
        yield piece
