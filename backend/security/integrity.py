"""
Payload integrity: streaming SHA-256 digests.

The sender hashes the file once before announcing it; the receiver checks
the reassembled payload against the announced digest.
"""

import hmac
import logging
from typing import BinaryIO

from cryptography.hazmat.primitives.hashes import SHA256, Hash

from config import CHUNK_SIZE
from errors import ChecksumMismatch

logger = logging.getLogger(__name__)


def digest_bytes(data: bytes) -> str:
    """Hex SHA-256 of an in-memory payload."""
    h = Hash(SHA256())
    h.update(data)
    return h.finalize().hex()


def digest_stream(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> str:
    """
    Hex SHA-256 of a seekable stream, read in bounded pieces.

    The stream is rewound to where it started so it can be streamed again.
    """
    start = stream.tell()
    h = Hash(SHA256())
    while True:
        piece = stream.read(chunk_size)
        if not piece:
            break
        h.update(piece)
    stream.seek(start)
    return h.finalize().hex()


def verify_digest(data: bytes, expected_hex: str) -> None:
    """Raise ChecksumMismatch unless ``data`` hashes to ``expected_hex``."""
    actual = digest_bytes(data)
    if not hmac.compare_digest(actual, expected_hex.lower()):
        logger.warning(f"Digest mismatch: expected {expected_hex}, got {actual}")
        raise ChecksumMismatch(f"SHA-256 mismatch: expected {expected_hex}, got {actual}")
