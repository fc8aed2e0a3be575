"""Reassembly of accumulated chunks into the original payload."""

import logging
from dataclasses import dataclass
from typing import Sequence

from errors import SizeMismatch
from security.integrity import verify_digest
from transfer.codec import decode

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReassembledFile:
    payload: bytes
    media_type: str


def reassemble(
    ordered_chunks: Sequence[str],
    media_type: str,
    expected_size: int,
    sha256: str | None = None,
) -> ReassembledFile:
    """
    Join encoded chunks in the given order and decode them in one pass.

    Raises:
        CodecError: the joined text is not valid encoded data.
        SizeMismatch: decoded length differs from the announced size.
        ChecksumMismatch: an announced digest does not match.
    """
    payload = decode("".join(ordered_chunks))
    if len(payload) != expected_size:
        raise SizeMismatch(expected_size, len(payload))
    if sha256:
        verify_digest(payload, sha256)
    logger.debug(f"Reassembled {len(payload)} bytes from {len(ordered_chunks)} chunks")
    return ReassembledFile(payload=payload, media_type=media_type)
