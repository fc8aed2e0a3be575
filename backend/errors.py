"""Error taxonomy shared by the relay and the transfer protocol.

Each error carries a stable ``code`` that travels in ``ERROR`` frames so the
other side can tell what went wrong without parsing the message text.
"""


class PassdropError(Exception):
    """Base class for every protocol-level failure."""
    code = "INTERNAL_ERROR"


# --- Pairing ---

class RegistryError(PassdropError):
    code = "REGISTRY_ERROR"


class PasscodeConflict(RegistryError):
    """The passcode is already held by another connection."""
    code = "PASSCODE_CONFLICT"


class UnknownPasscode(RegistryError):
    code = "UNKNOWN_PASSCODE"


class PasscodeFull(RegistryError):
    """The passcode already has two peers."""
    code = "PASSCODE_FULL"


# --- Transfer ---

class TransferError(PassdropError):
    code = "TRANSFER_ERROR"


class NoActivePeer(TransferError):
    code = "NO_ACTIVE_PEER"


class AckTimeout(TransferError):
    code = "ACK_TIMEOUT"


class CodecError(TransferError, ValueError):
    code = "CODEC_ERROR"


class SizeMismatch(TransferError):
    code = "SIZE_MISMATCH"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Expected {expected} bytes, reconstructed {actual}")
        self.expected = expected
        self.actual = actual


class ChecksumMismatch(TransferError):
    code = "CHECKSUM_MISMATCH"


class ProtocolViolation(TransferError):
    """A peer sent a message that does not fit the current transfer."""
    code = "PROTOCOL_VIOLATION"


class ConnectionLost(TransferError):
    code = "CONNECTION_LOST"


class TransferFailed(TransferError):
    """Surfaced to callers when a transfer ends in ERROR.

    The underlying error is available as ``reason`` and is also chained as
    ``__cause__`` when raised with ``raise ... from``.
    """
    code = "TRANSFER_FAILED"

    def __init__(self, transfer_id: str | None, reason: Exception) -> None:
        super().__init__(f"Transfer {transfer_id or '<unassigned>'} failed: {reason}")
        self.transfer_id = transfer_id
        self.reason = reason


_BY_CODE = {
    cls.code: cls
    for cls in (
        PasscodeConflict,
        UnknownPasscode,
        PasscodeFull,
        NoActivePeer,
        AckTimeout,
        CodecError,
        ChecksumMismatch,
        ProtocolViolation,
        ConnectionLost,
    )
}


def error_from_code(code: str | None, message: str) -> PassdropError:
    """Rebuild a local exception from an ``ERROR`` frame."""
    cls = _BY_CODE.get(code or "", TransferError)
    return cls(message)
