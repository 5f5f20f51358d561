"""
Error taxonomy for FEL/FES operations.

Two tiers:
- ProtocolError: recoverable. The caller may retry the same operation.
- ProtocolFatal: the operation cannot continue. The flasher moves to FAILED.

Transport implementations raise TransportError/TransportTimeout; the
transfer engine translates them into one of the two tiers above.
"""

from typing import Optional


class FelError(Exception):
    """Base exception for everything raised by fel_flasher"""
    pass


class TransportError(FelError):
    """Low-level USB transport failure"""
    pass


class TransportTimeout(TransportError):
    """USB transfer did not complete within the timeout"""
    pass


class ProtocolError(FelError):
    """Recoverable protocol failure"""
    pass


class TransferInterrupted(ProtocolError):
    """The initial request of a transfer timed out or was cut short"""
    pass


class CommandFailed(ProtocolError):
    """
    Device reported a non-zero status after a command.

    Attributes:
        state: Raw state byte from the status record
    """

    def __init__(self, message: str, state: int = 0):
        self.state = state
        super().__init__(message)


class ProtocolFatal(FelError):
    """Unrecoverable protocol or image failure"""
    pass


class MalformedFrame(ProtocolFatal):
    """A frame had the wrong magic or length"""
    pass


class MissingArgument(ProtocolFatal):
    """A command was called without a required argument"""
    pass


class VerifyTimeout(ProtocolFatal):
    """The device never reported verification as finished"""
    pass


class NotSparse(ProtocolFatal):
    """Stream is not a valid sparse image"""
    pass


class CorruptImage(ProtocolFatal):
    """Firmware image container is unreadable or incomplete"""
    pass


class FlashError(ProtocolFatal):
    """
    A flashing step failed.

    Attributes:
        step: Name of the step that failed (e.g. "mbr", "boot0")
    """

    def __init__(self, message: str, step: Optional[str] = None):
        self.step = step
        super().__init__(message)
