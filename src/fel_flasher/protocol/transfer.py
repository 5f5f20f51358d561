"""
Chunked Transfer Engine

Drives one FEL/FES command over the transport:

1. send the 16-byte request frame (envelope request, payload, envelope response)
2. push the data payload or pull `size` bytes
3. read the 8-byte status record

and splits long reads/writes into pieces of at most MAX_CHUNK bytes
(TransferOperation), advancing the device address in bytes or sectors.
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterator, Optional, Union

from fel_flasher.config import Config
from fel_flasher.errors import (
    CommandFailed,
    MalformedFrame,
    ProtocolFatal,
    TransferInterrupted,
    TransportError,
    TransportTimeout,
)
from fel_flasher.protocol.constants import (
    MAX_CHUNK,
    SECTOR_SIZE,
    DeviceMode,
    Direction,
    Tag,
    UsbCommand,
    tag_mask,
)
from fel_flasher.protocol.frames import (
    STATUS_SIZE,
    USB_RESPONSE_SIZE,
    FelMessage,
    StatusResponse,
    TransmiteRequest,
    UsbRequest,
    UsbResponse,
)
from fel_flasher.protocol.usb_transport import Transport

logger = logging.getLogger(__name__)

# Longest packet dumped in full at DEBUG level
HEX_DUMP_LIMIT = 64


def _hex(data: bytes) -> str:
    if len(data) <= HEX_DUMP_LIMIT:
        return data.hex().upper()
    return f"{data[:HEX_DUMP_LIMIT].hex().upper()}... ({len(data)} bytes)"


@dataclass(frozen=True)
class Piece:
    """One exchange of a chunked transfer."""
    offset: int
    length: int
    address: int
    flags: int
    last: bool


@dataclass(frozen=True)
class TransferOperation:
    """
    A read or write split into exchanges of at most max_chunk bytes.

    Addressing: bytes in FEL mode or when the DRAM tag is present,
    otherwise 512-byte sectors (at least one per exchange). In FES mode the
    finish tag is added to the last piece of a push unless suppressed.

    Attributes:
        direction: Direction.PUSH (write) or Direction.PULL (read)
        mode: Device mode the command is issued in
        address: Start address (bytes or sectors)
        total_length: Total payload length in bytes
        tags: Tags OR-ed into every request
        max_chunk: Largest exchange size
        suppress_finish: Do not add Tag.FINISH to the last piece
        byte_addressing: Force byte (True) or sector (False) addressing
    """
    direction: Direction
    mode: DeviceMode
    address: int
    total_length: int
    tags: FrozenSet[Tag] = field(default_factory=frozenset)
    max_chunk: int = MAX_CHUNK
    suppress_finish: bool = False
    byte_addressing: Optional[bool] = None

    @property
    def mask(self) -> int:
        return tag_mask(self.tags)

    @property
    def is_byte_addressed(self) -> bool:
        if self.byte_addressing is not None:
            return self.byte_addressing
        return self.mode != DeviceMode.FES or bool(self.mask & Tag.DRAM)

    def advance(self, address: int, length: int) -> int:
        """Address following an exchange of `length` bytes at `address`."""
        if self.is_byte_addressed:
            return address + length
        return address + max(1, length // SECTOR_SIZE)

    def pieces(self) -> Iterator[Piece]:
        address = self.address
        offset = 0
        remaining = self.total_length
        mask = self.mask
        while remaining > 0:
            length = min(remaining, self.max_chunk)
            last = remaining == length
            flags = mask
            if (last and self.direction == Direction.PUSH
                    and self.mode == DeviceMode.FES and not self.suppress_finish):
                flags |= Tag.FINISH
            yield Piece(offset=offset, length=length, address=address, flags=flags, last=last)
            offset += length
            remaining -= length
            address = self.advance(address, length)

    def end_address(self) -> int:
        """Address following the whole operation."""
        address = self.address
        for piece in self.pieces():
            address = self.advance(piece.address, piece.length)
        return address


Request = Union[FelMessage, TransmiteRequest]


class TransferEngine:
    """
    Executes request/payload/status exchanges over a Transport.

    Example:
        engine = TransferEngine(transport, Config())
        answer = engine.transfer(Direction.PULL, FelMessage(cmd=0x1), size=32)
    """

    def __init__(self, transport: Transport, config: Optional[Config] = None):
        self.transport = transport
        self.config = config or Config()

    # -- envelope level ----------------------------------------------------

    def _send(self, data: bytes, timeout: float) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f">>> {_hex(data)}")
        written = self.transport.send(data, timeout)
        if written != len(data):
            raise TransportError(f"Short write: {written} of {len(data)} bytes")

    def _recv(self, length: int, timeout: float) -> bytes:
        data = self.transport.recv(length, timeout)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"<<< {_hex(data)}")
        return data

    def _read_usb_response(self, timeout: float) -> UsbResponse:
        response = UsbResponse.unpack(self._recv(USB_RESPONSE_SIZE, timeout))
        if response.csw_status != 0:
            raise ProtocolFatal(f"USB response status {response.csw_status}")
        return response

    def send_request(self, data: bytes, response_timeout: Optional[float] = None) -> None:
        """
        Push `data` as one envelope exchange.

        Raises:
            TransportError/TransportTimeout: Propagated from the transport
            MalformedFrame: Envelope response was invalid
        """
        timeout = self.config.timeout
        self._send(UsbRequest(cmd=UsbCommand.WRITE, length=len(data)).pack(), timeout)
        self._send(data, timeout)
        self._read_usb_response(response_timeout or timeout)

    def recv_request(self, length: int, timeout: Optional[float] = None) -> bytes:
        """
        Pull `length` bytes as one envelope exchange.

        Raises:
            TransportError/TransportTimeout: Propagated from the transport
            MalformedFrame: Envelope response was invalid
        """
        timeout = timeout or self.config.timeout
        self._send(UsbRequest(cmd=UsbCommand.READ, length=length).pack(), self.config.timeout)
        data = self._recv(length, timeout)
        self._read_usb_response(timeout)
        return data

    # -- command level -----------------------------------------------------

    def _send_command(self, request: Request, slow: bool) -> None:
        frame = request.pack()
        response_timeout = self.config.long_timeout if slow else None
        try:
            self.send_request(frame, response_timeout)
        except TransportTimeout as e:
            raise TransferInterrupted(f"Request 0x{request.cmd:03X} interrupted: {e}")
        except TransportError as e:
            raise ProtocolFatal(f"Failed to send request 0x{request.cmd:03X}: {e}")

    def transfer(
        self,
        direction: Direction,
        request: Request,
        size: Optional[int] = None,
        data: Optional[bytes] = None,
        slow: bool = False,
    ) -> Optional[bytes]:
        """
        Run one command: request frame, optional payload, status record.

        Args:
            direction: PUSH to send `data`, PULL to receive `size` bytes
            request: 16-byte request frame
            size: Expected answer length (PULL only)
            data: Payload (PUSH only)
            slow: Use the long timeout for the payload response and status

        Returns:
            The answer for PULL, None for PUSH.

        Raises:
            TransferInterrupted: The request frame could not be delivered
                after the configured retries
            CommandFailed: Device reported a non-zero status
            ProtocolFatal: Any other failure
        """
        if direction == Direction.PULL and data is not None:
            raise ProtocolFatal("An invalid argument for pull: data given")
        if direction == Direction.PUSH and size is not None:
            raise ProtocolFatal("An invalid argument for push: size given")

        def on_retry(attempt: int, error: BaseException) -> None:
            logger.warning(f"Retrying request 0x{request.cmd:03X}: {error}")

        self.config.transfer_retry.call(
            lambda: self._send_command(request, slow),
            retry_on=(TransferInterrupted,),
            on_retry=on_retry,
        )

        long_timeout = self.config.long_timeout if slow else None
        answer = None
        if direction == Direction.PULL and size:
            try:
                answer = self.recv_request(size)
            except TransportError as e:
                raise ProtocolFatal(f"Failed to get {size} bytes of data: {e}")
            if len(answer) != size:
                raise ProtocolFatal(
                    f"An unexpected answer length ({len(answer)} <> {size})"
                )
        elif direction == Direction.PUSH and data is not None:
            try:
                self.send_request(data, long_timeout)
            except TransportError as e:
                raise ProtocolFatal(f"Failed to send {len(data)} bytes of data: {e}")

        try:
            raw = self.recv_request(STATUS_SIZE, long_timeout)
        except TransportError as e:
            raise ProtocolFatal(f"Failed to receive the device status: {e}")
        try:
            status = StatusResponse.unpack(raw)
        except MalformedFrame as e:
            raise MalformedFrame(f"An unexpected device response: {e}")
        if status.failed:
            raise CommandFailed(
                f"Command 0x{request.cmd:03X} execution failed (status {status.state})",
                state=status.state,
            )
        return answer
