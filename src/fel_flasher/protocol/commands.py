"""
Command Layer

High-level FEL/FES commands built on TransferEngine: device status,
chunked memory/storage read and write, code execution, verification,
storage attach/detach, tool mode and partition-table write.
"""

import logging
import time
from typing import Callable, Optional, Sequence

from fel_flasher.config import Config
from fel_flasher.errors import MissingArgument, ProtocolFatal, VerifyTimeout
from fel_flasher.protocol.constants import (
    MBR_SIZE,
    DeviceMode,
    Direction,
    FelCommand,
    FesCommand,
    MediaIndex,
    RunContext,
    Tag,
    TagsArg,
    ToolAction,
    TransmiteFlag,
    WorkMode,
    normalize_tags,
    tag_mask,
)
from fel_flasher.protocol.frames import (
    VERIFY_DEVICE_SIZE,
    VERIFY_STATUS_SIZE,
    FelMessage,
    TransmiteRequest,
    VerifyDeviceResponse,
    VerifyStatusResponse,
    pack_run_args,
)
from fel_flasher.protocol.transfer import TransferEngine, TransferOperation

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

INFO_SIZE = 32
DEFAULT_MSG_SIZE = 1024


class FelCommands:
    """
    FEL/FES command set.

    Example:
        commands = FelCommands(TransferEngine(transport, config), config)
        status = commands.get_device_status()
        data = commands.read(0x2000, 256)
        commands.write(0x2000, payload)
        commands.run(0x2000)
    """

    def __init__(self, engine: TransferEngine, config: Optional[Config] = None):
        self.engine = engine
        self.config = config or engine.config

    def get_device_status(self) -> VerifyDeviceResponse:
        """
        Query the board id, firmware and current mode (FEL verify_device).

        Works in both FEL and FES mode.
        """
        request = FelMessage(cmd=FelCommand.VERIFY_DEVICE)
        answer = self.engine.transfer(Direction.PULL, request, size=VERIFY_DEVICE_SIZE)
        status = VerifyDeviceResponse.unpack(answer)
        logger.debug(
            f"Device: board 0x{status.board:08X} ({status.board_name}), "
            f"fw 0x{status.fw:X}, mode {status.device_mode.name}"
        )
        return status

    def read(
        self,
        address: int,
        length: int,
        tags: TagsArg = None,
        mode: DeviceMode = DeviceMode.FEL,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> bytes:
        """
        Read memory (FEL) or storage/DRAM (FES).

        Args:
            address: Start address; bytes in FEL or with Tag.DRAM, else sectors
            length: Number of bytes to read
            tags: Tags for every request
            mode: DeviceMode.FEL or DeviceMode.FES
            progress_cb: Called with (bytes_done, total) after each chunk

        Returns:
            The requested bytes.

        Raises:
            MissingArgument: If address or length is None
        """
        if address is None:
            raise MissingArgument("The address is not specified")
        if length is None:
            raise MissingArgument("The length is not specified")

        cmd = FelCommand.UPLOAD if mode == DeviceMode.FEL else FesCommand.UPLOAD
        operation = TransferOperation(
            direction=Direction.PULL,
            mode=mode,
            address=address,
            total_length=length,
            tags=normalize_tags(tags),
            max_chunk=self.config.max_chunk,
        )
        result = bytearray()
        for piece in operation.pieces():
            request = FelMessage(
                cmd=cmd, address=piece.address, length=piece.length, flags=piece.flags
            )
            result += self.engine.transfer(Direction.PULL, request, size=piece.length)
            if progress_cb:
                progress_cb(piece.offset + piece.length, length)
        return bytes(result)

    def write(
        self,
        address: int,
        data: bytes,
        tags: TagsArg = None,
        mode: DeviceMode = DeviceMode.FEL,
        suppress_finish: bool = False,
        progress_cb: Optional[ProgressCallback] = None,
        slow: bool = False,
    ) -> int:
        """
        Write memory (FEL) or storage/DRAM (FES).

        Args:
            address: Start address; bytes in FEL or with Tag.DRAM, else sectors
            data: Bytes to write
            tags: Tags for every request
            mode: DeviceMode.FEL or DeviceMode.FES
            suppress_finish: Do not mark the last chunk with Tag.FINISH (FES)
            progress_cb: Called with (bytes_done, total) after each chunk
            slow: Wait up to Config.long_timeout for each acknowledgement

        Returns:
            The address following the last written chunk.

        Raises:
            MissingArgument: If address or data is None
        """
        if address is None:
            raise MissingArgument("The address is not specified")
        if data is None:
            raise MissingArgument("The data is not specified")

        cmd = FelCommand.DOWNLOAD if mode == DeviceMode.FEL else FesCommand.DOWNLOAD
        operation = TransferOperation(
            direction=Direction.PUSH,
            mode=mode,
            address=address,
            total_length=len(data),
            tags=normalize_tags(tags),
            max_chunk=self.config.max_chunk,
            suppress_finish=suppress_finish,
        )
        view = memoryview(data)
        next_address = address
        for piece in operation.pieces():
            request = FelMessage(
                cmd=cmd, address=piece.address, length=piece.length, flags=piece.flags
            )
            chunk = bytes(view[piece.offset:piece.offset + piece.length])
            self.engine.transfer(Direction.PUSH, request, data=chunk, slow=slow)
            next_address = operation.advance(piece.address, piece.length)
            if progress_cb:
                progress_cb(piece.offset + piece.length, len(data))
        return next_address

    def run(
        self,
        address: int,
        mode: DeviceMode = DeviceMode.FEL,
        flags: Optional[Sequence[RunContext]] = None,
        args: Optional[Sequence[int]] = None,
    ) -> None:
        """
        Execute code at `address`.

        Args:
            address: Entry point
            mode: DeviceMode.FEL or DeviceMode.FES
            flags: RunContext flags (FES only)
            args: Up to four arguments, sent when RunContext.HAS_PARAM is set

        Raises:
            ProtocolFatal: If flags are used in FEL mode
        """
        context = 0
        for flag in flags or ():
            context |= int(RunContext(flag))
        if context and mode == DeviceMode.FEL:
            raise ProtocolFatal("Cannot use run flags in FEL mode")

        cmd = FelCommand.RUN if mode == DeviceMode.FEL else FesCommand.RUN
        request = FelMessage(cmd=cmd, address=address, length=context)
        logger.info(f"Executing code at 0x{address:08X}")
        if context & RunContext.HAS_PARAM:
            self.engine.transfer(Direction.PUSH, request, data=pack_run_args(args or ()))
        else:
            self.engine.transfer(Direction.PUSH, request)

    def info(self) -> bytes:
        """FES_INFO: code execution status (32 bytes)."""
        return self.engine.transfer(
            Direction.PULL, FelMessage(cmd=FesCommand.INFO), size=INFO_SIZE
        )

    def get_msg(self, length: int = DEFAULT_MSG_SIZE) -> bytes:
        """FES_GET_MSG: code execution status string."""
        request = FelMessage(cmd=FesCommand.GET_MSG, address=length)
        return self.engine.transfer(Direction.PULL, request, size=length)

    def unreg_fed(self, media: MediaIndex = MediaIndex.NAND) -> None:
        """FES_UNREG_FED: detach the given storage."""
        request = FelMessage(cmd=FesCommand.UNREG_FED, address=int(media))
        self.engine.transfer(Direction.PUSH, request)

    def verify_status(self, tags: TagsArg = None) -> VerifyStatusResponse:
        """
        Poll the status of the last operation until the device reports done.

        Raises:
            VerifyTimeout: If the device is not done within Config.verify_poll
        """
        request = FelMessage(cmd=FesCommand.VERIFY_STATUS, flags=tag_mask(tags))
        policy = self.config.verify_poll
        for attempt in policy:
            answer = self.engine.transfer(Direction.PULL, request, size=VERIFY_STATUS_SIZE)
            status = VerifyStatusResponse.unpack(answer)
            if status.done:
                logger.debug(f"verify_status: crc={status.crc} after {attempt + 1} poll(s)")
                return status
            logger.debug(f"verify_status: not ready (flags 0x{status.flags:08X})")
        raise VerifyTimeout(
            f"Device did not finish verification after {policy.attempts} polls"
        )

    def verify_value(self, address: int, length: int) -> VerifyStatusResponse:
        """Ask the device for the CRC of `length` bytes at sector `address`."""
        request = FelMessage(cmd=FesCommand.VERIFY_VALUE, address=address, length=length)
        answer = self.engine.transfer(Direction.PULL, request, size=VERIFY_STATUS_SIZE)
        return VerifyStatusResponse.unpack(answer)

    verify_last_status = verify_status
    verify_checksum = verify_value

    def set_storage_state(self, on: bool) -> None:
        """Attach (flash_set_on) or detach (flash_set_off) the storage."""
        cmd = FesCommand.FLASH_SET_ON if on else FesCommand.FLASH_SET_OFF
        self.engine.transfer(Direction.PUSH, FelMessage(cmd=cmd))

    def set_tool_mode(
        self,
        work_mode: WorkMode,
        action: ToolAction = ToolAction.NONE,
    ) -> None:
        """
        FES_TOOL_MODE: change the U-Boot work mode, e.g. to reboot.

        The action is only honored with WorkMode.USB_TOOL_UPDATE.
        """
        request = FelMessage(
            cmd=FesCommand.TOOL_MODE, address=int(work_mode), length=int(action)
        )
        self.engine.transfer(Direction.PUSH, request)

    def write_mbr(
        self,
        mbr: bytes,
        format: bool = False,
        on_erased: Optional[Callable[[float], None]] = None,
    ) -> VerifyStatusResponse:
        """
        Write the partition table, optionally forcing a storage wipe.

        The device may format the storage anyway when the storage version
        does not match.

        Args:
            mbr: Partition table, exactly 65536 bytes
            format: Erase all data
            on_erased: Called with the seconds the erase flag write took

        Returns:
            Result of the MBR verification (crc -1 on failure).
        """
        if not mbr:
            raise MissingArgument("The MBR is empty")
        if len(mbr) != MBR_SIZE:
            raise ProtocolFatal(
                f"The MBR must be {MBR_SIZE} bytes, got {len(mbr)}"
            )
        erase_flag = b"\x01\x00\x00\x00" if format else b"\x00\x00\x00\x00"
        started = time.monotonic()
        self.write(0, erase_flag, [Tag.ERASE, Tag.FINISH], DeviceMode.FES, slow=True)
        elapsed = time.monotonic() - started
        logger.debug(f"Erase flag acknowledged after {elapsed:.1f}s")
        if on_erased:
            on_erased(elapsed)
        self.write(0, mbr, [Tag.MBR, Tag.FINISH], DeviceMode.FES, slow=True)
        return self.verify_status(Tag.MBR)

    def transmite(
        self,
        direction: TransmiteFlag,
        address: int,
        data: Optional[bytes] = None,
        length: Optional[int] = None,
        media: MediaIndex = MediaIndex.DRAM,
        suppress_finish: bool = False,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> Optional[bytes]:
        """
        FES_TRANSMITE read/write used by boot 1.0 loaders.

        Args:
            direction: TransmiteFlag.WRITE or TransmiteFlag.READ
            address: Start address; bytes for DRAM, else sectors
            data: Bytes to write (WRITE)
            length: Bytes to read (READ)
            media: Target medium
            suppress_finish: Do not set the finish flag on the last chunk
            progress_cb: Called with (bytes_done, total) after each chunk

        Returns:
            The data read for READ, None for WRITE.
        """
        if address is None:
            raise MissingArgument("The address is not specified")
        if direction == TransmiteFlag.WRITE:
            if data is None:
                raise MissingArgument("The data is not specified")
            total = len(data)
            transfer_direction = Direction.PUSH
        elif direction == TransmiteFlag.READ:
            if length is None:
                raise MissingArgument("The length is not specified")
            total = length
            transfer_direction = Direction.PULL
        else:
            raise ProtocolFatal(f"An unknown transmite direction {direction!r}")

        operation = TransferOperation(
            direction=transfer_direction,
            mode=DeviceMode.FES,
            address=address,
            total_length=total,
            max_chunk=self.config.max_chunk,
            byte_addressing=media == MediaIndex.DRAM,
        )
        base_flags = int(direction)
        if direction == TransmiteFlag.WRITE and media != MediaIndex.DRAM:
            base_flags |= TransmiteFlag.START

        result = bytearray()
        for piece in operation.pieces():
            flags = base_flags
            if direction == TransmiteFlag.WRITE and piece.last and not suppress_finish:
                flags |= TransmiteFlag.FINISH
            request = TransmiteRequest(
                cmd=FesCommand.TRANSMITE,
                address=piece.address,
                length=piece.length,
                media_index=int(media),
                direction=flags,
            )
            if transfer_direction == Direction.PUSH:
                chunk = data[piece.offset:piece.offset + piece.length]
                self.engine.transfer(Direction.PUSH, request, data=chunk)
            else:
                result += self.engine.transfer(Direction.PULL, request, size=piece.length)
            if progress_cb:
                progress_cb(piece.offset + piece.length, total)

        if transfer_direction == Direction.PULL:
            return bytes(result)
        return None
