"""
Wire Frame Codec

Fixed-layout little-endian records exchanged with the device:

- UsbRequest / UsbResponse: the 32-byte "AWUC" and 13-byte "AWUS" envelopes
  wrapped around every bulk transfer
- FelMessage: the 16-byte request frame of FEL and FES commands
- TransmiteRequest: the 16-byte FES_TRANSMITE request (boot 1.0 transfers)
- StatusResponse: the 8-byte status record ending every command
- VerifyDeviceResponse, VerifyStatusResponse: command-specific replies

All unpack() methods raise MalformedFrame when the length or magic is wrong.
"""

import struct
from dataclasses import dataclass
from typing import Sequence

from fel_flasher.errors import MalformedFrame
from fel_flasher.protocol.constants import (
    DeviceMode,
    UsbCommand,
    VERIFY_STATUS_DONE,
    board_name,
    board_revision,
    parse_device_mode,
)

USB_REQUEST_MAGIC = b"AWUC"
USB_RESPONSE_MAGIC = b"AWUS"
VERIFY_DEVICE_MAGIC = b"AWUSBFEX"

USB_REQUEST_FORMAT = "<4sIIHBBBBI10s"
USB_RESPONSE_FORMAT = "<4sIIB"
FEL_MESSAGE_FORMAT = "<HHIII"
TRANSMITE_FORMAT = "<HHIIBB2s"
STATUS_FORMAT = "<HHB3s"
VERIFY_DEVICE_FORMAT = "<8sIIHBBI8s"
VERIFY_STATUS_FORMAT = "<IIi"
RUN_ARGS_FORMAT = "<4I"

USB_REQUEST_SIZE = struct.calcsize(USB_REQUEST_FORMAT)        # 32
USB_RESPONSE_SIZE = struct.calcsize(USB_RESPONSE_FORMAT)      # 13
FEL_MESSAGE_SIZE = struct.calcsize(FEL_MESSAGE_FORMAT)        # 16
STATUS_SIZE = struct.calcsize(STATUS_FORMAT)                  # 8
VERIFY_DEVICE_SIZE = struct.calcsize(VERIFY_DEVICE_FORMAT)    # 32
VERIFY_STATUS_SIZE = struct.calcsize(VERIFY_STATUS_FORMAT)    # 12
RUN_ARGS_SIZE = struct.calcsize(RUN_ARGS_FORMAT)              # 16

USB_CMD_LEN = 0x0C


def _check_size(name: str, data: bytes, expected: int) -> None:
    if len(data) != expected:
        raise MalformedFrame(
            f"{name}: expected {expected} bytes, got {len(data)}"
        )


@dataclass(frozen=True)
class UsbRequest:
    """AWUC envelope announcing the direction and length of the next transfer."""
    cmd: UsbCommand
    length: int
    tag: int = 0

    def pack(self) -> bytes:
        return struct.pack(
            USB_REQUEST_FORMAT,
            USB_REQUEST_MAGIC,
            self.tag,
            self.length,
            0,
            0,
            USB_CMD_LEN,
            int(self.cmd),
            0,
            self.length,
            b"\x00" * 10,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "UsbRequest":
        _check_size("UsbRequest", data, USB_REQUEST_SIZE)
        magic, tag, length, _, _, _, cmd, _, _, _ = struct.unpack(USB_REQUEST_FORMAT, data)
        if magic != USB_REQUEST_MAGIC:
            raise MalformedFrame(f"UsbRequest: bad magic {magic!r}")
        try:
            command = UsbCommand(cmd)
        except ValueError:
            raise MalformedFrame(f"UsbRequest: unknown direction 0x{cmd:02X}")
        return cls(cmd=command, length=length, tag=tag)


@dataclass(frozen=True)
class UsbResponse:
    """AWUS envelope acknowledging a transfer."""
    tag: int = 0
    residue: int = 0
    csw_status: int = 0

    def pack(self) -> bytes:
        return struct.pack(
            USB_RESPONSE_FORMAT,
            USB_RESPONSE_MAGIC,
            self.tag,
            self.residue,
            self.csw_status,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "UsbResponse":
        _check_size("UsbResponse", data, USB_RESPONSE_SIZE)
        magic, tag, residue, status = struct.unpack(USB_RESPONSE_FORMAT, data)
        if magic != USB_RESPONSE_MAGIC:
            raise MalformedFrame(f"UsbResponse: bad magic {magic!r}")
        return cls(tag=tag, residue=residue, csw_status=status)


@dataclass(frozen=True)
class FelMessage:
    """16-byte request frame sent ahead of every FEL/FES command."""
    cmd: int
    address: int = 0
    length: int = 0
    flags: int = 0
    tag: int = 0

    def pack(self) -> bytes:
        return struct.pack(
            FEL_MESSAGE_FORMAT,
            self.cmd,
            self.tag,
            self.address & 0xFFFFFFFF,
            self.length,
            self.flags & 0xFFFFFFFF,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "FelMessage":
        _check_size("FelMessage", data, FEL_MESSAGE_SIZE)
        cmd, tag, address, length, flags = struct.unpack(FEL_MESSAGE_FORMAT, data)
        return cls(cmd=cmd, address=address, length=length, flags=flags, tag=tag)


@dataclass(frozen=True)
class TransmiteRequest:
    """16-byte FES_TRANSMITE request used by boot 1.0 loaders."""
    cmd: int
    address: int
    length: int
    media_index: int = 0
    direction: int = 0
    tag: int = 0

    def pack(self) -> bytes:
        return struct.pack(
            TRANSMITE_FORMAT,
            self.cmd,
            self.tag,
            self.address & 0xFFFFFFFF,
            self.length,
            self.media_index,
            self.direction,
            b"\x00\x00",
        )

    @classmethod
    def unpack(cls, data: bytes) -> "TransmiteRequest":
        _check_size("TransmiteRequest", data, FEL_MESSAGE_SIZE)
        cmd, tag, address, length, media, direction, _ = struct.unpack(TRANSMITE_FORMAT, data)
        return cls(
            cmd=cmd,
            address=address,
            length=length,
            media_index=media,
            direction=direction,
            tag=tag,
        )


@dataclass(frozen=True)
class StatusResponse:
    """8-byte status record; state > 0 means the command failed."""
    mark: int = 0xFFFF
    tag: int = 0
    state: int = 0

    @property
    def failed(self) -> bool:
        return self.state > 0

    def pack(self) -> bytes:
        return struct.pack(STATUS_FORMAT, self.mark, self.tag, self.state, b"\x00" * 3)

    @classmethod
    def unpack(cls, data: bytes) -> "StatusResponse":
        _check_size("StatusResponse", data, STATUS_SIZE)
        mark, tag, state, _ = struct.unpack(STATUS_FORMAT, data)
        return cls(mark=mark, tag=tag, state=state)


@dataclass(frozen=True)
class VerifyDeviceResponse:
    """Reply to FEL verify_device describing the SoC and its current mode."""
    board: int
    fw: int
    mode: int
    data_flag: int = 0
    data_length: int = 0
    data_start_address: int = 0

    @property
    def device_mode(self) -> DeviceMode:
        return parse_device_mode(self.mode)

    @property
    def board_name(self) -> str:
        return board_name(self.board)

    @property
    def revision(self) -> int:
        return board_revision(self.board)

    def pack(self) -> bytes:
        return struct.pack(
            VERIFY_DEVICE_FORMAT,
            VERIFY_DEVICE_MAGIC,
            self.board,
            self.fw,
            self.mode,
            self.data_flag,
            self.data_length,
            self.data_start_address,
            b"\x00" * 8,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "VerifyDeviceResponse":
        _check_size("VerifyDeviceResponse", data, VERIFY_DEVICE_SIZE)
        (magic, board, fw, mode, data_flag, data_length,
         start, _) = struct.unpack(VERIFY_DEVICE_FORMAT, data)
        if magic != VERIFY_DEVICE_MAGIC:
            raise MalformedFrame(f"VerifyDeviceResponse: bad magic {magic!r}")
        return cls(
            board=board,
            fw=fw,
            mode=mode,
            data_flag=data_flag,
            data_length=data_length,
            data_start_address=start,
        )


@dataclass(frozen=True)
class VerifyStatusResponse:
    """
    Reply to verify_status / verify_value.

    crc doubles as the result field: 0 on success, -1 on failure, or the
    computed CRC for verify_value.
    """
    flags: int = 0
    fes_crc: int = 0
    crc: int = 0

    @property
    def done(self) -> bool:
        return self.flags == VERIFY_STATUS_DONE

    @property
    def crc_u32(self) -> int:
        return self.crc & 0xFFFFFFFF

    def pack(self) -> bytes:
        return struct.pack(VERIFY_STATUS_FORMAT, self.flags, self.fes_crc, self.crc)

    @classmethod
    def unpack(cls, data: bytes) -> "VerifyStatusResponse":
        _check_size("VerifyStatusResponse", data, VERIFY_STATUS_SIZE)
        flags, fes_crc, crc = struct.unpack(VERIFY_STATUS_FORMAT, data)
        return cls(flags=flags, fes_crc=fes_crc, crc=crc)


def pack_run_args(args: Sequence[int]) -> bytes:
    """Pack up to four run arguments into the 16-byte parameter block."""
    if len(args) > 4:
        raise ValueError(f"At most 4 run arguments allowed, got {len(args)}")
    padded = list(args) + [0] * (4 - len(args))
    return struct.pack(RUN_ARGS_FORMAT, *(a & 0xFFFFFFFF for a in padded))
