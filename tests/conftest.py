"""Shared fixtures: a simulated FEL/FES device and firmware image builders."""

import struct
import time
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from fel_flasher.config import Config, RetryPolicy
from fel_flasher.errors import TransportError, TransportTimeout
from fel_flasher.image.container import (
    IMAGE_FORMAT_V1,
    IMAGE_HEADER_SIZE,
    IMAGE_ITEM_SIZE,
    IMAGE_MAGIC,
)
from fel_flasher.protocol.constants import (
    SECTOR_SIZE,
    UBOOT_ADDRESS,
    UBOOT_WORK_MODE_OFFSET,
    VERIFY_STATUS_DONE,
    DeviceMode,
    FelCommand,
    FesCommand,
    MediaIndex,
    RunContext,
    Tag,
    TransmiteFlag,
    UsbCommand,
    WorkMode,
)
from fel_flasher.protocol.frames import (
    FelMessage,
    StatusResponse,
    TransmiteRequest,
    UsbRequest,
    UsbResponse,
    VerifyDeviceResponse,
    VerifyStatusResponse,
)
from fel_flasher.protocol.session import Session
from fel_flasher.protocol.usb_transport import Transport
from fel_flasher.utils.crypto import KeyId, crc32

A20_BOARD = 0x00165101

TAG_FAMILY = 0x7F00


def signed32(value: int) -> int:
    """Reinterpret an unsigned 32-bit value as the signed field the device sends."""
    return struct.unpack("<i", struct.pack("<I", value & 0xFFFFFFFF))[0]


class FakeFelDevice(Transport):
    """
    In-memory device speaking the AWUC/AWUS envelope protocol.

    DRAM is a byte map, storage a flat byte array addressed in sectors,
    and tagged FES writes (MBR, u-boot, boot0, erase flag) are collected
    per tag. Fault injection knobs are plain attributes.
    """

    def __init__(self, mode: DeviceMode = DeviceMode.FEL, board: int = A20_BOARD):
        self.mode = mode
        self.board = board
        self.fw = 1
        self.memory: Dict[int, int] = {}
        self.storage = bytearray()
        self.tagged: Dict[int, bytearray] = {}
        self.requests: List[object] = []
        self.downloads: List[tuple] = []
        self.runs: List[tuple] = []
        self.transmites: List[TransmiteRequest] = []
        self.storage_states: List[bool] = []
        self.tool_mode: Optional[tuple] = None
        self.unregistered: List[int] = []

        # fault injection
        self.command_timeouts = 0
        self.fail_commands: Dict[int, int] = {}
        self.verify_not_ready = 0
        self.verify_results: Dict[int, int] = {}
        self.corrupt_storage_writes = 0
        self.reconnect_failures = 0
        self.erase_delay = 0.0

        self.closed = False
        self.connects = 0
        self._boot_pending = False
        self._refuse = 0
        self._reset_wire()

    # -- connection --------------------------------------------------------

    def _reset_wire(self) -> None:
        self._outbox: List[bytes] = []
        self._pending: List[bytes] = []
        self._write_len: Optional[int] = None
        self._current = None
        self._expect_data = False

    def connect(self) -> "FakeFelDevice":
        if self._refuse:
            self._refuse -= 1
            raise TransportError("Simulated: device not found")
        self.closed = False
        self.connects += 1
        self._reset_wire()
        return self

    def close(self) -> None:
        self.closed = True
        if self._boot_pending:
            self._boot_pending = False
            self.mode = DeviceMode.FES
            self._refuse = self.reconnect_failures

    # -- memory model ------------------------------------------------------

    def write_memory(self, address: int, data: bytes) -> None:
        for i, b in enumerate(data):
            self.memory[address + i] = b

    def read_memory(self, address: int, length: int) -> bytes:
        return bytes(self.memory.get(address + i, 0) for i in range(length))

    def write_storage(self, sector: int, data: bytes) -> None:
        start = sector * SECTOR_SIZE
        end = start + len(data)
        if len(self.storage) < end:
            self.storage.extend(b"\x00" * (end - len(self.storage)))
        self.storage[start:end] = data

    def read_storage(self, sector: int, length: int) -> bytes:
        start = sector * SECTOR_SIZE
        return bytes(self.storage[start:start + length]).ljust(length, b"\x00")

    def storage_crc(self, sector: int, sectors: int) -> int:
        return crc32(self.read_storage(sector, sectors * SECTOR_SIZE))

    # -- transport ---------------------------------------------------------

    def send(self, data: bytes, timeout: float) -> int:
        if self.closed:
            raise TransportError("Simulated: device is closed")
        data = bytes(data)

        if self._write_len is None:
            request = UsbRequest.unpack(data)
            if request.cmd == UsbCommand.WRITE:
                if self._current is None and self.command_timeouts:
                    self.command_timeouts -= 1
                    raise TransportTimeout("Simulated: request timed out")
                self._write_len = request.length
            else:
                reply = self._pending.pop(0)
                if len(reply) != request.length:
                    raise TransportError(
                        f"Simulated: host asked for {request.length} bytes, reply has {len(reply)}"
                    )
                self._outbox.extend([reply, UsbResponse().pack()])
                if not self._pending:
                    self._current = None
            return len(data)

        self._write_len = None
        if self._expect_data:
            self._on_data(data)
        else:
            self._on_frame(data)
        self._outbox.append(UsbResponse().pack())
        return len(data)

    def recv(self, max_len: int, timeout: float) -> bytes:
        if self.closed:
            raise TransportError("Simulated: device is closed")
        if not self._outbox:
            raise TransportTimeout("Simulated: nothing to read")
        return self._outbox.pop(0)[:max_len]

    # -- command handling --------------------------------------------------

    def _status(self, cmd: int) -> bytes:
        return StatusResponse(state=self.fail_commands.get(cmd, 0)).pack()

    def _reply(self, cmd: int, answer: Optional[bytes] = None) -> None:
        self._pending = ([answer] if answer is not None else []) + [self._status(cmd)]

    def _on_frame(self, frame: bytes) -> None:
        cmd = struct.unpack_from("<H", frame)[0]
        if cmd == FesCommand.TRANSMITE:
            request = TransmiteRequest.unpack(frame)
            self.transmites.append(request)
        else:
            request = FelMessage.unpack(frame)
        self.requests.append(request)
        self._current = request

        if cmd == FelCommand.VERIFY_DEVICE:
            answer = VerifyDeviceResponse(board=self.board, fw=self.fw, mode=int(self.mode)).pack()
            self._reply(cmd, answer)
        elif cmd in (FelCommand.DOWNLOAD, FesCommand.DOWNLOAD):
            self._expect_data = True
        elif cmd in (FelCommand.UPLOAD, FesCommand.UPLOAD):
            self._reply(cmd, self._upload(request))
        elif cmd == FelCommand.RUN:
            self.runs.append((DeviceMode.FEL, request.address, 0, None))
            if (request.address == UBOOT_ADDRESS
                    and self.memory.get(UBOOT_ADDRESS + UBOOT_WORK_MODE_OFFSET) == WorkMode.USB_PRODUCT):
                self._boot_pending = True
            self._reply(cmd)
        elif cmd == FesCommand.RUN:
            if request.length & RunContext.HAS_PARAM:
                self._expect_data = True
            else:
                self.runs.append((DeviceMode.FES, request.address, request.length, None))
                self._reply(cmd)
        elif cmd == FesCommand.VERIFY_STATUS:
            if self.verify_not_ready:
                self.verify_not_ready -= 1
                answer = VerifyStatusResponse(flags=0).pack()
            else:
                crc = self.verify_results.get(request.flags & 0xFFFF, 0)
                answer = VerifyStatusResponse(flags=VERIFY_STATUS_DONE, crc=signed32(crc)).pack()
            self._reply(cmd, answer)
        elif cmd == FesCommand.VERIFY_VALUE:
            crc = self.storage_crc(request.address, request.length)
            answer = VerifyStatusResponse(
                flags=VERIFY_STATUS_DONE, fes_crc=crc, crc=signed32(crc)
            ).pack()
            self._reply(cmd, answer)
        elif cmd in (FesCommand.FLASH_SET_ON, FesCommand.FLASH_SET_OFF):
            self.storage_states.append(cmd == FesCommand.FLASH_SET_ON)
            self._reply(cmd)
        elif cmd == FesCommand.TOOL_MODE:
            self.tool_mode = (request.address, request.length)
            self._reply(cmd)
        elif cmd == FesCommand.UNREG_FED:
            self.unregistered.append(request.address)
            self._reply(cmd)
        elif cmd == FesCommand.INFO:
            self._reply(cmd, b"\x00" * 32)
        elif cmd == FesCommand.GET_MSG:
            self._reply(cmd, b"ok".ljust(request.address, b"\x00"))
        elif cmd == FesCommand.TRANSMITE:
            if request.direction & TransmiteFlag.WRITE:
                self._expect_data = True
            elif request.media_index == MediaIndex.DRAM:
                self._reply(cmd, self.read_memory(request.address, request.length))
            else:
                self._reply(cmd, self.read_storage(request.address, request.length))
        else:
            self._pending = [StatusResponse(state=1).pack()]

    def _upload(self, request: FelMessage) -> bytes:
        if request.cmd == FelCommand.UPLOAD or request.flags & 0xFFFF == Tag.DRAM:
            return self.read_memory(request.address, request.length)
        return self.read_storage(request.address, request.length)

    def _on_data(self, data: bytes) -> None:
        request = self._current
        self._expect_data = False
        cmd = request.cmd

        if cmd == FelCommand.DOWNLOAD:
            self.write_memory(request.address, data)
        elif cmd == FesCommand.DOWNLOAD:
            self.downloads.append((request.address, request.flags, len(data)))
            tag = request.flags & 0xFFFF
            if tag & TAG_FAMILY == TAG_FAMILY:
                if tag == Tag.DRAM:
                    self.write_memory(request.address, data)
                else:
                    if tag == Tag.ERASE and self.erase_delay:
                        time.sleep(self.erase_delay)
                    buffer = self.tagged.setdefault(tag, bytearray())
                    end = request.address + len(data)
                    if len(buffer) < end:
                        buffer.extend(b"\x00" * (end - len(buffer)))
                    buffer[request.address:end] = data
            else:
                if self.corrupt_storage_writes:
                    self.corrupt_storage_writes -= 1
                    data = bytes(b ^ 0xFF for b in data)
                self.write_storage(request.address, data)
        elif cmd == FesCommand.RUN:
            args = struct.unpack("<4I", data)
            self.runs.append((DeviceMode.FES, request.address, request.length, args))
        elif cmd == FesCommand.TRANSMITE:
            if request.media_index == MediaIndex.DRAM:
                self.write_memory(request.address, data)
            else:
                self.write_storage(request.address, data)
        self._reply(cmd)


class XorCipher:
    """Toy cipher with a distinct XOR key per image section."""

    KEYS = {KeyId.HEADER: 0x11, KeyId.ITEM: 0x22, KeyId.DATA: 0x33}

    def decrypt(self, data: bytes, key_id: KeyId) -> bytes:
        key = self.KEYS[key_id]
        return bytes(b ^ key for b in data)

    encrypt = decrypt


# -- image builders ----------------------------------------------------------

def build_image(items, image_format: int = IMAGE_FORMAT_V1, cipher: Optional[XorCipher] = None) -> bytes:
    """
    Assemble an IMAGEWTY image.

    items: list of (main_type, sub_type, path, data)
    """
    count = len(items)
    data_start = IMAGE_HEADER_SIZE + count * IMAGE_ITEM_SIZE
    records = bytearray()
    payloads = bytearray()

    for main_type, sub_type, path, data in items:
        offset = data_start + len(payloads)
        record = bytearray(IMAGE_ITEM_SIZE)
        struct.pack_into("<II", record, 0, 0x100, IMAGE_ITEM_SIZE)
        record[8:16] = main_type.encode().ljust(8, b"\x00")[:8]
        record[16:32] = sub_type.encode().ljust(16, b"\x00")[:16]
        if image_format == IMAGE_FORMAT_V1:
            struct.pack_into("<4I", record, 36, len(data), len(data), offset, 0)
            record[52:52 + len(path)] = path.encode()
        else:
            record[36:36 + len(path)] = path.encode()
            struct.pack_into("<6I", record, 292, len(data), 0, len(data), 0, offset, 0)
            struct.pack_into("<I", record, 380, crc32(data))
        records += cipher.encrypt(bytes(record), KeyId.ITEM) if cipher else record

        payload = cipher.encrypt(data, KeyId.DATA) if cipher else data
        payloads += payload + b"\x00" * (-len(payload) % 16)

    header = bytearray(IMAGE_HEADER_SIZE)
    header[0:8] = IMAGE_MAGIC
    struct.pack_into("<I", header, 8, image_format)
    total = data_start + len(payloads)
    if image_format == IMAGE_FORMAT_V1:
        struct.pack_into(
            "<14I", header, 12,
            0x50, 0x4D00000, 0x100234, total, 1024,
            0x1234, 0x8743, 0x100, 0x100, 0, IMAGE_ITEM_SIZE, count, IMAGE_HEADER_SIZE, 0,
        )
    else:
        struct.pack_into(
            "<15I", header, 12,
            0x60, 0x4D00000, 0x100234, total, 0, 1024,
            0x1234, 0x8743, 0x100, 0x100, 0, IMAGE_ITEM_SIZE, count, IMAGE_HEADER_SIZE, 0,
        )
    if cipher:
        header = cipher.encrypt(bytes(header), KeyId.HEADER)
    return bytes(header) + bytes(records) + bytes(payloads)


def build_sparse(chunks, blk_sz: int = 1024) -> bytes:
    """
    Assemble an Android sparse image.

    chunks: ("raw", data) | ("fill", word, blocks) | ("dont_care", blocks) | ("crc", value)
    """
    body = bytearray()
    total_blks = 0
    for chunk in chunks:
        kind = chunk[0]
        if kind == "raw":
            data = chunk[1]
            blocks = len(data) // blk_sz
            body += struct.pack("<HHII", 0xCAC1, 0, blocks, 12 + len(data)) + data
        elif kind == "fill":
            word, blocks = chunk[1], chunk[2]
            body += struct.pack("<HHII", 0xCAC2, 0, blocks, 16) + word
        elif kind == "dont_care":
            blocks = chunk[1]
            body += struct.pack("<HHII", 0xCAC3, 0, blocks, 12)
        else:
            blocks = 0
            body += struct.pack("<HHII", 0xCAC4, 0, 0, 16) + struct.pack("<I", chunk[1])
        total_blks += blocks
    header = struct.pack(
        "<IHHHHIIII", 0xED26FF3A, 1, 0, 28, 12, blk_sz, total_blks, len(chunks), 0
    )
    return header + bytes(body)


def unsparse(chunks, blk_sz: int = 1024) -> bytes:
    out = bytearray()
    for chunk in chunks:
        if chunk[0] == "raw":
            out += chunk[1]
        elif chunk[0] == "fill":
            out += chunk[1] * (blk_sz // 4 * chunk[2])
        elif chunk[0] == "dont_care":
            out += b"\x00" * (blk_sz * chunk[1])
    return bytes(out)


def build_dlinfo(entries, magic: bytes = b"softw411") -> bytes:
    """
    Assemble a dlinfo.fex blob.

    entries: list of (name, address, length, filename, verify_filename)
    """
    if magic == b"softw411":
        data = bytearray(16384)
        for index, (name, address, length, filename, verify_filename) in enumerate(entries):
            struct.pack_into(
                "<16sIIII16s16sII", data, 32 + index * 72,
                name.encode(), address >> 32, address & 0xFFFFFFFF,
                length >> 32, length & 0xFFFFFFFF,
                filename.encode(), verify_filename.encode(), 0, 1,
            )
    else:
        data = bytearray(20 + 15 * 88)
        for index, (name, address, length, filename, verify_filename) in enumerate(entries):
            struct.pack_into(
                "<12s12sIIII12s16s16sI", data, 20 + index * 88,
                b"DISK", name.encode(), address >> 32, address & 0xFFFFFFFF,
                length >> 32, length & 0xFFFFFFFF,
                b"", filename.encode(), verify_filename.encode(), 0,
            )
    struct.pack_into("<II8sI", data, 0, 0, 0x100, magic, len(entries))
    struct.pack_into("<I", data, 0, crc32(bytes(data[4:])))
    return bytes(data)


# -- firmware layout used by the flasher tests -------------------------------

MBR = bytes(range(256)) * 256
FES1 = b"FES1" + bytes(252)
UBOOT = bytes(range(256)) * 4
BOOT0 = b"BOOT0".ljust(512, b"\x00")
BOOT_DATA = bytes((i * 7) & 0xFF for i in range(4096))
SYSTEM_CHUNKS = [
    ("raw", b"\xA5" * 2048),
    ("dont_care", 2),
    ("fill", b"\xDD\xCC\xBB\xAA", 2),
    ("raw", bytes(range(256)) * 8),
    ("crc", 0),
]
UDISK_DATA = b"\x5A" * 1024

PLAN = [
    ("boot", 0x40, 8, "BOOT_FEX00000000", "VBOOT_FEX0000000"),
    ("system", 0x100, 16, "SYSTEM_FEX000000", "VSYSTEM_FEX00000"),
    ("UDISK", 0x200, 2, "UDISK_FEX0000000", ""),
]


def firmware_items(legacy: bool = False, with_dlinfo: bool = True):
    system = build_sparse(SYSTEM_CHUNKS)
    system_raw = unsparse(SYSTEM_CHUNKS)
    items = [
        ("COMMON", "SYS_CONFIG100000", "sys_config.fex", b"[platform]\n"),
        ("12345678", "1234567890___MBR", "sunxi_mbr.fex", MBR),
        ("BOOT", "BOOT0_0000000000", "boot0_nand.fex", BOOT0),
        ("12345678", "UBOOT_0000000000", "u-boot.fex", UBOOT),
        ("RFSFAT16", "BOOT_FEX00000000", "boot.fex", BOOT_DATA),
        ("RFSFAT16", "VBOOT_FEX0000000", "vboot.fex", struct.pack("<I", crc32(BOOT_DATA))),
        ("RFSFAT16", "SYSTEM_FEX000000", "system.fex", system),
        ("RFSFAT16", "VSYSTEM_FEX00000", "vsystem.fex", struct.pack("<I", crc32(system_raw))),
        ("RFSFAT16", "UDISK_FEX0000000", "udisk.fex", UDISK_DATA),
    ]
    if with_dlinfo:
        items.insert(1, ("12345678", "DLINFO_FEX000000", "dlinfo.fex", build_dlinfo(PLAN)))
    if not legacy:
        items.insert(2, ("FES", "FES_1-0000000000", "fes1.fex", FES1))
    return items


@pytest.fixture
def fast_config():
    """Config with small chunks and no waiting."""
    return Config(
        max_chunk=4096,
        verify_poll=RetryPolicy(attempts=5),
        reconnect=RetryPolicy(attempts=3),
        reconnect_settle=0,
        backpressure_interval=0.001,
        stream_slice=8192,
    )


@pytest.fixture
def fel_device():
    return FakeFelDevice(DeviceMode.FEL)


@pytest.fixture
def fes_device():
    return FakeFelDevice(DeviceMode.FES)


@pytest.fixture
def fel_session(fel_device, fast_config):
    return Session(fel_device.connect(), fast_config)


@pytest.fixture
def fes_session(fes_device, fast_config):
    return Session(fes_device.connect(), fast_config)


@pytest.fixture
def make_session_factory(fast_config):
    """Return a factory builder: make_session_factory(device, config=None)."""
    def make(device: FakeFelDevice, config: Optional[Config] = None):
        return lambda: Session(device.connect(), config or fast_config)
    return make


@pytest.fixture
def xor_cipher():
    return XorCipher()


@pytest.fixture
def make_image(tmp_path):
    """Write an image built from items to tmp_path and return its path."""
    def make(items, image_format: int = IMAGE_FORMAT_V1, cipher=None, name: str = "firmware.img"):
        path = tmp_path / name
        path.write_bytes(build_image(items, image_format, cipher))
        return path
    return make


@pytest.fixture
def make_sparse():
    return build_sparse


@pytest.fixture
def make_dlinfo():
    return build_dlinfo


@pytest.fixture
def firmware(make_image):
    """A complete boot 2.0 image plus the expected partition contents."""
    return SimpleNamespace(
        path=make_image(firmware_items()),
        make_items=firmware_items,
        mbr=MBR,
        fes1=FES1,
        uboot=UBOOT,
        boot0=BOOT0,
        boot=BOOT_DATA,
        system_chunks=SYSTEM_CHUNKS,
        system=unsparse(SYSTEM_CHUNKS),
        udisk=UDISK_DATA,
        plan=PLAN,
    )
