"""
FEL/FES protocol constants.

Command codes, transfer tags, device modes and the other enumerations
shared by the frame codec, the command layer and the flasher. Values are
bit-exact with the boot ROM and the FES loader.
"""

from enum import IntEnum
from typing import FrozenSet, Iterable, Optional, Union

# USB identity of a device in FEL/FES mode
USB_VENDOR_ID = 0x1F3A
USB_PRODUCT_ID = 0xEFE8

# Transfer limits
MAX_CHUNK = 65536
SECTOR_SIZE = 512

# Value reported in VerifyStatusResponse.flags when the device is done
VERIFY_STATUS_DONE = 0x6A617603

# Boot stages used by the flasher
FES1_ADDRESS = 0x2000
FES1_MAX_SIZE = 16384
UBOOT_ADDRESS = 0x4A000000
UBOOT_WORK_MODE_OFFSET = 0xE0
MBR_SIZE = 65536


class UsbCommand(IntEnum):
    """Direction byte in the AWUC envelope"""
    READ = 0x11
    WRITE = 0x12


class FelCommand(IntEnum):
    """Commands understood by the boot ROM (FEL mode)"""
    VERIFY_DEVICE = 0x001
    SWITCH_ROLE = 0x002
    IS_READY = 0x003
    GET_CMD_SET_VER = 0x004
    DISCONNECT = 0x010
    DOWNLOAD = 0x101
    RUN = 0x102
    UPLOAD = 0x103


class FesCommand(IntEnum):
    """Commands understood by the FES loader (U-Boot in USB product mode)"""
    TRANSMITE = 0x201
    RUN = 0x202
    INFO = 0x203
    GET_MSG = 0x204
    UNREG_FED = 0x205
    DOWNLOAD = 0x206
    UPLOAD = 0x207
    VERIFY = 0x208
    QUERY_STORAGE = 0x209
    FLASH_SET_ON = 0x20A
    FLASH_SET_OFF = 0x20B
    VERIFY_VALUE = 0x20C
    VERIFY_STATUS = 0x20D
    FLASH_SIZE_PROBE = 0x20E
    TOOL_MODE = 0x20F
    MEMSET = 0x210
    PMU = 0x211
    UNSEQMEM_READ = 0x212
    UNSEQMEM_WRITE = 0x213


class Tag(IntEnum):
    """
    Transfer tags carried in the request flags field.

    Several tags may be OR-ed together; see tag_mask().
    """
    NONE = 0x0
    DRAM = 0x7F00
    MBR = 0x7F01
    UBOOT = 0x7F02
    BOOT1 = 0x7F02
    BOOT0 = 0x7F03
    ERASE = 0x7F04
    PMU_SET = 0x7F05
    UNSEQ_MEM_FOR_READ = 0x7F06
    UNSEQ_MEM_FOR_WRITE = 0x7F07
    FULL_SIZE = 0x7F10
    FLASH = 0x8000
    FINISH = 0x10000
    START = 0x20000


class DeviceMode(IntEnum):
    """Mode reported by verify_device"""
    NULL = 0
    FEL = 1
    FES = 2
    UPDATE_COOL = 3
    UPDATE_HOT = 4

    # The loader names this mode "srv"
    SRV = 2


class RunContext(IntEnum):
    """Flags for FES run"""
    NONE = 0x0
    HAS_PARAM = 0x1
    FET = 0x10
    GEN_CODE = 0x20
    FED = 0x30


class ToolAction(IntEnum):
    """What the loader does after set_tool_mode"""
    NONE = 0
    NORMAL = 1
    REBOOT = 2
    SHUTDOWN = 3
    REUPDATE = 4
    BOOT = 5
    SPRITE_TEST = 6


class WorkMode(IntEnum):
    """U-Boot work modes"""
    NORMAL = 0x0
    USB_TOOL_PRODUCT = 0x04
    USB_TOOL_UPDATE = 0x08
    USB_PRODUCT = 0x10
    CARD_PRODUCT = 0x11
    USB_DEBUG = 0x12
    SPRITE_RECOVERY = 0x13
    USB_UPDATE = 0x20
    ERASE_KEY = 0x20
    OUTER_UPDATE = 0x21


class MediaIndex(IntEnum):
    """Target medium of a FES_TRANSMITE request"""
    DRAM = 0
    PHYSICAL = 1
    LOG = 2
    NAND = 2


class TransmiteFlag(IntEnum):
    """Direction/phase flags of a FES_TRANSMITE request"""
    WRITE = 0x10
    READ = 0x20
    START = 0x40
    FINISH = 0x80


class Direction(IntEnum):
    """Data direction of a transfer"""
    PUSH = 0
    PULL = 1


BOARD_NAMES = {
    0x1610: "A31s",
    0x1623: "A10",
    0x1625: "A13/A10s",
    0x1633: "A31",
    0x1639: "A80/A33",
    0x1650: "A23",
    0x1651: "A20",
}


TagsArg = Union[None, int, Tag, Iterable[Union[int, Tag]]]


def normalize_tags(tags: TagsArg) -> FrozenSet[Tag]:
    """
    Normalize a tag argument into a set of Tag values.

    Accepts None, a single tag or an iterable of tags.

    Raises:
        ValueError: If a value is not a known tag.
    """
    if tags is None:
        return frozenset()
    if isinstance(tags, int):
        tags = [tags]
    result = set()
    for tag in tags:
        result.add(Tag(tag))
    result.discard(Tag.NONE)
    return frozenset(result)


def tag_mask(tags: TagsArg) -> int:
    """OR all tags together into the 32-bit flags value."""
    mask = 0
    for tag in normalize_tags(tags):
        mask |= int(tag)
    return mask


def board_name(board_id: int) -> str:
    """Return a human-readable SoC name for a verify_device board value."""
    soc = (board_id >> 8) & 0xFFFF
    name = BOARD_NAMES.get(soc)
    if name is None:
        return f"Unknown (0x{soc:04X})"
    return name


def board_revision(board_id: int) -> int:
    return board_id & 0xFF


def parse_device_mode(value: Optional[int]) -> DeviceMode:
    """Map a raw mode value to DeviceMode, falling back to NULL."""
    try:
        return DeviceMode(value or 0)
    except ValueError:
        return DeviceMode.NULL
