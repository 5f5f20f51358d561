"""
Download info (dlinfo.fex) parser.

dlinfo.fex lists the partitions to flash, in order: name, start sector,
size, the image signature holding the data and the signature of the
companion item holding the expected CRC.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import List

from fel_flasher.errors import CorruptImage
from fel_flasher.image.container import ImageContainer
from fel_flasher.utils.crypto import crc32

logger = logging.getLogger(__name__)

DLINFO_FILE = "dlinfo.fex"

MAGIC_411 = b"softw411"
MAGIC_311 = b"softw311"

DLINFO_HEAD_FORMAT = "<II8sI"
DLINFO_HEAD_SIZE = struct.calcsize(DLINFO_HEAD_FORMAT)      # 20

ITEM_411_FORMAT = "<16sIIII16s16sII"
ITEM_411_SIZE = struct.calcsize(ITEM_411_FORMAT)            # 72
ITEM_411_COUNT = 120
STAMP_SIZE = 12
DLINFO_411_SIZE = 16384

ITEM_311_FORMAT = "<12s12sIIII12s16s16sI"
ITEM_311_SIZE = struct.calcsize(ITEM_311_FORMAT)            # 88
ITEM_311_COUNT = 15
DLINFO_311_SIZE = DLINFO_HEAD_SIZE + ITEM_311_COUNT * ITEM_311_SIZE


def _text(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("latin-1").strip()


@dataclass(frozen=True)
class FlashPlanEntry:
    """
    One partition of the flash plan.

    Attributes:
        name: Partition name, e.g. "system"
        address: Start sector on the storage
        length: Partition size in sectors
        filename: Signature of the item with the partition data
        verify_filename: Signature of the item with the expected CRC
        encrypt: Non-zero when the partition is stored encrypted
        verify: Non-zero when the partition should be verified after writing
    """
    name: str
    address: int
    length: int
    filename: str
    verify_filename: str = ""
    encrypt: int = 0
    verify: int = 1


@dataclass
class DownloadInfo:
    crc: int
    version: int
    magic: str
    entries: List[FlashPlanEntry] = field(default_factory=list)
    crc_ok: bool = True

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def parse(cls, data: bytes) -> "DownloadInfo":
        """
        Parse a dlinfo.fex blob.

        Raises:
            CorruptImage: If the magic is unknown or the blob is truncated
        """
        if len(data) < DLINFO_HEAD_SIZE:
            raise CorruptImage(f"dlinfo too short: {len(data)} bytes")
        crc, version, magic, item_count = struct.unpack_from(DLINFO_HEAD_FORMAT, data, 0)

        if magic == MAGIC_411:
            size = DLINFO_411_SIZE
            offset = DLINFO_HEAD_SIZE + STAMP_SIZE
            fmt, item_size, max_items = ITEM_411_FORMAT, ITEM_411_SIZE, ITEM_411_COUNT
        elif magic == MAGIC_311:
            size = DLINFO_311_SIZE
            offset = DLINFO_HEAD_SIZE
            fmt, item_size, max_items = ITEM_311_FORMAT, ITEM_311_SIZE, ITEM_311_COUNT
        else:
            raise CorruptImage(f"dlinfo has unknown magic {magic!r}")

        if len(data) < size:
            raise CorruptImage(f"dlinfo truncated: {len(data)} of {size} bytes")

        entries = []
        for index in range(max_items):
            fields = struct.unpack_from(fmt, data, offset + index * item_size)
            if magic == MAGIC_411:
                (name, addr_hi, addr_lo, len_hi, len_lo,
                 filename, verify_filename, encrypt, verify) = fields
            else:
                (_, name, addr_hi, addr_lo, len_hi, len_lo,
                 _, filename, verify_filename, encrypt) = fields
                verify = 1
            name = _text(name)
            if not name:
                continue
            entries.append(FlashPlanEntry(
                name=name,
                address=(addr_hi << 32) | addr_lo,
                length=(len_hi << 32) | len_lo,
                filename=_text(filename),
                verify_filename=_text(verify_filename),
                encrypt=encrypt,
                verify=verify,
            ))
            if len(entries) >= item_count:
                break

        computed = crc32(data[4:size])
        info = cls(
            crc=crc,
            version=version,
            magic=magic.decode("latin-1"),
            entries=entries,
            crc_ok=computed == crc,
        )
        if not info.crc_ok:
            logger.warning(
                f"dlinfo CRC mismatch (stored 0x{crc:08X}, computed 0x{computed:08X})"
            )
        return info


def load_flash_plan(container: ImageContainer) -> DownloadInfo:
    """
    Read the flash plan from an image.

    Raises:
        CorruptImage: If the image has no dlinfo.fex or it cannot be parsed
    """
    item = container.item_by_file(DLINFO_FILE)
    if item is None:
        raise CorruptImage(f"Image has no {DLINFO_FILE}")
    return DownloadInfo.parse(container.read_item(item))
