"""
Image Container Model

Parser for LiveSuit/PhoenixSuit firmware images ("IMAGEWTY"): a 1024-byte
header followed by a table of 1024-byte item records, each pointing at one
payload (boot stages, partition table, partition images, ...).

Images may be encrypted. The header, the item table and the payloads are
then decrypted with three different keys through a caller-supplied Cipher.
"""

import logging
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Union

from fel_flasher.errors import CorruptImage
from fel_flasher.utils.crypto import CIPHER_BLOCK_SIZE, Cipher, KeyId, pad_to_block

logger = logging.getLogger(__name__)

IMAGE_MAGIC = b"IMAGEWTY"
IMAGE_HEADER_SIZE = 1024
IMAGE_ITEM_SIZE = 1024
IMAGE_FORMAT_V1 = 0x100
IMAGE_FORMAT_V3 = 0x300

HEADER_V1_FORMAT = "<14I"   # header_size .. item_attr, starting at offset 12
HEADER_V3_FORMAT = "<15I"   # header_size .. item_attr, starting at offset 12

UBOOT_FILE = "u-boot.fex"
FES1_FILE = "fes1.fex"


def _cstr(raw: bytes) -> str:
    """Decode a NUL padded string field."""
    return raw.split(b"\x00", 1)[0].decode("latin-1")


@dataclass(frozen=True)
class ImageHeader:
    """Parsed IMAGEWTY header (both header versions)."""
    image_format: int
    header_size: int
    attributes: int
    image_version: int
    length: int
    align: int
    pid: int
    vid: int
    hw: int
    fw: int
    image_attr: int
    item_size: int
    item_count: int
    item_offset: int

    @classmethod
    def unpack(cls, data: bytes) -> "ImageHeader":
        if len(data) < IMAGE_HEADER_SIZE or data[:8] != IMAGE_MAGIC:
            raise CorruptImage("Unrecognized image format")
        image_format = struct.unpack_from("<I", data, 8)[0]
        if image_format == IMAGE_FORMAT_V1:
            (header_size, attributes, image_version, len_low, align, pid, vid, hw, fw,
             image_attr, item_size, item_count, item_offset, _) = struct.unpack_from(
                HEADER_V1_FORMAT, data, 12)
            length = len_low
        else:
            (header_size, attributes, image_version, len_low, len_hi, align, pid, vid,
             hw, fw, image_attr, item_size, item_count, item_offset, _) = struct.unpack_from(
                HEADER_V3_FORMAT, data, 12)
            length = len_low | (len_hi << 32)
        return cls(
            image_format=image_format,
            header_size=header_size,
            attributes=attributes,
            image_version=image_version,
            length=length,
            align=align,
            pid=pid,
            vid=vid,
            hw=hw,
            fw=fw,
            image_attr=image_attr,
            item_size=item_size,
            item_count=item_count,
            item_offset=item_offset,
        )


@dataclass(frozen=True)
class ImageItem:
    """
    One entry of the item table.

    Attributes:
        index: Position in the item table
        main_type: e.g. "COMMON", "12345678"
        sub_type: Signature used by the flash plan, e.g. "SYSTEM_FEX000000"
        path: Original path inside the image, e.g. "12345678_SYSTEM_FEX\\system.fex"
        data_len: Stored payload length
        file_len: Original file length
        offset: Absolute offset of the payload in the image
    """
    index: int
    version: int
    item_size: int
    main_type: str
    sub_type: str
    attributes: int
    path: str
    data_len: int
    file_len: int
    offset: int
    crc: int = 0
    encrypt_id: bytes = field(default=b"", repr=False)

    @property
    def name(self) -> str:
        """Trailing path component (split on both '/' and '\\')."""
        return self.path.replace("\\", "/").rsplit("/", 1)[-1]

    @property
    def signature(self) -> str:
        return self.sub_type

    @property
    def length(self) -> int:
        return self.data_len

    @classmethod
    def unpack(cls, data: bytes, index: int, image_format: int) -> "ImageItem":
        if len(data) != IMAGE_ITEM_SIZE:
            raise CorruptImage(
                f"Item {index}: expected {IMAGE_ITEM_SIZE} bytes, got {len(data)}"
            )
        version, item_size = struct.unpack_from("<II", data, 0)
        main_type = data[8:16].decode("latin-1").rstrip(" \x00")
        sub_type = data[16:32].decode("latin-1").rstrip("\x00")
        attributes = struct.unpack_from("<I", data, 32)[0]

        if image_format == IMAGE_FORMAT_V1:
            data_len, file_len, offset, _ = struct.unpack_from("<4I", data, 36)
            path = _cstr(data[52:52 + 256])
            return cls(index, version, item_size, main_type, sub_type, attributes,
                       path, data_len, file_len, offset)

        path = _cstr(data[36:36 + 256])
        (data_lo, data_hi, file_lo, file_hi,
         off_lo, off_hi) = struct.unpack_from("<6I", data, 292)
        encrypt_id = data[316:380]
        crc = struct.unpack_from("<I", data, 380)[0]
        return cls(
            index=index,
            version=version,
            item_size=item_size,
            main_type=main_type,
            sub_type=sub_type,
            attributes=attributes,
            path=path,
            data_len=data_lo | (data_hi << 32),
            file_len=file_lo | (file_hi << 32),
            offset=off_lo | (off_hi << 32),
            crc=crc,
            encrypt_id=encrypt_id,
        )


class ItemStream:
    """
    Seekable read-only view over one item's payload.

    Opens its own file handle, so several streams (e.g. one per worker
    thread) can be used at the same time. Encrypted payloads are decrypted
    in CIPHER_BLOCK_SIZE-aligned blocks relative to the item start.
    """

    def __init__(self, path: Union[str, Path], item: ImageItem, cipher: Optional[Cipher] = None):
        self.item = item
        self.cipher = cipher
        self._file: BinaryIO = open(path, "rb")
        self._pos = 0

    def __len__(self) -> int:
        return self.item.length

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        if whence == os.SEEK_SET:
            pos = offset
        elif whence == os.SEEK_CUR:
            pos = self._pos + offset
        elif whence == os.SEEK_END:
            pos = self.item.length + offset
        else:
            raise ValueError(f"Invalid whence {whence}")
        if pos < 0:
            raise ValueError(f"Negative seek position {pos}")
        self._pos = pos
        return pos

    def read(self, size: int = -1) -> bytes:
        remaining = self.item.length - self._pos
        if remaining <= 0:
            return b""
        if size is None or size < 0 or size > remaining:
            size = remaining

        if self.cipher is None:
            self._file.seek(self.item.offset + self._pos)
            data = self._file.read(size)
        else:
            start = self._pos - (self._pos % CIPHER_BLOCK_SIZE)
            end = self._pos + size
            self._file.seek(self.item.offset + start)
            raw = pad_to_block(self._file.read(end - start))
            plain = self.cipher.decrypt(raw, KeyId.DATA)
            data = plain[self._pos - start:end - start]

        if len(data) != size:
            raise CorruptImage(
                f"Item '{self.item.path}' truncated: wanted {size} bytes at "
                f"0x{self.item.offset + self._pos:X}, got {len(data)}"
            )
        self._pos += len(data)
        return data

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> "ItemStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ImageContainer:
    """
    A firmware image on disk.

    Example:
        image = ImageContainer.open("firmware.img")
        item = image.item_by_file("u-boot.fex")
        uboot = image.read_item(item)
    """

    def __init__(
        self,
        path: Union[str, Path],
        header: ImageHeader,
        items: List[ImageItem],
        cipher: Optional[Cipher] = None,
        encrypted: bool = False,
    ):
        self.path = Path(path)
        self.header = header
        self.items = items
        self.cipher = cipher
        self.encrypted = encrypted

    @property
    def image_format(self) -> int:
        return self.header.image_format

    @classmethod
    def open(cls, path: Union[str, Path], cipher: Optional[Cipher] = None) -> "ImageContainer":
        """
        Parse the header and item table of an image.

        Args:
            path: Image file
            cipher: Required when the image is encrypted

        Raises:
            CorruptImage: If the image is unreadable, encrypted without a
                cipher, fails to decrypt or has no items
        """
        path = Path(path)
        with open(path, "rb") as f:
            head = f.read(IMAGE_HEADER_SIZE)
            if len(head) < IMAGE_HEADER_SIZE:
                raise CorruptImage(
                    f"Image header truncated: {len(head)} of {IMAGE_HEADER_SIZE} bytes"
                )

            encrypted = head[:8] != IMAGE_MAGIC
            if encrypted:
                if cipher is None:
                    raise CorruptImage("Image is encrypted and no cipher was given")
                logger.info("Image is encrypted, decrypting header")
                head = cipher.decrypt(head, KeyId.HEADER)
                if head[:8] != IMAGE_MAGIC:
                    raise CorruptImage("Failed to decrypt image")

            header = ImageHeader.unpack(head)
            if header.item_count == 0:
                raise CorruptImage("Firmware contains no items")

            items = []
            for index in range(header.item_count):
                raw = f.read(IMAGE_ITEM_SIZE)
                if len(raw) != IMAGE_ITEM_SIZE:
                    raise CorruptImage(
                        f"Item table truncated at item {index} "
                        f"(offset 0x{IMAGE_HEADER_SIZE + index * IMAGE_ITEM_SIZE:X})"
                    )
                if encrypted:
                    raw = cipher.decrypt(raw, KeyId.ITEM)
                items.append(ImageItem.unpack(raw, index, header.image_format))

        logger.debug(
            f"Image {path.name}: format 0x{header.image_format:X}, {len(items)} items"
        )
        return cls(path, header, items, cipher if encrypted else None, encrypted)

    def item_by_file(self, name: str) -> Optional[ImageItem]:
        """First item whose trailing path component equals name."""
        for item in self.items:
            if item.name == name:
                return item
        return None

    def item_by_signature(self, signature: str) -> Optional[ImageItem]:
        """First item whose sub_type equals signature."""
        signature = signature.rstrip("\x00")
        for item in self.items:
            if item.sub_type == signature:
                return item
        return None

    def open_item(self, item: ImageItem) -> ItemStream:
        return ItemStream(self.path, item, self.cipher)

    def read_item(self, item: ImageItem, length: Optional[int] = None) -> bytes:
        """Whole payload, or its first `length` bytes (clamped to the item)."""
        if length is None or length > item.length:
            length = item.length
        with self.open_item(item) as stream:
            return stream.read(length)

    def iter_item(
        self,
        item: ImageItem,
        chunk_size: int,
        length: Optional[int] = None,
    ) -> Iterator[bytes]:
        """Stream the payload in chunk_size slices (length clamped to the item)."""
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if length is None or length > item.length:
            length = item.length
        with self.open_item(item) as stream:
            remaining = length
            while remaining > 0:
                data = stream.read(min(chunk_size, remaining))
                remaining -= len(data)
                yield data

    def is_legacy(self) -> bool:
        """True unless the image has both u-boot.fex and fes1.fex (boot 2.0)."""
        return not (self.item_by_file(UBOOT_FILE) and self.item_by_file(FES1_FILE))
