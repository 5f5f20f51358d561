"""
Shared cryptographic helpers.

Firmware images may be encrypted with a block cipher keyed per section
(header, item table, item data). The cipher itself is supplied by the
caller: anything with a decrypt(data, key_id) method will do. Data passed
to decrypt() is always a multiple of CIPHER_BLOCK_SIZE bytes.
"""

from __future__ import annotations

import importlib
import zlib
from enum import Enum
from typing import Protocol, runtime_checkable

CIPHER_BLOCK_SIZE = 16


class KeyId(Enum):
    """Which key to decrypt a section of the image with."""
    HEADER = "header"
    ITEM = "item"
    DATA = "data"


@runtime_checkable
class Cipher(Protocol):
    """Block-cipher decryptor for firmware images."""

    def decrypt(self, data: bytes, key_id: KeyId) -> bytes:
        ...


def pad_to_block(data: bytes, block: int = CIPHER_BLOCK_SIZE) -> bytes:
    """Zero-pad data to a multiple of `block` bytes."""
    rem = len(data) % block
    if rem:
        data += b"\x00" * (block - rem)
    return data


def crc32(data: bytes, value: int = 0) -> int:
    """Standard CRC-32 of data as an unsigned 32-bit value."""
    return zlib.crc32(data, value) & 0xFFFFFFFF


def load_cipher(path: str) -> Cipher:
    """
    Load a cipher from a "module:attribute" path.

    If the attribute is a class it is instantiated without arguments.

    Raises:
        ValueError: If the path is malformed or the object has no decrypt()
        ImportError: If the module cannot be imported
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Cipher must be given as 'module:attribute', got '{path}'")
    module = importlib.import_module(module_name)
    try:
        obj = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'")
    if isinstance(obj, type):
        obj = obj()
    if not isinstance(obj, Cipher):
        raise ValueError(f"'{path}' does not provide decrypt(data, key_id)")
    return obj
