"""
Utility modules for fel_flasher.

This package groups pure helpers that are shared across image parsing and
the flasher.
"""

from .crypto import CIPHER_BLOCK_SIZE, Cipher, KeyId, crc32, load_cipher, pad_to_block

__all__ = [
    "CIPHER_BLOCK_SIZE",
    "Cipher",
    "KeyId",
    "crc32",
    "load_cipher",
    "pad_to_block",
]
