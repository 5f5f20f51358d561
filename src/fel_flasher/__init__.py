"""
fel-flasher - Firmware flasher for Allwinner SoCs over the FEL/FES USB protocol

Boots a device from FEL into the FES loader and writes a LiveSuit image
(partition table, partitions, bootloaders) to its storage.
"""

__version__ = "0.1.0"

from fel_flasher.errors import FelError, ProtocolError, ProtocolFatal
from fel_flasher.protocol import FelCommands, Session, open_session
from fel_flasher.config import Config, RetryPolicy
from fel_flasher.image import ImageContainer, SparseImage
from fel_flasher.core import Flasher

__all__ = [
    "FelError",
    "ProtocolError",
    "ProtocolFatal",
    "FelCommands",
    "Session",
    "open_session",
    "Config",
    "RetryPolicy",
    "ImageContainer",
    "SparseImage",
    "Flasher",
    "__version__",
]
