"""Firmware image formats - LiveSuit container, flash plan and sparse images."""

from .sparse import SparseImage, SparseChunk, ChunkType
from .container import ImageContainer, ImageHeader, ImageItem, ItemStream
from .dlinfo import DownloadInfo, FlashPlanEntry, load_flash_plan

__all__ = [
    "SparseImage",
    "SparseChunk",
    "ChunkType",
    "ImageContainer",
    "ImageHeader",
    "ImageItem",
    "ItemStream",
    "DownloadInfo",
    "FlashPlanEntry",
    "load_flash_plan",
]
