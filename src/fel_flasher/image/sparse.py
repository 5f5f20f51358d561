"""
Sparse Image Decoder

Reads Android sparse images (magic 0xED26FF3A) as used for the large
partitions of a firmware image, and expands them into raw bytes.

The header and every chunk header are read up front so that the chunk count
is known before decoding starts; payloads are skipped with seek() and only
read while iterating.
"""

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Tuple, Union

from fel_flasher.errors import NotSparse

logger = logging.getLogger(__name__)

SPARSE_MAGIC = 0xED26FF3A
SPARSE_MAJOR_VERSION = 1
SPARSE_HEADER_FORMAT = "<IHHHHIIII"
CHUNK_HEADER_FORMAT = "<HHII"
SPARSE_HEADER_SIZE = struct.calcsize(SPARSE_HEADER_FORMAT)   # 28
CHUNK_HEADER_SIZE = struct.calcsize(CHUNK_HEADER_FORMAT)     # 12

# is_valid() needs the file header plus the first chunk type
MIN_PROBE_SIZE = 32


class ChunkType(IntEnum):
    RAW = 0xCAC1
    FILL = 0xCAC2
    DONT_CARE = 0xCAC3
    CRC32 = 0xCAC4


@dataclass(frozen=True)
class SparseHeader:
    magic: int
    major_version: int
    minor_version: int
    file_hdr_sz: int
    chunk_hdr_sz: int
    blk_sz: int
    total_blks: int
    total_chunks: int
    image_checksum: int

    @classmethod
    def unpack(cls, data: bytes) -> "SparseHeader":
        if len(data) < SPARSE_HEADER_SIZE:
            raise NotSparse(
                f"Not a sparse file (header is {len(data)} bytes, need {SPARSE_HEADER_SIZE})"
            )
        header = cls(*struct.unpack(SPARSE_HEADER_FORMAT, data[:SPARSE_HEADER_SIZE]))
        header.validate()
        return header

    def validate(self) -> None:
        if self.magic != SPARSE_MAGIC:
            raise NotSparse(f"Not a sparse file (magic 0x{self.magic:08X})")
        if self.major_version > SPARSE_MAJOR_VERSION:
            raise NotSparse(f"Not a sparse file (major version {self.major_version})")
        if self.file_hdr_sz != SPARSE_HEADER_SIZE:
            raise NotSparse(f"Not a sparse file (file header size {self.file_hdr_sz})")
        if self.chunk_hdr_sz != CHUNK_HEADER_SIZE:
            raise NotSparse(f"Not a sparse file (chunk header size {self.chunk_hdr_sz})")
        if self.blk_sz == 0 or self.blk_sz % 4:
            raise NotSparse(f"Not a sparse file (block size {self.blk_sz})")


@dataclass(frozen=True)
class ChunkHeader:
    """Chunk record: chunk_sz in output blocks, total_sz in input bytes incl. header."""
    chunk_type: ChunkType
    chunk_sz: int
    total_sz: int


@dataclass(frozen=True)
class SparseChunk:
    """
    One decoded chunk.

    data is None for a DONT_CARE chunk iterated with materialize=False;
    length is always the number of output bytes the chunk stands for.
    """
    kind: ChunkType
    data: Optional[bytes]
    length: int


class SparseImage:
    """
    Sparse image reader over a seekable binary stream.

    Example:
        with open("system.fex", "rb") as f:
            image = SparseImage(f)
            for data, kind in image.each_chunk():
                out.write(data)
    """

    def __init__(self, stream: BinaryIO, offset: int = 0):
        """
        Read and validate the header and index all chunks.

        Args:
            stream: Seekable binary stream
            offset: Position of the sparse header in the stream

        Raises:
            NotSparse: On any header or chunk violation
        """
        self.stream = stream
        self.offset = offset
        self.chunks: List[ChunkHeader] = []

        stream.seek(offset)
        self.header = SparseHeader.unpack(stream.read(SPARSE_HEADER_SIZE))
        for index in range(self.header.total_chunks):
            raw = stream.read(CHUNK_HEADER_SIZE)
            if len(raw) != CHUNK_HEADER_SIZE:
                raise NotSparse(
                    f"Not a sparse file (chunk {index} header truncated at "
                    f"offset 0x{stream.tell():X})"
                )
            chunk_type, _, chunk_sz, total_sz = struct.unpack(CHUNK_HEADER_FORMAT, raw)
            try:
                kind = ChunkType(chunk_type)
            except ValueError:
                raise NotSparse(
                    f"Not a sparse file (chunk {index} has unknown type 0x{chunk_type:04X})"
                )
            if total_sz < CHUNK_HEADER_SIZE:
                raise NotSparse(f"Not a sparse file (chunk {index} total size {total_sz})")
            self.chunks.append(ChunkHeader(kind, chunk_sz, total_sz))
            stream.seek(total_sz - CHUNK_HEADER_SIZE, 1)

        logger.debug(
            f"Sparse image: {self.header.total_chunks} chunks, "
            f"{self.header.total_blks} x {self.header.blk_sz} byte blocks"
        )

    @classmethod
    def open(cls, stream: BinaryIO, offset: int = 0) -> "SparseImage":
        return cls(stream, offset)

    @staticmethod
    def is_valid(data: bytes) -> bool:
        """
        Check whether data starts with a valid sparse header.

        Never raises; fails closed on fewer than 32 bytes.
        """
        if len(data) < MIN_PROBE_SIZE:
            return False
        try:
            SparseHeader.unpack(data[:SPARSE_HEADER_SIZE])
        except NotSparse:
            return False
        return True

    @property
    def block_size(self) -> int:
        return self.header.blk_sz

    @property
    def checksum(self) -> int:
        return self.header.image_checksum

    def final_size(self) -> int:
        """Size of the unsparsed image in bytes."""
        return self.header.total_blks * self.header.blk_sz

    def chunk_count(self) -> int:
        return self.header.total_chunks

    def _read_exact(self, length: int, what: str) -> bytes:
        data = self.stream.read(length)
        if len(data) != length:
            raise NotSparse(
                f"Truncated sparse {what}: expected {length} bytes, got {len(data)}"
            )
        return data

    def iter_chunks(self, materialize: bool = True) -> Iterator[SparseChunk]:
        """
        Decode chunks in order. Restartable: each call seeks back to the start.

        Args:
            materialize: Produce zero buffers for DONT_CARE chunks; when False
                their data is None and the caller skips `length` bytes.
        """
        blk_sz = self.header.blk_sz
        self.stream.seek(self.offset + SPARSE_HEADER_SIZE)
        for chunk in self.chunks:
            self.stream.seek(CHUNK_HEADER_SIZE, 1)
            payload = chunk.total_sz - CHUNK_HEADER_SIZE
            length = chunk.chunk_sz * blk_sz

            if chunk.chunk_type == ChunkType.RAW:
                data = self._read_exact(payload, "raw chunk")
                yield SparseChunk(ChunkType.RAW, data, len(data))
            elif chunk.chunk_type == ChunkType.FILL:
                word = self._read_exact(4, "fill chunk")
                self.stream.seek(payload - 4, 1)
                yield SparseChunk(ChunkType.FILL, word * ((blk_sz // 4) * chunk.chunk_sz), length)
            elif chunk.chunk_type == ChunkType.DONT_CARE:
                self.stream.seek(payload, 1)
                yield SparseChunk(
                    ChunkType.DONT_CARE, b"\x00" * length if materialize else None, length
                )
            else:
                self.stream.seek(payload, 1)
                yield SparseChunk(ChunkType.CRC32, b"", 0)

    def each_chunk(self) -> Iterator[Tuple[bytes, ChunkType]]:
        """Yield (bytes, kind) for every chunk; exactly chunk_count() pairs."""
        for chunk in self.iter_chunks(materialize=True):
            yield chunk.data, chunk.kind

    def dump(self, path: Union[str, Path]) -> int:
        """
        Write the unsparsed image to `path`.

        Returns:
            Number of bytes written.
        """
        written = 0
        with open(path, "wb") as out:
            for data, _ in self.each_chunk():
                out.write(data)
                written += len(data)
        return written
