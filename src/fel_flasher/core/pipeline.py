"""
Producer/consumer pipeline for partition writes.

The producer thread reads (and, for sparse images, decodes) the source item
into a FIFO queue; the consumer thread pops records in order and writes
them to storage through the command layer. The producer sleeps while more
than Config.queue_limit bytes are queued.

The consumer keeps one data record back so that Tag.FINISH ends up on the
last record that actually carries data, using the chunk count declared
before the transfer starts. DONT_CARE records only move the address.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from fel_flasher.config import Config
from fel_flasher.errors import ProtocolFatal
from fel_flasher.image.container import ImageContainer, ImageItem
from fel_flasher.image.sparse import ChunkType, SparseChunk, SparseImage
from fel_flasher.protocol.commands import FelCommands
from fel_flasher.protocol.constants import DeviceMode, Direction
from fel_flasher.protocol.transfer import TransferOperation

logger = logging.getLogger(__name__)

# Bytes of an item inspected to detect a sparse image
SPARSE_PROBE_SIZE = 64

PercentCallback = Callable[[int], None]

# Marks the end of the producer's output (normal or not)
_END = object()


@dataclass
class PipelineStats:
    chunks: int = 0
    bytes_written: int = 0
    bytes_skipped: int = 0
    writes: int = 0


class PartitionPipeline:
    """
    Writes one partition with a producer and a consumer thread.

    Example:
        pipeline = PartitionPipeline(commands, config, percent_cb)
        stats = pipeline.write_item(container, item, address=0x8000)
    """

    def __init__(
        self,
        commands: FelCommands,
        config: Optional[Config] = None,
        percent_cb: Optional[PercentCallback] = None,
    ):
        self.commands = commands
        self.config = config or commands.config
        self.percent_cb = percent_cb
        self._queue: "queue.Queue" = queue.Queue()
        self._queued_bytes = 0
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._errors: List[BaseException] = []

    @property
    def queued_bytes(self) -> int:
        with self._lock:
            return self._queued_bytes

    def _end_address(self, address: int, length: int) -> int:
        return TransferOperation(
            direction=Direction.PUSH,
            mode=DeviceMode.FES,
            address=address,
            total_length=length,
            max_chunk=self.config.max_chunk,
        ).end_address()

    def _fail(self, error: BaseException) -> None:
        with self._lock:
            self._errors.append(error)
        self._stop.set()

    # -- producer ----------------------------------------------------------

    def _produce(self, source: Iterable[SparseChunk]) -> None:
        try:
            for chunk in source:
                while (self.queued_bytes > self.config.queue_limit
                       and not self._stop.is_set()):
                    time.sleep(self.config.backpressure_interval)
                if self._stop.is_set():
                    return
                with self._lock:
                    self._queued_bytes += len(chunk.data or b"")
                self._queue.put(chunk)
        except Exception as e:
            logger.debug(f"Producer failed: {e}")
            self._fail(e)
        finally:
            self._queue.put(_END)

    # -- consumer ----------------------------------------------------------

    def _consume(self, declared: int, address: int, total: int, stats: PipelineStats) -> None:
        pending: Optional[bytes] = None
        pending_address = address
        cursor = address
        done = 0
        last_percent = -1

        def report(count: int) -> None:
            nonlocal done, last_percent
            done += count
            if self.percent_cb and total:
                percent = min(100, done * 100 // total)
                if percent != last_percent:
                    last_percent = percent
                    self.percent_cb(percent)

        def flush(finish: bool) -> None:
            nonlocal pending
            self.commands.write(
                pending_address,
                pending,
                mode=DeviceMode.FES,
                suppress_finish=not finish,
            )
            stats.writes += 1
            stats.bytes_written += len(pending)
            report(len(pending))
            pending = None

        try:
            while stats.chunks < declared:
                record = self._queue.get()
                if record is _END:
                    break
                stats.chunks += 1
                with self._lock:
                    self._queued_bytes -= len(record.data or b"")

                if record.kind == ChunkType.DONT_CARE or record.data is None:
                    cursor = self._end_address(cursor, record.length)
                    stats.bytes_skipped += record.length
                    report(record.length)
                    continue
                if not record.data:
                    continue

                if pending is not None:
                    flush(finish=False)
                pending = record.data
                pending_address = cursor
                cursor = self._end_address(cursor, len(record.data))

            if self._stop.is_set():
                return
            if stats.chunks < declared:
                raise ProtocolFatal(
                    f"Source ended after {stats.chunks} of {declared} chunks"
                )
            if pending is not None:
                flush(finish=True)
        except Exception as e:
            logger.debug(f"Consumer failed: {e}")
            self._fail(e)

    # -- entry points ------------------------------------------------------

    def run(
        self,
        source: Iterable[SparseChunk],
        declared: int,
        address: int,
        total: int,
    ) -> PipelineStats:
        """
        Write `declared` records from `source` starting at sector `address`.

        Args:
            source: Records in write order; iterated on the producer thread
            declared: Number of records the source will produce
            address: Start sector
            total: Output bytes, for percent reporting

        Raises:
            Whatever either thread failed with, on the calling thread
        """
        stats = PipelineStats()
        producer = threading.Thread(
            target=self._produce, args=(source,), name="fel-producer", daemon=True
        )
        consumer = threading.Thread(
            target=self._consume,
            args=(declared, address, total, stats),
            name="fel-consumer",
            daemon=True,
        )
        producer.start()
        consumer.start()
        consumer.join()
        # The consumer may stop early; release a producer waiting on backpressure
        self._stop.set()
        producer.join()

        if self._errors:
            raise self._errors[0]
        return stats

    def write_item(self, container: ImageContainer, item: ImageItem, address: int) -> PipelineStats:
        """
        Write an image item to storage, unsparsing it when it is a sparse image.
        """
        prefix = container.read_item(item, SPARSE_PROBE_SIZE)
        if SparseImage.is_valid(prefix):
            with container.open_item(item) as stream:
                image = SparseImage(stream)
                logger.info(
                    f"Writing sparse item {item.name}: {image.chunk_count()} chunks, "
                    f"{image.final_size()} bytes"
                )
                return self.run(
                    image.iter_chunks(materialize=False),
                    image.chunk_count(),
                    address,
                    image.final_size(),
                )

        slice_size = self.config.stream_slice
        declared = -(-item.length // slice_size)
        logger.info(f"Writing raw item {item.name}: {item.length} bytes")
        source = (
            SparseChunk(ChunkType.RAW, data, len(data))
            for data in container.iter_item(item, slice_size)
        )
        return self.run(source, declared, address, item.length)
