"""
Runtime configuration for fel_flasher.

Config is immutable and passed explicitly to the engine, the command layer
and the flasher. Use Config.replace() to derive a variant.
"""

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Tuple, Type, TypeVar

from fel_flasher.protocol.constants import MAX_CHUNK, USB_PRODUCT_ID, USB_VENDOR_ID

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry/poll schedule.

    Attributes:
        attempts: Total number of attempts (>= 1)
        interval: Seconds to wait before the second attempt
        backoff: Multiplier applied to the interval after every attempt
    """
    attempts: int = 1
    interval: float = 0.0
    backoff: float = 1.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError(f"RetryPolicy needs at least 1 attempt, got {self.attempts}")
        if self.interval < 0:
            raise ValueError(f"RetryPolicy interval must be >= 0, got {self.interval}")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (0-based) failed attempt."""
        return self.interval * (self.backoff ** attempt)

    def __iter__(self) -> Iterator[int]:
        """
        Yield attempt numbers, sleeping between them.

        Example:
            for attempt in config.verify_poll:
                if poll():
                    break
            else:
                raise VerifyTimeout(...)
        """
        for attempt in range(self.attempts):
            if attempt:
                wait = self.delay(attempt - 1)
                if wait:
                    time.sleep(wait)
            yield attempt

    def call(
        self,
        func: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Call func until it succeeds or attempts run out.

        The last exception is re-raised once attempts run out.
        """
        for attempt in self:
            try:
                return func()
            except retry_on as e:
                if attempt + 1 >= self.attempts:
                    raise
                logger.debug(f"Attempt {attempt + 1}/{self.attempts} failed: {e}")
                if on_retry:
                    on_retry(attempt, e)
        raise AssertionError("unreachable")


@dataclass(frozen=True)
class Config:
    """
    Tunables for a flashing session.

    Attributes:
        vendor_id: USB vendor id of the device
        product_id: USB product id of the device
        timeout: Default per-exchange timeout in seconds
        long_timeout: Timeout for slow trailing reads (erase, bootloader write)
        max_chunk: Largest payload per exchange
        transfer_retry: Re-entry policy when the initial request is interrupted
        verify_poll: Polling schedule for verify_status
        reconnect: Schedule for reopening the device after booting to FES
        reconnect_settle: Seconds to wait before the first reconnect attempt
        crc_retry: Attempts per partition when the post-write CRC mismatches
        format_threshold: Erase time (s) above which storage was formatted anyway
        queue_limit: Bytes queued by the pipeline producer before it waits
        backpressure_interval: Producer sleep while the queue is full
        stream_slice: Slice size when streaming a non-sparse item
        storage: "nand" or "card", selects the boot0 image
        skip_partitions: Partitions left untouched unless formatting
    """
    vendor_id: int = USB_VENDOR_ID
    product_id: int = USB_PRODUCT_ID
    timeout: float = 5.0
    long_timeout: float = 60.0
    max_chunk: int = MAX_CHUNK
    transfer_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=2))
    verify_poll: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(attempts=10, interval=0.5)
    )
    reconnect: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(attempts=10, interval=1.0)
    )
    reconnect_settle: float = 3.0
    crc_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=3))
    format_threshold: float = 30.0
    queue_limit: int = 128 * 1024 * 1024
    backpressure_interval: float = 0.5
    stream_slice: int = 1024 * 1024
    storage: str = "nand"
    skip_partitions: Tuple[str, ...] = ("UDISK",)

    def __post_init__(self):
        if self.max_chunk <= 0:
            raise ValueError(f"max_chunk must be positive, got {self.max_chunk}")
        if self.storage not in ("nand", "card"):
            raise ValueError(f"storage must be 'nand' or 'card', got {self.storage!r}")
        # an erase that outlasts long_timeout fails the status read first
        if self.format_threshold >= self.long_timeout:
            raise ValueError(
                f"format_threshold ({self.format_threshold}s) must be below "
                f"long_timeout ({self.long_timeout}s)"
            )

    def replace(self, **changes) -> "Config":
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **changes)

    @property
    def boot0_file(self) -> str:
        return "boot0_nand.fex" if self.storage == "nand" else "boot0_sdcard.fex"
