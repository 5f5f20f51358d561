"""
Result objects for core operations.

Every action in core.actions returns an OperationResult instead of raising,
so the CLI can report device, region, checksums and captured log lines the
same way for each command.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any

from fel_flasher.utils.crypto import crc32


@dataclass
class OperationResult:
    """
    Outcome of one device or image operation.

    Attributes:
        ok: False as soon as an error was added
        operation: Name of the operation ("flash", "read_memory", ...)
        device: SoC name reported by the device (e.g. "A20")
        region: Address range touched, e.g. "0x4A000000-0x4A010000"
        bytes_len: Bytes read, written or extracted
        hashes: Checksums as hex strings, keyed by algorithm
        warnings: Non-fatal problems, shown after the command finishes
        errors: Reasons the operation failed
        metadata: Operation-specific values (partitions, header, data, ...)
        logs: Log lines captured while the operation ran
    """
    ok: bool
    operation: str
    device: str = ""
    region: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Record an error; the result is failed from now on."""
        self.errors.append(message)
        self.ok = False

    def record_crc32(self, data: bytes) -> str:
        """Store the CRC32 of data under hashes["crc32"] and return it."""
        value = f"0x{crc32(data):08X}"
        self.hashes["crc32"] = value
        return value

    def with_logs(self, logs: List[str]) -> "OperationResult":
        self.logs = logs
        return self

    @classmethod
    def success(
        cls,
        operation: str,
        device: str = "",
        region: str = "",
        bytes_len: int = 0,
        **kwargs,
    ) -> "OperationResult":
        return cls(
            ok=True,
            operation=operation,
            device=device,
            region=region,
            bytes_len=bytes_len,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        operation: str,
        error: str,
        device: str = "",
        **kwargs,
    ) -> "OperationResult":
        result = cls(ok=False, operation=operation, device=device, **kwargs)
        result.errors.append(error)
        return result
