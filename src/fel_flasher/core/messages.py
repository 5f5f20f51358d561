"""
Progress events and standardized warnings for fel_flasher.

The flasher reports progress as (message, kind, value) triples through a
callback. EventLog collects them; WarningItem gives recurring warnings a
stable code and a remediation hint for display.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional


class EventKind(Enum):
    """Kind of a progress event."""
    INFO = "info"
    PERCENT = "percent"
    ACTION = "action"
    WARN = "warn"
    ERROR = "error"


EventCallback = Callable[[str, EventKind, Optional[int]], None]


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    kind: EventKind
    value: Optional[int] = None


class EventLog:
    """
    Thread-safe event collector, usable directly as an EventCallback.

    An optional `forward` callback receives every event as well.
    """

    def __init__(self, forward: Optional[EventCallback] = None):
        self.events: List[ProgressEvent] = []
        self.forward = forward
        self._lock = threading.Lock()

    def __call__(self, message: str, kind: EventKind, value: Optional[int] = None) -> None:
        with self._lock:
            self.events.append(ProgressEvent(message, kind, value))
        if self.forward:
            self.forward(message, kind, value)

    def of_kind(self, kind: EventKind) -> List[ProgressEvent]:
        with self._lock:
            return [e for e in self.events if e.kind == kind]

    def messages(self, kind: Optional[EventKind] = None) -> List[str]:
        with self._lock:
            return [e.message for e in self.events if kind is None or e.kind == kind]


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Device
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_DEVICE_MODE = "W_DEVICE_MODE"
    W_RECONNECT_FAILED = "W_RECONNECT_FAILED"

    # Storage
    W_STORAGE_FORMATTED = "W_STORAGE_FORMATTED"
    W_CRC_MISMATCH = "W_CRC_MISMATCH"
    W_VERIFY_TIMEOUT = "W_VERIFY_TIMEOUT"

    # Image
    W_IMAGE_ENCRYPTED = "W_IMAGE_ENCRYPTED"
    W_IMAGE_LEGACY = "W_IMAGE_LEGACY"
    W_ITEM_MISSING = "W_ITEM_MISSING"

    # Safety
    W_WRITE_DISABLED = "W_WRITE_DISABLED"
    W_CONFIRMATION_REQUIRED = "W_CONFIRMATION_REQUIRED"

    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Hold the FEL/recovery key while plugging in USB, then run 'list-devices'.",
    WarningCode.W_DEVICE_MODE:
        "Power cycle the device into FEL mode and retry.",
    WarningCode.W_RECONNECT_FAILED:
        "The device did not come back in FES mode. Check the cable and power supply.",
    WarningCode.W_STORAGE_FORMATTED:
        "User data was erased because the storage layout changed.",
    WarningCode.W_CRC_MISMATCH:
        "Partition was rewritten. Repeated mismatches indicate failing storage.",
    WarningCode.W_VERIFY_TIMEOUT:
        "The device did not report verification in time. Allow more verify polls in Config.verify_poll.",
    WarningCode.W_IMAGE_ENCRYPTED:
        "Provide a cipher with --cipher module:attribute.",
    WarningCode.W_IMAGE_LEGACY:
        "Boot 1.0 images can only be flashed from FES mode.",
    WarningCode.W_ITEM_MISSING:
        "The firmware image is incomplete. Re-download it.",
    WarningCode.W_WRITE_DISABLED:
        "Add --write to perform actual writes.",
    WarningCode.W_CONFIRMATION_REQUIRED:
        "Type 'WRITE' to confirm the operation.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details (--verbose).",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short description
        detail: Longer explanation
        remediation: What the user can do about it
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation:
            self.remediation = WARNING_REMEDIATIONS.get(self.code, "")

    def to_cli_string(self, verbose: bool = False) -> str:
        """Format for CLI output."""
        if verbose:
            lines = [f"[{self.code.value}] {self.title}"]
            if self.detail:
                lines.append(f"   {self.detail}")
            if self.remediation:
                lines.append(f"   -> {self.remediation}")
            return "\n".join(lines)
        return self.title


def classify_message(message: str) -> WarningCode:
    """Guess a warning code from a plain message."""
    msg = message.lower()
    if "crc" in msg and "mismatch" in msg:
        return WarningCode.W_CRC_MISMATCH
    if "formatted" in msg:
        return WarningCode.W_STORAGE_FORMATTED
    if "reconnect" in msg:
        return WarningCode.W_RECONNECT_FAILED
    if "verification" in msg or "verify" in msg:
        return WarningCode.W_VERIFY_TIMEOUT
    if "encrypted" in msg or "decrypt" in msg:
        return WarningCode.W_IMAGE_ENCRYPTED
    if "legacy" in msg:
        return WarningCode.W_IMAGE_LEGACY
    if "no fel device" in msg or "not found" in msg:
        return WarningCode.W_DEVICE_NOT_FOUND
    if "mode" in msg:
        return WarningCode.W_DEVICE_MODE
    if "cannot find item" in msg or "has no" in msg:
        return WarningCode.W_ITEM_MISSING
    return WarningCode.W_UNKNOWN


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert an OperationResult's warnings and errors to WarningItems.

    Args:
        result: OperationResult from core operations

    Returns:
        List of WarningItem objects, warnings first
    """
    items = [
        WarningItem(MessageLevel.WARN, classify_message(msg), msg)
        for msg in result.warnings
    ]
    items.extend(
        WarningItem(MessageLevel.ERROR, classify_message(msg), msg)
        for msg in result.errors
    )
    return items
