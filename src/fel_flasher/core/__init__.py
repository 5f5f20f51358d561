"""
Core module for fel_flasher.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Address, size and tag parsing (parsing.py)
- Result objects (results.py)
- Progress events and warnings (messages.py)
- The flashing state machine and its write pipeline (flasher.py, pipeline.py)
- Workflows used by the CLI (actions.py)
"""

from .safety import SafetyContext, require_write_permission, WritePermissionError
from .parsing import parse_int, parse_size, parse_tags, parse_mode
from .results import OperationResult
from .messages import (
    EventKind,
    EventLog,
    ProgressEvent,
    MessageLevel,
    WarningCode,
    WarningItem,
    result_to_warnings,
)
from .pipeline import PartitionPipeline
from .flasher import Flasher, FlashState
from .actions import (
    device_status,
    read_memory,
    write_memory,
    run_code,
    set_tool_mode,
    inspect_image,
    extract_item,
    flash_image,
)

__all__ = [
    # Safety
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    # Parsing
    "parse_int",
    "parse_size",
    "parse_tags",
    "parse_mode",
    # Results
    "OperationResult",
    # Messages
    "EventKind",
    "EventLog",
    "ProgressEvent",
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "result_to_warnings",
    # Flashing
    "PartitionPipeline",
    "Flasher",
    "FlashState",
    # Actions
    "device_status",
    "read_memory",
    "write_memory",
    "run_code",
    "set_tool_mode",
    "inspect_image",
    "extract_item",
    "flash_image",
]
