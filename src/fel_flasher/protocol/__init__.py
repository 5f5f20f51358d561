"""FEL/FES USB protocol layer - frames, transfer engine and commands."""

from .constants import (
    DeviceMode,
    Direction,
    FelCommand,
    FesCommand,
    MediaIndex,
    RunContext,
    Tag,
    ToolAction,
    TransmiteFlag,
    WorkMode,
    normalize_tags,
    tag_mask,
    board_name,
)
from .frames import (
    UsbRequest,
    UsbResponse,
    FelMessage,
    TransmiteRequest,
    StatusResponse,
    VerifyDeviceResponse,
    VerifyStatusResponse,
)
from .usb_transport import Transport, UsbTransport, list_devices
from .transfer import TransferEngine, TransferOperation
from .commands import FelCommands
from .session import Session, SessionFactory, open_session, usb_session_factory

__all__ = [
    # Constants
    "DeviceMode",
    "Direction",
    "FelCommand",
    "FesCommand",
    "MediaIndex",
    "RunContext",
    "Tag",
    "ToolAction",
    "TransmiteFlag",
    "WorkMode",
    "normalize_tags",
    "tag_mask",
    "board_name",
    # Frames
    "UsbRequest",
    "UsbResponse",
    "FelMessage",
    "TransmiteRequest",
    "StatusResponse",
    "VerifyDeviceResponse",
    "VerifyStatusResponse",
    # Transport
    "Transport",
    "UsbTransport",
    "list_devices",
    # Engine and commands
    "TransferEngine",
    "TransferOperation",
    "FelCommands",
    "Session",
    "SessionFactory",
    "open_session",
    "usb_session_factory",
]
