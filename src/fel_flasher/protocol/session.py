"""
Device session: one open transport plus the engine and command set on it.
"""

import logging
from typing import Callable, Optional

from fel_flasher.config import Config
from fel_flasher.protocol.commands import FelCommands
from fel_flasher.protocol.transfer import TransferEngine
from fel_flasher.protocol.usb_transport import Transport, UsbTransport

logger = logging.getLogger(__name__)


class Session:
    """
    Owns a transport for the duration of a conversation with the device.

    Example:
        with open_session(Config()) as session:
            status = session.commands.get_device_status()
    """

    def __init__(self, transport: Transport, config: Optional[Config] = None):
        self.transport = transport
        self.config = config or Config()
        self.engine = TransferEngine(transport, self.config)
        self.commands = FelCommands(self.engine, self.config)
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.transport.close()
            self.closed = True

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


SessionFactory = Callable[[], Session]


def open_session(config: Optional[Config] = None, index: int = 0) -> Session:
    """
    Open the index-th attached FEL/FES device.

    Raises:
        TransportError: If the device cannot be opened
    """
    config = config or Config()
    transport = UsbTransport(
        index=index,
        vendor_id=config.vendor_id,
        product_id=config.product_id,
    )
    transport.open()
    return Session(transport, config)


def usb_session_factory(config: Optional[Config] = None, index: int = 0) -> SessionFactory:
    """Return a callable that opens a fresh USB session on each call."""
    return lambda: open_session(config, index)
