"""
USB Transport Layer

Bulk transfers to a device in FEL/FES mode via pyusb.

This module provides:
- Device enumeration by vendor/product id
- Bulk IN/OUT endpoint discovery and interface claiming
- send()/recv() with timeouts in seconds, mapped to TransportError/TransportTimeout

Anything that implements send(), recv() and close() with the same
semantics can stand in for UsbTransport (the tests use a simulated device).
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import usb.core
import usb.util

from fel_flasher.errors import TransportError, TransportTimeout
from fel_flasher.protocol.constants import USB_PRODUCT_ID, USB_VENDOR_ID

logger = logging.getLogger(__name__)


class Transport:
    """
    Minimal transport interface used by the transfer engine.

    send() returns the number of bytes written; recv() returns at most
    max_len bytes. Timeouts are in seconds.
    """

    def send(self, data: bytes, timeout: float) -> int:
        raise NotImplementedError

    def recv(self, max_len: int, timeout: float) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        pass


@dataclass(frozen=True)
class UsbDeviceInfo:
    """Location of an attached FEL device."""
    index: int
    bus: int
    address: int

    def __str__(self) -> str:
        return f"#{self.index} bus {self.bus:03d} device {self.address:03d}"


def find_devices(
    vendor_id: int = USB_VENDOR_ID,
    product_id: int = USB_PRODUCT_ID,
) -> List[usb.core.Device]:
    """
    Return all attached devices matching the ids.

    Raises:
        TransportError: If libusb is missing or enumeration fails
    """
    try:
        return list(usb.core.find(find_all=True, idVendor=vendor_id, idProduct=product_id))
    except usb.core.NoBackendError as e:
        raise TransportError(f"No libusb backend available: {e}")
    except usb.core.USBError as e:
        raise TransportError(f"USB enumeration failed: {e}")


def list_devices(
    vendor_id: int = USB_VENDOR_ID,
    product_id: int = USB_PRODUCT_ID,
) -> List[UsbDeviceInfo]:
    """Describe attached FEL devices without opening them."""
    return [
        UsbDeviceInfo(index=i, bus=dev.bus, address=dev.address)
        for i, dev in enumerate(find_devices(vendor_id, product_id))
    ]


class UsbTransport(Transport):
    """
    pyusb bulk transport for one FEL/FES device.

    Example:
        transport = UsbTransport(index=0)
        transport.open()
        transport.send(request, timeout=5.0)
        reply = transport.recv(13, timeout=5.0)
        transport.close()
    """

    def __init__(
        self,
        index: int = 0,
        vendor_id: int = USB_VENDOR_ID,
        product_id: int = USB_PRODUCT_ID,
    ):
        """
        Args:
            index: Which matching device to use when several are attached
            vendor_id: USB vendor id
            product_id: USB product id
        """
        self.index = index
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.dev: Optional[usb.core.Device] = None
        self.interface: Optional[int] = None
        self.ep_in: Optional[int] = None
        self.ep_out: Optional[int] = None

    def open(self) -> None:
        """
        Find the device, pick its bulk endpoint pair and claim the interface.

        Raises:
            TransportError: If no device is attached or it has no bulk pair
        """
        devices = find_devices(self.vendor_id, self.product_id)
        if self.index >= len(devices):
            raise TransportError(
                f"No FEL device #{self.index} "
                f"({self.vendor_id:04x}:{self.product_id:04x}); found {len(devices)}"
            )
        dev = devices[self.index]

        try:
            try:
                cfg = dev.get_active_configuration()
            except usb.core.USBError:
                dev.set_configuration()
                cfg = dev.get_active_configuration()

            for intf in cfg.interfaces():
                ep_in, ep_out = None, None
                for ep in intf.endpoints():
                    if usb.util.endpoint_type(ep.bmAttributes) != usb.util.ENDPOINT_TYPE_BULK:
                        continue
                    if usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_IN:
                        ep_in = ep.bEndpointAddress
                    else:
                        ep_out = ep.bEndpointAddress
                if ep_in is not None and ep_out is not None:
                    self.interface = intf.bInterfaceNumber
                    self.ep_in, self.ep_out = ep_in, ep_out
                    break
            else:
                raise TransportError("No bulk IN/OUT endpoint pair found on device")

            usb.util.claim_interface(dev, self.interface)
        except usb.core.USBError as e:
            raise TransportError(f"Cannot open FEL device: {e}")

        self.dev = dev
        logger.debug(
            f"Opened FEL device bus {dev.bus} addr {dev.address} "
            f"(ep_in=0x{self.ep_in:02x}, ep_out=0x{self.ep_out:02x})"
        )

    def close(self) -> None:
        """Release the interface and free pyusb resources."""
        if self.dev is None:
            return
        try:
            usb.util.release_interface(self.dev, self.interface)
        except usb.core.USBError as e:
            logger.debug(f"release_interface failed: {e}")
        usb.util.dispose_resources(self.dev)
        logger.debug("Closed FEL device")
        self.dev = None

    def _require_open(self) -> usb.core.Device:
        if self.dev is None:
            raise TransportError("USB transport is not open")
        return self.dev

    def send(self, data: bytes, timeout: float) -> int:
        dev = self._require_open()
        try:
            return dev.write(self.ep_out, data, timeout=int(timeout * 1000))
        except usb.core.USBTimeoutError as e:
            raise TransportTimeout(f"USB write of {len(data)} bytes timed out: {e}")
        except usb.core.USBError as e:
            raise TransportError(f"USB write of {len(data)} bytes failed: {e}")

    def recv(self, max_len: int, timeout: float) -> bytes:
        dev = self._require_open()
        try:
            return bytes(dev.read(self.ep_in, max_len, timeout=int(timeout * 1000)))
        except usb.core.USBTimeoutError as e:
            raise TransportTimeout(f"USB read of {max_len} bytes timed out: {e}")
        except usb.core.USBError as e:
            raise TransportError(f"USB read of {max_len} bytes failed: {e}")

    def __enter__(self) -> "UsbTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
