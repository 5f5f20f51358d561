"""Tests for USB enumeration error mapping."""

import pytest
import usb.core

from fel_flasher.errors import TransportError
from fel_flasher.protocol.usb_transport import UsbTransport, find_devices, list_devices


def _raise(error):
    def find(**kwargs):
        raise error
    return find


class TestEnumeration:
    """pyusb failures surface as TransportError."""

    def test_no_backend_on_open(self, monkeypatch):
        monkeypatch.setattr(usb.core, "find", _raise(usb.core.NoBackendError("No backend available")))
        with pytest.raises(TransportError, match="libusb"):
            UsbTransport().open()

    def test_no_backend_on_list(self, monkeypatch):
        monkeypatch.setattr(usb.core, "find", _raise(usb.core.NoBackendError("No backend available")))
        with pytest.raises(TransportError):
            list_devices()

    def test_usb_error(self, monkeypatch):
        monkeypatch.setattr(usb.core, "find", _raise(usb.core.USBError("Access denied")))
        with pytest.raises(TransportError, match="enumeration failed"):
            find_devices()

    def test_no_device(self, monkeypatch):
        monkeypatch.setattr(usb.core, "find", lambda **kwargs: iter([]))
        with pytest.raises(TransportError, match="No FEL device #0"):
            UsbTransport().open()
        assert list_devices() == []
