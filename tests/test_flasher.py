"""End-to-end tests for the flashing state machine."""

import usb.core

from fel_flasher.core.flasher import Flasher, FlashState
from fel_flasher.core.messages import EventKind, EventLog
from fel_flasher.core.pipeline import PartitionPipeline
from fel_flasher.image.container import ImageContainer
from fel_flasher.protocol.constants import (
    FES1_ADDRESS,
    UBOOT_ADDRESS,
    DeviceMode,
    Tag,
    ToolAction,
    WorkMode,
)

from conftest import FakeFelDevice


def flash(firmware_path, device, make_session_factory, config=None, events=None, **kwargs):
    flasher = Flasher(
        ImageContainer.open(firmware_path),
        make_session_factory(device, config),
        config,
        events,
    )
    return flasher, flasher.flash(**kwargs)


def statuses(result):
    return {p["name"]: p["status"] for p in result.metadata["partitions"]}


class TestFlashFromFel:
    """Full flash starting from the boot ROM."""

    def test_success(self, firmware, fel_device, make_session_factory, fast_config):
        flasher, result = flash(firmware.path, fel_device, make_session_factory, fast_config)

        assert result.ok, result.errors
        assert flasher.state == FlashState.DONE
        assert result.metadata["state"] == "done"
        assert result.device == "A20"

    def test_boot_sequence(self, firmware, fel_device, make_session_factory, fast_config):
        flash(firmware.path, fel_device, make_session_factory, fast_config)

        assert fel_device.read_memory(FES1_ADDRESS, len(firmware.fes1)) == firmware.fes1
        assert fel_device.read_memory(UBOOT_ADDRESS + 0xE0, 1) == bytes([WorkMode.USB_PRODUCT])
        fel_runs = [r[1] for r in fel_device.runs if r[0] == DeviceMode.FEL]
        assert fel_runs == [FES1_ADDRESS, UBOOT_ADDRESS]
        assert fel_device.mode == DeviceMode.FES
        assert fel_device.connects == 2

    def test_storage_contents(self, firmware, fel_device, make_session_factory, fast_config):
        flash(firmware.path, fel_device, make_session_factory, fast_config)

        assert bytes(fel_device.tagged[Tag.ERASE]) == b"\x00\x00\x00\x00"
        assert bytes(fel_device.tagged[Tag.MBR]) == firmware.mbr
        assert fel_device.read_storage(0x40, len(firmware.boot)) == firmware.boot
        assert fel_device.read_storage(0x100, len(firmware.system)) == firmware.system
        assert bytes(fel_device.tagged[Tag.UBOOT]) == firmware.uboot
        assert bytes(fel_device.tagged[Tag.BOOT0]) == firmware.boot0
        assert fel_device.storage_states == [True, False]
        assert fel_device.tool_mode == (WorkMode.USB_TOOL_UPDATE, ToolAction.REBOOT)

    def test_user_data_skipped(self, firmware, fel_device, make_session_factory, fast_config):
        _, result = flash(firmware.path, fel_device, make_session_factory, fast_config)

        assert statuses(result) == {"boot": "written", "system": "written", "UDISK": "skipped"}
        assert fel_device.read_storage(0x200, 1024) == b"\x00" * 1024

    def test_events(self, firmware, fel_device, make_session_factory, fast_config):
        events = EventLog()
        flash(firmware.path, fel_device, make_session_factory, fast_config, events)

        actions = events.messages(EventKind.ACTION)
        assert actions[0] == "Booting to FES"
        assert "Reconnecting" in actions
        assert "Rebooting" in actions
        percents = [e.value for e in events.of_kind(EventKind.PERCENT) if e.message == "Writing system"]
        assert percents[-1] == 100
        assert not events.of_kind(EventKind.ERROR)

    def test_reconnect_retries(self, firmware, fel_device, make_session_factory, fast_config):
        fel_device.reconnect_failures = 2
        _, result = flash(firmware.path, fel_device, make_session_factory, fast_config)
        assert result.ok, result.errors

    def test_reconnect_gives_up(self, firmware, fel_device, make_session_factory, fast_config):
        fel_device.reconnect_failures = 3
        flasher, result = flash(firmware.path, fel_device, make_session_factory, fast_config)
        assert not result.ok
        assert flasher.state == FlashState.FAILED
        assert "reconnect" in result.errors[0]

    def test_legacy_image_rejected(self, firmware, fel_device, make_image, make_session_factory, fast_config):
        path = make_image(firmware.make_items(legacy=True), name="legacy.img")
        _, result = flash(path, fel_device, make_session_factory, fast_config)
        assert not result.ok
        assert "legacy" in result.errors[0]
        assert fel_device.runs == []


class TestFlashFromFes:
    """Flash starting with the loader already running."""

    def test_no_boot_stage(self, firmware, fes_device, make_session_factory, fast_config):
        _, result = flash(firmware.path, fes_device, make_session_factory, fast_config)
        assert result.ok, result.errors
        assert fes_device.runs == []
        assert fes_device.connects == 1

    def test_unchanged_partitions_skipped(self, firmware, fes_device, make_session_factory, fast_config):
        fes_device.write_storage(0x40, firmware.boot)
        fes_device.write_storage(0x100, firmware.system)

        _, result = flash(firmware.path, fes_device, make_session_factory, fast_config)

        assert result.ok, result.errors
        assert statuses(result)["boot"] == "unchanged"
        assert statuses(result)["system"] == "unchanged"
        storage_writes = [d for d in fes_device.downloads if d[1] & 0x7F00 != 0x7F00]
        assert storage_writes == []

    def test_format_writes_everything(self, firmware, fes_device, make_session_factory, fast_config):
        fes_device.write_storage(0x40, firmware.boot)

        _, result = flash(firmware.path, fes_device, make_session_factory, fast_config, format=True)

        assert result.ok, result.errors
        assert result.metadata["format"] is True
        assert bytes(fes_device.tagged[Tag.ERASE]) == b"\x01\x00\x00\x00"
        assert statuses(result) == {"boot": "written", "system": "written", "UDISK": "written"}
        assert fes_device.read_storage(0x200, 1024) == firmware.udisk

    def test_crc_mismatch_rewrites(self, firmware, fes_device, make_session_factory, fast_config):
        fes_device.corrupt_storage_writes = 1

        _, result = flash(firmware.path, fes_device, make_session_factory, fast_config)

        assert result.ok, result.errors
        boot = result.metadata["partitions"][0]
        assert boot["name"] == "boot"
        assert boot["rewrites"] == 1
        assert any("CRC mismatch on boot" in w for w in result.warnings)
        assert fes_device.read_storage(0x40, len(firmware.boot)) == firmware.boot

    def test_crc_never_matches(self, firmware, fes_device, make_session_factory, fast_config):
        fes_device.corrupt_storage_writes = 100

        flasher, result = flash(firmware.path, fes_device, make_session_factory, fast_config)

        assert not result.ok
        assert flasher.state == FlashState.FAILED
        assert "still wrong after 3 write(s)" in result.errors[0]
        assert result.metadata["state"] == "failed"

    def test_no_verify(self, firmware, fes_device, make_session_factory, fast_config):
        fes_device.corrupt_storage_writes = 1

        _, result = flash(firmware.path, fes_device, make_session_factory, fast_config, verify=False)

        assert result.ok, result.errors
        assert result.metadata["partitions"][0]["rewrites"] == 0

    def test_mbr_failure(self, firmware, fes_device, make_session_factory, fast_config):
        fes_device.verify_results[Tag.MBR] = -1

        flasher, result = flash(firmware.path, fes_device, make_session_factory, fast_config)

        assert not result.ok
        assert "Cannot flash new partition table" in result.errors[0]
        assert fes_device.storage_states == []

    def test_bootloader_failure(self, firmware, fes_device, make_session_factory, fast_config):
        fes_device.verify_results[Tag.UBOOT] = -1

        _, result = flash(firmware.path, fes_device, make_session_factory, fast_config)

        assert not result.ok
        assert "Failed to flash u-boot" in result.errors[0]
        assert fes_device.tool_mode is None

    def test_storage_formatted_anyway(self, firmware, fes_device, make_session_factory, fast_config):
        fes_device.erase_delay = 0.2
        config = fast_config.replace(format_threshold=0.05, long_timeout=1.0)
        events = EventLog()

        _, result = flash(firmware.path, fes_device, make_session_factory, config, events)

        assert result.ok, result.errors
        assert result.metadata["storage_formatted"] is True
        assert "Storage has been formatted anyway" in events.messages(EventKind.INFO)

    def test_quick_erase_is_not_a_format(self, firmware, fes_device, make_session_factory, fast_config):
        config = fast_config.replace(format_threshold=0.5, long_timeout=1.0)

        _, result = flash(firmware.path, fes_device, make_session_factory, config)

        assert result.ok, result.errors
        assert result.metadata["storage_formatted"] is False

    def test_slow_erase_with_format_requested(self, firmware, fes_device, make_session_factory, fast_config):
        fes_device.erase_delay = 0.2
        config = fast_config.replace(format_threshold=0.05, long_timeout=1.0)

        _, result = flash(firmware.path, fes_device, make_session_factory, config, format=True)

        assert result.ok, result.errors
        assert result.metadata["storage_formatted"] is False

    def test_no_usb_backend(self, firmware, fast_config):
        def session_factory():
            raise usb.core.NoBackendError("No backend available")

        events = EventLog()
        flasher = Flasher(ImageContainer.open(firmware.path), session_factory, fast_config, events)
        result = flasher.flash()

        assert not result.ok
        assert flasher.state == FlashState.FAILED
        assert result.metadata["state"] == "failed"
        assert "No backend available" in result.errors[0]
        assert events.messages(EventKind.ERROR) == result.errors

    def test_unexpected_error_while_writing(self, firmware, fes_device, make_session_factory,
                                            fast_config, monkeypatch):
        def broken_write(self, container, item, address):
            raise OSError("Input/output error")

        monkeypatch.setattr(PartitionPipeline, "write_item", broken_write)
        events = EventLog()

        flasher, result = flash(firmware.path, fes_device, make_session_factory, fast_config, events)

        assert not result.ok
        assert flasher.state == FlashState.FAILED
        assert "OSError: Input/output error" in result.errors[0]
        assert events.of_kind(EventKind.ERROR)
        assert fes_device.storage_states == [True]
        assert fes_device.closed

    def test_card_storage_needs_card_boot0(self, firmware, fes_device, make_session_factory, fast_config):
        config = fast_config.replace(storage="card")

        _, result = flash(firmware.path, fes_device, make_session_factory, config)

        assert not result.ok
        assert "boot0_sdcard.fex" in result.errors[0]

    def test_missing_plan(self, firmware, fes_device, make_image, make_session_factory, fast_config):
        path = make_image(firmware.make_items(with_dlinfo=False), name="noplan.img")

        _, result = flash(path, fes_device, make_session_factory, fast_config)

        assert not result.ok
        assert "dlinfo" in result.errors[0]
        assert fes_device.connects == 0

    def test_unsupported_mode(self, firmware, make_session_factory, fast_config):
        device = FakeFelDevice(DeviceMode.UPDATE_COOL)

        _, result = flash(firmware.path, device, make_session_factory, fast_config)

        assert not result.ok
        assert "unsupported mode" in result.errors[0]
