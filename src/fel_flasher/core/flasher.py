"""
Flashing Orchestrator

Drives a complete firmware flash:

    INIT -> DEVICE_MODE_KNOWN -> (BOOTING_TO_FES -> RECONNECTING ->) FES_READY
    -> MBR_WRITTEN -> STORAGE_ATTACHED -> PARTITIONS_WRITTEN -> STORAGE_DETACHED
    -> BOOTLOADER_WRITTEN -> REBOOTED -> DONE

Any error raised by a transition moves the flasher to FAILED, which is
final. flash() reports the outcome as an OperationResult instead of raising.
"""

import logging
import struct
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from fel_flasher.config import Config
from fel_flasher.errors import FelError, FlashError, TransportError
from fel_flasher.image.container import FES1_FILE, UBOOT_FILE, ImageContainer, ImageItem
from fel_flasher.image.dlinfo import DownloadInfo, FlashPlanEntry, load_flash_plan
from fel_flasher.protocol.commands import FelCommands
from fel_flasher.protocol.constants import (
    FES1_ADDRESS,
    FES1_MAX_SIZE,
    UBOOT_ADDRESS,
    UBOOT_WORK_MODE_OFFSET,
    DeviceMode,
    Tag,
    ToolAction,
    WorkMode,
)
from fel_flasher.protocol.frames import VerifyDeviceResponse
from fel_flasher.protocol.session import Session, SessionFactory
from fel_flasher.core.messages import EventCallback, EventKind, EventLog
from fel_flasher.core.pipeline import PartitionPipeline
from fel_flasher.core.results import OperationResult

logger = logging.getLogger(__name__)

MBR_FILE = "sunxi_mbr.fex"


class FlashState(Enum):
    INIT = "init"
    DEVICE_MODE_KNOWN = "device_mode_known"
    BOOTING_TO_FES = "booting_to_fes"
    RECONNECTING = "reconnecting"
    FES_READY = "fes_ready"
    MBR_WRITTEN = "mbr_written"
    STORAGE_ATTACHED = "storage_attached"
    PARTITIONS_WRITTEN = "partitions_written"
    STORAGE_DETACHED = "storage_detached"
    BOOTLOADER_WRITTEN = "bootloader_written"
    REBOOTED = "rebooted"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PartitionOutcome:
    """
    What happened to one flash plan entry.

    status is "written", "unchanged" (CRC already matched) or "skipped".
    """
    name: str
    status: str
    bytes_len: int = 0
    rewrites: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "status": self.status,
            "bytes_len": self.bytes_len,
            "rewrites": self.rewrites,
        }


@dataclass
class FlashReport:
    partitions: List[PartitionOutcome] = field(default_factory=list)
    storage_formatted: bool = False
    bytes_written: int = 0


class Flasher:
    """
    Flashes a firmware image to a device in FEL or FES mode.

    Example:
        container = ImageContainer.open("firmware.img")
        flasher = Flasher(container, usb_session_factory(config), config, on_event)
        result = flasher.flash(format=False, verify=True)
    """

    def __init__(
        self,
        container: ImageContainer,
        session_factory: SessionFactory,
        config: Optional[Config] = None,
        progress_cb: Optional[EventCallback] = None,
    ):
        """
        Args:
            container: Firmware image to flash
            session_factory: Opens a new device session; called again to
                reconnect after booting to FES
            config: Tunables, defaults to Config()
            progress_cb: Receives (message, EventKind, value) events
        """
        self.container = container
        self.session_factory = session_factory
        self.config = config or Config()
        self.events = EventLog(progress_cb)
        self.state = FlashState.INIT
        self.session: Optional[Session] = None
        self.report = FlashReport()

    # -- helpers -----------------------------------------------------------

    @property
    def commands(self) -> FelCommands:
        if self.session is None:
            raise FlashError("No device session")
        return self.session.commands

    def _emit(self, message: str, kind: EventKind = EventKind.INFO, value: Optional[int] = None) -> None:
        if kind == EventKind.WARN:
            logger.warning(message)
        elif kind != EventKind.PERCENT:
            logger.info(message)
        self.events(message, kind, value)

    def _set_state(self, state: FlashState) -> None:
        logger.debug(f"Flasher state {self.state.name} -> {state.name}")
        self.state = state

    def _fail(self, message: str, result: OperationResult) -> None:
        self._set_state(FlashState.FAILED)
        self._emit(message, EventKind.ERROR)
        result.add_error(message)

    def _required_item(self, name: str) -> ImageItem:
        item = self.container.item_by_file(name)
        if item is None:
            raise FlashError(f"Image has no {name}", step="image")
        return item

    def _read_required(self, name: str) -> bytes:
        return self.container.read_item(self._required_item(name))

    def _device_status(self) -> VerifyDeviceResponse:
        try:
            return self.commands.get_device_status()
        except FelError as e:
            raise FlashError(f"Failed to get device info. Try to reboot! ({e})", step="status")

    # -- entry point -------------------------------------------------------

    def flash(self, format: bool = False, verify: bool = True) -> OperationResult:
        """
        Run the whole flashing sequence.

        Args:
            format: Erase the storage and write the user data partition too
            verify: Check each partition's CRC after writing and rewrite on mismatch

        Returns:
            OperationResult with metadata["state"], metadata["partitions"]
            and warnings for every WARN event.
        """
        result = OperationResult(ok=True, operation="flash")
        self.state = FlashState.INIT
        self.report = FlashReport()
        try:
            self._run(format, verify, result)
        except FelError as e:
            self._fail(str(e), result)
        except Exception as e:
            logger.exception("Unexpected error while flashing")
            self._fail(f"{type(e).__name__}: {e}", result)
        finally:
            if self.session is not None:
                self.session.close()
                self.session = None

        for message in self.events.messages(EventKind.WARN):
            result.add_warning(message)
        result.bytes_len = self.report.bytes_written
        result.metadata["state"] = self.state.value
        result.metadata["format"] = format
        result.metadata["storage_formatted"] = self.report.storage_formatted
        result.metadata["partitions"] = [p.to_dict() for p in self.report.partitions]
        return result

    def _run(self, format: bool, verify: bool, result: OperationResult) -> None:
        plan = load_flash_plan(self.container)
        mbr = self._read_required(MBR_FILE)

        self.session = self.session_factory()
        status = self._device_status()
        result.device = status.board_name
        self._set_state(FlashState.DEVICE_MODE_KNOWN)
        self._emit(f"Device {status.board_name} in {status.device_mode.name} mode")

        if status.device_mode == DeviceMode.FEL:
            self._boot_to_fes()
        elif status.device_mode != DeviceMode.FES:
            raise FlashError(
                f"Device is in unsupported mode {status.device_mode.name}", step="status"
            )
        self._set_state(FlashState.FES_READY)

        self._write_mbr(mbr, format)
        self._set_state(FlashState.MBR_WRITTEN)

        self.commands.set_storage_state(True)
        self._set_state(FlashState.STORAGE_ATTACHED)

        self._write_partitions(plan, format, verify)
        self._set_state(FlashState.PARTITIONS_WRITTEN)

        self.commands.set_storage_state(False)
        self._set_state(FlashState.STORAGE_DETACHED)

        self._write_boot_item(UBOOT_FILE, Tag.UBOOT, "u-boot")
        self._set_state(FlashState.BOOTLOADER_WRITTEN)

        self._write_boot_item(self.config.boot0_file, Tag.BOOT0, "boot0")
        self._emit("Rebooting", EventKind.ACTION)
        self.commands.set_tool_mode(WorkMode.USB_TOOL_UPDATE, ToolAction.REBOOT)
        self._set_state(FlashState.REBOOTED)

        self._emit("Finished", EventKind.INFO)
        self._set_state(FlashState.DONE)

    # -- transitions -------------------------------------------------------

    def _boot_to_fes(self) -> None:
        if self.container.is_legacy():
            raise FlashError(
                "Booting a legacy (boot 1.0) image from FEL mode is not supported",
                step="boot",
            )
        self._set_state(FlashState.BOOTING_TO_FES)
        self._emit("Booting to FES", EventKind.ACTION)

        fes1 = self._read_required(FES1_FILE)
        if len(fes1) > FES1_MAX_SIZE:
            raise FlashError(
                f"{FES1_FILE} is too big ({len(fes1)}>{FES1_MAX_SIZE})", step="boot"
            )
        uboot = self._read_required(UBOOT_FILE)

        commands = self.commands
        commands.write(FES1_ADDRESS, fes1)
        commands.run(FES1_ADDRESS)
        commands.write(UBOOT_ADDRESS, uboot)
        commands.write(UBOOT_ADDRESS + UBOOT_WORK_MODE_OFFSET, bytes([WorkMode.USB_PRODUCT]))
        commands.run(UBOOT_ADDRESS)

        self._set_state(FlashState.RECONNECTING)
        self._emit("Reconnecting", EventKind.ACTION)
        self.session.close()
        self.session = None
        if self.config.reconnect_settle:
            time.sleep(self.config.reconnect_settle)

        def on_retry(attempt: int, error: BaseException) -> None:
            logger.debug(f"Reconnect attempt {attempt + 1} failed: {error}")

        try:
            self.session = self.config.reconnect.call(
                self.session_factory, retry_on=(TransportError,), on_retry=on_retry
            )
        except TransportError as e:
            raise FlashError(f"Failed to reconnect after booting to FES: {e}", step="reconnect")

        status = self._device_status()
        if status.device_mode != DeviceMode.FES:
            raise FlashError(
                f"Failed to boot to FES (device is in {status.device_mode.name} mode)",
                step="reconnect",
            )

    def _write_mbr(self, mbr: bytes, format: bool) -> None:
        self._emit("Writing new partition table" + (" and formatting storage" if format else ""),
                   EventKind.ACTION)
        erase_time = []
        status = self.commands.write_mbr(mbr, format, on_erased=erase_time.append)
        if not format and erase_time and erase_time[0] > self.config.format_threshold:
            self.report.storage_formatted = True
            self._emit("Storage has been formatted anyway", EventKind.INFO)
        if status.crc != 0:
            raise FlashError(
                f"Cannot flash new partition table (crc {status.crc})", step="mbr"
            )

    def _expected_crc(self, entry: FlashPlanEntry) -> Optional[int]:
        if not entry.verify_filename:
            return None
        item = self.container.item_by_signature(entry.verify_filename)
        if item is None:
            self._emit(
                f"No verify item {entry.verify_filename} for {entry.name}", EventKind.WARN
            )
            return None
        data = self.container.read_item(item, 4)
        if len(data) < 4:
            self._emit(f"Verify item {entry.verify_filename} is too short", EventKind.WARN)
            return None
        return struct.unpack("<I", data)[0]

    def _write_partition(self, entry: FlashPlanEntry, item: ImageItem) -> int:
        def on_percent(percent: int) -> None:
            self.events(f"Writing {entry.name}", EventKind.PERCENT, percent)

        pipeline = PartitionPipeline(self.commands, self.config, on_percent)
        stats = pipeline.write_item(self.container, item, entry.address)
        self.report.bytes_written += stats.bytes_written
        return stats.bytes_written

    def _write_partitions(self, plan: DownloadInfo, format: bool, verify: bool) -> None:
        skip = self.config.skip_partitions
        for entry in plan:
            if entry.name in skip and not format:
                self._emit(f"Skipping {entry.name}")
                self.report.partitions.append(PartitionOutcome(entry.name, "skipped"))
                continue

            item = self.container.item_by_signature(entry.filename)
            if item is None:
                raise FlashError(
                    f"Cannot find item {entry.filename} for partition {entry.name}",
                    step="partitions",
                )

            expected = self._expected_crc(entry)
            if not format and expected is not None:
                current = self.commands.verify_value(entry.address, entry.length)
                if current.crc_u32 == expected:
                    self._emit(f"{entry.name} is up to date, skipping")
                    self.report.partitions.append(PartitionOutcome(entry.name, "unchanged"))
                    continue

            check = verify and expected is not None and entry.name not in skip
            policy = self.config.crc_retry
            self._emit(f"Writing {entry.name}", EventKind.ACTION)
            for attempt in policy:
                written = self._write_partition(entry, item)
                if not check:
                    break
                actual = self.commands.verify_value(entry.address, entry.length).crc_u32
                if actual == expected:
                    self._emit(f"CRC of {entry.name} OK (0x{actual:08X})")
                    break
                self._emit(
                    f"CRC mismatch on {entry.name}: 0x{actual:08X} != 0x{expected:08X}",
                    EventKind.WARN,
                )
            else:
                raise FlashError(
                    f"CRC of partition {entry.name} still wrong after "
                    f"{policy.attempts} write(s) at sector 0x{entry.address:X}",
                    step="partitions",
                )
            self.report.partitions.append(
                PartitionOutcome(entry.name, "written", written, rewrites=attempt)
            )

    def _write_boot_item(self, name: str, tag: Tag, label: str) -> None:
        data = self._read_required(name)
        self._emit(f"Writing {label}", EventKind.ACTION)

        def on_progress(done: int, total: int) -> None:
            self.events(f"Writing {label}", EventKind.PERCENT, done * 100 // total)

        self.commands.write(
            0, data, [tag, Tag.FINISH], DeviceMode.FES, progress_cb=on_progress, slow=True
        )
        status = self.commands.verify_status(tag)
        if status.crc != 0:
            raise FlashError(f"Failed to flash {label} (result {status.crc})", step=label)
        self.report.bytes_written += len(data)
