"""
Core workflow actions for fel_flasher.

One function per CLI command. Device writes are gated by a SafetyContext,
every action returns an OperationResult carrying the log lines captured
while it ran, and FelError never escapes (WritePermissionError does).
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Callable, Sequence, Union

from fel_flasher.config import Config
from fel_flasher.errors import FelError
from fel_flasher.image.container import ImageContainer
from fel_flasher.image.dlinfo import DLINFO_FILE, load_flash_plan
from fel_flasher.image.sparse import SparseImage
from fel_flasher.protocol.constants import (
    DeviceMode,
    RunContext,
    TagsArg,
    ToolAction,
    WorkMode,
    tag_mask,
)
from fel_flasher.protocol.session import SessionFactory, usb_session_factory
from fel_flasher.utils.crypto import Cipher, crc32
from .flasher import Flasher
from .messages import EventCallback
from .results import OperationResult
from .safety import SafetyContext, require_write_permission

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

EXTRACT_SLICE = 1024 * 1024


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "fel_flasher"):
    """Collect INFO and above from the package loggers for the duration."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level == logging.NOTSET or previous_level > logging.INFO:
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _factory(
    session_factory: Optional[SessionFactory],
    config: Optional[Config],
    index: int,
) -> SessionFactory:
    return session_factory or usb_session_factory(config or Config(), index)


def _region(address: int, length: int) -> str:
    return f"0x{address:08X}-0x{address + length:08X}"


def device_status(
    session_factory: Optional[SessionFactory] = None,
    config: Optional[Config] = None,
    index: int = 0,
) -> OperationResult:
    """
    Query board, firmware and mode of the attached device.

    Returns:
        OperationResult with metadata["board"], ["fw"], ["mode"],
        ["revision"] and device set to the SoC name
    """
    with _capture_logs() as logs:
        try:
            with _factory(session_factory, config, index)() as session:
                status = session.commands.get_device_status()
        except FelError as e:
            logger.exception("status failed")
            return OperationResult.failure("status", str(e)).with_logs(logs)

        result = OperationResult.success("status", device=status.board_name)
        result.metadata.update({
            "board": status.board,
            "fw": status.fw,
            "mode": status.device_mode.name,
            "revision": status.revision,
            "data_flag": status.data_flag,
            "data_length": status.data_length,
            "data_start_address": status.data_start_address,
        })
        return result.with_logs(logs)


def read_memory(
    address: int,
    length: int,
    tags: TagsArg = None,
    mode: DeviceMode = DeviceMode.FEL,
    session_factory: Optional[SessionFactory] = None,
    config: Optional[Config] = None,
    index: int = 0,
    progress_cb: Optional[ProgressCallback] = None,
) -> OperationResult:
    """
    Read device memory or storage.

    Returns:
        OperationResult with metadata["data"] and hashes["crc32"]
    """
    region = _region(address, length)
    with _capture_logs() as logs:
        try:
            with _factory(session_factory, config, index)() as session:
                data = session.commands.read(address, length, tags, mode, progress_cb)
        except FelError as e:
            logger.exception("read_memory failed")
            return OperationResult.failure("read_memory", str(e), region=region).with_logs(logs)

        result = OperationResult.success("read_memory", region=region, bytes_len=len(data))
        result.record_crc32(data)
        result.metadata["data"] = data
        result.metadata["flags"] = tag_mask(tags)
        return result.with_logs(logs)


def write_memory(
    address: int,
    data: bytes,
    safety_ctx: SafetyContext,
    tags: TagsArg = None,
    mode: DeviceMode = DeviceMode.FEL,
    verify: bool = True,
    session_factory: Optional[SessionFactory] = None,
    config: Optional[Config] = None,
    index: int = 0,
    progress_cb: Optional[ProgressCallback] = None,
) -> OperationResult:
    """
    Write bytes to device memory or storage.

    In FEL mode the data is read back and compared by CRC32 when verify
    is set.

    Raises:
        WritePermissionError: If the safety check fails; nothing is sent
    """
    region = _region(address, len(data))
    require_write_permission(safety_ctx, target=region, bytes_length=len(data))

    with _capture_logs() as logs:
        result = OperationResult.success(
            "write_memory", device=safety_ctx.device, region=region, bytes_len=len(data)
        )
        result.record_crc32(data)
        try:
            with _factory(session_factory, config, index)() as session:
                commands = session.commands
                result.metadata["next_address"] = commands.write(
                    address, data, tags, mode, progress_cb=progress_cb
                )
                if verify and mode == DeviceMode.FEL:
                    readback = commands.read(address, len(data), tags, mode)
                    verified = crc32(readback) == crc32(data)
                    result.metadata["verified"] = verified
                    if not verified:
                        result.add_error("Readback verification failed")
        except FelError as e:
            logger.exception("write_memory failed")
            result.add_error(str(e))
        return result.with_logs(logs)


def run_code(
    address: int,
    mode: DeviceMode = DeviceMode.FEL,
    flags: Optional[Sequence[RunContext]] = None,
    args: Optional[Sequence[int]] = None,
    session_factory: Optional[SessionFactory] = None,
    config: Optional[Config] = None,
    index: int = 0,
) -> OperationResult:
    """Execute code at address."""
    with _capture_logs() as logs:
        try:
            with _factory(session_factory, config, index)() as session:
                session.commands.run(address, mode, flags, args)
        except FelError as e:
            logger.exception("run failed")
            return OperationResult.failure("run", str(e)).with_logs(logs)
        return OperationResult.success("run", region=f"0x{address:08X}").with_logs(logs)


def set_tool_mode(
    work_mode: WorkMode = WorkMode.USB_TOOL_UPDATE,
    action: ToolAction = ToolAction.REBOOT,
    session_factory: Optional[SessionFactory] = None,
    config: Optional[Config] = None,
    index: int = 0,
) -> OperationResult:
    """Change the loader work mode (FES only); by default reboot the device."""
    with _capture_logs() as logs:
        try:
            with _factory(session_factory, config, index)() as session:
                status = session.commands.get_device_status()
                if status.device_mode != DeviceMode.FES:
                    return OperationResult.failure(
                        "tool_mode",
                        f"Device must be in FES mode, it is in {status.device_mode.name}",
                        device=status.board_name,
                    ).with_logs(logs)
                session.commands.set_tool_mode(work_mode, action)
        except FelError as e:
            logger.exception("tool_mode failed")
            return OperationResult.failure("tool_mode", str(e)).with_logs(logs)

        result = OperationResult.success("tool_mode", device=status.board_name)
        result.metadata["work_mode"] = work_mode.name
        result.metadata["action"] = action.name
        return result.with_logs(logs)


def _describe_image(container: ImageContainer, result: OperationResult) -> None:
    header = container.header
    result.metadata["header"] = {
        "image_format": header.image_format,
        "image_version": header.image_version,
        "pid": header.pid,
        "vid": header.vid,
        "hw": header.hw,
        "fw": header.fw,
        "item_count": header.item_count,
    }
    result.metadata["items"] = [
        {
            "path": item.path,
            "main_type": item.main_type,
            "sub_type": item.sub_type,
            "offset": item.offset,
            "length": item.length,
        }
        for item in container.items
    ]
    result.metadata["legacy"] = container.is_legacy()
    result.metadata["encrypted"] = container.encrypted

    if container.item_by_file(DLINFO_FILE) is None:
        result.metadata["plan"] = []
        result.add_warning(f"Image has no {DLINFO_FILE}")
        return
    plan = load_flash_plan(container)
    result.metadata["plan"] = [
        {
            "name": entry.name,
            "address": entry.address,
            "length": entry.length,
            "filename": entry.filename,
            "verify_filename": entry.verify_filename,
        }
        for entry in plan
    ]
    if not plan.crc_ok:
        result.add_warning(f"{DLINFO_FILE} CRC mismatch")


def inspect_image(path: Union[str, Path], cipher: Optional[Cipher] = None) -> OperationResult:
    """
    Describe a firmware image: header, items and flash plan.

    Returns:
        OperationResult with metadata["header"], ["items"], ["plan"],
        ["legacy"] and ["encrypted"]
    """
    with _capture_logs() as logs:
        try:
            container = ImageContainer.open(path, cipher)
            result = OperationResult.success("image_info", bytes_len=Path(path).stat().st_size)
            _describe_image(container, result)
        except (FelError, OSError) as e:
            logger.exception("image_info failed")
            return OperationResult.failure("image_info", str(e)).with_logs(logs)
        return result.with_logs(logs)


def extract_item(
    path: Union[str, Path],
    name: str,
    output: Union[str, Path],
    cipher: Optional[Cipher] = None,
    unsparse: bool = False,
) -> OperationResult:
    """
    Extract one item of an image to a file.

    Args:
        path: Firmware image
        name: Item file name (e.g. "u-boot.fex") or signature
        output: Destination file
        cipher: Required for encrypted images
        unsparse: Expand the item if it is a sparse image
    """
    with _capture_logs() as logs:
        try:
            container = ImageContainer.open(path, cipher)
            item = container.item_by_file(name) or container.item_by_signature(name)
            if item is None:
                return OperationResult.failure(
                    "extract", f"Image has no item '{name}'"
                ).with_logs(logs)

            sparse = unsparse and SparseImage.is_valid(container.read_item(item, 64))
            if sparse:
                with container.open_item(item) as stream:
                    written = SparseImage(stream).dump(output)
            else:
                written = 0
                with open(output, "wb") as out:
                    for data in container.iter_item(item, EXTRACT_SLICE):
                        out.write(data)
                        written += len(data)
        except (FelError, OSError) as e:
            logger.exception("extract failed")
            return OperationResult.failure("extract", str(e)).with_logs(logs)

        logger.info(f"Extracted {item.path} to {output} ({written} bytes)")
        result = OperationResult.success("extract", bytes_len=written)
        result.metadata["item"] = item.path
        result.metadata["output"] = str(output)
        result.metadata["unsparsed"] = sparse
        return result.with_logs(logs)


def flash_image(
    path: Union[str, Path],
    safety_ctx: SafetyContext,
    format: bool = False,
    verify: bool = True,
    cipher: Optional[Cipher] = None,
    session_factory: Optional[SessionFactory] = None,
    config: Optional[Config] = None,
    index: int = 0,
    progress_cb: Optional[EventCallback] = None,
) -> OperationResult:
    """
    Flash a complete firmware image.

    The image is parsed first so the confirmation can show what will be
    written; the device is only opened after permission was granted.

    Raises:
        WritePermissionError: If the safety check fails
    """
    with _capture_logs() as logs:
        try:
            container = ImageContainer.open(path, cipher)
        except (FelError, OSError) as e:
            logger.exception("flash failed")
            return OperationResult.failure("flash", str(e)).with_logs(logs)

        require_write_permission(
            safety_ctx,
            target=f"{Path(path).name} ({len(container.items)} items)",
            bytes_length=sum(item.length for item in container.items),
        )

        config = config or Config()
        flasher = Flasher(container, _factory(session_factory, config, index), config, progress_cb)
        return flasher.flash(format=format, verify=verify).with_logs(logs)
