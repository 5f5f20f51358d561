"""
fel-flasher CLI

Command-line interface for talking to Allwinner devices in FEL/FES mode
and flashing LiveSuit firmware images.
"""

import sys
import logging
from pathlib import Path
from typing import Dict, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from fel_flasher.config import Config
from fel_flasher.errors import FelError
from fel_flasher.protocol import list_devices as usb_list_devices
from fel_flasher.protocol.constants import DeviceMode, RunContext
from fel_flasher.utils.crypto import Cipher, load_cipher
from fel_flasher.core.parsing import (
    parse_int as _parse_int_core,
    parse_size as _parse_size_core,
    parse_tags as _parse_tags_core,
    parse_mode as _parse_mode_core,
    parse_work_mode as _parse_work_mode_core,
    parse_action as _parse_action_core,
)
from fel_flasher.core.safety import (
    SafetyContext,
    create_cli_safety_context,
    WritePermissionError,
    CONFIRMATION_TOKEN,
)
from fel_flasher.core.results import OperationResult
from fel_flasher.core.messages import (
    EventKind,
    MessageLevel,
    WarningItem,
    result_to_warnings,
)
from fel_flasher.core.actions import (
    device_status as core_device_status,
    read_memory as core_read_memory,
    write_memory as core_write_memory,
    run_code as core_run_code,
    set_tool_mode as core_set_tool_mode,
    inspect_image as core_inspect_image,
    extract_item as core_extract_item,
    flash_image as core_flash_image,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("fel_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="Allwinner FEL/FES firmware flasher")

_state = {"verbose": False}


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log protocol traffic"),
) -> None:
    """Allwinner FEL/FES firmware flasher."""
    _state["verbose"] = verbose
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def print_warnings_from_result(result: OperationResult) -> None:
    """Print all warnings and errors from an OperationResult."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=_state["verbose"])


def finish(result: OperationResult, success: str) -> None:
    """Report a result and exit non-zero on failure."""
    print_warnings_from_result(result)
    if not result.ok:
        sys.exit(1)
    print_success(success)


# -- option parsing --------------------------------------------------------

def parse_int(value: Optional[str], label: str) -> Optional[int]:
    """
    CLI wrapper around core.parsing.parse_int that converts ValueError to
    typer.BadParameter.
    """
    try:
        return _parse_int_core(value)
    except ValueError as e:
        raise typer.BadParameter(f"Invalid {label}: {e}")


def parse_size(value: str) -> int:
    try:
        return _parse_size_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_tags(value: Optional[str]):
    try:
        return _parse_tags_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_mode(value: str) -> DeviceMode:
    try:
        return _parse_mode_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_run_flags(value: Optional[str]):
    if not value:
        return []
    flags = []
    for part in value.split(","):
        name = part.strip().upper().replace("-", "_")
        if not name:
            continue
        try:
            flags.append(RunContext[name])
        except KeyError:
            valid = ", ".join(f.name.lower() for f in RunContext)
            raise typer.BadParameter(f"Unknown run flag '{part}'. Valid flags: {valid}")
    return flags


def get_cipher(value: Optional[str]) -> Optional[Cipher]:
    if not value:
        return None
    try:
        return load_cipher(value)
    except (ValueError, ImportError) as e:
        raise typer.BadParameter(f"Cannot load cipher '{value}': {e}")


def make_config(storage: str = "nand") -> Config:
    try:
        return Config(storage=storage)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def create_safety_context(write_flag: bool, confirm_token: Optional[str], device: str) -> SafetyContext:
    """
    Build a SafetyContext that prompts through Rich/typer when possible.

    Supports three modes:
    1. Non-interactive (script): --confirm WRITE provided, no prompts
    2. Interactive (TTY): prompts user for typed confirmation
    3. Non-interactive without token: refused with remediation
    """
    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Device:        {details.get('device', 'Unknown')}\n"
            f"Target:        {details.get('target', 'Unknown')}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n"
            f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="Device Write Operation",
            expand=False,
        ))

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt("Confirm")

    return create_cli_safety_context(
        write_flag,
        confirm_token,
        device=device,
        prompt_confirmation=prompt_confirmation,
        show_details=show_details,
    )


def report_write_denied(e: WritePermissionError) -> None:
    print_error(e.reason)
    if "--write" in e.reason:
        console.print("This is a safety measure to prevent accidental writes to your device.")
    elif "--confirm" in e.reason:
        console.print()
        console.print("[bold]For scripted/non-interactive use, provide:[/bold]")
        console.print("  --write --confirm WRITE")
    raise typer.Abort()


def byte_progress(progress: Progress, description: str):
    task = progress.add_task(description, total=100)

    def update(done: int, total: int) -> None:
        progress.update(task, completed=done * 100 // total if total else 100)

    return update


def hexdump(data: bytes, address: int = 0, limit: int = 512) -> None:
    for offset in range(0, min(len(data), limit), 16):
        line = data[offset:offset + 16]
        text = "".join(chr(b) if 32 <= b < 127 else "." for b in line)
        console.print(f"[cyan]{address + offset:08X}[/cyan]  {line.hex(' '):<47}  {text}")
    if len(data) > limit:
        console.print(f"[dim]... {len(data) - limit:,} more bytes[/dim]")


# -- commands --------------------------------------------------------------

@app.command("list-devices")
def list_devices() -> None:
    """List attached devices in FEL/FES mode."""
    print_header("Attached FEL Devices")

    try:
        devices = usb_list_devices()
    except FelError as e:
        print_error(str(e))
        sys.exit(1)

    if not devices:
        print_warning("No FEL devices found")
        return

    table = Table(title="FEL Devices")
    table.add_column("Index", style="cyan")
    table.add_column("Bus", style="magenta")
    table.add_column("Address", style="green")
    for info in devices:
        table.add_row(str(info.index), f"{info.bus:03d}", f"{info.address:03d}")
    console.print(table)


@app.command()
def status(
    device: int = typer.Option(0, "--device", "-d", help="Device index (see list-devices)"),
) -> None:
    """Show the SoC, firmware and mode of a device."""
    print_header("Device Status")

    result = core_device_status(config=make_config(), index=device)
    if result.ok:
        table = Table(title="Device Information")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("SoC", result.device)
        table.add_row("Board", f"0x{result.metadata['board']:08X}")
        table.add_row("Revision", str(result.metadata["revision"]))
        table.add_row("Firmware", f"0x{result.metadata['fw']:X}")
        table.add_row("Mode", result.metadata["mode"])
        console.print(table)
    finish(result, "Device is responding")


@app.command("image-info")
def image_info(
    image: str = typer.Argument(..., help="Firmware image (.img)"),
    cipher: Optional[str] = typer.Option(None, "--cipher", help="Decryptor as module:attribute"),
) -> None:
    """Show the header, items and flash plan of a firmware image."""
    print_header("Firmware Image")

    if not Path(image).exists():
        print_error(f"Image not found: {image}")
        sys.exit(1)

    result = core_inspect_image(image, get_cipher(cipher))
    if result.ok:
        header = result.metadata["header"]
        table = Table(title="Header")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Format", f"0x{header['image_format']:X}")
        table.add_row("Version", f"0x{header['image_version']:X}")
        table.add_row("USB ids", f"{header['vid']:04X}:{header['pid']:04X}")
        table.add_row("Hardware / firmware", f"0x{header['hw']:X} / 0x{header['fw']:X}")
        table.add_row("Encrypted", "Yes" if result.metadata["encrypted"] else "No")
        table.add_row("Boot", "1.0 (legacy)" if result.metadata["legacy"] else "2.0")
        console.print(table)

        items = Table(title=f"Items ({header['item_count']})")
        items.add_column("#", style="dim")
        items.add_column("Main type", style="cyan")
        items.add_column("Sub type", style="magenta")
        items.add_column("Path")
        items.add_column("Length", justify="right", style="green")
        for index, item in enumerate(result.metadata["items"]):
            items.add_row(
                str(index), item["main_type"], item["sub_type"], item["path"], f"{item['length']:,}"
            )
        console.print(items)

        if result.metadata["plan"]:
            plan = Table(title="Flash Plan")
            plan.add_column("Partition", style="cyan")
            plan.add_column("Sector", justify="right")
            plan.add_column("Sectors", justify="right")
            plan.add_column("Item", style="magenta")
            plan.add_column("Verify item", style="dim")
            for entry in result.metadata["plan"]:
                plan.add_row(
                    entry["name"],
                    f"0x{entry['address']:X}",
                    f"0x{entry['length']:X}",
                    entry["filename"],
                    entry["verify_filename"] or "-",
                )
            console.print(plan)
    finish(result, "Image parsed")


@app.command()
def extract(
    image: str = typer.Argument(..., help="Firmware image (.img)"),
    item: str = typer.Argument(..., help="Item file name (u-boot.fex) or signature (SYSTEM_FEX000000)"),
    output: str = typer.Option(..., "--output", "-o", help="Destination file"),
    unsparse: bool = typer.Option(False, "--unsparse", help="Expand sparse items"),
    cipher: Optional[str] = typer.Option(None, "--cipher", help="Decryptor as module:attribute"),
) -> None:
    """Extract one item of a firmware image."""
    print_header("Extract Item")

    result = core_extract_item(image, item, output, get_cipher(cipher), unsparse=unsparse)
    if result.ok:
        suffix = " (unsparsed)" if result.metadata["unsparsed"] else ""
        console.print(f"{result.metadata['item']} → {output}: {result.bytes_len:,} bytes{suffix}")
    finish(result, "Item extracted")


@app.command()
def read(
    address: str = typer.Argument(..., help="Start address: bytes (FEL/DRAM) or sectors (FES storage)"),
    length: str = typer.Argument(..., help="Bytes to read, e.g. 512, 0x200, 64k"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Save to file"),
    mode: str = typer.Option("fel", "--mode", "-m", help="fel or fes"),
    tags: Optional[str] = typer.Option(None, "--tags", "-t", help="Comma separated tags, e.g. dram"),
    device: int = typer.Option(0, "--device", "-d", help="Device index"),
) -> None:
    """Read device memory (FEL) or storage/DRAM (FES)."""
    print_header("Read Memory")

    address_int = parse_int(address, "address")
    length_int = parse_size(length)
    device_mode = parse_mode(mode)
    tag_list = parse_tags(tags)

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        result = core_read_memory(
            address_int,
            length_int,
            tag_list,
            device_mode,
            config=make_config(),
            index=device,
            progress_cb=byte_progress(progress, "Reading..."),
        )

    if result.ok:
        data = result.metadata["data"]
        console.print(f"CRC32: {result.hashes['crc32']}")
        if output:
            Path(output).write_bytes(data)
            console.print(f"Saved {len(data):,} bytes to {output}")
        else:
            hexdump(data, address_int)
    finish(result, "Read complete")


@app.command()
def write(
    address: str = typer.Argument(..., help="Start address: bytes (FEL/DRAM) or sectors (FES storage)"),
    input_file: str = typer.Argument(..., help="File to write"),
    mode: str = typer.Option("fel", "--mode", "-m", help="fel or fes"),
    tags: Optional[str] = typer.Option(None, "--tags", "-t", help="Comma separated tags, e.g. dram,finish"),
    no_verify: bool = typer.Option(False, "--no-verify", help="Skip readback (FEL only)"),
    device: int = typer.Option(0, "--device", "-d", help="Device index"),
    write_flag: bool = typer.Option(False, "--write", help="Required flag to enable actual write"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE' for write operations)",
    ),
) -> None:
    """Write a file to device memory (FEL) or storage/DRAM (FES)."""
    print_header("Write Memory")

    address_int = parse_int(address, "address")
    device_mode = parse_mode(mode)
    tag_list = parse_tags(tags)
    path = Path(input_file)
    if not path.exists():
        print_error(f"File not found: {input_file}")
        sys.exit(1)
    data = path.read_bytes()

    ctx = create_safety_context(write_flag, confirm, device=f"device #{device}")
    try:
        with Progress(
            TextColumn("[{task.description}]"),
            BarColumn(),
            TextColumn("[{task.percentage:.0f}%]"),
            console=console,
        ) as progress:
            result = core_write_memory(
                address_int,
                data,
                ctx,
                tag_list,
                device_mode,
                verify=not no_verify,
                config=make_config(),
                index=device,
                progress_cb=byte_progress(progress, "Writing..."),
            )
    except WritePermissionError as e:
        report_write_denied(e)

    if result.ok:
        console.print(f"CRC32: {result.hashes['crc32']}")
        if "verified" in result.metadata:
            console.print("Readback: [green]match[/green]")
    finish(result, f"Wrote {len(data):,} bytes")


@app.command()
def run(
    address: str = typer.Argument(..., help="Entry point"),
    mode: str = typer.Option("fel", "--mode", "-m", help="fel or fes"),
    flags: Optional[str] = typer.Option(None, "--flags", help="FES run flags, e.g. has_param,fet"),
    args: Optional[str] = typer.Option(None, "--args", help="Up to four comma separated arguments"),
    device: int = typer.Option(0, "--device", "-d", help="Device index"),
) -> None:
    """Execute code on the device."""
    print_header("Run Code")

    address_int = parse_int(address, "address")
    device_mode = parse_mode(mode)
    run_flags = parse_run_flags(flags)
    run_args = [parse_int(a, "argument") for a in args.split(",")] if args else None
    if run_args and RunContext.HAS_PARAM not in run_flags:
        run_flags.append(RunContext.HAS_PARAM)

    result = core_run_code(
        address_int, device_mode, run_flags, run_args, config=make_config(), index=device
    )
    finish(result, f"Started code at 0x{address_int:08X}")


@app.command()
def reboot(
    action: str = typer.Option("reboot", "--action", "-a", help="reboot, shutdown, normal, boot, ..."),
    work_mode: str = typer.Option("usb_tool_update", "--work-mode", help="U-Boot work mode"),
    device: int = typer.Option(0, "--device", "-d", help="Device index"),
) -> None:
    """Leave FES mode (reboot, shut down or boot normally)."""
    print_header("Tool Mode")

    try:
        tool_action = _parse_action_core(action)
        mode = _parse_work_mode_core(work_mode)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    result = core_set_tool_mode(mode, tool_action, config=make_config(), index=device)
    finish(result, f"Requested {tool_action.name.lower()}")


@app.command()
def flash(
    image: str = typer.Argument(..., help="Firmware image (.img)"),
    format: bool = typer.Option(False, "--format", help="Erase all data, including user data"),
    no_verify: bool = typer.Option(False, "--no-verify", help="Skip partition CRC checks"),
    storage: str = typer.Option("nand", "--storage", help="nand or card (selects boot0)"),
    cipher: Optional[str] = typer.Option(None, "--cipher", help="Decryptor as module:attribute"),
    device: int = typer.Option(0, "--device", "-d", help="Device index"),
    write_flag: bool = typer.Option(False, "--write", help="Required flag to enable actual write"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE' for write operations)",
    ),
) -> None:
    """
    Flash a complete firmware image.

    Steps:
    1. Boot the device from FEL into FES (fes1, then u-boot)
    2. Write the partition table
    3. Write every partition of the flash plan, checking CRCs
    4. Write u-boot and boot0, then reboot
    """
    print_header("Flash Firmware")

    if not Path(image).exists():
        print_error(f"Image not found: {image}")
        sys.exit(1)

    config = make_config(storage)
    console.print(f"Image: {image}")
    console.print(f"Storage: {storage}{' (format)' if format else ''}")

    ctx = create_safety_context(write_flag, confirm, device=f"device #{device}")
    try:
        with Progress(
            TextColumn("[{task.description}]"),
            BarColumn(),
            TextColumn("[{task.percentage:.0f}%]"),
            console=console,
        ) as progress:
            tasks: Dict[str, int] = {}

            def on_event(message: str, kind: EventKind, value: Optional[int]) -> None:
                if kind == EventKind.PERCENT:
                    if message not in tasks:
                        tasks[message] = progress.add_task(message, total=100)
                    progress.update(tasks[message], completed=value or 0)
                elif kind == EventKind.ACTION:
                    progress.console.print(f"[bold]{message}[/bold]")

            result = core_flash_image(
                image,
                ctx,
                format=format,
                verify=not no_verify,
                cipher=get_cipher(cipher),
                config=config,
                index=device,
                progress_cb=on_event,
            )
    except WritePermissionError as e:
        report_write_denied(e)

    partitions = result.metadata.get("partitions", [])
    if partitions:
        table = Table(title="Partitions")
        table.add_column("Partition", style="cyan")
        table.add_column("Status", style="green")
        table.add_column("Bytes", justify="right")
        table.add_column("Rewrites", justify="right", style="dim")
        for outcome in partitions:
            table.add_row(
                outcome["name"],
                outcome["status"],
                f"{outcome['bytes_len']:,}",
                str(outcome["rewrites"]),
            )
        console.print(table)
    console.print(f"Final state: {result.metadata.get('state', 'unknown')}")
    finish(result, "Firmware flashed successfully!")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
