"""
Centralized parsing helpers for addresses, sizes, tags and modes.

The CLI must import these helpers rather than re-implement them.
"""

from typing import List, Optional

from fel_flasher.protocol.constants import DeviceMode, Tag, ToolAction, WorkMode

SIZE_SUFFIXES = {"k": 1024, "m": 1024 * 1024, "g": 1024 * 1024 * 1024}


def parse_int(value: Optional[str]) -> Optional[int]:
    """
    Parse an address or length from string, supporting multiple formats.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x4A000000" or "0X4A000000"
        - Hex with h suffix: "2000h" or "2000H"
        - None or empty for "not given"

    Returns:
        Parsed integer, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        if value.lower().endswith("h"):
            return int(value[:-1], 16)
        return int(value)
    except ValueError:
        raise ValueError(
            f"Invalid number '{value}'. Use decimal (8192), hex (0x2000), or suffix (2000h)."
        )


parse_address = parse_int


def parse_size(value: str) -> int:
    """
    Parse a byte count with an optional K/M/G suffix ("64k", "1M", "0x100").

    Raises:
        ValueError: If value is empty, negative or cannot be parsed.
    """
    text = (value or "").strip()
    multiplier = 1
    if text and text[-1].lower() in SIZE_SUFFIXES and not text.lower().startswith("0x"):
        multiplier = SIZE_SUFFIXES[text[-1].lower()]
        text = text[:-1]
    number = parse_int(text)
    if number is None or number < 0:
        raise ValueError(f"Invalid size '{value}'. Use e.g. 512, 0x200, 64k or 1M.")
    return number * multiplier


def parse_tags(value: Optional[str]) -> List[Tag]:
    """
    Parse a comma separated tag list ("dram", "mbr,finish", "0x7f00").

    Raises:
        ValueError: If a tag name is unknown.
    """
    if not value:
        return []
    tags = []
    for part in value.split(","):
        name = part.strip()
        if not name:
            continue
        if name[0].isdigit():
            try:
                tags.append(Tag(parse_int(name)))
            except ValueError:
                raise ValueError(f"Unknown tag value '{name}'")
            continue
        try:
            tags.append(Tag[name.upper().replace("-", "_")])
        except KeyError:
            valid = ", ".join(t.name.lower() for t in Tag)
            raise ValueError(f"Unknown tag '{name}'. Valid tags: {valid}")
    return tags


def _parse_enum(enum_cls, value: str, what: str):
    name = (value or "").strip().upper().replace("-", "_")
    try:
        return enum_cls[name]
    except KeyError:
        valid = ", ".join(sorted({m.name.lower() for m in enum_cls}))
        raise ValueError(f"Unknown {what} '{value}'. Valid: {valid}")


def parse_mode(value: str) -> DeviceMode:
    """Parse "fel" or "fes" into a DeviceMode."""
    mode = _parse_enum(DeviceMode, value, "mode")
    if mode not in (DeviceMode.FEL, DeviceMode.FES):
        raise ValueError(f"Mode must be 'fel' or 'fes', got '{value}'")
    return mode


def parse_work_mode(value: str) -> WorkMode:
    return _parse_enum(WorkMode, value, "work mode")


def parse_action(value: str) -> ToolAction:
    return _parse_enum(ToolAction, value, "action")
