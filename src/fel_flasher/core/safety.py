"""
Safety context and write gating for device operations.

Centralizes all confirmation and gating rules so that every destructive
command (flash, write) enforces identical checks.
"""

import sys
from dataclasses import dataclass, field
from typing import Optional, List, Callable

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why write was denied
        details: Additional context (target, length, ...)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Safety context for write operations.

    Attributes:
        write_enabled: Whether the --write flag was provided
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the UI can prompt for confirmation
        device: Detected SoC name, if known
        warnings: List of warning messages accumulated during operation
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    device: str = ""
    warnings: List[str] = field(default_factory=list)

    # CLI sets these to prompt/display functions
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_details_dict(self, target: str = "", bytes_length: int = 0) -> dict:
        """Create a details dictionary for display."""
        details = {
            "device": self.device or "Unknown",
            "target": target,
            "bytes_length": bytes_length,
        }
        if self.warnings:
            details["warnings"] = self.warnings
        return details


def require_write_permission(
    ctx: SafetyContext,
    target: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules enforced:
    1. Write must be enabled (--write)
    2. If a confirmation token is present it must match exactly
    3. Otherwise the user is prompted interactively

    Raises:
        WritePermissionError: If write is not permitted
    """
    details = ctx.to_details_dict(target, bytes_length)

    if not ctx.write_enabled:
        raise WritePermissionError(
            "Write operation requires explicit permission. Use --write flag.",
            details=details,
        )

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            "Non-interactive mode requires --confirm WRITE.",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)

    if ctx.prompt_confirmation is None:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set. "
            "Provide --confirm WRITE for non-interactive mode.",
            details=details,
        )
    user_input = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if user_input.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError(
            "Confirmation failed. Write aborted by user.",
            details=details,
        )


def create_cli_safety_context(
    write_flag: bool,
    confirmation_token: Optional[str] = None,
    device: str = "",
    prompt_confirmation: Optional[Callable[[str], str]] = None,
    show_details: Optional[Callable[[dict], None]] = None,
) -> SafetyContext:
    """
    Create a SafetyContext configured for CLI usage.

    Prompts interactively only when stdin is a TTY and no token was given.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None
    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=interactive,
        device=device,
        prompt_confirmation=prompt_confirmation,
        show_details=show_details,
    )
