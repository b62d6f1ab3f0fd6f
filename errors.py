"""Exception hierarchy shared by the boot image tooling."""

from __future__ import annotations

from typing import Sequence


class BootImageError(RuntimeError):
    """Base class for every boot image failure."""


class ToolUnavailable(BootImageError):
    """Raised when a backend's executable is not installed."""

    def __init__(self, tool: str) -> None:
        super().__init__(f"Required command '{tool}' is not available.")
        self.tool = tool


class BackendFailed(BootImageError):
    """A backend ran but failed; the next one in the chain gets a turn."""


class ExtractionFailed(BackendFailed):
    """A backend ran but did not leave a usable output file behind."""


class BootImageFormatError(BootImageError):
    """The file is not a parseable Android boot image."""


class PageSizeMismatch(BootImageError):
    """The boot image does not use the page size the bootloader expects."""

    def __init__(self, expected: int, detected: int | None) -> None:
        shown = detected if detected is not None else "unknown"
        super().__init__(f"Boot image page size mismatch: {shown} (expected: {expected})")
        self.expected = expected
        self.detected = detected


class AssemblyFailed(BootImageError):
    """No assembler backend could produce the requested boot image."""

    def __init__(self, message: str, attempted: Sequence[str] = ()) -> None:
        if attempted:
            message = f"{message} (attempted: {', '.join(attempted)})"
        super().__init__(message)
        self.attempted = list(attempted)


class RepairFailed(BootImageError):
    """A known-bad image could not be unpacked for reassembly."""

    def __init__(self, message: str, attempted: Sequence[str] = ()) -> None:
        if attempted:
            message = f"{message} (attempted: {', '.join(attempted)})"
        super().__init__(message)
        self.attempted = list(attempted)
