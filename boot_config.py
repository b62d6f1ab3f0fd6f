"""Boot image parameters for the Anbernic RG35XX-H.

The stock bootloader on the H700 boards only accepts Android boot images laid
out with a 2048 byte page size and loads the kernel relative to
``0x40000000``.  Everything that needs these values receives a
:class:`BootImageConfig` explicitly; nothing reads them from module state.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Mapping

DEFAULT_PAGE_SIZE = 2048
DEFAULT_BASE = 0x40000000
DEFAULT_KERNEL_OFFSET = 0x00080000
DEFAULT_RAMDISK_OFFSET = 0x04000000
DEFAULT_SECOND_OFFSET = 0x00F00000
DEFAULT_TAGS_OFFSET = 0x0E000000
DEFAULT_CMDLINE = "console=tty0 loglevel=7 ignore_loglevel"
DEFAULT_BOARD = "RG35XX_H Custom"
DEFAULT_BOOT_SIZE = 0x2000000

MAX_CMDLINE_BYTES = 512
MAX_BOARD_BYTES = 16
MIN_PAGE_SIZE = 2048


def parse_int(value: str | int) -> int:
    """Return *value* as an integer, accepting decimal or ``0x`` hex text."""

    if isinstance(value, int):
        return value
    text = value.strip()
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text, 10)


def is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


class PackagingMode(enum.Enum):
    """Where the device tree lives relative to the kernel in the boot image."""

    CONCATENATED = "catdt"
    SEPARATE_DTB = "with-dt"

    @classmethod
    def parse(cls, value: "str | PackagingMode") -> "PackagingMode":
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for mode in cls:
            if text.lower() in {mode.value, mode.name.lower()}:
                return mode
        choices = ", ".join(mode.value for mode in cls)
        raise ValueError(f"Unknown packaging mode '{value}' (expected one of: {choices})")


@dataclass(frozen=True)
class BootImageConfig:
    """Header parameters written into every assembled boot image."""

    page_size: int = DEFAULT_PAGE_SIZE
    base: int = DEFAULT_BASE
    kernel_offset: int = DEFAULT_KERNEL_OFFSET
    ramdisk_offset: int = DEFAULT_RAMDISK_OFFSET
    second_offset: int = DEFAULT_SECOND_OFFSET
    tags_offset: int = DEFAULT_TAGS_OFFSET
    cmdline: str = DEFAULT_CMDLINE
    board: str = DEFAULT_BOARD
    boot_size: int = DEFAULT_BOOT_SIZE

    @property
    def kernel_addr(self) -> int:
        return self.base + self.kernel_offset

    @property
    def ramdisk_addr(self) -> int:
        return self.base + self.ramdisk_offset

    @property
    def second_addr(self) -> int:
        return self.base + self.second_offset

    @property
    def tags_addr(self) -> int:
        return self.base + self.tags_offset

    def with_page_size(self, page_size: int) -> "BootImageConfig":
        return replace(self, page_size=page_size)

    def validate(self) -> None:
        """Raise :class:`ValueError` if the parameters cannot be encoded."""

        if not is_power_of_two(self.page_size) or self.page_size < MIN_PAGE_SIZE:
            raise ValueError(
                f"Page size must be a power of two of at least {MIN_PAGE_SIZE} bytes, got {self.page_size}"
            )
        if len(self.cmdline.encode()) > MAX_CMDLINE_BYTES:
            raise ValueError(f"Kernel command line exceeds {MAX_CMDLINE_BYTES} bytes")
        if len(self.board.encode()) > MAX_BOARD_BYTES:
            raise ValueError(f"Board name exceeds {MAX_BOARD_BYTES} bytes")

    @classmethod
    def from_environment(cls, environ: Mapping[str, str]) -> "BootImageConfig":
        """Build a config honouring the ``PAGE_SIZE``/``KCMD`` style overrides."""

        config = cls()
        if environ.get("PAGE_SIZE"):
            config = replace(config, page_size=parse_int(environ["PAGE_SIZE"]))
        cmdline = environ.get("CUSTOM_CMDLINE") or environ.get("KCMD")
        if cmdline:
            config = replace(config, cmdline=cmdline)
        if environ.get("BOARD_BASE"):
            config = replace(config, base=parse_int(environ["BOARD_BASE"]))
        return config


DTB_VARIANTS = [
    "sun50i-h700-anbernic-rg35xx-h.dtb",
    "sun50i-h700-anbernic-rg35xx-h-rev6-panel.dtb",
    "sun50i-h700-rg40xx-h.dtb",
]
