"""Header inspection for existing boot images.

Inspection never fails hard: every field the available tools cannot report
comes back as ``None`` so callers can substitute defaults or, for the page
size, treat the image as suspect.
"""

from __future__ import annotations

import hashlib
import logging
import re
import tempfile
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Callable, Pattern, Sequence

from boot_config import parse_int
from bootimg_format import read_header
from errors import BootImageError, BootImageFormatError, ExtractionFailed
from host_bootstrap import BackendAvailability, run_tool

LOG = logging.getLogger("rg35xxh.inspector")

__all__ = [
    "HeaderInfo",
    "InspectorBackend",
    "AbootimgInspector",
    "UnpackbootimgInspector",
    "NativeInspector",
    "default_inspectors",
    "describe_boot_image",
    "inspect_boot_image",
    "parse_inspector_output",
    "parse_page_size",
]


@dataclass(frozen=True)
class HeaderInfo:
    """Best-effort header fields; ``None`` marks a value that could not be read."""

    page_size: int | None = None
    base: int | None = None
    board: str | None = None
    cmdline: str | None = None
    kernel_addr: int | None = None
    ramdisk_addr: int | None = None
    tags_addr: int | None = None
    backend: str | None = None

    @property
    def is_unknown(self) -> bool:
        return all(
            getattr(self, item.name) is None for item in fields(self) if item.name != "backend"
        )

    def page_size_text(self) -> str:
        return str(self.page_size) if self.page_size is not None else "unknown"


# Decimal only: a hex value such as "0x800" is left to the token scan below.
_PAGE_SIZE_RE = re.compile(r"page[\s_]*size\s*[:=]?\s*(\d+)(?![\dxX])", re.IGNORECASE)
_INTEGER_TOKEN_RE = re.compile(r"^(?:0[xX][0-9a-fA-F]+|\d+)$")
_TOKEN_SPLIT_RE = re.compile(r"[\s:=,()\"]+")


def _hex(text: str) -> int:
    return int(text, 16)


def _text(value: str) -> str | None:
    stripped = value.strip().strip('"').strip()
    return stripped or None


_BASE_PATTERNS: list[tuple[Pattern[str], Callable[[str], int]]] = [
    (re.compile(r"base\s*addr(?:ess)?\s*[:=]\s*(0x[0-9a-fA-F]+)", re.IGNORECASE), parse_int),
    (re.compile(r"BOARD_KERNEL_BASE\s*[:=]?\s*(?:0x)?([0-9a-fA-F]+)"), _hex),
]
_BOARD_PATTERNS = [
    re.compile(r"board\s*name\s*[:=][ \t]*(.*)$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"boot\s*name\s*=[ \t]*(.*)$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"BOARD_NAME\s*[:=]?[ \t]*(.*)$", re.MULTILINE),
]
_CMDLINE_PATTERNS = [
    re.compile(r"command\s*line\s*[:=][ \t]*(.*)$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\W*cmdline\s*=[ \t]*(.*)$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"BOARD_KERNEL_CMDLINE\s*[:=]?[ \t]*(.*)$", re.MULTILINE),
]
_ADDRESS_PATTERNS = {
    "kernel_addr": re.compile(r"^\s*kernel\s*(?:addr)?\s*[:=]\s*(0x[0-9a-fA-F]+)", re.I | re.M),
    "ramdisk_addr": re.compile(r"^\s*ramdisk\s*(?:addr)?\s*[:=]\s*(0x[0-9a-fA-F]+)", re.I | re.M),
    "tags_addr": re.compile(r"^\s*tags\s*(?:addr)?\s*[:=]\s*(0x[0-9a-fA-F]+)", re.I | re.M),
}


def parse_page_size(text: str) -> int | None:
    """Extract the page size from inspector *text*.

    The primary pattern wants a decimal value right after a "page size"
    label.  Tool versions that print hex or reorder the line fall through to
    the first integer token (decimal or ``0x`` hex) on any line mentioning
    "page".
    """

    match = _PAGE_SIZE_RE.search(text)
    if match:
        return int(match.group(1))

    for line in text.splitlines():
        if "page" not in line.lower():
            continue
        for token in _TOKEN_SPLIT_RE.split(line):
            if _INTEGER_TOKEN_RE.match(token):
                return parse_int(token)
    return None


def parse_inspector_output(text: str, *, backend: str | None = None) -> HeaderInfo:
    """Return the header fields found in the textual output of an inspector tool."""

    base = None
    for pattern, convert in _BASE_PATTERNS:
        match = pattern.search(text)
        if match:
            base = convert(match.group(1))
            break

    board = None
    for pattern in _BOARD_PATTERNS:
        match = pattern.search(text)
        if match:
            board = _text(match.group(1))
            break

    cmdline = None
    for pattern in _CMDLINE_PATTERNS:
        match = pattern.search(text)
        if match:
            cmdline = _text(match.group(1))
            break

    addresses: dict[str, int | None] = {}
    for name, pattern in _ADDRESS_PATTERNS.items():
        match = pattern.search(text)
        addresses[name] = parse_int(match.group(1)) if match else None

    return HeaderInfo(
        page_size=parse_page_size(text),
        base=base,
        board=board,
        cmdline=cmdline,
        backend=backend,
        **addresses,
    )


class InspectorBackend:
    """Base class for tools able to report boot image header fields."""

    name = "inspector"
    requires: tuple[str, ...] = ()

    def is_available(self, availability: BackendAvailability) -> bool:
        return all(availability.has(tool) for tool in self.requires)

    def inspect(self, image: Path) -> HeaderInfo:
        raise NotImplementedError


class AbootimgInspector(InspectorBackend):
    """Parse the report printed by ``abootimg -i``."""

    name = "abootimg"
    requires = ("abootimg",)

    def inspect(self, image: Path) -> HeaderInfo:
        result = run_tool(["abootimg", "-i", image], logger=LOG)
        if not result.ok or not result.output.strip():
            raise ExtractionFailed(f"abootimg -i exited with status {result.returncode}")
        return parse_inspector_output(result.output, backend=self.name)


class UnpackbootimgInspector(InspectorBackend):
    """Use ``unpackbootimg`` and read both its log and the per-field files it writes."""

    name = "unpackbootimg"
    requires = ("unpackbootimg",)

    _FIELD_FILES = (
        ("pagesize", "BOARD_PAGE_SIZE"),
        ("base", "BOARD_KERNEL_BASE"),
        ("cmdline", "BOARD_KERNEL_CMDLINE"),
        ("board", "BOARD_NAME"),
    )

    def inspect(self, image: Path) -> HeaderInfo:
        with tempfile.TemporaryDirectory(prefix="rg35xxh-inspect-") as tmpdir:
            workdir = Path(tmpdir)
            result = run_tool(["unpackbootimg", "-i", image, "-o", workdir], logger=LOG)
            if not result.ok:
                raise ExtractionFailed(f"unpackbootimg exited with status {result.returncode}")
            lines = [result.output]
            for suffix, label in self._FIELD_FILES:
                for candidate in sorted(workdir.glob(f"*-{suffix}")):
                    lines.append(f"{label} {candidate.read_text().strip()}")
                    break
        return parse_inspector_output("\n".join(lines), backend=self.name)


class NativeInspector(InspectorBackend):
    """Read the header directly; needs no host tools."""

    name = "native"

    def inspect(self, image: Path) -> HeaderInfo:
        try:
            header = read_header(image)
        except (OSError, BootImageFormatError) as exc:
            raise ExtractionFailed(str(exc)) from exc
        return HeaderInfo(
            page_size=header.page_size,
            board=header.name or None,
            cmdline=header.cmdline or None,
            kernel_addr=header.kernel_addr,
            ramdisk_addr=header.ramdisk_addr,
            tags_addr=header.tags_addr,
            backend=self.name,
        )


def default_inspectors(availability: BackendAvailability) -> list[InspectorBackend]:
    """Inspectors usable on this host in priority order."""

    candidates: list[InspectorBackend] = [AbootimgInspector(), UnpackbootimgInspector(), NativeInspector()]
    return [backend for backend in candidates if backend.is_available(availability)]


def inspect_boot_image(image: Path, backends: Sequence[InspectorBackend]) -> HeaderInfo:
    """Return the header fields of *image* reported by the first capable backend."""

    if not image.is_file():
        LOG.warning("Boot image not found: %s", image)
        return HeaderInfo()

    partial: HeaderInfo | None = None
    for backend in backends:
        try:
            info = backend.inspect(image)
        except BootImageError as exc:
            LOG.warning("%s could not inspect %s: %s", backend.name, image, exc)
            continue
        if info.page_size is not None:
            LOG.info("Current boot image page size: %s (via %s)", info.page_size, backend.name)
            return info
        if partial is None and not info.is_unknown:
            partial = info
        LOG.warning("%s did not report a page size for %s", backend.name, image)

    if partial is not None:
        return partial
    LOG.warning("Current boot image page size: unknown")
    return HeaderInfo()


def describe_boot_image(image: Path, backends: Sequence[InspectorBackend]) -> str:
    """Return a human-readable summary of *image* for diagnostics."""

    if not image.is_file():
        return f"Boot image not found: {image}"

    digest = hashlib.sha256()
    with image.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)

    info = inspect_boot_image(image, backends)

    def show(value: object) -> str:
        if value is None:
            return "unknown"
        if isinstance(value, int):
            return f"0x{value:08x}"
        return str(value)

    lines = [
        f"Boot image: {image}",
        f"Size: {image.stat().st_size} bytes",
        f"SHA256: {digest.hexdigest()}",
        f"Page size: {info.page_size_text()}",
        f"Base address: {show(info.base)}",
        f"Kernel address: {show(info.kernel_addr)}",
        f"Ramdisk address: {show(info.ramdisk_addr)}",
        f"Tags address: {show(info.tags_addr)}",
        f"Board name: {show(info.board)}",
        f"Command line: {show(info.cmdline)}",
        f"Inspected with: {info.backend or 'none'}",
    ]
    return "\n".join(lines)
