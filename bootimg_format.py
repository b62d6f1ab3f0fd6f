"""Pure Python codec for version 0 Android boot images.

Layout written and understood here::

    +-----------------+
    | boot header     | 1 page
    +-----------------+
    | kernel          | n pages
    +-----------------+
    | ramdisk         | m pages
    +-----------------+
    | second stage    | o pages (the separate DTB on this device)
    +-----------------+
    | device tree     | p pages (legacy ``mkbootimg --dt`` only)
    +-----------------+

    n = (kernel_size + page_size - 1) / page_size
    m = (ramdisk_size + page_size - 1) / page_size
    o = (second_size + page_size - 1) / page_size

Every section starts on a page boundary.  The bootloader finds the ramdisk by
rounding the kernel size up to the page size recorded in the header, so an
image written with one page size and read with another is unbootable.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, replace
from pathlib import Path

from boot_config import MIN_PAGE_SIZE, BootImageConfig, is_power_of_two
from errors import BootImageFormatError

BOOT_MAGIC = b"ANDROID!"
BOOT_NAME_SIZE = 16
BOOT_ARGS_SIZE = 512
BOOT_ID_SIZE = 32
BOOT_EXTRA_ARGS_SIZE = 1024

# Header versions 1 and 2 append fields after the v0 header.  Older
# mkbootimg forks that take ``--dt`` reuse the same word for the size of a
# device tree stored after the second stage, so larger values are read that way.
MAX_HEADER_VERSION = 2

# magic, kernel_size, kernel_addr, ramdisk_size, ramdisk_addr, second_size,
# second_addr, tags_addr, page_size, header_version, os_version, name, cmdline,
# id, extra_cmdline
HEADER_STRUCT = struct.Struct(
    f"<8s10I{BOOT_NAME_SIZE}s{BOOT_ARGS_SIZE}s{BOOT_ID_SIZE}s{BOOT_EXTRA_ARGS_SIZE}s"
)


def page_count(size: int, page_size: int) -> int:
    """Return the number of pages needed to hold *size* bytes."""

    return (size + page_size - 1) // page_size


def align(size: int, page_size: int) -> int:
    return page_count(size, page_size) * page_size


def pad_to_page(data: bytes, alignment: int) -> bytes:
    """Return *data* zero-padded up to the next multiple of *alignment*."""

    if alignment <= 0:
        raise ValueError(f"Alignment must be positive, got {alignment}")
    remainder = len(data) % alignment
    if not remainder:
        return bytes(data)
    return bytes(data) + b"\x00" * (alignment - remainder)


def _cstring(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")


@dataclass(frozen=True)
class SectionOffsets:
    kernel: int
    ramdisk: int
    second: int
    dt: int
    end: int


@dataclass
class BootImageHeader:
    """Parsed representation of the fixed-size boot image header."""

    kernel_size: int
    kernel_addr: int
    ramdisk_size: int
    ramdisk_addr: int
    second_size: int
    second_addr: int
    tags_addr: int
    page_size: int
    header_version: int = 0
    os_version: int = 0
    name: str = ""
    cmdline: str = ""
    image_id: bytes = b""
    extra_cmdline: str = ""

    def pack(self) -> bytes:
        return HEADER_STRUCT.pack(
            BOOT_MAGIC,
            self.kernel_size,
            self.kernel_addr,
            self.ramdisk_size,
            self.ramdisk_addr,
            self.second_size,
            self.second_addr,
            self.tags_addr,
            self.page_size,
            self.header_version,
            self.os_version,
            self.name.encode(),
            self.cmdline.encode(),
            self.image_id,
            self.extra_cmdline.encode(),
        )

    @classmethod
    def unpack(cls, data: bytes) -> "BootImageHeader":
        if len(data) < HEADER_STRUCT.size:
            raise BootImageFormatError(
                f"Boot image header truncated: {len(data)} of {HEADER_STRUCT.size} bytes"
            )
        fields = HEADER_STRUCT.unpack_from(data)
        if fields[0] != BOOT_MAGIC:
            raise BootImageFormatError(f"Bad boot image magic: {fields[0]!r}")
        header = cls(
            kernel_size=fields[1],
            kernel_addr=fields[2],
            ramdisk_size=fields[3],
            ramdisk_addr=fields[4],
            second_size=fields[5],
            second_addr=fields[6],
            tags_addr=fields[7],
            page_size=fields[8],
            header_version=fields[9],
            os_version=fields[10],
            name=_cstring(fields[11]),
            cmdline=_cstring(fields[12]),
            image_id=fields[13],
            extra_cmdline=_cstring(fields[14]),
        )
        if not is_power_of_two(header.page_size) or header.page_size < MIN_PAGE_SIZE:
            raise BootImageFormatError(f"Implausible page size in header: {header.page_size}")
        return header

    @property
    def dt_size(self) -> int:
        """Size of a legacy ``--dt`` device tree, or 0."""

        return self.header_version if self.header_version > MAX_HEADER_VERSION else 0

    def section_offsets(self) -> SectionOffsets:
        page = self.page_size
        kernel = page
        ramdisk = kernel + align(self.kernel_size, page)
        second = ramdisk + align(self.ramdisk_size, page)
        dt = second + align(self.second_size, page)
        end = dt + align(self.dt_size, page)
        return SectionOffsets(kernel=kernel, ramdisk=ramdisk, second=second, dt=dt, end=end)

    def required_size(self) -> int:
        """Smallest file size that holds every declared section."""

        offsets = self.section_offsets()
        if self.dt_size:
            return offsets.dt + self.dt_size
        if self.second_size:
            return offsets.second + self.second_size
        return offsets.ramdisk + self.ramdisk_size


@dataclass
class BootImageComponents:
    header: BootImageHeader
    kernel: bytes
    ramdisk: bytes
    second: bytes = b""
    dt: bytes = b""


def compute_image_id(*blobs: bytes) -> bytes:
    """SHA-1 over each payload followed by its little-endian size, as mkbootimg does."""

    sha = hashlib.sha1()
    for blob in blobs:
        sha.update(blob)
        sha.update(struct.pack("<I", len(blob)))
    return sha.digest()


def build_boot_image(
    kernel: bytes,
    ramdisk: bytes,
    config: BootImageConfig,
    second: bytes = b"",
) -> bytes:
    """Return a complete page-aligned boot image for the given payloads."""

    config.validate()
    header = BootImageHeader(
        kernel_size=len(kernel),
        kernel_addr=config.kernel_addr,
        ramdisk_size=len(ramdisk),
        ramdisk_addr=config.ramdisk_addr,
        second_size=len(second),
        second_addr=config.second_addr,
        tags_addr=config.tags_addr,
        page_size=config.page_size,
        name=config.board,
        cmdline=config.cmdline,
    )
    return pack_boot_image(header, kernel, ramdisk, second)


def pack_boot_image(
    header: BootImageHeader,
    kernel: bytes,
    ramdisk: bytes,
    second: bytes = b"",
    dt: bytes = b"",
) -> bytes:
    """Serialize *header* with its payloads.

    Section sizes, the id and the version word are recomputed from the
    payloads, so the result is always a v0 image (with a legacy device tree
    section when *dt* is given).  Every other header field is written as given.
    """

    page = header.page_size
    if not is_power_of_two(page) or page < MIN_PAGE_SIZE:
        raise ValueError(f"Page size must be a power of two of at least {MIN_PAGE_SIZE} bytes, got {page}")
    blobs = (kernel, ramdisk, second, dt) if dt else (kernel, ramdisk, second)
    header = replace(
        header,
        kernel_size=len(kernel),
        ramdisk_size=len(ramdisk),
        second_size=len(second),
        header_version=len(dt),
        image_id=compute_image_id(*blobs),
    )
    parts = [pad_to_page(header.pack(), page), pad_to_page(kernel, page), pad_to_page(ramdisk, page)]
    if second or dt:
        parts.append(pad_to_page(second, page))
    if dt:
        parts.append(pad_to_page(dt, page))
    return b"".join(parts)


def repack_with_page_size(components: BootImageComponents, page_size: int) -> bytes:
    """Lay *components* out again on *page_size* pages, keeping every other header field."""

    header = replace(components.header, page_size=page_size)
    return pack_boot_image(header, components.kernel, components.ramdisk, components.second, components.dt)


def read_header(path: Path) -> BootImageHeader:
    with path.open("rb") as handle:
        return BootImageHeader.unpack(handle.read(HEADER_STRUCT.size))


def check_layout(path: Path, header: BootImageHeader | None = None) -> bool:
    """Return ``True`` when *path* is large enough for every page-aligned section."""

    try:
        header = header or read_header(path)
    except (OSError, BootImageFormatError):
        return False
    return path.stat().st_size >= header.required_size()


def unpack_boot_image(path: Path) -> BootImageComponents:
    """Slice the kernel, ramdisk and second stage out of *path*."""

    data = path.read_bytes()
    header = BootImageHeader.unpack(data[: HEADER_STRUCT.size])
    if len(data) < header.required_size():
        raise BootImageFormatError(
            f"{path} is truncated: {len(data)} bytes but the header describes {header.required_size()}"
        )
    offsets = header.section_offsets()
    return BootImageComponents(
        header=header,
        kernel=data[offsets.kernel : offsets.kernel + header.kernel_size],
        ramdisk=data[offsets.ramdisk : offsets.ramdisk + header.ramdisk_size],
        second=data[offsets.second : offsets.second + header.second_size],
        dt=data[offsets.dt : offsets.dt + header.dt_size],
    )
