"""Ramdisk extraction from stock boot images, with a synthesized fallback.

The stock ``boot`` partition of the RG35XX-H carries the vendor ramdisk we
want to keep.  When none of the unpacking tools can get at it (or no stock
image was dumped) a minimal ramdisk is written instead: the device then boots
into a rescue shell rather than failing the build outright.
"""

from __future__ import annotations

import gzip
import io
import logging
import os
import shutil
import stat
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Sequence

from bootimg_format import unpack_boot_image
from errors import BootImageError, BootImageFormatError, ExtractionFailed
from host_bootstrap import BackendAttempt, BackendAvailability, run_tool

LOG = logging.getLogger("rg35xxh.ramdisk")

CPIO_NEWC_MAGIC = b"070701"
CPIO_TRAILER = "TRAILER!!!"
GZIP_MAGIC = b"\x1f\x8b"

ROOT_CANDIDATES = ["/dev/mmcblk0p5", "/dev/mmcblk1p5", "/dev/mmcblk0p2", "/dev/mmcblk1p2"]

MINIMAL_INIT_TEMPLATE = """#!/bin/sh
# Placeholder init written when the stock ramdisk could not be extracted.
mount -t proc proc /proc
mount -t sysfs sysfs /sys
mount -t devtmpfs devtmpfs /dev

for candidate in {candidates}; do
    if [ -b "$candidate" ] && mount -o rw "$candidate" /newroot; then
        mount --move /dev /newroot/dev
        umount /proc /sys
        exec switch_root /newroot /sbin/init
    fi
done

echo "init: no root filesystem found, starting a shell"
exec /bin/sh
"""


def minimal_init_script(candidates: Sequence[str] = ROOT_CANDIDATES) -> str:
    return MINIMAL_INIT_TEMPLATE.format(candidates=" ".join(candidates))


class CpioWriter:
    """Write a ``newc`` cpio archive, the format the kernel unpacks as initramfs."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._offset = 0
        self._next_ino = 1

    def _write(self, data: bytes) -> None:
        self._stream.write(data)
        self._offset += len(data)

    def _pad(self) -> None:
        remainder = self._offset % 4
        if remainder:
            self._write(b"\x00" * (4 - remainder))

    def _entry(self, name: str, mode: int, data: bytes = b"", nlink: int = 1, ino: int | None = None) -> None:
        if ino is None:
            ino = self._next_ino
            self._next_ino += 1
        encoded = name.encode() + b"\x00"
        fields = (ino, mode, 0, 0, nlink, 0, len(data), 0, 0, 0, 0, len(encoded), 0)
        self._write(CPIO_NEWC_MAGIC + b"".join(b"%08x" % value for value in fields))
        self._write(encoded)
        self._pad()
        if data:
            self._write(data)
            self._pad()

    def add_directory(self, name: str, mode: int = 0o755) -> None:
        self._entry(name, stat.S_IFDIR | mode, nlink=2)

    def add_file(self, name: str, data: bytes, mode: int = 0o644) -> None:
        self._entry(name, stat.S_IFREG | mode, data)

    def add_symlink(self, name: str, target: str) -> None:
        self._entry(name, stat.S_IFLNK | 0o777, target.encode())

    def close(self) -> None:
        self._entry(CPIO_TRAILER, 0, ino=0)


def _write_gzip(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_name(path.name + ".partial")
    with partial.open("wb") as raw, gzip.GzipFile(fileobj=raw, mode="wb", mtime=0) as compressed:
        compressed.write(payload)
    os.replace(partial, path)


def write_minimal_ramdisk(path: Path, candidates: Sequence[str] = ROOT_CANDIDATES) -> Path:
    """Write a gzip cpio with a single ``/init`` that hands over to the real rootfs."""

    buffer = io.BytesIO()
    writer = CpioWriter(buffer)
    for directory in ("dev", "proc", "sys", "newroot"):
        writer.add_directory(directory)
    writer.add_file("init", minimal_init_script(candidates).encode(), mode=0o755)
    writer.close()
    _write_gzip(path, buffer.getvalue())
    LOG.info("Created minimal ramdisk placeholder: %s", path)
    return path


def write_empty_ramdisk(path: Path) -> Path:
    """Write a gzip cpio holding nothing but the trailer."""

    buffer = io.BytesIO()
    CpioWriter(buffer).close()
    _write_gzip(path, buffer.getvalue())
    return path


@dataclass
class RamdiskResult:
    path: Path
    source: str
    attempts: list[BackendAttempt] = field(default_factory=list)

    @property
    def synthesized(self) -> bool:
        return self.source == "synthesized"


class RamdiskBackend:
    """Base class for tools that can pull the ramdisk out of a boot image."""

    name = "ramdisk"
    requires: tuple[str, ...] = ()

    def is_available(self, availability: BackendAvailability) -> bool:
        return all(availability.has(tool) for tool in self.requires)

    def extract(self, image: Path, workdir: Path) -> Path:
        """Unpack *image* inside *workdir* and return the gzip ramdisk path."""

        raise NotImplementedError


class MagiskbootUnpacker(RamdiskBackend):
    name = "magiskboot"
    requires = ("magiskboot",)

    def extract(self, image: Path, workdir: Path) -> Path:
        result = run_tool(["magiskboot", "unpack", image], cwd=workdir, logger=LOG)
        if not result.ok:
            raise ExtractionFailed(f"magiskboot unpack exited with status {result.returncode}")
        compressed = workdir / "ramdisk.cpio.gz"
        if compressed.is_file():
            return compressed
        raw = workdir / "ramdisk.cpio"
        if raw.is_file():
            _write_gzip(compressed, raw.read_bytes())
            return compressed
        raise ExtractionFailed("magiskboot did not write ramdisk.cpio")


class UnmkbootimgUnpacker(RamdiskBackend):
    name = "unmkbootimg"
    requires = ("unmkbootimg",)

    def extract(self, image: Path, workdir: Path) -> Path:
        # unmkbootimg exits non-zero on images it only partly understands
        # while still writing the ramdisk, so only the output counts.
        run_tool(["unmkbootimg", "-i", image], cwd=workdir, logger=LOG)
        for candidate in sorted(workdir.glob("*.gz")):
            return candidate
        raise ExtractionFailed("unmkbootimg did not write a gzip ramdisk")


class AbootimgUnpacker(RamdiskBackend):
    name = "abootimg"
    requires = ("abootimg",)

    def extract(self, image: Path, workdir: Path) -> Path:
        run_tool(["abootimg", "-x", image], cwd=workdir, logger=LOG)
        for candidate in sorted(workdir.glob("initrd.img*")):
            return candidate
        raise ExtractionFailed("abootimg did not write initrd.img")


class NativeUnpacker(RamdiskBackend):
    name = "native"

    def extract(self, image: Path, workdir: Path) -> Path:
        try:
            components = unpack_boot_image(image)
        except BootImageFormatError as exc:
            raise ExtractionFailed(str(exc)) from exc
        if not components.ramdisk:
            raise ExtractionFailed(f"{image} has an empty ramdisk section")
        destination = workdir / "ramdisk.cpio.gz"
        if components.ramdisk.startswith(CPIO_NEWC_MAGIC):
            _write_gzip(destination, components.ramdisk)
            return destination
        if not components.ramdisk.startswith(GZIP_MAGIC):
            LOG.warning("Ramdisk in %s is neither cpio nor gzip compressed; keeping it as-is", image)
        destination.write_bytes(components.ramdisk)
        return destination


def default_ramdisk_backends(availability: BackendAvailability) -> list[RamdiskBackend]:
    candidates: list[RamdiskBackend] = [
        MagiskbootUnpacker(),
        UnmkbootimgUnpacker(),
        AbootimgUnpacker(),
        NativeUnpacker(),
    ]
    return [backend for backend in candidates if backend.is_available(availability)]


def extract_ramdisk(
    stock_image: Path | None,
    output: Path,
    backends: Sequence[RamdiskBackend],
) -> RamdiskResult:
    """Place a gzip cpio ramdisk at *output*, extracting or synthesizing it.

    An existing *output* is reused as-is.  Otherwise each backend is tried in
    order against *stock_image*; if all of them fail, or there is no stock
    image, a minimal placeholder is written.
    """

    if output.exists():
        LOG.info("Ramdisk already present: %s", output)
        return RamdiskResult(output, "cached")

    output.parent.mkdir(parents=True, exist_ok=True)
    attempts: list[BackendAttempt] = []

    if stock_image is None or not stock_image.is_file():
        LOG.warning("Stock boot image not found: %s", stock_image)
    else:
        image = stock_image.resolve()
        for backend in backends:
            LOG.info("Using %s to unpack ramdisk", backend.name)
            with tempfile.TemporaryDirectory(prefix="rg35xxh-ramdisk-") as tmpdir:
                try:
                    produced = backend.extract(image, Path(tmpdir))
                except BootImageError as exc:
                    LOG.warning("%s could not extract the ramdisk: %s", backend.name, exc)
                    attempts.append(BackendAttempt(backend.name, False, str(exc)))
                    continue
                if not produced.is_file() or produced.stat().st_size == 0:
                    LOG.warning("%s produced an empty ramdisk", backend.name)
                    attempts.append(BackendAttempt(backend.name, False, "empty output"))
                    continue
                shutil.copyfile(produced, output)
            attempts.append(BackendAttempt(backend.name, True))
            LOG.info("Extracted ramdisk -> %s", output)
            return RamdiskResult(output, backend.name, attempts)

    LOG.warning("Failed to extract ramdisk; creating minimal placeholder")
    write_minimal_ramdisk(output)
    return RamdiskResult(output, "synthesized", attempts)
