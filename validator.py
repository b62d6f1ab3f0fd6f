"""Page-size verification and repair of assembled boot images.

Different releases of the packing tools have been seen to silently fall back
to their own default page size, so every assembled image goes through
:func:`verify_page_size` before it is flashed.  Reported values are not taken
on faith: when the header can be read natively, the page-aligned layout it
describes must also fit the file.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Sequence

from boot_config import DEFAULT_PAGE_SIZE, BootImageConfig
from bootimg_format import HEADER_STRUCT, check_layout, read_header, repack_with_page_size, unpack_boot_image
from errors import (
    BackendFailed,
    BootImageError,
    BootImageFormatError,
    ExtractionFailed,
    PageSizeMismatch,
    RepairFailed,
)
from host_bootstrap import BackendAttempt, BackendAvailability, run_tool
from inspector import InspectorBackend, inspect_boot_image

LOG = logging.getLogger("rg35xxh.validator")


@dataclass(frozen=True)
class VerificationResult:
    image: Path
    expected: int
    detected: int | None
    layout_ok: bool | None = None
    backend: str | None = None

    @property
    def ok(self) -> bool:
        # An unknown page size never matches; a header whose sections do not
        # fit the file fails even if a tool reported the right number.
        return self.detected is not None and self.detected == self.expected and self.layout_ok is not False

    def detected_text(self) -> str:
        return str(self.detected) if self.detected is not None else "unknown"


def verify_page_size(
    image: Path,
    inspectors: Sequence[InspectorBackend],
    expected: int = DEFAULT_PAGE_SIZE,
) -> VerificationResult:
    """Check *image* against *expected* without modifying it."""

    if not image.is_file():
        LOG.error("Boot image not found: %s", image)
        return VerificationResult(image, expected, None)

    info = inspect_boot_image(image, inspectors)
    layout_ok: bool | None = None
    try:
        header = read_header(image)
    except (OSError, BootImageFormatError):
        header = None
    if header is not None:
        layout_ok = header.page_size == expected and check_layout(image, header)
        if info.page_size is not None and header.page_size != info.page_size:
            LOG.warning(
                "%s reported page size %s but the header records %s",
                info.backend,
                info.page_size,
                header.page_size,
            )

    result = VerificationResult(image, expected, info.page_size, layout_ok, info.backend)
    if result.ok:
        LOG.info("Boot image has correct page size: %s", result.detected)
    elif result.detected == expected:
        LOG.warning("Boot image reports page size %s but its section layout does not match", expected)
    else:
        LOG.warning("Boot image page size mismatch: %s (expected: %s)", result.detected_text(), expected)
    return result


def ensure_page_size(
    image: Path,
    inspectors: Sequence[InspectorBackend],
    expected: int = DEFAULT_PAGE_SIZE,
) -> VerificationResult:
    """Like :func:`verify_page_size` but raise :class:`PageSizeMismatch` on failure."""

    result = verify_page_size(image, inspectors, expected)
    if not result.ok:
        raise PageSizeMismatch(expected, result.detected)
    return result


_PAGESIZE_LINE_RE = re.compile(r"^pagesize\s*=.*$", re.MULTILINE)


def rewrite_page_size(config_text: str, page_size: int) -> str:
    """Return an abootimg ``bootimg.cfg`` with its ``pagesize`` replaced."""

    line = f"pagesize = 0x{page_size:x}"
    if _PAGESIZE_LINE_RE.search(config_text):
        return _PAGESIZE_LINE_RE.sub(line, config_text)
    return config_text.rstrip("\n") + f"\n{line}\n"


class RepairBackend:
    """Base class for strategies that unpack a bad image and pack it again."""

    name = "repair"
    requires: tuple[str, ...] = ()

    def is_available(self, availability: BackendAvailability) -> bool:
        return all(availability.has(tool) for tool in self.requires)

    def rebuild(self, source: Path, destination: Path, config: BootImageConfig) -> None:
        raise NotImplementedError


class AbootimgRepairer(RepairBackend):
    name = "abootimg"
    requires = ("abootimg",)

    def rebuild(self, source: Path, destination: Path, config: BootImageConfig) -> None:
        with tempfile.TemporaryDirectory(prefix="rg35xxh-repair-") as tmpdir:
            workdir = Path(tmpdir)
            cfg = workdir / "bootimg.cfg"
            kernel = workdir / "zImage"
            initrd = workdir / "initrd.img"
            second = workdir / "stage2.img"
            LOG.info("Extracting boot image components to %s", workdir)
            result = run_tool(["abootimg", "-x", source, cfg, kernel, initrd, second], logger=LOG)
            if not result.ok or not cfg.is_file() or not kernel.is_file():
                raise ExtractionFailed(f"abootimg -x could not unpack {source}")

            cfg.write_text(rewrite_page_size(cfg.read_text(), config.page_size))
            command = ["abootimg", "--create", destination, "-f", cfg, "-k", kernel]
            if initrd.is_file():
                command.extend(["-r", initrd])
            if second.is_file() and second.stat().st_size:
                command.extend(["-s", second])
            LOG.info("Rebuilding boot image with correct page size")
            result = run_tool(command, logger=LOG)
        if not result.ok:
            raise BackendFailed(f"abootimg --create exited with status {result.returncode}")


class UnpackbootimgRepairer(RepairBackend):
    name = "unpackbootimg"
    requires = ("unpackbootimg", "mkbootimg")

    # mkbootimg option, unpackbootimg field file, config attribute
    _ADDRESS_FIELDS = (
        ("--base", "base", "base"),
        ("--kernel_offset", "kernel_offset", "kernel_offset"),
        ("--ramdisk_offset", "ramdisk_offset", "ramdisk_offset"),
        ("--second_offset", "second_offset", "second_offset"),
        ("--tags_offset", "tags_offset", "tags_offset"),
    )

    def rebuild(self, source: Path, destination: Path, config: BootImageConfig) -> None:
        with tempfile.TemporaryDirectory(prefix="rg35xxh-repair-") as tmpdir:
            workdir = Path(tmpdir)
            result = run_tool(["unpackbootimg", "-i", source, "-o", workdir], logger=LOG)
            if not result.ok:
                raise ExtractionFailed(f"unpackbootimg exited with status {result.returncode}")

            kernel = _first(workdir, "*-kernel", "*-zImage")
            if kernel is None:
                raise ExtractionFailed("Kernel file not found after unpacking")
            ramdisk = _first(workdir, "*-ramdisk", "*-ramdisk.*")
            dtb = _first(workdir, "*-dt", "*-second")

            command = ["mkbootimg", "--kernel", kernel]
            if ramdisk is not None:
                command.extend(["--ramdisk", ramdisk])
            if dtb is not None and dtb.stat().st_size:
                command.extend(["--dt", dtb])
            command.extend(["--pagesize", str(config.page_size)])
            for option, suffix, attribute in self._ADDRESS_FIELDS:
                value = _read_hex_field(workdir, suffix)
                if value is None:
                    value = getattr(config, attribute)
                command.extend([option, f"0x{value:08x}"])
            command.extend(
                [
                    "--board",
                    _read_text_field(workdir, "board") or config.board,
                    "--cmdline",
                    _read_text_field(workdir, "cmdline") or config.cmdline,
                    "--output",
                    destination,
                ]
            )
            result = run_tool(command, logger=LOG)
        if not result.ok:
            raise BackendFailed(f"mkbootimg exited with status {result.returncode}")


class NativeRepairer(RepairBackend):
    """Re-lay the sections on the new page size; every other header field is kept."""

    name = "native"

    def rebuild(self, source: Path, destination: Path, config: BootImageConfig) -> None:
        try:
            components = unpack_boot_image(source)
        except (OSError, BootImageFormatError) as exc:
            raise ExtractionFailed(str(exc)) from exc
        header = components.header
        if components.dt:
            LOG.info("Keeping %s byte device tree stored after the second stage", len(components.dt))
        elif header.header_version:
            LOG.warning(
                "%s has a version %s header; sections past the v0 layout are not carried over",
                source,
                header.header_version,
            )
        try:
            image = repack_with_page_size(components, config.page_size)
        except ValueError as exc:
            raise BackendFailed(str(exc)) from exc
        destination.write_bytes(image)


def _read_text_field(directory: Path, suffix: str) -> str | None:
    path = _first(directory, f"*-{suffix}")
    if path is None:
        return None
    return path.read_text().strip() or None


def _read_hex_field(directory: Path, suffix: str) -> int | None:
    # unpackbootimg writes addresses as bare hex, e.g. "40000000".
    text = _read_text_field(directory, suffix)
    if text is None:
        return None
    try:
        return int(text, 16)
    except ValueError:
        LOG.warning("Ignoring unreadable %s value: %s", suffix, text)
        return None


def _first(directory: Path, *patterns: str) -> Path | None:
    for pattern in patterns:
        for candidate in sorted(directory.glob(pattern)):
            return candidate
    return None


def default_repairers(availability: BackendAvailability) -> list[RepairBackend]:
    candidates: list[RepairBackend] = [AbootimgRepairer(), UnpackbootimgRepairer(), NativeRepairer()]
    return [backend for backend in candidates if backend.is_available(availability)]


@dataclass
class RepairResult:
    output: Path
    repaired: bool
    before: VerificationResult
    after: VerificationResult
    backend: str | None = None
    attempts: list[BackendAttempt] = field(default_factory=list)


def default_repair_destination(source: Path) -> Path:
    return source.with_name(f"{source.stem}-fixed{source.suffix or '.img'}")


def repair_boot_image(
    source: Path,
    destination: Path,
    config: BootImageConfig,
    inspectors: Sequence[InspectorBackend],
    repairers: Sequence[RepairBackend],
) -> RepairResult:
    """Write a copy of *source* with the page size from *config* to *destination*.

    A source that already verifies is copied unchanged.  The corrected image
    is always written to a fresh file and renamed into place, so *source*
    and *destination* may be the same path.
    """

    if not source.is_file():
        raise RepairFailed(f"Input boot image not found: {source}")

    LOG.info("Verifying boot image page size for: %s", source)
    expected = config.page_size
    before = verify_page_size(source, inspectors, expected)
    destination.parent.mkdir(parents=True, exist_ok=True)

    if before.ok:
        LOG.info("Boot image already has correct page size")
        if source.resolve() != destination.resolve():
            shutil.copyfile(source, destination)
        return RepairResult(destination, False, before, replace(before, image=destination))

    LOG.warning(
        "Boot image has incorrect page size: %s (should be %s)", before.detected_text(), expected
    )
    attempts: list[BackendAttempt] = []
    staging = destination.with_name(f".{destination.name}.repair.partial")
    for backend in repairers:
        try:
            backend.rebuild(source, staging, config)
        except BootImageError as exc:
            LOG.warning("Failed to repair with %s: %s", backend.name, exc)
            attempts.append(BackendAttempt(backend.name, False, str(exc)))
            staging.unlink(missing_ok=True)
            continue
        if not staging.is_file() or staging.stat().st_size == 0:
            attempts.append(BackendAttempt(backend.name, False, "empty output"))
            staging.unlink(missing_ok=True)
            continue
        after = verify_page_size(staging, inspectors, expected)
        if not after.ok:
            LOG.warning(
                "%s rebuilt the image but it still reports page size %s", backend.name, after.detected_text()
            )
            attempts.append(BackendAttempt(backend.name, False, f"page size {after.detected_text()}"))
            staging.unlink(missing_ok=True)
            continue
        os.replace(staging, destination)
        attempts.append(BackendAttempt(backend.name, True))
        LOG.info("Boot image rebuilt with correct page size: %s", destination)
        return RepairResult(destination, True, before, replace(after, image=destination), backend.name, attempts)

    LOG.error("No suitable tools found to fix boot image. Please install:")
    LOG.error("  apt-get install -y abootimg android-tools-mkbootimg")
    raise RepairFailed(
        f"Could not extract the components of {source} for repair",
        attempted=[attempt.name for attempt in attempts],
    )


def image_sha256(path: Path, length: int | None = None) -> str:
    """SHA-256 of *path*, or of its first *length* bytes."""

    digest = hashlib.sha256()
    remaining = length
    with path.open("rb") as handle:
        while remaining is None or remaining > 0:
            size = 1024 * 1024 if remaining is None else min(1024 * 1024, remaining)
            chunk = handle.read(size)
            if not chunk:
                break
            digest.update(chunk)
            if remaining is not None:
                remaining -= len(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class WriteVerification:
    header_match: bool
    image_hash: str | None = None
    target_hash: str | None = None

    @property
    def ok(self) -> bool:
        return self.header_match and self.image_hash == self.target_hash


def verify_written_image(image: Path, target: Path, *, full: bool = False) -> WriteVerification:
    """Compare a flashed partition (or file) *target* against the boot *image*.

    The header page is always compared; ``full`` additionally hashes the
    whole image length on both sides.
    """

    try:
        page_size = read_header(image).page_size
    except BootImageFormatError:
        page_size = DEFAULT_PAGE_SIZE
    length = max(page_size, HEADER_STRUCT.size)

    with image.open("rb") as handle:
        expected_header = handle.read(length)
    with target.open("rb") as handle:
        written_header = handle.read(len(expected_header))
    header_match = expected_header == written_header
    if not header_match:
        LOG.error("Boot partition header differs from %s", image)

    if not full:
        return WriteVerification(header_match)

    size = image.stat().st_size
    image_hash = image_sha256(image)
    target_hash = image_sha256(target, size)
    if image_hash != target_hash:
        LOG.error("SHA256 mismatch after flashing: %s != %s", target_hash, image_hash)
    else:
        LOG.info("Boot partition SHA256 verified: %s", image_hash)
    return WriteVerification(header_match, image_hash, target_hash)
