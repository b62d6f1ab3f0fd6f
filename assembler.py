"""Boot image assembly through a prioritized chain of packers.

``mkbootimg`` is preferred because it takes every header parameter on the
command line.  ``abootimg`` needs a synthesized ``bootimg.cfg``.  When neither
is installed the image is written directly by :mod:`bootimg_format`, which
needs nothing but the payload files.  Whatever backend runs, the kernel and
ramdisk sections start on page boundaries of the configured page size.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from boot_config import BootImageConfig
from bootimg_format import build_boot_image, page_count
from errors import AssemblyFailed, BackendFailed, BootImageError
from host_bootstrap import BackendAttempt, BackendAvailability, run_tool
from ramdisk import write_empty_ramdisk

LOG = logging.getLogger("rg35xxh.assembler")


@dataclass
class AssemblyRequest:
    """Inputs for one boot image; ``ramdisk=None`` packs an empty archive."""

    kernel: Path
    ramdisk: Path | None
    output: Path
    config: BootImageConfig = field(default_factory=BootImageConfig)
    dtb: Path | None = None


@dataclass
class AssemblyResult:
    output: Path
    backend: str
    attempts: list[BackendAttempt] = field(default_factory=list)


class AssemblerBackend:
    """Base class for the strategies able to write a boot image."""

    name = "assembler"
    requires: tuple[str, ...] = ()

    def is_available(self, availability: BackendAvailability) -> bool:
        return all(availability.has(tool) for tool in self.requires)

    def assemble(self, request: AssemblyRequest, ramdisk: Path, destination: Path) -> None:
        raise NotImplementedError


def _hex(value: int) -> str:
    return f"0x{value:08x}"


class MkbootimgAssembler(AssemblerBackend):
    name = "mkbootimg"
    requires = ("mkbootimg",)

    def command(self, request: AssemblyRequest, ramdisk: Path, destination: Path) -> list[str]:
        config = request.config
        command = ["mkbootimg", "--kernel", str(request.kernel), "--ramdisk", str(ramdisk)]
        if request.dtb is not None:
            command.extend(["--dt", str(request.dtb)])
        command.extend(
            [
                "--pagesize",
                str(config.page_size),
                "--base",
                _hex(config.base),
                "--kernel_offset",
                _hex(config.kernel_offset),
                "--ramdisk_offset",
                _hex(config.ramdisk_offset),
                "--second_offset",
                _hex(config.second_offset),
                "--tags_offset",
                _hex(config.tags_offset),
                "--board",
                config.board,
                "--cmdline",
                config.cmdline,
                "--output",
                str(destination),
            ]
        )
        return command

    def assemble(self, request: AssemblyRequest, ramdisk: Path, destination: Path) -> None:
        result = run_tool(self.command(request, ramdisk, destination), logger=LOG)
        if not result.ok:
            raise BackendFailed(f"mkbootimg exited with status {result.returncode}")


def render_abootimg_config(config: BootImageConfig, *payload_sizes: int) -> str:
    """Return a ``bootimg.cfg`` for ``abootimg --create``.

    ``bootsize`` is raised above the configured default when the payloads
    would not fit, since abootimg refuses to grow the image itself.
    """

    pages = 1 + sum(page_count(size, config.page_size) for size in payload_sizes)
    boot_size = max(config.boot_size, pages * config.page_size)
    lines = [
        f"bootsize = 0x{boot_size:x}",
        f"pagesize = 0x{config.page_size:x}",
        f"kerneladdr = 0x{config.kernel_addr:x}",
        f"ramdiskaddr = 0x{config.ramdisk_addr:x}",
        f"secondaddr = 0x{config.second_addr:x}",
        f"tagsaddr = 0x{config.tags_addr:x}",
        f"name = {config.board}",
        f"cmdline = {config.cmdline}",
    ]
    return "\n".join(lines) + "\n"


class AbootimgAssembler(AssemblerBackend):
    name = "abootimg"
    requires = ("abootimg",)

    def assemble(self, request: AssemblyRequest, ramdisk: Path, destination: Path) -> None:
        sizes = [request.kernel.stat().st_size, ramdisk.stat().st_size]
        if request.dtb is not None:
            sizes.append(request.dtb.stat().st_size)

        with tempfile.TemporaryDirectory(prefix="rg35xxh-abootimg-") as tmpdir:
            config_file = Path(tmpdir) / "bootimg.cfg"
            config_file.write_text(render_abootimg_config(request.config, *sizes))
            command = [
                "abootimg",
                "--create",
                str(destination),
                "-f",
                str(config_file),
                "-k",
                str(request.kernel),
                "-r",
                str(ramdisk),
            ]
            if request.dtb is not None:
                command.extend(["-s", str(request.dtb)])
            result = run_tool(command, logger=LOG)
        if not result.ok:
            raise BackendFailed(f"abootimg exited with status {result.returncode}")


class ManualAssembler(AssemblerBackend):
    """Write the header and page-padded sections directly."""

    name = "manual"

    def assemble(self, request: AssemblyRequest, ramdisk: Path, destination: Path) -> None:
        second = request.dtb.read_bytes() if request.dtb is not None else b""
        try:
            image = build_boot_image(
                request.kernel.read_bytes(),
                ramdisk.read_bytes(),
                request.config,
                second=second,
            )
        except OSError as exc:
            raise BackendFailed(f"Could not read boot image payloads: {exc}") from exc
        destination.write_bytes(image)


def default_assemblers(availability: BackendAvailability) -> list[AssemblerBackend]:
    candidates: list[AssemblerBackend] = [MkbootimgAssembler(), AbootimgAssembler(), ManualAssembler()]
    return [backend for backend in candidates if backend.is_available(availability)]


def assemble_boot_image(request: AssemblyRequest, backends: Sequence[AssemblerBackend]) -> AssemblyResult:
    """Write the boot image described by *request* with the first backend that succeeds."""

    if not request.kernel.is_file():
        raise AssemblyFailed(f"Kernel file not found: {request.kernel}")
    if request.dtb is not None and not request.dtb.is_file():
        raise AssemblyFailed(f"Device tree blob not found: {request.dtb}")
    try:
        request.config.validate()
    except ValueError as exc:
        raise AssemblyFailed(str(exc)) from exc

    LOG.info(
        "Creating boot image %s (kernel %s, page size %s)",
        request.output,
        request.kernel.name,
        request.config.page_size,
    )
    request.output.parent.mkdir(parents=True, exist_ok=True)
    attempts: list[BackendAttempt] = []

    with tempfile.TemporaryDirectory(prefix="rg35xxh-assemble-") as tmpdir:
        ramdisk = request.ramdisk
        if ramdisk is None or not ramdisk.is_file():
            ramdisk = write_empty_ramdisk(Path(tmpdir) / "ramdisk.cpio.gz")
            LOG.info("Created empty ramdisk: %s", ramdisk)

        for backend in backends:
            staging = request.output.with_name(f".{request.output.name}.{backend.name}.partial")
            try:
                backend.assemble(request, ramdisk, staging)
            except BootImageError as exc:
                LOG.warning("Failed to create boot image with %s: %s", backend.name, exc)
                attempts.append(BackendAttempt(backend.name, False, str(exc)))
                staging.unlink(missing_ok=True)
                continue
            if not staging.is_file() or staging.stat().st_size == 0:
                LOG.warning("%s reported success but wrote no image", backend.name)
                attempts.append(BackendAttempt(backend.name, False, "empty output"))
                staging.unlink(missing_ok=True)
                continue
            os.replace(staging, request.output)
            attempts.append(BackendAttempt(backend.name, True))
            LOG.info("Boot image created with %s: %s", backend.name, request.output)
            return AssemblyResult(request.output, backend.name, attempts)

    raise AssemblyFailed(
        f"No boot image creation backend could produce {request.output}",
        attempted=[attempt.name for attempt in attempts],
    )
