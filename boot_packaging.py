"""Produce the RG35XX-H boot images for both device tree packaging modes.

Both variants are always built so a flash that fails with one can be retried
with the other without rebuilding.  ``boot-new.img`` is the copy selected by
the configured :class:`~boot_config.PackagingMode`.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Sequence

from assembler import AssemblerBackend, AssemblyRequest, assemble_boot_image, default_assemblers
from boot_config import MAX_BOARD_BYTES, BootImageConfig, PackagingMode
from errors import AssemblyFailed, BootImageError
from host_bootstrap import BackendAvailability
from inspector import HeaderInfo, InspectorBackend, default_inspectors, inspect_boot_image
from ramdisk import RamdiskBackend, RamdiskResult, default_ramdisk_backends, extract_ramdisk
from validator import (
    RepairBackend,
    VerificationResult,
    default_repairers,
    repair_boot_image,
    verify_page_size,
)

LOG = logging.getLogger("rg35xxh.packaging")

BRANCH_OUTPUTS = {
    PackagingMode.CONCATENATED: "boot-catdt.img",
    PackagingMode.SEPARATE_DTB: "boot-with-dt.img",
}
SELECTED_OUTPUT = "boot-new.img"
COMBINED_KERNEL = "zImage-dtb"
SHARED_RAMDISK = "ramdisk.cpio.gz"


@dataclass
class Toolset:
    """Backend chains for every stage, built once per run."""

    inspectors: list[InspectorBackend]
    ramdisk: list[RamdiskBackend]
    assemblers: list[AssemblerBackend]
    repairers: list[RepairBackend]

    @classmethod
    def from_availability(cls, availability: BackendAvailability) -> "Toolset":
        return cls(
            inspectors=default_inspectors(availability),
            ramdisk=default_ramdisk_backends(availability),
            assemblers=default_assemblers(availability),
            repairers=default_repairers(availability),
        )


@dataclass
class PackagingInputs:
    kernel: Path | None = None
    dtb: Path | None = None
    combined_kernel: Path | None = None
    stock_boot: Path | None = None
    ramdisk: Path | None = None


@dataclass
class BranchResult:
    mode: PackagingMode
    output: Path
    ok: bool
    backend: str | None = None
    repaired: bool = False
    error: str | None = None


@dataclass
class PackagingResult:
    output: Path
    mode: PackagingMode
    ramdisk: RamdiskResult
    branches: dict[PackagingMode, BranchResult] = field(default_factory=dict)
    fallback_used: bool = False
    verification: VerificationResult | None = None

    @property
    def verified(self) -> bool:
        return self.verification is not None and self.verification.ok


def select_dtb(candidates: Sequence[Path], name: str | None = None, index: int | None = None) -> Path:
    """Pick the device tree to package from *candidates*.

    *name* matches a file name exactly; *index* is zero-based.  Without
    either the first existing candidate wins.
    """

    if name:
        for candidate in candidates:
            if candidate.name == name:
                return candidate
        raise FileNotFoundError(f"Device tree {name} not found among {len(candidates)} candidates")
    if index is not None:
        if not 0 <= index < len(candidates):
            raise IndexError(f"DTB index {index} out of range (0-{len(candidates) - 1})")
        return candidates[index]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise FileNotFoundError("No device tree blob found")


def apply_stock_header(config: BootImageConfig, info: HeaderInfo) -> BootImageConfig:
    """Return *config* with the load base and board name of a stock image.

    The page size is never taken from the stock image: a stock header with the
    wrong page size is exactly what this tool exists to correct.
    """

    base = info.base
    if base is None and info.kernel_addr is not None and info.kernel_addr >= config.kernel_offset:
        base = info.kernel_addr - config.kernel_offset
    changes: dict[str, object] = {}
    if base is not None:
        changes["base"] = base
    if info.board:
        if len(info.board.encode()) <= MAX_BOARD_BYTES:
            changes["board"] = info.board
        else:
            LOG.warning("Stock board name %r is too long; keeping %r", info.board, config.board)
    if not changes:
        LOG.warning("No usable header fields in stock image; using configured defaults")
        return config
    updated = replace(config, **changes)
    LOG.info("Using stock header values: base 0x%08x, board %s", updated.base, updated.board)
    return updated


def concatenate_kernel(kernel: Path, dtb: Path, output: Path) -> Path:
    """Write kernel followed by the DTB, the layout the bootloader expects for ``catdt``."""

    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("wb") as handle:
        for part in (kernel, dtb):
            with part.open("rb") as source:
                shutil.copyfileobj(source, handle)
    LOG.info("Created %s (%s bytes)", output, output.stat().st_size)
    return output


def _branch_request(
    mode: PackagingMode,
    inputs: PackagingInputs,
    combined: Path | None,
    ramdisk: Path,
    output: Path,
    config: BootImageConfig,
) -> AssemblyRequest:
    if mode is PackagingMode.CONCATENATED:
        if combined is None:
            raise AssemblyFailed("No combined kernel+DTB available for catdt mode")
        return AssemblyRequest(combined, ramdisk, output, config)
    if inputs.kernel is None:
        raise AssemblyFailed("No kernel available for with-dt mode")
    if inputs.dtb is None:
        raise AssemblyFailed("No device tree blob available for with-dt mode")
    return AssemblyRequest(inputs.kernel, ramdisk, output, config, dtb=inputs.dtb)


def _build_branch(
    mode: PackagingMode,
    request_factory,
    config: BootImageConfig,
    toolset: Toolset,
) -> BranchResult:
    output = None
    try:
        request = request_factory()
        output = request.output
        LOG.info("Creating boot image (%s mode)...", mode.value)
        assembled = assemble_boot_image(request, toolset.assemblers)
        repair = repair_boot_image(output, output, config, toolset.inspectors, toolset.repairers)
    except BootImageError as exc:
        LOG.error("%s boot image failed: %s", mode.value, exc)
        return BranchResult(mode, output or Path(BRANCH_OUTPUTS[mode]), False, error=str(exc))
    return BranchResult(mode, output, True, assembled.backend, repair.repaired)


def package_boot_images(
    inputs: PackagingInputs,
    config: BootImageConfig,
    mode: PackagingMode,
    output_dir: Path,
    toolset: Toolset,
) -> PackagingResult:
    """Build both packaging variants and select one as ``boot-new.img``.

    A failure in one variant is recorded and does not stop the other.  Only
    when the selected variant is missing and the direct fallback assembly
    also fails does this raise :class:`AssemblyFailed`.
    """

    output_dir.mkdir(parents=True, exist_ok=True)
    if inputs.stock_boot is not None and inputs.stock_boot.is_file():
        LOG.info("Reading header of stock boot image %s", inputs.stock_boot)
        config = apply_stock_header(config, inspect_boot_image(inputs.stock_boot, toolset.inspectors))
    LOG.info("Creating boot images for both packaging modes...")

    ramdisk_path = inputs.ramdisk or output_dir / SHARED_RAMDISK
    ramdisk = extract_ramdisk(inputs.stock_boot, ramdisk_path, toolset.ramdisk)

    combined = inputs.combined_kernel
    if combined is not None and not combined.is_file():
        LOG.warning("Combined kernel not found: %s", combined)
        combined = None
    if combined is None and inputs.kernel is not None and inputs.dtb is not None:
        if inputs.kernel.is_file() and inputs.dtb.is_file():
            combined = concatenate_kernel(inputs.kernel, inputs.dtb, output_dir / COMBINED_KERNEL)

    result = PackagingResult(output_dir / SELECTED_OUTPUT, mode, ramdisk)
    for branch_mode, name in BRANCH_OUTPUTS.items():
        destination = output_dir / name

        def factory(branch_mode=branch_mode, destination=destination):
            return _branch_request(branch_mode, inputs, combined, ramdisk.path, destination, config)

        result.branches[branch_mode] = _build_branch(branch_mode, factory, config, toolset)

    selected = result.branches[mode]
    if selected.ok and selected.output.is_file():
        shutil.copyfile(selected.output, result.output)
        LOG.info("Using %s mode boot image as default", mode.value)
    else:
        LOG.warning("%s boot image missing; assembling %s directly", mode.value, SELECTED_OUTPUT)
        kernel = combined or inputs.kernel
        if kernel is None:
            raise AssemblyFailed("No kernel available for the fallback boot image")
        assemble_boot_image(AssemblyRequest(kernel, ramdisk.path, result.output, config), toolset.assemblers)
        repair_boot_image(result.output, result.output, config, toolset.inspectors, toolset.repairers)
        result.fallback_used = True

    result.verification = verify_page_size(result.output, toolset.inspectors, config.page_size)
    if result.verified:
        LOG.info("Boot images created successfully")
    else:
        LOG.error("Final boot image failed page size verification: %s", result.output)
    return result
