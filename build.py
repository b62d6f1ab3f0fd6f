#!/usr/bin/env python3
"""Boot image helper for the Anbernic RG35XX-H.

Each step of producing a flashable ``boot`` partition image is exposed as a
sub-command:

* ``deps`` – report which boot image tools are usable, installing missing ones.
* ``inspect`` – print the header of an existing boot image.
* ``ramdisk`` – extract the stock ramdisk, or synthesize a minimal one.
* ``assemble`` – pack a kernel, ramdisk and optional DTB into a boot image.
* ``verify`` – check that an image uses the bootloader's page size.
* ``repair`` – rebuild an image with the correct page size.
* ``package`` – build the ``catdt`` and ``with-dt`` variants and select one.
* ``flash-verify`` – compare a flashed partition against the image written.

All console output is also logged to ``output/build.log``.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Callable

from assembler import AssemblyRequest, assemble_boot_image
from boot_config import DTB_VARIANTS, BootImageConfig, PackagingMode, parse_int
from boot_packaging import PackagingInputs, Toolset, package_boot_images, select_dtb
from errors import BootImageError
from host_bootstrap import BOOT_TOOLS, TOOL_HINTS, ensure_commands, probe_backends, set_bootstrap_enabled
from inspector import describe_boot_image
from ramdisk import extract_ramdisk
from validator import default_repair_destination, ensure_page_size, repair_boot_image, verify_written_image

LOG = logging.getLogger("rg35xxh.build")

REPO_ROOT = Path(__file__).resolve().parent
OUTPUT_DIR = REPO_ROOT / "output"

# Tools worth installing through the package manager; the rest have no
# distribution packages.
BOOTSTRAP_TOOLS = ["mkbootimg", "abootimg", "unpackbootimg"]


def setup_logging() -> None:
    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    log_path = OUTPUT_DIR / "build.log"

    root = logging.getLogger("rg35xxh")
    root.setLevel(logging.INFO)
    root.handlers.clear()

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    file_handler = logging.FileHandler(log_path, mode="w")
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)

    root.addHandler(file_handler)
    root.addHandler(console_handler)


def resolve_config(args: argparse.Namespace) -> BootImageConfig:
    config = BootImageConfig.from_environment(os.environ)
    if args.page_size is not None:
        config = config.with_page_size(args.page_size)
    if args.cmdline:
        config = replace(config, cmdline=args.cmdline)
    try:
        config.validate()
    except ValueError as exc:
        raise BootImageError(str(exc)) from exc
    return config


def load_toolset(*, bootstrap: bool = False) -> Toolset:
    if bootstrap:
        ensure_commands(BOOTSTRAP_TOOLS, logger=LOG)
    LOG.info("Checking available boot image tools...")
    return Toolset.from_availability(probe_backends(logger=LOG))


def check_dependencies(args: argparse.Namespace) -> None:
    availability = probe_backends(logger=LOG)
    missing = availability.missing(BOOTSTRAP_TOOLS)
    if missing:
        ensure_commands(missing, logger=LOG)
        availability = probe_backends(logger=LOG)

    for tool in availability.missing():
        hint = TOOL_HINTS.get(tool)
        if hint:
            LOG.warning("Optional tool '%s' unavailable. Install via: %s", tool, hint)
    if not any(availability.has(tool) for tool in BOOT_TOOLS):
        LOG.warning("No boot image tools found; the built-in packer will be used.")
    else:
        LOG.info("Boot image tools available: %s", ", ".join(sorted(availability.tools)))


def inspect_image(args: argparse.Namespace) -> None:
    toolset = load_toolset()
    for line in describe_boot_image(args.image, toolset.inspectors).splitlines():
        LOG.info("%s", line)


def build_ramdisk(args: argparse.Namespace) -> None:
    toolset = load_toolset()
    result = extract_ramdisk(args.stock, args.output, toolset.ramdisk)
    LOG.info("Ramdisk ready (%s): %s", result.source, result.path)


def assemble_image(args: argparse.Namespace) -> None:
    config = resolve_config(args)
    toolset = load_toolset()
    request = AssemblyRequest(args.kernel, args.ramdisk, args.output, config, dtb=args.dtb)
    assemble_boot_image(request, toolset.assemblers)
    ensure_page_size(args.output, toolset.inspectors, config.page_size)


def verify_image(args: argparse.Namespace) -> None:
    config = resolve_config(args)
    toolset = load_toolset()
    ensure_page_size(args.image, toolset.inspectors, config.page_size)


def repair_image(args: argparse.Namespace) -> None:
    config = resolve_config(args)
    toolset = load_toolset()
    destination = args.destination or default_repair_destination(args.source)
    result = repair_boot_image(args.source, destination, config, toolset.inspectors, toolset.repairers)
    if result.repaired:
        LOG.info("Fixed boot image: %s (via %s)", result.output, result.backend)
    else:
        LOG.info("No repair needed: %s", result.output)


def package_images(args: argparse.Namespace) -> None:
    config = resolve_config(args)
    toolset = load_toolset(bootstrap=True)

    dtb = args.dtb
    if dtb is not None and dtb.is_dir():
        dtb = select_dtb([dtb / name for name in DTB_VARIANTS], name=args.dtb_name)

    inputs = PackagingInputs(
        kernel=args.kernel,
        dtb=dtb,
        combined_kernel=args.combined_kernel,
        stock_boot=args.stock_boot,
        ramdisk=args.ramdisk,
    )
    result = package_boot_images(inputs, config, PackagingMode.parse(args.mode), args.output_dir, toolset)
    for branch in result.branches.values():
        status = "ok" if branch.ok else f"failed ({branch.error})"
        LOG.info("  %s: %s %s", branch.mode.value, branch.output, status)
    if not result.verified:
        raise BootImageError(f"{result.output} failed page size verification")


def verify_flash(args: argparse.Namespace) -> None:
    try:
        verification = verify_written_image(args.image, args.target, full=args.full)
    except OSError as exc:
        raise BootImageError(f"Could not read back {args.target}: {exc}") from exc
    if not verification.ok:
        raise BootImageError(f"{args.target} does not match {args.image}")
    LOG.info("Boot partition %s matches %s", args.target, args.image)


STAGE_EXECUTORS: dict[str, Callable[[argparse.Namespace], None]] = {
    "deps": check_dependencies,
    "inspect": inspect_image,
    "ramdisk": build_ramdisk,
    "assemble": assemble_image,
    "verify": verify_image,
    "repair": repair_image,
    "package": package_images,
    "flash-verify": verify_flash,
}


def _dispatch(args: argparse.Namespace) -> None:
    STAGE_EXECUTORS[args.command](args)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Boot image utilities for the RG35XX-H")
    parser.add_argument(
        "--no-bootstrap",
        action="store_true",
        help="Never try to install missing tools through the package manager.",
    )
    parser.add_argument("--page-size", type=parse_int, default=None, help="Boot image page size (default: 2048).")
    parser.add_argument("--cmdline", default=None, help="Kernel command line to embed.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("deps", help="Report and install boot image tools")

    inspect_parser = subparsers.add_parser("inspect", help="Show the header of a boot image")
    inspect_parser.add_argument("image", type=Path)

    ramdisk_parser = subparsers.add_parser("ramdisk", help="Extract or synthesize a ramdisk")
    ramdisk_parser.add_argument("--stock", type=Path, default=None, help="Stock boot image to unpack")
    ramdisk_parser.add_argument("output", type=Path)

    assemble_parser = subparsers.add_parser("assemble", help="Create a boot image")
    assemble_parser.add_argument("--kernel", type=Path, required=True)
    assemble_parser.add_argument("--ramdisk", type=Path, default=None)
    assemble_parser.add_argument("--dtb", type=Path, default=None)
    assemble_parser.add_argument("--output", type=Path, required=True)

    verify_parser = subparsers.add_parser("verify", help="Check a boot image's page size")
    verify_parser.add_argument("image", type=Path)

    repair_parser = subparsers.add_parser("repair", help="Rebuild a boot image with the correct page size")
    repair_parser.add_argument("source", type=Path)
    repair_parser.add_argument("destination", type=Path, nargs="?", default=None)

    package_parser = subparsers.add_parser("package", help="Build both boot image variants")
    package_parser.add_argument("--kernel", type=Path, required=True)
    package_parser.add_argument("--dtb", type=Path, required=True, help="DTB file or directory of variants")
    package_parser.add_argument("--dtb-name", default=os.environ.get("DTB_NAME"))
    package_parser.add_argument("--combined-kernel", type=Path, default=None)
    package_parser.add_argument("--stock-boot", type=Path, default=None)
    package_parser.add_argument("--ramdisk", type=Path, default=None)
    package_parser.add_argument(
        "--mode",
        default=os.environ.get("PACK_MODE") or os.environ.get("PACKAGE_MODE") or PackagingMode.CONCATENATED.value,
        help="catdt or with-dt",
    )
    package_parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR)

    flash_parser = subparsers.add_parser("flash-verify", help="Compare a flashed partition with its image")
    flash_parser.add_argument("image", type=Path)
    flash_parser.add_argument("target", type=Path)
    flash_parser.add_argument("--full", action="store_true", help="Also compare the SHA-256 of the whole image")

    args = parser.parse_args(argv)
    setup_logging()
    set_bootstrap_enabled(not args.no_bootstrap)
    try:
        _dispatch(args)
    except (RuntimeError, ValueError, FileNotFoundError, IndexError) as exc:
        LOG.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
