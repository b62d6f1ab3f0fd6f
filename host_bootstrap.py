"""Shared helpers for discovering and running host boot image tooling.

Which Android boot image utilities are installed varies wildly between build
hosts.  The helpers here probe for them once (:func:`probe_backends`), can try
to install missing ones through the system package manager, and run them with
their output captured into the build log.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Mapping, Sequence

from errors import ToolUnavailable

LOG = logging.getLogger("rg35xxh.bootstrap")

_bootstrap_enabled = True
_apt_updated = False

BOOT_TOOLS = ["mkbootimg", "abootimg", "unpackbootimg", "magiskboot", "unmkbootimg"]

APT_PACKAGE_MAP: dict[str, Sequence[str]] = {
    "abootimg": ["abootimg"],
    "mkbootimg": ["android-tools-mkbootimg"],
    "unpackbootimg": ["android-tools-mkbootimg"],
    "cpio": ["cpio"],
    "gzip": ["gzip"],
    "dtc": ["device-tree-compiler"],
}

DNF_PACKAGE_MAP: dict[str, Sequence[str]] = {
    "abootimg": ["abootimg"],
    "mkbootimg": ["android-tools"],
    "unpackbootimg": ["android-tools"],
    "cpio": ["cpio"],
    "gzip": ["gzip"],
    "dtc": ["dtc"],
}

PACKAGE_MAP: dict[str, Mapping[str, Sequence[str]]] = {
    "apt-get": APT_PACKAGE_MAP,
    "dnf": DNF_PACKAGE_MAP,
}

TOOL_HINTS: dict[str, str] = {
    "abootimg": "sudo apt-get install abootimg",
    "mkbootimg": "sudo apt-get install android-tools-mkbootimg",
    "unpackbootimg": "sudo apt-get install android-tools-mkbootimg",
    "magiskboot": "extract magiskboot from a Magisk release",
    "unmkbootimg": "build unmkbootimg from source",
}


def set_bootstrap_enabled(enabled: bool) -> None:
    """Globally enable or disable automatic dependency installation."""

    global _bootstrap_enabled
    _bootstrap_enabled = enabled


@dataclass(frozen=True)
class BackendAvailability:
    """The set of boot image tools found working on this host."""

    tools: frozenset[str] = field(default_factory=frozenset)

    def has(self, tool: str) -> bool:
        return tool in self.tools

    def missing(self, candidates: Iterable[str] = BOOT_TOOLS) -> list[str]:
        return [tool for tool in candidates if tool not in self.tools]

    @classmethod
    def none(cls) -> "BackendAvailability":
        return cls(frozenset())

    @classmethod
    def of(cls, *tools: str) -> "BackendAvailability":
        return cls(frozenset(tools))


@dataclass(frozen=True)
class BackendAttempt:
    """Outcome of trying one backend in a fallback chain."""

    name: str
    ok: bool
    detail: str = ""


def _tool_is_functional(tool: str) -> bool:
    # Distribution mkbootimg wrappers are sometimes installed with broken
    # Python dependencies; existing on PATH is not enough.
    if tool != "mkbootimg":
        return True
    try:
        completed = subprocess.run(
            [tool, "--help"],
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError:
        return False
    return completed.returncode == 0


def probe_backends(
    tools: Iterable[str] = BOOT_TOOLS,
    *,
    which: Callable[[str], str | None] = shutil.which,
    functional: Callable[[str], bool] = _tool_is_functional,
    logger: logging.Logger | None = None,
) -> BackendAvailability:
    """Return which of *tools* are installed and usable."""

    logger = logger or LOG
    found: set[str] = set()
    for tool in tools:
        if which(tool) is None:
            logger.info("  - %s not available", tool)
            continue
        if not functional(tool):
            logger.warning("  - %s found but not functional", tool)
            continue
        logger.info("  ✓ %s available", tool)
        found.add(tool)
    return BackendAvailability(frozenset(found))


def ensure_commands(
    commands: Iterable[str],
    *,
    hints: Mapping[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Ensure all *commands* are available, attempting installation if allowed.

    Returns a list of commands that remain missing after any attempted
    bootstrapping efforts.
    """

    logger = logger or LOG
    commands = list(dict.fromkeys(commands))
    missing = [cmd for cmd in commands if shutil.which(cmd) is None]
    if not missing:
        return []

    if not _bootstrap_enabled:
        return missing

    manager = _detect_package_manager()
    if not manager:
        logger.debug("No supported package manager found for automatic installation.")
        return missing

    packages = _collect_packages(manager, missing)
    if not packages:
        logger.debug("No package mapping available for missing commands: %s", ", ".join(missing))
        return missing

    try:
        _install_packages(manager, packages, logger)
    except PermissionError:
        logger.warning(
            "Automatic installation skipped because elevated privileges are required and sudo is unavailable."
        )
        return missing
    except subprocess.CalledProcessError as exc:
        logger.warning(
            "Automatic installation via %s failed with exit code %s.", manager, exc.returncode
        )

    return [cmd for cmd in commands if shutil.which(cmd) is None]


@dataclass
class CommandResult:
    """Light-weight wrapper representing the output of :func:`run_tool`."""

    args: list[str]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_tool(
    command: Sequence[str | Path],
    *,
    cwd: Path | None = None,
    logger: logging.Logger | None = None,
) -> CommandResult:
    """Run *command* to completion, logging it and capturing combined output.

    A missing executable raises :class:`ToolUnavailable`; a non-zero exit is
    reported through :attr:`CommandResult.returncode` for the caller to judge.
    """

    logger = logger or LOG
    args = [str(part) for part in command]
    logger.info("$ %s", " ".join(args))
    try:
        completed = subprocess.run(
            args,
            cwd=cwd,
            check=False,
            text=True,
            errors="replace",
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except FileNotFoundError as exc:
        raise ToolUnavailable(args[0]) from exc

    for line in (completed.stdout or "").splitlines():
        logger.debug("  %s", line)
    return CommandResult(args, completed.returncode, completed.stdout or "")


def _detect_package_manager() -> str | None:
    if shutil.which("apt-get"):
        return "apt-get"
    if shutil.which("dnf"):
        return "dnf"
    return None


def _collect_packages(manager: str, commands: Sequence[str]) -> list[str]:
    mapping = PACKAGE_MAP.get(manager, {})
    packages: set[str] = set()
    for command in commands:
        for package in mapping.get(command, []):
            packages.add(package)
    return sorted(packages)


def _install_packages(manager: str, packages: Sequence[str], logger: logging.Logger) -> None:
    prefix: list[str] = []
    if os.geteuid() != 0:
        sudo = shutil.which("sudo")
        if not sudo:
            raise PermissionError
        prefix = [sudo]

    logger.info("Installing missing packages via %s: %s", manager, ", ".join(packages))

    command_prefix = prefix + [manager]
    if manager == "apt-get":
        _maybe_run_apt_update(command_prefix, logger)
        _run(command_prefix + ["install", "-y", *packages], logger)
    elif manager == "dnf":
        _run(command_prefix + ["install", "-y", *packages], logger)
    else:  # pragma: no cover - guard for future extensions
        raise RuntimeError(f"Unsupported package manager: {manager}")


def _maybe_run_apt_update(command_prefix: Sequence[str], logger: logging.Logger) -> None:
    global _apt_updated
    if _apt_updated:
        return
    _run(list(command_prefix) + ["update"], logger)
    _apt_updated = True


def _run(command: Sequence[str], logger: logging.Logger) -> None:
    logger.info("$ %s", " ".join(str(part) for part in command))
    subprocess.run(command, check=True)
