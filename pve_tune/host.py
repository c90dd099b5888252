"""Access to the host being tuned: files, commands and psutil facts."""

from __future__ import annotations

import glob as _glob
import logging
import os
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import psutil

from .errors import CommandError

logger = logging.getLogger(__name__)


@dataclass
class LinkStats:
    speed_mbps: int
    mtu: int
    is_up: bool


@dataclass
class MemoryInfo:
    total: int
    used: int
    available: int


class Host:
    """A Linux host addressed through a filesystem root.

    Every absolute path is resolved under ``root`` so the same code can operate on
    ``/`` or on a prepared directory tree. With ``dry_run`` set, writes and mutating
    commands are logged and skipped while reads and queries still happen.
    """

    def __init__(self, root: str = "/", dry_run: bool = False) -> None:
        self.root = Path(root)
        self.dry_run = dry_run

    def path(self, path: str) -> Path:
        return self.root / path.lstrip("/")

    def exists(self, path: str) -> bool:
        return self.path(path).exists()

    def is_dir(self, path: str) -> bool:
        return self.path(path).is_dir()

    def read(self, path: str) -> Optional[str]:
        try:
            return self.path(path).read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            return None

    def read_raw(self, path: str) -> Optional[str]:
        try:
            return self.path(path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None

    def write(self, path: str, text: str) -> None:
        if self.dry_run:
            logger.info("[dry-run] would write %s", path)
            return
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")

    def write_value(self, path: str, value: str) -> None:
        """Write a single value to a pseudo-file such as a sysfs attribute."""
        if self.dry_run:
            logger.info("[dry-run] would write %s to %s", value, path)
            return
        with open(self.path(path), "w", encoding="utf-8") as handle:
            handle.write(f"{value}\n")

    def append_line(self, path: str, line: str) -> None:
        if self.dry_run:
            logger.info("[dry-run] would append %r to %s", line, path)
            return
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        existing = self.read_raw(path) or ""
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with open(target, "a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{line}\n")

    def remove(self, path: str) -> None:
        if self.dry_run:
            logger.info("[dry-run] would remove %s", path)
            return
        self.path(path).unlink()

    def glob(self, pattern: str) -> List[str]:
        """Expand a host glob pattern and return host-absolute paths."""
        root = str(self.root).rstrip("/")
        matches = _glob.glob(str(self.path(pattern)))
        return sorted("/" + os.path.relpath(match, root or "/") for match in matches)

    def which(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def query(self, args: Sequence[str]) -> str:
        """Run a read-only command, even in dry-run mode."""
        return self._execute(args)

    def run(self, args: Sequence[str]) -> str:
        """Run a command that changes host state."""
        if self.dry_run:
            logger.info("[dry-run] would run: %s", shlex.join(args))
            return ""
        return self._execute(args)

    def _execute(self, args: Sequence[str]) -> str:
        logger.debug("running: %s", shlex.join(args))
        try:
            completed = subprocess.run(
                list(args),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            raise CommandError(args, 127, f"command not found: {args[0]}")
        if completed.returncode != 0:
            raise CommandError(args, completed.returncode, completed.stdout)
        return completed.stdout

    def interface_stats(self) -> Dict[str, LinkStats]:
        return {
            name: LinkStats(speed_mbps=stats.speed, mtu=stats.mtu, is_up=stats.isup)
            for name, stats in psutil.net_if_stats().items()
        }

    def memory(self) -> MemoryInfo:
        memory = psutil.virtual_memory()
        return MemoryInfo(total=memory.total, used=memory.used, available=memory.available)

    def temperatures(self) -> List[Tuple[str, float]]:
        readings: List[Tuple[str, float]] = []
        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is None:
            return readings
        for chip, entries in sensors().items():
            for entry in entries:
                readings.append((entry.label or chip, float(entry.current)))
        return readings

    def cpu_frequencies(self) -> List[float]:
        try:
            return [freq.current for freq in psutil.cpu_freq(percpu=True)]
        except (AttributeError, NotImplementedError, FileNotFoundError):
            return []

    def tcp_connection_count(self) -> Optional[int]:
        try:
            return len(psutil.net_connections(kind="tcp"))
        except psutil.AccessDenied:
            return None


def cpu_vendor(host: Host) -> str:
    """Return the CPU vendor id, e.g. ``GenuineIntel`` or ``AuthenticAMD``."""
    cpuinfo = host.read("/proc/cpuinfo") or ""
    for line in cpuinfo.splitlines():
        if line.startswith("vendor_id"):
            return line.split(":", 1)[1].strip()
    return "unknown"


def cpu_model(host: Host) -> str:
    cpuinfo = host.read("/proc/cpuinfo") or ""
    for line in cpuinfo.splitlines():
        if line.startswith("model name"):
            return line.split(":", 1)[1].strip()
    return "unknown"


def pve_major_version(host: Host) -> Optional[int]:
    try:
        output = host.query(["pveversion"])
    except CommandError:
        return None
    match = re.search(r"pve-manager/(\d+)", output)
    return int(match.group(1)) if match else None
