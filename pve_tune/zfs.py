"""ZFS tuning that keeps data safety first: ARC limits, autotrim, dataset options."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .apply import Outcome, Report, ensure, ensure_file, step
from .errors import CommandError, PreconditionError
from .host import Host

logger = logging.getLogger(__name__)

GIB = 1024**3

ARC_PARAMETERS = "/sys/module/zfs/parameters"
ZFS_MODPROBE = "/etc/modprobe.d/zfs.conf"
STORAGE_CFG = "/etc/pve/storage.cfg"
DROP_CACHES = "/proc/sys/vm/drop_caches"

# (RAM ceiling in GiB, ARC min GiB, ARC max GiB); larger hosts use the fallback.
ARC_TABLE = [
    (16, 1, 2),
    (32, 1, 3),
    (64, 2, 4),
    (128, 2, 6),
]
ARC_FALLBACK = (3, 8)

SYSTEM_DATASET_PREFIXES = ("rpool/ROOT", "rpool/var")
VM_DATASET_MARKERS = ("data", "vm")
DATASET_PROPERTIES = {"atime": "off", "xattr": "sa"}


@dataclass
class ArcLimits:
    ram_gb: int
    min_gb: int
    max_gb: int

    @property
    def min_bytes(self) -> int:
        return self.min_gb * GIB

    @property
    def max_bytes(self) -> int:
        return self.max_gb * GIB

    @property
    def reserved_gb(self) -> int:
        return self.ram_gb - self.max_gb


def arc_limits(total_bytes: int) -> ArcLimits:
    """Pick conservative ARC bounds so most RAM stays available to guests."""
    ram_gb = total_bytes // GIB
    for ceiling, min_gb, max_gb in ARC_TABLE:
        if ram_gb <= ceiling:
            return ArcLimits(ram_gb=ram_gb, min_gb=min_gb, max_gb=max_gb)
    min_gb, max_gb = ARC_FALLBACK
    return ArcLimits(ram_gb=ram_gb, min_gb=min_gb, max_gb=max_gb)


def render_modprobe(limits: ArcLimits) -> str:
    return "\n".join(
        [
            "# ZFS ARC Configuration for Proxmox VMs",
            f"# System RAM: {limits.ram_gb}GB",
            f"# ARC Limits: {limits.min_gb}GB - {limits.max_gb}GB",
            "",
            "# Memory limits",
            f"options zfs zfs_arc_min={limits.min_bytes}",
            f"options zfs zfs_arc_max={limits.max_bytes}",
            "",
            "# Performance settings (no data loss risk)",
            "options zfs zfs_arc_meta_limit_percent=75",
            "options zfs zfs_compressed_arc_enabled=1",
            "options zfs zvol_threads=8",
            "",
        ]
    )


def _read_int(host: Host, path: str) -> int:
    value = host.read(path)
    return int(value) if value and value.isdigit() else 0


def _write_arc(host: Host, limits: ArcLimits, current_max: int) -> None:
    # The module rejects zfs_arc_min above zfs_arc_max, so order the writes.
    writes = [("zfs_arc_min", limits.min_bytes), ("zfs_arc_max", limits.max_bytes)]
    if limits.min_bytes > current_max:
        writes.reverse()
    for name, value in writes:
        host.write_value(f"{ARC_PARAMETERS}/{name}", str(value))
    host.write_value(DROP_CACHES, "3")


def configure_arc(host: Host, report: Report, limits: ArcLimits) -> None:
    section = "arc"
    current_min = _read_int(host, f"{ARC_PARAMETERS}/zfs_arc_min")
    current_max = _read_int(host, f"{ARC_PARAMETERS}/zfs_arc_max")
    ensure(
        report,
        section,
        "runtime limits",
        f"{current_min} {current_max}",
        f"{limits.min_bytes} {limits.max_bytes}",
        lambda: _write_arc(host, limits, current_max),
    )
    if ensure_file(host, report, section, ZFS_MODPROBE, render_modprobe(limits)):
        with step(report, section, "initramfs"):
            host.run(["update-initramfs", "-u", "-k", "all"])
            report.record(section, "initramfs", Outcome.CHANGED, "updated")


def list_names(host: Host, args: List[str]) -> List[str]:
    return [line.strip() for line in host.query(args).splitlines() if line.strip()]


def get_property(host: Host, command: str, prop: str, target: str) -> str:
    return host.query([command, "get", "-H", "-o", "value", prop, target]).strip()


def configure_autotrim(host: Host, report: Report) -> None:
    section = "autotrim"
    try:
        pools = list_names(host, ["zpool", "list", "-H", "-o", "name"])
    except CommandError as exc:
        report.record(section, "pools", Outcome.FAILED, str(exc))
        return
    if not pools:
        report.record(section, "pools", Outcome.SKIPPED, "no pools found")
    for pool in pools:
        with step(report, section, pool):
            ensure(
                report,
                section,
                pool,
                get_property(host, "zpool", "autotrim", pool),
                "on",
                lambda p=pool: host.run(["zpool", "set", "autotrim=on", p]),
            )


def is_vm_dataset(name: str) -> bool:
    if name.startswith(SYSTEM_DATASET_PREFIXES):
        return False
    return any(marker in name for marker in VM_DATASET_MARKERS)


def configure_datasets(host: Host, report: Report) -> None:
    section = "datasets"
    try:
        datasets = list_names(host, ["zfs", "list", "-H", "-o", "name", "-t", "filesystem"])
    except CommandError as exc:
        report.record(section, "datasets", Outcome.FAILED, str(exc))
        return
    for dataset in filter(is_vm_dataset, datasets):
        for prop, value in DATASET_PROPERTIES.items():
            name = f"{dataset} {prop}"
            with step(report, section, name):
                ensure(
                    report,
                    section,
                    name,
                    get_property(host, "zfs", prop, dataset),
                    value,
                    lambda d=dataset, p=prop, v=value: host.run(["zfs", "set", f"{p}={v}", d]),
                )


def parse_storage_cfg(text: str) -> Dict[str, Dict[str, str]]:
    """Return zfspool storage entries keyed by storage id."""
    storages: Dict[str, Dict[str, str]] = {}
    current: Optional[Dict[str, str]] = None
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if not line[0].isspace():
            kind, _, name = line.partition(":")
            if kind.strip() == "zfspool":
                current = storages.setdefault(name.strip(), {})
            else:
                current = None
            continue
        if current is not None:
            key, _, value = line.strip().partition(" ")
            current[key] = value.strip()
    return storages


def report_storage(host: Host, report: Report) -> None:
    section = "storage"
    text = host.read(STORAGE_CFG)
    if text is None:
        report.record(section, STORAGE_CFG, Outcome.SKIPPED, "No Proxmox storage configuration found")
        return
    for storage, options in parse_storage_cfg(text).items():
        sparse = options.get("sparse", "0") not in ("", "0")
        report.info(section, f"{storage} thin provisioning", "Enabled" if sparse else "Disabled")
        if not sparse:
            report.notes.append(f"Enable thin provisioning for {storage} via Datacenter -> Storage -> Edit")
        pool = options.get("pool")
        if not pool:
            continue
        for prop, fallback in (("compression", "off"), ("volblocksize", "8k")):
            try:
                value = get_property(host, "zfs", prop, pool)
            except CommandError:
                value = fallback
            report.info(section, f"{storage} {prop}", value)


def run_zfs(host: Host) -> Report:
    """Size the ARC for guests and apply safe pool/dataset settings."""
    if not host.which("zfs"):
        raise PreconditionError("ZFS is not installed on this system")

    report = Report(title="Proxmox ZFS Configuration")
    limits = arc_limits(host.memory().total)
    report.info("arc", "system memory", f"{limits.ram_gb}GB")
    report.info("arc", "limits", f"{limits.min_gb}GB min, {limits.max_gb}GB max")
    logger.info("Reserved for VMs: %sGB+", limits.reserved_gb)

    configure_arc(host, report, limits)
    configure_autotrim(host, report)
    report_storage(host, report)
    configure_datasets(host, report)

    report.notes.extend(
        [
            f"ARC Memory: {limits.min_gb}-{limits.max_gb}GB (leaves {limits.reserved_gb}GB for VMs)",
            "Preserved for safety: sync=standard, per-volume compression, default cache",
            "Reboot recommended for full effect",
        ]
    )
    return report
