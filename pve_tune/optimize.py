"""General hypervisor tuning: VM-friendly sysctls, nested virt, IOMMU, VFIO, TRIM."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from .apply import Outcome, Report, ensure_file, step
from .errors import CommandError
from .grub import ensure_kernel_params
from .host import Host, cpu_vendor, pve_major_version
from .kmod import ensure_boot_module
from .sysctl import SYSCTL_DIR, Section, ensure_values, flatten, render_conf

OPTIMIZE_DROPIN = f"{SYSCTL_DIR}/98-proxmox-optimize.conf"
NESTED_DROPIN = "/etc/modprobe.d/kvm-nested.conf"
CHRONY_DROPIN = "/etc/chrony/conf.d/99-proxmox-cluster.conf"
VFIO_MODULES = ["vfio", "vfio_iommu_type1", "vfio_pci", "vfio_virqfd"]

KVM_MODULES = {"GenuineIntel": "kvm_intel", "AuthenticAMD": "kvm_amd"}
IOMMU_PARAMS = {
    "GenuineIntel": ["intel_iommu=on", "iommu=pt"],
    "AuthenticAMD": ["amd_iommu=on", "iommu=pt"],
}

SYSTEM_SECTIONS: List[Section] = [
    (
        "Memory Management",
        {
            "vm.swappiness": 10,
            "vm.vfs_cache_pressure": 50,
            "vm.dirty_background_ratio": 5,
            "vm.dirty_ratio": 10,
        },
    ),
    (
        "Network - Basic safe optimizations",
        {
            "net.core.netdev_max_backlog": 8192,
            "net.core.somaxconn": 8192,
            "net.ipv4.tcp_fin_timeout": 30,
            "net.ipv4.tcp_keepalive_time": 300,
            "net.ipv4.tcp_tw_reuse": 1,
        },
    ),
    (
        "File System",
        {
            "fs.file-max": 2097152,
            "fs.inotify.max_user_watches": 524288,
        },
    ),
    (
        "Bridge settings for VMs (Proxmox requirement)",
        {
            "net.bridge.bridge-nf-call-iptables": 1,
            "net.bridge.bridge-nf-call-ip6tables": 1,
        },
    ),
]


def configure_kernel(host: Host, report: Report) -> None:
    content = render_conf(["Proxmox VM/Container Configuration"], SYSTEM_SECTIONS)
    ensure_file(host, report, "kernel", OPTIMIZE_DROPIN, content)
    ensure_values(host, report, "kernel", flatten(SYSTEM_SECTIONS))


def configure_nested_virtualization(host: Host, report: Report, vendor: str) -> None:
    section = "nested virtualization"
    module = KVM_MODULES.get(vendor)
    if module is None:
        report.record(section, "kvm", Outcome.SKIPPED, f"unsupported CPU vendor {vendor}")
        return
    current = host.read(f"/sys/module/{module}/parameters/nested")
    if current is None:
        report.record(section, module, Outcome.SKIPPED, f"{module} not loaded")
        return
    if current in ("Y", "1"):
        report.record(section, module, Outcome.ALREADY, "enabled")
        return
    ensure_file(host, report, section, NESTED_DROPIN, f"options {module} nested=1\n")
    if report.results[-1].outcome is not Outcome.FAILED:
        report.reboot_required = True
        report.notes.append(f"Nested virtualization for {module} is enabled after reboot")


def iommu_enabled(host: Host) -> bool:
    try:
        return "IOMMU enabled" in host.query(["dmesg"])
    except CommandError:
        return False


def configure_iommu(host: Host, report: Report, vendor: str) -> None:
    section = "iommu"
    params = IOMMU_PARAMS.get(vendor)
    if params is None:
        report.record(section, "kernel parameters", Outcome.SKIPPED, f"unsupported CPU vendor {vendor}")
        return
    if iommu_enabled(host):
        report.record(section, "iommu", Outcome.ALREADY, "IOMMU enabled")
        return
    ensure_kernel_params(host, report, section, params)
    # Parameters already on the command line but not yet active.
    if report.results[-1].outcome is Outcome.ALREADY:
        report.reboot_required = True
        report.notes.append("IOMMU is enabled after reboot")


def configure_vfio(host: Host, report: Report) -> None:
    for module in VFIO_MODULES:
        ensure_boot_module(host, report, "vfio", module)


def configure_fstrim(host: Host, report: Report) -> None:
    section = "storage"
    if not host.which("systemctl"):
        report.record(section, "fstrim.timer", Outcome.SKIPPED, "systemctl not available")
        return
    try:
        enabled = host.query(["systemctl", "is-enabled", "fstrim.timer"]).strip()
    except CommandError as exc:
        enabled = exc.output or "disabled"
    if enabled == "enabled":
        report.record(section, "fstrim.timer", Outcome.ALREADY, "weekly SSD TRIM enabled")
        return
    with step(report, section, "fstrim.timer"):
        host.run(["systemctl", "enable", "fstrim.timer"])
        report.record(section, "fstrim.timer", Outcome.CHANGED, "weekly SSD TRIM enabled")


def configure_chrony(host: Host, report: Report, source: Optional[str]) -> None:
    """Install a cluster time-sync drop-in once; an existing drop-in is never replaced."""
    section = "time sync"
    if not host.which("chronyc"):
        report.record(section, "chrony", Outcome.SKIPPED, "chrony not installed")
        return
    if host.exists(CHRONY_DROPIN):
        report.record(section, CHRONY_DROPIN, Outcome.ALREADY, "installed")
        return
    if source is None:
        report.record(section, CHRONY_DROPIN, Outcome.SKIPPED, "no cluster configuration given")
        return
    try:
        content = Path(source).read_text(encoding="utf-8")
    except OSError as exc:
        report.record(section, CHRONY_DROPIN, Outcome.SKIPPED, f"cannot read {source}: {exc.strerror}")
        return
    if ensure_file(host, report, section, CHRONY_DROPIN, content):
        with step(report, section, "chrony"):
            host.run(["systemctl", "restart", "chrony"])
            report.record(section, "chrony", Outcome.CHANGED, "restarted")


def run_optimize(host: Host, chrony_conf: Optional[str] = None) -> Report:
    """Apply the host-wide Proxmox tuning that is independent of the network tier."""
    report = Report(title="Proxmox System Configuration")
    vendor = cpu_vendor(host)
    version = pve_major_version(host)
    report.info("system", "proxmox", f"Proxmox {version}" if version else "unknown")
    report.info("system", "cpu vendor", vendor)
    report.info("system", "memory", f"{host.memory().total // 1024**3}GB")

    configure_kernel(host, report)
    configure_nested_virtualization(host, report, vendor)
    configure_iommu(host, report, vendor)
    configure_vfio(host, report)
    configure_fstrim(host, report)
    configure_chrony(host, report, chrony_conf)

    if not report.reboot_required:
        report.notes.append("No reboot required")
    return report
