"""CPU frequency, PCIe/SATA/USB power management and switchable power profiles."""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from .apply import Outcome, Report, StepResult, Tally, ensure, ensure_file
from .errors import CommandError, ProfileError
from .grub import ensure_kernel_params
from .host import Host, cpu_model, cpu_vendor, pve_major_version
from .interfaces import physical_interfaces
from .kmod import is_loaded

logger = logging.getLogger(__name__)

CPU_ROOT = "/sys/devices/system/cpu"
CPUFREQ0 = f"{CPU_ROOT}/cpu0/cpufreq"
ASPM_POLICY = "/sys/module/pcie_aspm/parameters/policy"
CPUFREQUTILS = "/etc/default/cpufrequtils"

GOVERNOR_PREFERENCE = ["schedutil", "ondemand", "conservative"]
FALLBACK_GOVERNOR = "performance"
SATA_POLICIES = ["med_power_with_dipm", "medium_power", "min_power"]

HID_INTERFACE_CLASS = "03"
# Display controllers, NVMe and AHCI stay powered.
ALWAYS_ON_PCI_CLASSES = ("0x03", "0x0108", "0x0106")

CPU_DRIVERS = {
    "AuthenticAMD": ["amd-pstate-epp", "amd-pstate", "acpi-cpufreq"],
    "GenuineIntel": ["intel_pstate", "acpi-cpufreq"],
}
DRIVER_SETTLE_SECONDS = 1.0

KERNEL_PARAMS = {
    "GenuineIntel": ["quiet", "intel_idle.max_cstate=6", "intel_pstate=passive", "pcie_aspm=powersave"],
    "AuthenticAMD": ["quiet", "processor.max_cstate=6", "amd_pstate=passive", "pcie_aspm=powersave"],
}
DEFAULT_KERNEL_PARAMS = ["quiet", "processor.max_cstate=6", "pcie_aspm=powersave"]

SUPPORTED_PVE_MAJOR = 9


@dataclass(frozen=True)
class PowerProfile:
    name: str
    governor: Optional[str]
    aspm: str
    device_policy: str


PROFILES: Dict[str, PowerProfile] = {
    "performance": PowerProfile("performance", governor="performance", aspm="default", device_policy="on"),
    "balanced": PowerProfile("balanced", governor=None, aspm="powersave", device_policy="selective"),
    "powersave": PowerProfile("powersave", governor="powersave", aspm="powersupersave", device_policy="auto"),
}


def get_profile(name: str) -> PowerProfile:
    try:
        return PROFILES[name.strip().lower()]
    except KeyError:
        raise ProfileError(f"Invalid power profile: {name}") from None


def available_governors(host: Host) -> List[str]:
    return (host.read(f"{CPUFREQ0}/scaling_available_governors") or "").split()


def choose_governor(available: List[str]) -> str:
    for governor in GOVERNOR_PREFERENCE:
        if governor in available:
            return governor
    return FALLBACK_GOVERNOR


def parse_aspm(text: str) -> Optional[str]:
    """Return the active entry of ``[default] performance powersave``-style text."""
    match = re.search(r"\[([^\]]+)\]", text)
    if match:
        return match.group(1)
    tokens = text.split()
    return tokens[0] if len(tokens) == 1 else None


def ensure_value(host: Host, report: Report, section: str, path: str, value: str) -> StepResult:
    return ensure(report, section, path, host.read(path), value, lambda: host.write_value(path, value))


def load_cpufreq_drivers(host: Host, report: Report, vendor: str) -> None:
    section = "cpu"
    if host.is_dir(CPUFREQ0):
        return
    loaded_any = False
    for driver in CPU_DRIVERS.get(vendor, []):
        if is_loaded(host, driver):
            report.record(section, f"driver {driver}", Outcome.ALREADY, "loaded")
            continue
        try:
            host.run(["modprobe", driver])
        except CommandError:
            report.record(section, f"driver {driver}", Outcome.SKIPPED, "not available")
            continue
        report.record(section, f"driver {driver}", Outcome.CHANGED, "loaded")
        loaded_any = True
    if loaded_any and not host.dry_run:
        logger.debug("waiting %.1fs for cpufreq drivers", DRIVER_SETTLE_SECONDS)
        time.sleep(DRIVER_SETTLE_SECONDS)


def configure_governor(host: Host, report: Report, profile: PowerProfile) -> Optional[str]:
    section = "cpu"
    if not host.is_dir(CPUFREQ0):
        report.record(section, "governor", Outcome.SKIPPED, "CPU frequency scaling not available")
        return None
    available = available_governors(host)
    governor = profile.governor or choose_governor(available)
    if governor not in available:
        report.record(section, "governor", Outcome.SKIPPED, f"{governor} not in {' '.join(available) or 'none'}")
        return None
    if profile.governor is None and governor == FALLBACK_GOVERNOR:
        report.notes.append("No power-saving governor available, using performance")

    tally = Tally()
    scratch = Report(title="governor")
    for path in host.glob(f"{CPU_ROOT}/cpu*/cpufreq/scaling_governor"):
        tally.add(ensure_value(host, scratch, section, path, governor))
    tally.record(report, section, f"governor {governor}")
    tune_governor(host, report, governor)
    return governor


def tune_governor(host: Host, report: Report, governor: str) -> None:
    section = "cpu"
    if governor == "schedutil":
        tally = Tally()
        scratch = Report(title="schedutil")
        for path in host.glob(f"{CPU_ROOT}/cpufreq/policy*/schedutil/rate_limit_us"):
            tally.add(ensure_value(host, scratch, section, path, "1000"))
        if tally.changed or tally.already or tally.failed:
            tally.record(report, section, "schedutil rate_limit_us")
    elif governor == "ondemand" and host.is_dir(f"{CPU_ROOT}/cpufreq/ondemand"):
        ensure_value(host, report, section, f"{CPU_ROOT}/cpufreq/ondemand/up_threshold", "80")
        ensure_value(host, report, section, f"{CPU_ROOT}/cpufreq/ondemand/powersave_bias", "1")


def configure_vendor(host: Host, report: Report, vendor: str) -> None:
    section = "cpu vendor"
    if vendor == "GenuineIntel":
        if host.is_dir(f"{CPU_ROOT}/intel_pstate"):
            ensure_value(host, report, section, f"{CPU_ROOT}/intel_pstate/min_perf_pct", "30")
            ensure_value(host, report, section, f"{CPU_ROOT}/intel_pstate/max_perf_pct", "100")
        else:
            report.record(section, "intel_pstate", Outcome.SKIPPED, "not active")
    elif vendor == "AuthenticAMD":
        if host.exists(f"{CPU_ROOT}/amd_pstate/status"):
            ensure_value(host, report, section, f"{CPU_ROOT}/amd_pstate/status", "passive")
        if host.exists(f"{CPU_ROOT}/cpufreq/boost"):
            ensure_value(host, report, section, f"{CPU_ROOT}/cpufreq/boost", "1")
    else:
        report.record(section, vendor, Outcome.SKIPPED, "no vendor-specific settings")


def configure_aspm(host: Host, report: Report, policy: str) -> None:
    section = "pcie"
    text = host.read(ASPM_POLICY)
    if text is None:
        report.record(section, "aspm", Outcome.SKIPPED, "ASPM not available")
        return
    ensure(report, section, "aspm", parse_aspm(text), policy, lambda: host.write_value(ASPM_POLICY, policy))


def configure_sata(host: Host, report: Report) -> None:
    section = "storage"
    tally = Tally()
    scratch = Report(title="sata")
    for path in host.glob("/sys/class/scsi_host/host*/link_power_management_policy"):
        current = (host.read(path) or "").replace(" ", "")
        host_name = os.path.basename(os.path.dirname(path))
        if current in SATA_POLICIES:
            tally.add(scratch.record(section, host_name, Outcome.ALREADY, current))
            continue
        for policy in SATA_POLICIES:
            try:
                host.write_value(path, policy)
            except OSError:
                continue
            tally.add(scratch.record(section, host_name, Outcome.CHANGED, f"{current} -> {policy}"))
            break
        else:
            tally.add(scratch.record(section, host_name, Outcome.FAILED, "no policy accepted"))
    tally.record(report, section, "SATA link power management")


def _wake_on(output: str) -> Dict[str, str]:
    values = {}
    for line in output.splitlines():
        key, _, value = line.strip().partition(":")
        if key in ("Supports Wake-on", "Wake-on"):
            values[key] = value.strip()
    return values


def _try_run(host: Host, report: Report, section: str, name: str, args: List[str], detail: str) -> None:
    try:
        host.run(args)
    except CommandError:
        report.record(section, name, Outcome.SKIPPED, "not supported")
        return
    report.record(section, name, Outcome.CHANGED, detail)


def configure_nic_power(host: Host, report: Report) -> None:
    if not host.which("ethtool"):
        report.record("nic", "power", Outcome.SKIPPED, "ethtool not installed")
        return
    for iface in physical_interfaces(host.interface_stats()):
        section = f"nic {iface}"
        try:
            wake = _wake_on(host.query(["ethtool", iface]))
        except CommandError:
            wake = {}
        if "g" not in wake.get("Supports Wake-on", ""):
            report.record(section, "wake-on-lan", Outcome.SKIPPED, "not supported")
        elif wake.get("Wake-on") == "g":
            report.record(section, "wake-on-lan", Outcome.ALREADY, "g")
        else:
            _try_run(host, report, section, "wake-on-lan", ["ethtool", "-s", iface, "wol", "g"], "enabled")

        try:
            eee = host.query(["ethtool", "--show-eee", iface])
        except CommandError:
            report.record(section, "eee", Outcome.SKIPPED, "not supported")
            continue
        if "EEE status: enabled" in eee:
            report.record(section, "eee", Outcome.ALREADY, "enabled")
        else:
            _try_run(host, report, section, "eee", ["ethtool", "--set-eee", iface, "eee", "on"], "enabled")


def _device_dir(control_path: str) -> str:
    return os.path.dirname(os.path.dirname(control_path))


def usb_target(host: Host, control_path: str, policy: str) -> str:
    if policy != "selective":
        return policy
    device_class = host.read(f"{_device_dir(control_path)}/bInterfaceClass")
    return "on" if device_class == HID_INTERFACE_CLASS else "auto"


def pci_target(host: Host, control_path: str, policy: str) -> str:
    if policy != "selective":
        return policy
    device_class = host.read(f"{_device_dir(control_path)}/class") or ""
    return "on" if device_class.startswith(ALWAYS_ON_PCI_CLASSES) else "auto"


def configure_runtime_pm(host: Host, report: Report, policy: str) -> None:
    section = "runtime pm"
    buses = (
        ("USB", "/sys/bus/usb/devices/*/power/control", usb_target),
        ("PCI", "/sys/bus/pci/devices/*/power/control", pci_target),
    )
    for label, pattern, target in buses:
        tally = Tally()
        scratch = Report(title=label)
        for path in host.glob(pattern):
            tally.add(ensure_value(host, scratch, section, path, target(host, path, policy)))
        tally.record(report, section, label)


def kernel_params(vendor: str) -> List[str]:
    return KERNEL_PARAMS.get(vendor, DEFAULT_KERNEL_PARAMS)


def apply_profile(host: Host, name: str) -> Report:
    """Switch runtime power settings to a named profile without touching boot config."""
    profile = get_profile(name)
    report = Report(title=f"Power profile: {profile.name}")
    configure_governor(host, report, profile)
    configure_aspm(host, report, profile.aspm)
    configure_runtime_pm(host, report, profile.device_policy)
    return report


def run_power(host: Host) -> Report:
    """Configure balanced power management and persist it across reboots."""
    report = Report(title="Proxmox Power Management")
    version = pve_major_version(host)
    if version is not None and version != SUPPORTED_PVE_MAJOR:
        report.notes.append(f"Optimized for Proxmox {SUPPORTED_PVE_MAJOR}, running Proxmox {version}")
    vendor = cpu_vendor(host)
    report.info("system", "cpu", cpu_model(host))
    report.info("system", "cpu vendor", vendor)

    profile = PROFILES["balanced"]
    load_cpufreq_drivers(host, report, vendor)
    governor = configure_governor(host, report, profile)
    if governor:
        ensure_file(host, report, "cpu", CPUFREQUTILS, f'GOVERNOR="{governor}"\n')
    configure_vendor(host, report, vendor)
    configure_aspm(host, report, profile.aspm)
    configure_sata(host, report)
    configure_nic_power(host, report)
    configure_runtime_pm(host, report, profile.device_policy)
    ensure_kernel_params(host, report, "kernel", kernel_params(vendor))

    report.notes.append("Switch profiles at runtime with: pve-tune power --profile {performance,balanced,powersave}")
    return report
