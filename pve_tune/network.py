"""Tier-based kernel and NIC tuning for Proxmox bridges."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .apply import Outcome, Report, ensure, ensure_file
from .errors import CommandError, PreconditionError
from .host import Host, LinkStats
from .interfaces import detect_tier, physical_interfaces
from .kmod import ensure_boot_module, is_loaded
from .sysctl import SYSCTL_DIR, Section, ensure_values, flatten, render_conf
from .tiers import TierProfile, get_tier

logger = logging.getLogger(__name__)

JUMBO_MTU = 9000
COALESCE_RX_USECS = 50
AVAILABLE_CONGESTION = "/proc/sys/net/ipv4/tcp_available_congestion_control"

OFFLOADS = {
    "tso": "tcp-segmentation-offload",
    "gso": "generic-segmentation-offload",
    "gro": "generic-receive-offload",
}


def dropin_path(tier_key: str) -> str:
    return f"{SYSCTL_DIR}/99-proxmox-network-{tier_key}.conf"


def tier_sections(profile: TierProfile, congestion: str) -> List[Section]:
    return [
        (
            "Core Network Buffers",
            {
                "net.core.rmem_default": profile.rmem_default,
                "net.core.rmem_max": profile.rmem_max,
                "net.core.wmem_default": profile.wmem_default,
                "net.core.wmem_max": profile.wmem_max,
            },
        ),
        (
            "TCP Memory Tuning",
            {
                "net.ipv4.tcp_rmem": profile.tcp_rmem,
                "net.ipv4.tcp_wmem": profile.tcp_wmem,
                "net.ipv4.tcp_mem": profile.tcp_mem,
            },
        ),
        (
            "Network Device Queues",
            {
                "net.core.netdev_max_backlog": profile.netdev_max_backlog,
                "net.core.somaxconn": profile.somaxconn,
                "net.ipv4.tcp_max_syn_backlog": profile.tcp_max_syn_backlog,
            },
        ),
        (
            "TCP Configuration",
            {
                "net.ipv4.tcp_congestion_control": congestion,
                "net.ipv4.tcp_window_scaling": 1,
                "net.ipv4.tcp_timestamps": 1,
                "net.ipv4.tcp_sack": 1,
                "net.ipv4.tcp_no_metrics_save": 1,
                "net.ipv4.tcp_moderate_rcvbuf": 1,
                "net.ipv4.tcp_slow_start_after_idle": 0,
            },
        ),
        (
            "TCP Connection Handling",
            {
                "net.ipv4.tcp_fin_timeout": 30,
                "net.ipv4.tcp_keepalive_time": 300,
                "net.ipv4.tcp_keepalive_probes": 5,
                "net.ipv4.tcp_keepalive_intvl": 15,
                "net.ipv4.tcp_tw_reuse": 1,
            },
        ),
        (
            "IP Routing",
            {
                "net.ipv4.ip_forward": 1,
                "net.ipv4.conf.all.forwarding": 1,
                "net.ipv6.conf.all.forwarding": 1,
            },
        ),
        (
            "Bridge Settings (Proxmox VMs/Containers)",
            {
                "net.bridge.bridge-nf-call-iptables": 1,
                "net.bridge.bridge-nf-call-ip6tables": 1,
                "net.bridge.bridge-nf-call-arptables": 1,
            },
        ),
        ("Connection Tracking", {"net.netfilter.nf_conntrack_max": 1048576}),
        ("TCP Fast Open", {"net.ipv4.tcp_fastopen": 3}),
    ]


def render_dropin(profile: TierProfile, congestion: str) -> str:
    title = [f"Proxmox Network Configuration - {profile.name}", f"Tier: {profile.key}"]
    return render_conf(title, tier_sections(profile, congestion))


def parse_rings(output: str) -> Tuple[Dict[str, int], Dict[str, int]]:
    """Split ``ethtool -g`` output into (pre-set maximums, current settings)."""
    maximums: Dict[str, int] = {}
    current: Dict[str, int] = {}
    target: Optional[Dict[str, int]] = None
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("Pre-set maximums"):
            target = maximums
            continue
        if stripped.startswith("Current hardware settings"):
            target = current
            continue
        if target is None or ":" not in stripped:
            continue
        key, value = (part.strip() for part in stripped.split(":", 1))
        if value.isdigit():
            target[key] = int(value)
    return maximums, current


def parse_colon_pairs(output: str) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    for line in output.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        pairs[key.strip()] = value.strip()
    return pairs


def ensure_congestion_module(host: Host, report: Report, profile: TierProfile) -> str:
    """Make sure the tier's congestion control can be used, falling back to cubic."""
    section = "congestion control"
    if profile.congestion_control != "bbr":
        report.info(section, "algorithm", profile.congestion_control)
        return profile.congestion_control

    builtin = "bbr" in (host.read(AVAILABLE_CONGESTION) or "").split()
    if builtin or is_loaded(host, "tcp_bbr"):
        report.record(section, "tcp_bbr module", Outcome.ALREADY, "loaded")
    else:
        try:
            host.run(["modprobe", "tcp_bbr"])
        except CommandError as exc:
            report.record(section, "tcp_bbr module", Outcome.FAILED, f"BBR not available, using cubic ({exc})")
            return "cubic"
        report.record(section, "tcp_bbr module", Outcome.CHANGED, "loaded")
    ensure_boot_module(host, report, section, "tcp_bbr")
    return "bbr"


def remove_stale_dropins(host: Host, report: Report, keep: str) -> None:
    for path in host.glob(dropin_path("*")):
        if path == keep:
            continue
        try:
            host.remove(path)
        except OSError as exc:
            report.record("kernel", path, Outcome.FAILED, str(exc))
            continue
        report.record("kernel", path, Outcome.CHANGED, "removed drop-in of another tier")


def configure_rings(host: Host, report: Report, iface: str, profile: TierProfile) -> None:
    section = f"nic {iface}"
    try:
        maximums, current = parse_rings(host.query(["ethtool", "-g", iface]))
    except CommandError:
        report.record(section, "ring buffers", Outcome.SKIPPED, "not configurable")
        return
    targets = {"RX": profile.ring_rx, "TX": profile.ring_tx}
    # Only directions the driver reports a numeric size for can be set.
    wanted = {
        direction: min(size, maximums.get(direction, size))
        for direction, size in targets.items()
        if current.get(direction)
    }
    if not wanted:
        report.record(section, "ring buffers", Outcome.SKIPPED, "not configurable")
        return
    args = []
    for direction, size in wanted.items():
        args += [direction.lower(), str(size)]
    ensure(
        report,
        section,
        "ring buffers",
        " ".join(f"{direction.lower()} {current[direction]}" for direction in wanted),
        " ".join(args),
        lambda: host.run(["ethtool", "-G", iface] + args),
    )


def configure_offloads(host: Host, report: Report, iface: str) -> None:
    section = f"nic {iface}"
    try:
        features = parse_colon_pairs(host.query(["ethtool", "-k", iface]))
    except CommandError:
        report.record(section, "offloading", Outcome.SKIPPED, "offload configuration skipped")
        return
    current: List[str] = []
    desired: List[str] = []
    for short, feature in OFFLOADS.items():
        state = features.get(feature, "")
        if not state or "[fixed]" in state:
            continue
        current.append(f"{short} {state.split()[0]}")
        desired.append(f"{short} on")
    if not desired:
        report.record(section, "offloading", Outcome.SKIPPED, "fixed by driver")
        return
    ensure(
        report,
        section,
        "offloading",
        " ".join(current),
        " ".join(desired),
        lambda: host.run(["ethtool", "-K", iface] + " ".join(desired).split()),
    )


def configure_coalescing(host: Host, report: Report, iface: str) -> None:
    section = f"nic {iface}"
    try:
        settings = parse_colon_pairs(host.query(["ethtool", "-c", iface]))
    except CommandError:
        report.record(section, "interrupt coalescing", Outcome.SKIPPED, "not configurable")
        return
    current = settings.get("rx-usecs", "")
    if not current.isdigit():
        report.record(section, "interrupt coalescing", Outcome.SKIPPED, "not configurable")
        return
    ensure(
        report,
        section,
        "interrupt coalescing",
        f"rx-usecs {current}",
        f"rx-usecs {COALESCE_RX_USECS}",
        lambda: host.run(["ethtool", "-C", iface, "rx-usecs", str(COALESCE_RX_USECS)]),
    )


def configure_mtu(host: Host, report: Report, iface: str, link: LinkStats, jumbo: bool) -> None:
    section = f"nic {iface}"
    if not jumbo:
        state = "Jumbo Frames currently enabled" if link.mtu == JUMBO_MTU else "Jumbo Frames disabled"
        report.info(section, "mtu", f"{link.mtu} ({state})")
        return
    result = ensure(
        report,
        section,
        "mtu",
        str(link.mtu),
        str(JUMBO_MTU),
        lambda: host.run(["ip", "link", "set", "dev", iface, "mtu", str(JUMBO_MTU)]),
    )
    if result.outcome is Outcome.CHANGED:
        warning = "Ensure ALL network equipment supports MTU 9000"
        if warning not in report.notes:
            report.notes.append(warning)


def configure_interfaces(host: Host, report: Report, profile: TierProfile, jumbo: bool) -> None:
    stats = host.interface_stats()
    names = physical_interfaces(stats)
    if not names:
        report.record("nic", "interfaces", Outcome.SKIPPED, "No physical network interfaces found")
        return
    for iface in names:
        configure_rings(host, report, iface, profile)
        configure_offloads(host, report, iface)
        if profile.interrupt_coalescing:
            configure_coalescing(host, report, iface)
        configure_mtu(host, report, iface, stats[iface], jumbo)


def resolve_profile(host: Host, report: Report, tier: str) -> TierProfile:
    if tier.strip().lower() != "auto":
        return get_tier(tier)
    detection = detect_tier(host)
    if detection.interface is None:
        report.record("detect", "fastest interface", Outcome.SKIPPED, "no link speed detected, defaulting to 1gbe")
    else:
        report.info("detect", "fastest interface", f"{detection.interface} at {detection.speed_mbps}Mb/s")
    report.info("detect", "selected tier", detection.tier)
    return get_tier(detection.tier)


def _summary_notes(profile: TierProfile, congestion: str, jumbo: bool) -> List[str]:
    notes = [
        f"Tier: {profile.name}",
        f"TCP Congestion: {congestion}",
        f"Max RX Buffer: {profile.rmem_max // (1024 * 1024)} MB",
        f"Max TX Buffer: {profile.wmem_max // (1024 * 1024)} MB",
        f"Queue Backlog: {profile.netdev_max_backlog}",
        f"Ring Buffer: RX={profile.ring_rx} TX={profile.ring_tx}",
    ]
    if jumbo:
        notes.append("Jumbo Frames enabled: test connectivity with ping -M do -s 8972 <host>")
    else:
        notes.append("Consider Jumbo Frames for 10GbE+ (rerun with --jumbo)")
    if profile.key != "1gbe":
        notes.append(f"Ensure all network equipment supports {profile.name}")
        notes.append("Use multiple queues/RSS for better multi-core performance")
    notes.extend(profile.recommendations)
    return notes


def run_network(host: Host, tier: str = "auto", jumbo: bool = False) -> Report:
    """Tune kernel networking and NICs for a tier name, an alias, or ``auto``."""
    if not host.which("ethtool"):
        raise PreconditionError("ethtool is required but not installed")

    report = Report(title="Proxmox Network Configuration")
    profile = resolve_profile(host, report, tier)
    report.title = f"Proxmox Network Configuration ({profile.name})"
    logger.info("Configuring for %s (jumbo frames %s)", profile.key, "on" if jumbo else "off")

    congestion = ensure_congestion_module(host, report, profile)

    path = dropin_path(profile.key)
    sections = tier_sections(profile, congestion)
    ensure_file(host, report, "kernel", path, render_dropin(profile, congestion))
    remove_stale_dropins(host, report, keep=path)
    ensure_values(host, report, "kernel", flatten(sections))

    configure_interfaces(host, report, profile, jumbo)

    report.notes.extend(_summary_notes(profile, congestion, jumbo))
    return report
