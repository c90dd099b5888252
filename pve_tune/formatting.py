"""Console-friendly formatting utilities."""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from .apply import Report
from .status import NetworkStatus, PowerStatus, SystemStatus, ThermalStatus, ZfsStatus
from .tiers import TierProfile


def format_bytes(num: float) -> str:
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB"]
    value = float(num)
    for suffix in suffixes:
        if value < 1024 or suffix == suffixes[-1]:
            return f"{value:.1f} {suffix}"
        value /= 1024
    return f"{value:.1f} TiB"


def _optional_bytes(num: Optional[int]) -> str:
    return format_bytes(num) if num is not None else "n/a"


def _text(value: object) -> str:
    return "n/a" if value is None else str(value)


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], len(cell))
    lines = []
    lines.append(_format_row(headers, widths))
    lines.append(_format_row(["-" * w for w in widths], widths))
    for row in rows:
        lines.append(_format_row(row, widths))
    return "\n".join(lines)


def format_report(report: Report) -> str:
    lines = [report.title, "=" * len(report.title)]
    rows = [[r.section, r.name, r.outcome.value, r.detail] for r in report.results]
    lines.append(render_table(["Section", "Step", "Result", "Detail"], rows) if rows else "Nothing to do")
    counts = report.counts()
    lines.append("")
    lines.append(
        f"Summary: {counts['changed']} changed, {counts['already']} already configured, "
        f"{counts['skipped']} skipped, {counts['failed']} failed"
    )
    if report.notes:
        lines.append("Notes:")
        lines.extend(f"  - {note}" for note in report.notes)
    if report.reboot_required:
        lines.append("Reboot required to apply all changes")
    return "\n".join(lines)


def format_tiers(tiers: Iterable[TierProfile]) -> str:
    rows = [
        [
            tier.key,
            tier.name,
            format_bytes(tier.rmem_max),
            str(tier.netdev_max_backlog),
            tier.congestion_control,
            f"{tier.ring_rx}/{tier.ring_tx}",
        ]
        for tier in tiers
    ]
    return render_table(["Tier", "Name", "Buffer max", "Backlog", "Congestion", "Rings rx/tx"], rows)


def format_network_status(status: NetworkStatus) -> str:
    lines = [
        f"Time: {status.timestamp:%Y-%m-%d %H:%M:%S}",
        f"Configured tier: {status.tier or 'not configured'}",
        f"Congestion control: {_text(status.congestion_control)}",
        f"Buffers: rmem_max {_optional_bytes(status.rmem_max)} | wmem_max {_optional_bytes(status.wmem_max)}",
        f"Backlog: netdev {_text(status.netdev_max_backlog)} | syn {_text(status.tcp_max_syn_backlog)}",
        f"TCP connections: {_text(status.tcp_connections)}",
    ]
    rows = [
        [iface.name, f"{iface.speed_mbps} Mb/s" if iface.speed_mbps > 0 else "unknown", str(iface.mtu), "up" if iface.is_up else "down"]
        for iface in status.interfaces
    ]
    lines.append(render_table(["Interface", "Speed", "MTU", "State"], rows) if rows else "No physical interfaces")
    return "\n".join(lines)


def format_zfs_status(status: ZfsStatus) -> str:
    ratio = f"{status.hit_ratio:.1f}%" if status.hit_ratio is not None else "n/a"
    lines = [
        f"Time: {status.timestamp:%Y-%m-%d %H:%M:%S}",
        f"ARC size: {_optional_bytes(status.arc_size)} (min {_optional_bytes(status.arc_min)}, max {_optional_bytes(status.arc_max)})",
        f"System memory: {format_bytes(status.memory_total)}",
        f"ARC hit ratio: {ratio}",
    ]
    rows = [[pool.name, pool.health, pool.autotrim, pool.fragmentation or "n/a"] for pool in status.pools]
    lines.append(render_table(["Pool", "Health", "Autotrim", "Fragmentation"], rows) if rows else "No pools found")
    if status.sync_disabled:
        lines.append("WARNING: datasets with sync=disabled (data loss risk on power failure):")
        lines.extend(f"  - {name}" for name in status.sync_disabled)
    return "\n".join(lines)


def format_thermal(thermal: ThermalStatus) -> str:
    if thermal.temperature is None:
        return f"{thermal.level}: {thermal.advice}"
    return f"{thermal.level}: {thermal.temperature:.1f}°C - {thermal.advice}"


def format_power_status(status: PowerStatus) -> str:
    lines = [
        f"Time: {status.timestamp:%Y-%m-%d %H:%M:%S}",
        f"Governor: {_text(status.governor)} | Driver: {_text(status.driver)}",
        f"PCIe ASPM: {_text(status.aspm_policy)}",
    ]
    if status.boost_label:
        lines.append(f"{status.boost_label}: {'enabled' if status.boost_enabled else 'disabled'}")
    if status.frequencies_mhz:
        rows = [[f"cpu{index}", f"{mhz:.0f} MHz"] for index, mhz in enumerate(status.frequencies_mhz)]
        lines.append(render_table(["CPU", "Frequency"], rows))
    lines.append(f"Temperature: {format_thermal(status.thermal)}")
    return "\n".join(lines)


def format_system_status(status: SystemStatus) -> str:
    lines: List[str] = [
        f"Time: {status.timestamp:%Y-%m-%d %H:%M:%S}",
        f"Nested virtualization: {status.nested_virtualization or 'not available'}",
        f"IOMMU: {'enabled' if status.iommu_enabled else 'not enabled'}",
        f"Memory: used {format_bytes(status.memory_used)} / {format_bytes(status.memory_total)}"
        f" | available {format_bytes(status.memory_available)}",
        f"VMs: {_text(status.vm_count)} | Containers: {_text(status.container_count)}",
        f"Temperature: {format_thermal(status.thermal)}",
    ]
    return "\n".join(lines)


def _format_row(row: Sequence[str], widths: Sequence[int]) -> str:
    padded = [cell.ljust(width) for cell, width in zip(row, widths)]
    return " | ".join(padded)
