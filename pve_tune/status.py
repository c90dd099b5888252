"""Read-only snapshots of the tuned subsystems."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .errors import CommandError
from .host import Host, cpu_vendor
from .interfaces import physical_interfaces
from .network import dropin_path
from .optimize import KVM_MODULES, iommu_enabled
from .power import ASPM_POLICY, CPUFREQ0, CPU_ROOT, parse_aspm
from .sysctl import read_value
from .zfs import ARC_PARAMETERS

ARCSTATS = "/proc/spl/kstat/zfs/arcstats"
TEMPERATURE_LABELS = re.compile(r"Core|Tdie|Package")

# (lower bound in Celsius, level, advice), hottest first.
THERMAL_THRESHOLDS: List[Tuple[int, str, str]] = [
    (95, "EMERGENCY", "Critical temperature, check the cooling system immediately"),
    (85, "WARNING", "High temperature, CPU will reduce frequency automatically"),
    (75, "NOTICE", "Temperature elevated but safe"),
]


@dataclass
class InterfaceStatus:
    name: str
    speed_mbps: int
    mtu: int
    is_up: bool


@dataclass
class NetworkStatus:
    timestamp: datetime
    tier: Optional[str]
    congestion_control: Optional[str]
    rmem_max: Optional[int]
    wmem_max: Optional[int]
    netdev_max_backlog: Optional[int]
    tcp_max_syn_backlog: Optional[int]
    tcp_connections: Optional[int]
    interfaces: List[InterfaceStatus] = field(default_factory=list)


@dataclass
class PoolStatus:
    name: str
    health: str
    autotrim: str
    fragmentation: Optional[str]


@dataclass
class ZfsStatus:
    timestamp: datetime
    arc_size: Optional[int]
    arc_min: Optional[int]
    arc_max: Optional[int]
    memory_total: int
    hit_ratio: Optional[float]
    pools: List[PoolStatus] = field(default_factory=list)
    sync_disabled: List[str] = field(default_factory=list)


@dataclass
class ThermalStatus:
    temperature: Optional[float]
    level: str
    advice: str


@dataclass
class PowerStatus:
    timestamp: datetime
    governor: Optional[str]
    driver: Optional[str]
    aspm_policy: Optional[str]
    boost_label: Optional[str]
    boost_enabled: Optional[bool]
    thermal: ThermalStatus
    frequencies_mhz: List[float] = field(default_factory=list)


@dataclass
class SystemStatus:
    timestamp: datetime
    nested_virtualization: Optional[str]
    iommu_enabled: bool
    memory_total: int
    memory_used: int
    memory_available: int
    vm_count: Optional[int]
    container_count: Optional[int]
    thermal: ThermalStatus


def _int_or_none(value: Optional[str]) -> Optional[int]:
    return int(value) if value and value.isdigit() else None


def configured_tier(host: Host) -> Optional[str]:
    for path in host.glob(dropin_path("*")):
        for line in (host.read(path) or "").splitlines():
            if line.startswith("# Tier:"):
                return line.split(":", 1)[1].strip()
    return None


def network_status(host: Host) -> NetworkStatus:
    stats = host.interface_stats()
    return NetworkStatus(
        timestamp=datetime.now(),
        tier=configured_tier(host),
        congestion_control=read_value(host, "net.ipv4.tcp_congestion_control"),
        rmem_max=_int_or_none(read_value(host, "net.core.rmem_max")),
        wmem_max=_int_or_none(read_value(host, "net.core.wmem_max")),
        netdev_max_backlog=_int_or_none(read_value(host, "net.core.netdev_max_backlog")),
        tcp_max_syn_backlog=_int_or_none(read_value(host, "net.ipv4.tcp_max_syn_backlog")),
        tcp_connections=host.tcp_connection_count(),
        interfaces=[
            InterfaceStatus(name=name, speed_mbps=stats[name].speed_mbps, mtu=stats[name].mtu, is_up=stats[name].is_up)
            for name in physical_interfaces(stats)
        ],
    )


def parse_arcstats(text: str) -> Dict[str, int]:
    values: Dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 3 and parts[2].isdigit():
            values[parts[0]] = int(parts[2])
    return values


def hit_ratio(hits: int, misses: int) -> Optional[float]:
    total = hits + misses
    return hits * 100.0 / total if total else None


def _pool_status(host: Host, pool: str) -> PoolStatus:
    def prop(name: str) -> str:
        try:
            return host.query(["zpool", "get", "-H", "-o", "value", name, pool]).strip()
        except CommandError:
            return "unknown"

    fragmentation = prop("fragmentation")
    return PoolStatus(
        name=pool,
        health=prop("health"),
        autotrim=prop("autotrim"),
        fragmentation=None if fragmentation in ("-", "unknown") else fragmentation,
    )


def zfs_status(host: Host) -> ZfsStatus:
    arcstats = parse_arcstats(host.read(ARCSTATS) or "")
    try:
        pools = [line.strip() for line in host.query(["zpool", "list", "-H", "-o", "name"]).splitlines() if line.strip()]
    except CommandError:
        pools = []
    try:
        sync_lines = host.query(["zfs", "get", "-H", "-o", "name,value", "sync"]).splitlines()
    except CommandError:
        sync_lines = []
    sync_disabled = [line.split()[0] for line in sync_lines if line.split()[1:] == ["disabled"]]
    return ZfsStatus(
        timestamp=datetime.now(),
        arc_size=arcstats.get("size"),
        arc_min=_int_or_none(host.read(f"{ARC_PARAMETERS}/zfs_arc_min")),
        arc_max=_int_or_none(host.read(f"{ARC_PARAMETERS}/zfs_arc_max")),
        memory_total=host.memory().total,
        hit_ratio=hit_ratio(arcstats.get("hits", 0), arcstats.get("misses", 0)),
        pools=[_pool_status(host, pool) for pool in pools],
        sync_disabled=sync_disabled,
    )


def thermal_level(temperature: Optional[float]) -> ThermalStatus:
    if temperature is None:
        return ThermalStatus(temperature=None, level="UNKNOWN", advice="Cannot read temperature")
    for threshold, level, advice in THERMAL_THRESHOLDS:
        if temperature >= threshold:
            return ThermalStatus(temperature=temperature, level=level, advice=advice)
    return ThermalStatus(temperature=temperature, level="NORMAL", advice="Temperature is normal")


def max_cpu_temperature(host: Host) -> Optional[float]:
    readings = [value for label, value in host.temperatures() if TEMPERATURE_LABELS.search(label)]
    return max(readings) if readings else None


def _boost(host: Host) -> Tuple[Optional[str], Optional[bool]]:
    boost = host.read(f"{CPU_ROOT}/cpufreq/boost")
    if boost is not None:
        return "AMD Boost", boost == "1"
    no_turbo = host.read(f"{CPU_ROOT}/intel_pstate/no_turbo")
    if no_turbo is not None:
        return "Intel Turbo", no_turbo == "0"
    return None, None


def power_status(host: Host) -> PowerStatus:
    aspm = host.read(ASPM_POLICY)
    boost_label, boost_enabled = _boost(host)
    return PowerStatus(
        timestamp=datetime.now(),
        governor=host.read(f"{CPUFREQ0}/scaling_governor"),
        driver=host.read(f"{CPUFREQ0}/scaling_driver"),
        aspm_policy=parse_aspm(aspm) if aspm else None,
        boost_label=boost_label,
        boost_enabled=boost_enabled,
        thermal=thermal_level(max_cpu_temperature(host)),
        frequencies_mhz=host.cpu_frequencies(),
    )


def _guest_count(host: Host, command: str) -> Optional[int]:
    try:
        output = host.query([command, "list"])
    except CommandError:
        return None
    return len([line for line in output.splitlines()[1:] if line.strip()])


def nested_virtualization(host: Host) -> Optional[str]:
    module = KVM_MODULES.get(cpu_vendor(host))
    candidates = [module] if module else list(KVM_MODULES.values())
    for name in candidates:
        value = host.read(f"/sys/module/{name}/parameters/nested")
        if value is not None:
            return f"{name}: {value}"
    return None


def system_status(host: Host) -> SystemStatus:
    memory = host.memory()
    return SystemStatus(
        timestamp=datetime.now(),
        nested_virtualization=nested_virtualization(host),
        iommu_enabled=iommu_enabled(host),
        memory_total=memory.total,
        memory_used=memory.used,
        memory_available=memory.available,
        vm_count=_guest_count(host, "qm"),
        container_count=_guest_count(host, "pct"),
        thermal=thermal_level(max_cpu_temperature(host)),
    )
