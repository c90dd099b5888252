"""Network speed tiers and the kernel/NIC parameters tuned for each."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from .errors import TierError

KIB = 1024
MIB = 1024 * 1024


@dataclass(frozen=True)
class TierProfile:
    key: str
    name: str
    rmem_default: int
    rmem_max: int
    wmem_default: int
    wmem_max: int
    tcp_rmem: Tuple[int, int, int]
    tcp_wmem: Tuple[int, int, int]
    netdev_max_backlog: int
    somaxconn: int
    tcp_max_syn_backlog: int
    congestion_control: str
    ring_rx: int
    ring_tx: int
    recommendations: Sequence[str] = ()

    @property
    def tcp_mem(self) -> Tuple[int, int, int]:
        """TCP memory thresholds in pages, scaled from the receive buffer maximum."""
        return (self.rmem_max // 4096, self.rmem_max // 2048, self.rmem_max // 1024)

    @property
    def interrupt_coalescing(self) -> bool:
        return self.key != "1gbe"


def _triple(minimum: int, default: int, maximum: int) -> Tuple[int, int, int]:
    return (minimum, default, maximum)


_HIGH_PERFORMANCE = (
    "Suitable for: High-performance clusters",
    "Required: Switch with matching capabilities",
    "Recommended: Jumbo Frames, RDMA if available",
    "Consider: SR-IOV for VM network performance",
)

_EXTREME = (
    "Suitable for: Very high-speed networks, large-scale deployments",
    "Required: Specialized NICs and switches",
    "Recommended: RDMA (RoCE v2), SR-IOV",
    "Consider: Dedicated NUMA node affinity",
    "Monitor: CPU usage, may need RSS tuning",
)

TIERS: Dict[str, TierProfile] = {
    "1gbe": TierProfile(
        key="1gbe",
        name="1 Gigabit Ethernet",
        rmem_default=256 * KIB,
        rmem_max=8 * MIB,
        wmem_default=256 * KIB,
        wmem_max=8 * MIB,
        tcp_rmem=_triple(4096, 128 * KIB, 6 * MIB),
        tcp_wmem=_triple(4096, 64 * KIB, 4 * MIB),
        netdev_max_backlog=5000,
        somaxconn=4096,
        tcp_max_syn_backlog=4096,
        congestion_control="cubic",
        ring_rx=512,
        ring_tx=512,
        recommendations=(
            "Suitable for: Small deployments, management traffic",
            "Consider: Link aggregation (bonding) for HA",
        ),
    ),
    "10gbe": TierProfile(
        key="10gbe",
        name="10 Gigabit Ethernet",
        rmem_default=512 * KIB,
        rmem_max=32 * MIB,
        wmem_default=512 * KIB,
        wmem_max=32 * MIB,
        tcp_rmem=_triple(4096, 256 * KIB, 16 * MIB),
        tcp_wmem=_triple(4096, 128 * KIB, 16 * MIB),
        netdev_max_backlog=30000,
        somaxconn=16384,
        tcp_max_syn_backlog=16384,
        congestion_control="bbr",
        ring_rx=2048,
        ring_tx=2048,
        recommendations=(
            "Suitable for: Most production environments",
            "Consider: Dedicated storage network on separate NIC",
            "Recommended: Enable Jumbo Frames",
        ),
    ),
    "25gbe": TierProfile(
        key="25gbe",
        name="25 Gigabit Ethernet",
        rmem_default=1 * MIB,
        rmem_max=64 * MIB,
        wmem_default=1 * MIB,
        wmem_max=64 * MIB,
        tcp_rmem=_triple(4096, 512 * KIB, 32 * MIB),
        tcp_wmem=_triple(4096, 256 * KIB, 32 * MIB),
        netdev_max_backlog=50000,
        somaxconn=32768,
        tcp_max_syn_backlog=32768,
        congestion_control="bbr",
        ring_rx=4096,
        ring_tx=4096,
        recommendations=_HIGH_PERFORMANCE,
    ),
    "40gbe": TierProfile(
        key="40gbe",
        name="40 Gigabit Ethernet",
        rmem_default=2 * MIB,
        rmem_max=128 * MIB,
        wmem_default=2 * MIB,
        wmem_max=128 * MIB,
        tcp_rmem=_triple(4096, 1 * MIB, 64 * MIB),
        tcp_wmem=_triple(4096, 512 * KIB, 64 * MIB),
        netdev_max_backlog=100000,
        somaxconn=65535,
        tcp_max_syn_backlog=65535,
        congestion_control="bbr",
        ring_rx=8192,
        ring_tx=8192,
        recommendations=_HIGH_PERFORMANCE,
    ),
    "100gbe": TierProfile(
        key="100gbe",
        name="100 Gigabit Ethernet",
        rmem_default=4 * MIB,
        rmem_max=256 * MIB,
        wmem_default=4 * MIB,
        wmem_max=256 * MIB,
        tcp_rmem=_triple(4096, 2 * MIB, 128 * MIB),
        tcp_wmem=_triple(4096, 1 * MIB, 128 * MIB),
        netdev_max_backlog=250000,
        somaxconn=65535,
        tcp_max_syn_backlog=65535,
        congestion_control="bbr",
        ring_rx=8192,
        ring_tx=8192,
        recommendations=_EXTREME,
    ),
    "200gbe": TierProfile(
        key="200gbe",
        name="200 Gigabit Ethernet",
        rmem_default=8 * MIB,
        rmem_max=512 * MIB,
        wmem_default=8 * MIB,
        wmem_max=512 * MIB,
        tcp_rmem=_triple(4096, 4 * MIB, 256 * MIB),
        tcp_wmem=_triple(4096, 2 * MIB, 256 * MIB),
        netdev_max_backlog=500000,
        somaxconn=65535,
        tcp_max_syn_backlog=65535,
        congestion_control="bbr",
        ring_rx=8192,
        ring_tx=8192,
        recommendations=_EXTREME,
    ),
}

ALIASES = {key[:-2]: key for key in TIERS}

# Lower bounds in Mb/s, checked from fastest to slowest.
SPEED_THRESHOLDS: List[Tuple[int, str]] = [
    (180000, "200gbe"),
    (90000, "100gbe"),
    (30000, "40gbe"),
    (20000, "25gbe"),
    (9000, "10gbe"),
]

DEFAULT_TIER = "1gbe"


def tier_for_speed(speed_mbps: int) -> str:
    """Map a link speed in Mb/s to exactly one tier key."""
    for threshold, key in SPEED_THRESHOLDS:
        if speed_mbps >= threshold:
            return key
    return DEFAULT_TIER


def canonical_name(name: str) -> str:
    key = name.strip().lower()
    key = ALIASES.get(key, key)
    if key not in TIERS:
        raise TierError(f"Invalid tier: {name}")
    return key


def get_tier(name: str) -> TierProfile:
    return TIERS[canonical_name(name)]
