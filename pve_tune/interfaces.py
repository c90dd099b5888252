"""Find the NICs behind Proxmox bridges and pick a tier from their link speed."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .host import Host
from .tiers import DEFAULT_TIER, tier_for_speed

logger = logging.getLogger(__name__)

NETWORK_INTERFACES = "/etc/network/interfaces"

PHYSICAL_PATTERN = re.compile(r"^(eth|eno|enp|ens)")
VIRTUAL_PATTERN = re.compile(r"^(veth|tap|vmbr|lo|bond)")
_BRIDGE_PORTS = re.compile(r"^\s*bridge[-_]ports\s+(.*)$")


@dataclass
class Detection:
    tier: str
    interface: Optional[str]
    speed_mbps: int
    speeds: Dict[str, int] = field(default_factory=dict)


def bridge_ports(text: str) -> List[str]:
    """Return the physical ports declared on bridges in an interfaces file."""
    ports = set()
    for line in text.splitlines():
        match = _BRIDGE_PORTS.match(line)
        if not match:
            continue
        for port in match.group(1).split("#", 1)[0].split():
            if port == "none" or VIRTUAL_PATTERN.match(port):
                continue
            ports.add(port)
    return sorted(ports)


def physical_interfaces(names: Iterable[str]) -> List[str]:
    return sorted(name for name in names if PHYSICAL_PATTERN.match(name))


def candidate_interfaces(host: Host) -> List[str]:
    config = host.read(NETWORK_INTERFACES)
    candidates = bridge_ports(config) if config else []
    if not candidates:
        logger.info("No bridge ports found, checking all physical interfaces")
        candidates = physical_interfaces(host.interface_stats())
    return candidates


def detect_tier(host: Host) -> Detection:
    """Select the tier of the fastest linked candidate interface."""
    stats = host.interface_stats()
    speeds: Dict[str, int] = {}
    best_iface: Optional[str] = None
    best_speed = 0
    for iface in candidate_interfaces(host):
        link = stats.get(iface)
        if link is None or link.speed_mbps <= 0:
            continue
        speeds[iface] = link.speed_mbps
        logger.info("Found: %s - %sMb/s", iface, link.speed_mbps)
        if link.speed_mbps > best_speed:
            best_speed = link.speed_mbps
            best_iface = iface

    if best_iface is None:
        logger.warning("Could not detect network speed, defaulting to %s", DEFAULT_TIER)
        return Detection(tier=DEFAULT_TIER, interface=None, speed_mbps=0, speeds=speeds)
    return Detection(
        tier=tier_for_speed(best_speed),
        interface=best_iface,
        speed_mbps=best_speed,
        speeds=speeds,
    )
