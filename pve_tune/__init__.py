"""
Idempotent tuning of Proxmox VE hosts: network tiers, kernel settings, ZFS ARC and power management.
"""

__all__ = ["apply", "cli", "host", "network", "optimize", "power", "status", "tiers", "zfs"]
__version__ = "0.1.0"
