import pytest

from pve_tune.errors import CommandError
from pve_tune.host import LinkStats
from pve_tune.network import dropin_path
from pve_tune.power import ASPM_POLICY, CPU_ROOT, CPUFREQ0
from pve_tune.status import (
    ARCSTATS,
    hit_ratio,
    max_cpu_temperature,
    network_status,
    parse_arcstats,
    power_status,
    system_status,
    thermal_level,
    zfs_status,
)
from pve_tune.zfs import ARC_PARAMETERS, GIB

ARCSTATS_TEXT = """\
13 1 0x01 123 33488 5950421913 102716589612
name                            type data
hits                            4    900
misses                          4    100
size                            4    2147483648
c_max                           4    4294967296
"""


@pytest.mark.parametrize(
    "celsius, level",
    [(96.0, "EMERGENCY"), (95.0, "EMERGENCY"), (94.9, "WARNING"), (85.0, "WARNING"), (75.0, "NOTICE"), (74.9, "NORMAL")],
)
def test_thermal_levels(celsius, level):
    assert thermal_level(celsius).level == level


def test_thermal_level_without_sensors():
    assert thermal_level(None).level == "UNKNOWN"


def test_max_cpu_temperature_ignores_other_sensors(host):
    host.sensor_readings = [("Package id 0", 61.0), ("Core 0", 58.0), ("acpitz", 99.0), ("Tdie", 70.0)]
    assert max_cpu_temperature(host) == 70.0
    host.sensor_readings = [("acpitz", 40.0)]
    assert max_cpu_temperature(host) is None


def test_parse_arcstats_and_hit_ratio():
    stats = parse_arcstats(ARCSTATS_TEXT)
    assert stats["size"] == 2 * GIB
    assert hit_ratio(stats["hits"], stats["misses"]) == pytest.approx(90.0)
    assert hit_ratio(0, 0) is None


def test_network_status(host):
    host.put(dropin_path("25gbe"), "# Proxmox Network Configuration - 25 Gigabit Ethernet\n# Tier: 25gbe\n")
    host.sysctl = {"net.ipv4.tcp_congestion_control": "bbr", "net.core.rmem_max": "67108864"}
    host.links = {
        "enp1s0": LinkStats(speed_mbps=25000, mtu=9000, is_up=True),
        "vmbr0": LinkStats(speed_mbps=25000, mtu=9000, is_up=True),
    }
    status = network_status(host)
    assert status.tier == "25gbe"
    assert status.congestion_control == "bbr"
    assert status.rmem_max == 64 * 1024 * 1024
    assert status.netdev_max_backlog is None
    assert [iface.name for iface in status.interfaces] == ["enp1s0"]
    assert status.tcp_connections == 12


def test_network_status_without_dropin(host):
    assert network_status(host).tier is None


def test_zfs_status(host):
    host.put(ARCSTATS, ARCSTATS_TEXT)
    host.put(f"{ARC_PARAMETERS}/zfs_arc_min", str(2 * GIB))
    host.put(f"{ARC_PARAMETERS}/zfs_arc_max", str(4 * GIB))
    host.responses["zpool list -H -o name"] = "rpool\n"
    host.responses["zpool get -H -o value health rpool"] = "ONLINE\n"
    host.responses["zpool get -H -o value autotrim rpool"] = "on\n"
    host.responses["zpool get -H -o value fragmentation rpool"] = "12%\n"
    host.responses["zfs get -H -o name,value sync"] = "rpool\tstandard\nrpool/data\tdisabled\n"

    status = zfs_status(host)
    assert status.arc_size == 2 * GIB
    assert status.arc_max == 4 * GIB
    assert status.hit_ratio == pytest.approx(90.0)
    assert status.pools[0].health == "ONLINE"
    assert status.pools[0].fragmentation == "12%"
    assert status.sync_disabled == ["rpool/data"]


def test_zfs_status_without_zfs(host):
    host.responses["zpool list -H -o name"] = CommandError(["zpool"], 127, "command not found: zpool")
    host.responses["zfs get -H -o name,value sync"] = CommandError(["zfs"], 127, "command not found: zfs")
    status = zfs_status(host)
    assert status.pools == []
    assert status.arc_size is None
    assert status.hit_ratio is None


def test_power_status(host):
    host.put(f"{CPUFREQ0}/scaling_governor", "schedutil")
    host.put(f"{CPUFREQ0}/scaling_driver", "amd-pstate")
    host.put(ASPM_POLICY, "default performance [powersave] powersupersave")
    host.put(f"{CPU_ROOT}/cpufreq/boost", "1")
    host.frequencies = [3000.0, 1500.0]
    host.sensor_readings = [("Tctl", 50.0), ("Tdie", 86.0)]

    status = power_status(host)
    assert status.governor == "schedutil"
    assert status.aspm_policy == "powersave"
    assert (status.boost_label, status.boost_enabled) == ("AMD Boost", True)
    assert status.thermal.level == "WARNING"
    assert status.frequencies_mhz == [3000.0, 1500.0]


def test_power_status_intel_turbo(host):
    host.put(f"{CPU_ROOT}/intel_pstate/no_turbo", "1")
    status = power_status(host)
    assert (status.boost_label, status.boost_enabled) == ("Intel Turbo", False)
    assert status.governor is None


def test_system_status(host):
    host.put("/proc/cpuinfo", "vendor_id\t: AuthenticAMD\n")
    host.put("/sys/module/kvm_amd/parameters/nested", "1")
    host.responses["dmesg"] = "AMD-Vi: IOMMU enabled\n"
    host.responses["qm list"] = (
        "      VMID NAME       STATUS     MEM(MB)    BOOTDISK(GB) PID\n"
        "       100 web        running    4096       32.00        1234\n"
        "       101 db         stopped    8192       64.00        0\n"
    )
    host.responses["pct list"] = CommandError(["pct", "list"], 2, "no containers")

    status = system_status(host)
    assert status.nested_virtualization == "kvm_amd: 1"
    assert status.iommu_enabled
    assert status.vm_count == 2
    assert status.container_count is None
    assert status.memory_total == 64 * GIB
