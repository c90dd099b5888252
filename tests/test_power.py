import pytest

from pve_tune import power
from pve_tune.apply import Outcome, Report
from pve_tune.errors import ProfileError
from pve_tune.grub import GRUB_DEFAULT, read_cmdline
from pve_tune.host import LinkStats
from pve_tune.power import (
    ASPM_POLICY,
    CPU_ROOT,
    CPUFREQUTILS,
    apply_profile,
    choose_governor,
    configure_nic_power,
    get_profile,
    kernel_params,
    parse_aspm,
    run_power,
)

AMD_CPUINFO = "vendor_id\t: AuthenticAMD\nmodel name\t: AMD EPYC 7313P 16-Core Processor\n"


def prepare(host, governors="performance powersave schedutil"):
    host.tools.discard("ethtool")
    host.put("/proc/cpuinfo", AMD_CPUINFO)
    host.put(GRUB_DEFAULT, 'GRUB_CMDLINE_LINUX_DEFAULT="quiet intel_iommu=on iommu=pt"\n')
    host.responses["pveversion"] = "pve-manager/9.0.6/49c767b70aeb6648\n"
    for cpu in ("cpu0", "cpu1"):
        host.put(f"{CPU_ROOT}/{cpu}/cpufreq/scaling_available_governors", governors)
        host.put(f"{CPU_ROOT}/{cpu}/cpufreq/scaling_governor", "performance")
    host.put(f"{CPU_ROOT}/cpufreq/policy0/schedutil/rate_limit_us", "500")
    host.put(f"{CPU_ROOT}/amd_pstate/status", "active")
    host.put(f"{CPU_ROOT}/cpufreq/boost", "0")
    host.put(ASPM_POLICY, "[default] performance powersave powersupersave")
    host.put("/sys/class/scsi_host/host0/link_power_management_policy", "max_performance")
    # USB interfaces: a keyboard (HID) and a mass-storage stick.
    host.put("/sys/bus/usb/devices/1-1:1.0/bInterfaceClass", "03")
    host.put("/sys/bus/usb/devices/1-1:1.0/power/control", "auto")
    host.put("/sys/bus/usb/devices/2-1:1.0/bInterfaceClass", "08")
    host.put("/sys/bus/usb/devices/2-1:1.0/power/control", "on")
    # PCI: a VGA controller and an audio device.
    host.put("/sys/bus/pci/devices/0000:00:02.0/class", "0x030000")
    host.put("/sys/bus/pci/devices/0000:00:02.0/power/control", "auto")
    host.put("/sys/bus/pci/devices/0000:00:1f.3/class", "0x040300")
    host.put("/sys/bus/pci/devices/0000:00:1f.3/power/control", "on")


def test_choose_governor_preference():
    assert choose_governor(["performance", "powersave", "schedutil", "ondemand"]) == "schedutil"
    assert choose_governor(["performance", "conservative", "ondemand"]) == "ondemand"
    assert choose_governor(["performance", "conservative"]) == "conservative"
    assert choose_governor([]) == "performance"


def test_parse_aspm():
    assert parse_aspm("[default] performance powersave powersupersave") == "default"
    assert parse_aspm("default performance [powersave] powersupersave") == "powersave"
    assert parse_aspm("powersave") == "powersave"
    assert parse_aspm("default performance") is None


def test_kernel_params_per_vendor():
    assert kernel_params("GenuineIntel") == ["quiet", "intel_idle.max_cstate=6", "intel_pstate=passive", "pcie_aspm=powersave"]
    assert "amd_pstate=passive" in kernel_params("AuthenticAMD")
    assert kernel_params("unknown") == ["quiet", "processor.max_cstate=6", "pcie_aspm=powersave"]


def test_unknown_profile():
    assert get_profile(" Performance ").governor == "performance"
    with pytest.raises(ProfileError):
        get_profile("turbo")


def test_run_power_balanced_setup(host):
    prepare(host)
    report = run_power(host)

    assert host.read(f"{CPU_ROOT}/cpu0/cpufreq/scaling_governor") == "schedutil"
    assert host.read(f"{CPU_ROOT}/cpu1/cpufreq/scaling_governor") == "schedutil"
    assert host.read_raw(CPUFREQUTILS) == 'GOVERNOR="schedutil"\n'
    assert host.read(f"{CPU_ROOT}/cpufreq/policy0/schedutil/rate_limit_us") == "1000"
    assert host.read(f"{CPU_ROOT}/amd_pstate/status") == "passive"
    assert host.read(f"{CPU_ROOT}/cpufreq/boost") == "1"
    assert host.read(ASPM_POLICY) == "powersave"
    assert host.read("/sys/class/scsi_host/host0/link_power_management_policy") == "med_power_with_dipm"
    assert host.read("/sys/bus/usb/devices/1-1:1.0/power/control") == "on"
    assert host.read("/sys/bus/usb/devices/2-1:1.0/power/control") == "auto"
    assert host.read("/sys/bus/pci/devices/0000:00:02.0/power/control") == "on"
    assert host.read("/sys/bus/pci/devices/0000:00:1f.3/power/control") == "auto"
    # Parameters set by the optimize command survive.
    assert read_cmdline(host.read_raw(GRUB_DEFAULT)) == (
        "quiet intel_iommu=on iommu=pt processor.max_cstate=6 amd_pstate=passive pcie_aspm=powersave"
    )
    usb = next(r for r in report.results if r.name == "USB")
    assert usb.detail == "2 newly configured, 0 already configured"
    assert report.failed == []


def test_run_power_is_idempotent(host):
    prepare(host)
    run_power(host)
    report = run_power(host)
    assert report.changed == []
    assert report.failed == []


def test_governor_fallback_is_persisted(host):
    prepare(host, governors="performance")
    report = run_power(host)
    assert host.read_raw(CPUFREQUTILS) == 'GOVERNOR="performance"\n'
    assert "No power-saving governor available, using performance" in report.notes


def test_missing_cpufreq_is_skipped(host, monkeypatch):
    monkeypatch.setattr(power, "DRIVER_SETTLE_SECONDS", 0)
    host.tools.discard("ethtool")
    host.put("/proc/cpuinfo", AMD_CPUINFO)
    host.put("/proc/modules", "amd_pstate 16384 0 - Live 0x0\n")
    report = run_power(host)
    assert not host.exists(CPUFREQUTILS)
    assert host.ran("modprobe", "amd-pstate-epp")
    assert any(r.name == "driver amd-pstate" and r.outcome is Outcome.ALREADY for r in report.results)
    assert any(r.name == "governor" and r.outcome is Outcome.SKIPPED for r in report.results)


def test_older_proxmox_is_a_note(host):
    prepare(host)
    host.responses["pveversion"] = "pve-manager/8.2.4/faa83925c9641325\n"
    report = run_power(host)
    assert "Optimized for Proxmox 9, running Proxmox 8" in report.notes


def test_performance_profile_is_runtime_only(host):
    prepare(host)
    grub = host.read_raw(GRUB_DEFAULT)
    report = apply_profile(host, "performance")

    assert report.title == "Power profile: performance"
    assert host.read(f"{CPU_ROOT}/cpu0/cpufreq/scaling_governor") == "performance"
    assert parse_aspm(host.read(ASPM_POLICY)) == "default"
    assert host.read("/sys/bus/usb/devices/2-1:1.0/power/control") == "on"
    assert host.read("/sys/bus/pci/devices/0000:00:1f.3/power/control") == "on"
    assert host.read_raw(GRUB_DEFAULT) == grub
    assert not host.exists(CPUFREQUTILS)


def test_profile_with_unavailable_governor(host):
    prepare(host, governors="performance schedutil")
    report = apply_profile(host, "powersave")
    governor = next(r for r in report.results if r.name == "governor")
    assert governor.outcome is Outcome.SKIPPED


def test_nic_power(host):
    host.links = {"enp1s0": LinkStats(speed_mbps=1000, mtu=1500, is_up=True)}
    host.responses["ethtool enp1s0"] = "Settings for enp1s0:\n\tSupports Wake-on: pumbg\n\tWake-on: d\n"
    host.responses["ethtool --show-eee enp1s0"] = "EEE settings for enp1s0:\n\tEEE status: disabled\n"
    report = Report(title="t")
    configure_nic_power(host, report)
    assert host.ran("ethtool", "-s", "enp1s0", "wol", "g")
    assert host.ran("ethtool", "--set-eee", "enp1s0", "eee", "on")
    assert [r.outcome for r in report.results] == [Outcome.CHANGED, Outcome.CHANGED]


def test_nic_without_wake_on_lan(host):
    host.links = {"eno1": LinkStats(speed_mbps=1000, mtu=1500, is_up=True)}
    host.responses["ethtool eno1"] = "Settings for eno1:\n\tSupports Wake-on: d\n\tWake-on: d\n"
    host.responses["ethtool --show-eee eno1"] = "EEE settings for eno1:\n\tEEE status: enabled - active\n"
    report = Report(title="t")
    configure_nic_power(host, report)
    assert [r.outcome for r in report.results] == [Outcome.SKIPPED, Outcome.ALREADY]
    assert not host.ran("ethtool", "-s")
