from pve_tune.apply import Outcome
from pve_tune.errors import CommandError
from pve_tune.grub import GRUB_DEFAULT, read_cmdline
from pve_tune.kmod import boot_modules
from pve_tune.optimize import (
    CHRONY_DROPIN,
    NESTED_DROPIN,
    OPTIMIZE_DROPIN,
    SYSTEM_SECTIONS,
    VFIO_MODULES,
    run_optimize,
)
from pve_tune.sysctl import flatten

INTEL_CPUINFO = "processor\t: 0\nvendor_id\t: GenuineIntel\nmodel name\t: Intel(R) Xeon(R) E-2388G\n"


def prepare(host, vendor_cpuinfo=INTEL_CPUINFO, nested="N"):
    host.put("/proc/cpuinfo", vendor_cpuinfo)
    host.put("/sys/module/kvm_intel/parameters/nested", nested)
    host.put(GRUB_DEFAULT, 'GRUB_DEFAULT=0\nGRUB_CMDLINE_LINUX_DEFAULT="quiet"\n')
    host.sysctl = {key: "0" for key in flatten(SYSTEM_SECTIONS)}
    host.responses["pveversion"] = "pve-manager/9.0.6/49c767b70aeb6648 (running kernel: 6.14.8-2-pve)\n"
    host.responses["systemctl is-enabled fstrim.timer"] = CommandError(
        ["systemctl", "is-enabled", "fstrim.timer"], 1, "disabled"
    )


def test_optimize_applies_everything(host):
    prepare(host)
    report = run_optimize(host)

    content = host.read_raw(OPTIMIZE_DROPIN)
    assert content.startswith("# Proxmox VM/Container Configuration\n")
    assert "vm.swappiness = 10" in content
    assert "net.bridge.bridge-nf-call-iptables = 1" in content
    assert host.sysctl["vm.swappiness"] == "10"
    assert host.sysctl["fs.file-max"] == "2097152"
    assert host.read_raw(NESTED_DROPIN) == "options kvm_intel nested=1\n"
    assert read_cmdline(host.read_raw(GRUB_DEFAULT)) == "quiet intel_iommu=on iommu=pt"
    assert boot_modules(host) == VFIO_MODULES
    assert host.ran("systemctl", "enable", "fstrim.timer")
    assert report.reboot_required
    assert any(r.name == "proxmox" and r.detail == "Proxmox 9" for r in report.results)


def test_optimize_is_idempotent(host):
    prepare(host)
    run_optimize(host)
    host.responses["systemctl is-enabled fstrim.timer"] = "enabled\n"

    report = run_optimize(host)
    assert report.changed == []
    assert report.failed == []


def test_reboot_stays_pending_until_rebooted(host):
    prepare(host)
    run_optimize(host)
    host.responses["systemctl is-enabled fstrim.timer"] = "enabled\n"

    # Nested is still "N" and dmesg shows no IOMMU: the new settings are not active yet.
    report = run_optimize(host)
    assert report.reboot_required
    assert "No reboot required" not in report.notes
    assert "Nested virtualization for kvm_intel is enabled after reboot" in report.notes
    assert "IOMMU is enabled after reboot" in report.notes


def test_enabled_iommu_leaves_grub_alone(host):
    prepare(host)
    host.responses["dmesg"] = "[    0.1] DMAR: IOMMU enabled\n"
    report = run_optimize(host)
    assert read_cmdline(host.read_raw(GRUB_DEFAULT)) == "quiet"
    assert any(r.section == "iommu" and r.outcome is Outcome.ALREADY for r in report.results)


def test_nested_virtualization_already_on(host):
    prepare(host, nested="Y")
    report = run_optimize(host)
    assert not host.exists(NESTED_DROPIN)
    assert any(r.name == "kvm_intel" and r.outcome is Outcome.ALREADY for r in report.results)


def test_unknown_vendor_skips_cpu_specific_steps(host):
    prepare(host, vendor_cpuinfo="vendor_id\t: HygonGenuine\n")
    report = run_optimize(host)
    skipped = {r.section for r in report.results if r.outcome is Outcome.SKIPPED}
    assert {"nested virtualization", "iommu"} <= skipped
    assert read_cmdline(host.read_raw(GRUB_DEFAULT)) == "quiet"


def test_no_reboot_note_when_nothing_needs_it(host):
    prepare(host, nested="Y")
    host.responses["dmesg"] = "AMD-Vi: IOMMU enabled\n"
    report = run_optimize(host)
    assert "No reboot required" in report.notes


def test_chrony_dropin_is_installed_once(host, tmp_path):
    prepare(host)
    host.tools.add("chronyc")
    source = tmp_path / "source" / "cluster.conf"
    source.parent.mkdir()
    source.write_text("server 10.0.0.1 iburst\n", encoding="utf-8")

    run_optimize(host, str(source))
    assert host.read_raw(CHRONY_DROPIN) == "server 10.0.0.1 iburst\n"
    assert host.ran("systemctl", "restart", "chrony")

    host.commands.clear()
    source.write_text("server 10.0.0.2 iburst\n", encoding="utf-8")
    report = run_optimize(host, str(source))
    assert host.read_raw(CHRONY_DROPIN) == "server 10.0.0.1 iburst\n"
    assert not host.ran("systemctl", "restart", "chrony")
    assert any(r.section == "time sync" and r.outcome is Outcome.ALREADY for r in report.results)


def test_chrony_without_source_is_skipped(host, tmp_path):
    prepare(host)
    host.tools.add("chronyc")
    report = run_optimize(host, str(tmp_path / "missing.conf"))
    assert not host.exists(CHRONY_DROPIN)
    chrony = next(r for r in report.results if r.section == "time sync")
    assert chrony.outcome is Outcome.SKIPPED
    assert report.failed == []
