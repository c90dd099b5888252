"""Kernel module state: loaded modules and /etc/modules boot entries."""

from __future__ import annotations

from typing import List

from .apply import Outcome, Report, StepResult
from .host import Host

ETC_MODULES = "/etc/modules"
PROC_MODULES = "/proc/modules"


def loaded_modules(host: Host) -> List[str]:
    text = host.read(PROC_MODULES) or ""
    return [line.split()[0] for line in text.splitlines() if line.strip()]


def is_loaded(host: Host, name: str) -> bool:
    # /proc/modules always uses underscores, modprobe accepts either form.
    return name.replace("-", "_") in loaded_modules(host)


def boot_modules(host: Host) -> List[str]:
    text = host.read(ETC_MODULES) or ""
    entries = []
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            entries.append(line.split()[0])
    return entries


def ensure_boot_module(host: Host, report: Report, section: str, name: str) -> StepResult:
    if name in boot_modules(host):
        return report.record(section, f"{ETC_MODULES}: {name}", Outcome.ALREADY, "listed")
    try:
        host.append_line(ETC_MODULES, name)
    except OSError as exc:
        return report.record(section, f"{ETC_MODULES}: {name}", Outcome.FAILED, str(exc))
    return report.record(section, f"{ETC_MODULES}: {name}", Outcome.CHANGED, "added")
