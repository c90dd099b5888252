"""Edit the default kernel command line in /etc/default/grub."""

from __future__ import annotations

import re
from typing import List, Optional, Sequence

from .apply import Outcome, Report
from .host import Host

GRUB_DEFAULT = "/etc/default/grub"

_CMDLINE = re.compile(r'^GRUB_CMDLINE_LINUX_DEFAULT=(["\']?)(.*?)\1\s*$', re.MULTILINE)


def read_cmdline(text: str) -> Optional[str]:
    match = _CMDLINE.search(text)
    return match.group(2) if match else None


def replace_cmdline(text: str, cmdline: str) -> str:
    line = f'GRUB_CMDLINE_LINUX_DEFAULT="{cmdline}"'
    if _CMDLINE.search(text):
        return _CMDLINE.sub(lambda _: line, text, count=1)
    suffix = "" if not text or text.endswith("\n") else "\n"
    return f"{text}{suffix}{line}\n"


def _param_key(token: str) -> str:
    return token.split("=", 1)[0]


def merge_params(cmdline: str, params: Sequence[str]) -> str:
    """Set each ``key[=value]`` token, replacing tokens with the same key."""
    tokens: List[str] = cmdline.split()
    for param in params:
        key = _param_key(param)
        positions = [i for i, token in enumerate(tokens) if _param_key(token) == key]
        if positions:
            tokens[positions[0]] = param
            for index in reversed(positions[1:]):
                del tokens[index]
        else:
            tokens.append(param)
    return " ".join(tokens)


def ensure_kernel_params(host: Host, report: Report, section: str, params: Sequence[str]) -> bool:
    """Merge ``params`` into the default command line; return True when grub changed."""
    text = host.read_raw(GRUB_DEFAULT)
    if text is None:
        report.record(section, "kernel parameters", Outcome.SKIPPED, f"{GRUB_DEFAULT} not found")
        return False
    current = read_cmdline(text) or ""
    merged = merge_params(current, params)
    if merged == current:
        report.record(section, "kernel parameters", Outcome.ALREADY, " ".join(params))
        return False
    try:
        host.write(GRUB_DEFAULT, replace_cmdline(text, merged))
    except OSError as exc:
        report.record(section, "kernel parameters", Outcome.FAILED, str(exc))
        return False
    report.record(section, "kernel parameters", Outcome.CHANGED, f"{current!r} -> {merged!r}")
    report.reboot_required = True
    note = "Run update-grub and reboot to activate kernel parameters"
    if note not in report.notes:
        report.notes.append(note)
    return True
