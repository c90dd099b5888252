"""Render sysctl drop-ins and converge live kernel parameters."""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .apply import Outcome, Report, ensure, normalize
from .errors import CommandError
from .host import Host

SYSCTL_DIR = "/etc/sysctl.d"

Section = Tuple[str, Mapping[str, object]]


def format_value(value: object) -> str:
    if isinstance(value, (tuple, list)):
        return " ".join(str(v) for v in value)
    return str(value)


def render_conf(title_lines: Sequence[str], sections: Sequence[Section]) -> str:
    lines: List[str] = [f"# {line}" for line in title_lines]
    for heading, settings in sections:
        lines.append("")
        lines.append(f"# {heading}")
        lines.extend(f"{key} = {format_value(value)}" for key, value in settings.items())
    return "\n".join(lines) + "\n"


def flatten(sections: Sequence[Section]) -> Dict[str, str]:
    merged: Dict[str, str] = {}
    for _, settings in sections:
        for key, value in settings.items():
            merged[key] = format_value(value)
    return merged


def read_value(host: Host, key: str) -> Optional[str]:
    try:
        return normalize(host.query(["sysctl", "-n", key]))
    except CommandError:
        return None


def write_value(host: Host, key: str, value: str) -> None:
    host.run(["sysctl", "-w", f"{key}={value}"])


def ensure_values(host: Host, report: Report, section: str, settings: Mapping[str, object]) -> None:
    """Check each key live and write only the ones that differ."""
    for key, value in settings.items():
        desired = format_value(value)
        current = read_value(host, key)
        if current is None:
            report.record(section, key, Outcome.SKIPPED, "not available (may need module or reboot)")
            continue
        ensure(report, section, key, current, desired, lambda k=key, v=desired: write_value(host, k, v))
