"""Entry point for the pve-tune command line tool."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .apply import Outcome, Report
from .config import Settings
from .errors import PreconditionError, ProfileError, TierError
from .formatting import (
    format_network_status,
    format_power_status,
    format_report,
    format_system_status,
    format_thermal,
    format_tiers,
    format_zfs_status,
)
from .host import Host
from .network import run_network
from .optimize import run_optimize
from .power import PROFILES, apply_profile, run_power
from .status import max_cpu_temperature, network_status, power_status, system_status, thermal_level, zfs_status
from .tiers import TIERS
from .zfs import run_zfs

logger = logging.getLogger("pve_tune")

TUNING_COMMANDS = {"network", "optimize", "zfs", "power"}
STATUS_TOPICS = ["network", "zfs", "power", "thermal", "system"]

_OUTCOME_STYLES = {
    Outcome.ALREADY: "dim",
    Outcome.CHANGED: "bold green",
    Outcome.FAILED: "bold red",
    Outcome.SKIPPED: "yellow",
    Outcome.INFO: "cyan",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pve-tune",
        description="Idempotent tuning of a Proxmox VE host: network, kernel, ZFS and power.",
    )
    parser.add_argument("--root", help="filesystem root to operate on (default: / or $PVE_TUNE_ROOT)")
    parser.add_argument("--dry-run", action="store_true", help="show what would change without changing it")
    parser.add_argument("--json", action="store_true", help="print results as JSON")
    parser.add_argument("--ui", action="store_true", help="render results as Rich tables")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="logging verbosity (default: INFO or $PVE_TUNE_LOG_LEVEL)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    network = commands.add_parser("network", help="tune kernel networking and NICs for a speed tier")
    network.add_argument("tier", nargs="?", default="auto", help="tier name, alias (10g) or auto")
    network.add_argument("--jumbo", action="store_true", help="set MTU 9000 on physical interfaces")

    optimize = commands.add_parser("optimize", help="apply general hypervisor tuning")
    optimize.add_argument("--chrony-conf", metavar="PATH", help="chrony drop-in to install when none is present")
    commands.add_parser("zfs", help="size the ZFS ARC and apply safe pool settings")

    power = commands.add_parser("power", help="configure CPU and device power management")
    power.add_argument("--profile", choices=sorted(PROFILES), help="switch runtime settings to a profile")

    status = commands.add_parser("status", help="show the current state of a tuned area")
    status.add_argument("topic", choices=STATUS_TOPICS)

    commands.add_parser("tiers", help="list the network tiers")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def make_host(settings: Settings) -> Host:
    return Host(root=settings.root, dry_run=settings.dry_run)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = Settings.from_args(args)
    configure_logging(settings.log_level)

    if args.command == "tiers":
        return _emit(args, list(TIERS.values()), lambda tiers: format_tiers(tiers), _render_rich_tiers)

    host = make_host(settings)
    if args.command in TUNING_COMMANDS and settings.is_live_root and not settings.dry_run and not host.is_root():
        logger.error("This command must be run as root (or use --dry-run)")
        return 1

    try:
        if args.command == "status":
            return _status(args, host)
        report = _tune(args, host)
    except TierError as exc:
        logger.error("%s", exc)
        print(f"Valid tiers: auto, {', '.join(TIERS)}", file=sys.stderr)
        print(format_tiers(TIERS.values()), file=sys.stderr)
        return 1
    except (PreconditionError, ProfileError) as exc:
        logger.error("%s", exc)
        return 1
    return _emit(args, report, format_report, _render_rich_report)


def _tune(args: argparse.Namespace, host: Host) -> Report:
    if args.command == "network":
        return run_network(host, tier=args.tier, jumbo=args.jumbo)
    if args.command == "optimize":
        return run_optimize(host, args.chrony_conf)
    if args.command == "zfs":
        return run_zfs(host)
    if args.profile:
        return apply_profile(host, args.profile)
    return run_power(host)


def _status(args: argparse.Namespace, host: Host) -> int:
    topic = args.topic
    if topic == "network":
        return _emit(args, network_status(host), format_network_status, _render_rich_status)
    if topic == "zfs":
        return _emit(args, zfs_status(host), format_zfs_status, _render_rich_status)
    if topic == "power":
        return _emit(args, power_status(host), format_power_status, _render_rich_status)
    if topic == "thermal":
        thermal = thermal_level(max_cpu_temperature(host))
        return _emit(args, thermal, format_thermal, _render_rich_status)
    return _emit(args, system_status(host), format_system_status, _render_rich_status)


def _emit(args: argparse.Namespace, payload: Any, plain: Callable[[Any], str], rich: Callable[[Any], None]) -> int:
    if args.json:
        print(_to_json(payload))
    elif args.ui:
        rich(payload)
    else:
        print(plain(payload))
    return 0


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _to_json(payload: Any) -> str:
    data: Any
    if isinstance(payload, list):
        data = [asdict(item) for item in payload]
    elif isinstance(payload, Report):
        data = asdict(payload)
        data["counts"] = payload.counts()
    else:
        data = asdict(payload)
    return json.dumps(data, ensure_ascii=False, indent=2, default=_json_default)


def _render_rich_report(report: Report) -> None:
    console = Console()
    console.print(Panel(report.title, style="bold cyan"))

    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("Section", style="bold")
    table.add_column("Step")
    table.add_column("Result")
    table.add_column("Detail")
    for result in report.results:
        style = _OUTCOME_STYLES[result.outcome]
        table.add_row(result.section, result.name, f"[{style}]{result.outcome.value}[/]", result.detail)
    console.print(table)

    counts = report.counts()
    summary = Table(show_header=False, box=box.ROUNDED)
    for outcome in (Outcome.CHANGED, Outcome.ALREADY, Outcome.SKIPPED, Outcome.FAILED):
        summary.add_row(outcome.value, str(counts[outcome.value]), style=_OUTCOME_STYLES[outcome])
    console.print(summary)

    if report.notes:
        console.print(Panel("\n".join(report.notes), title="Notes", style="white"))
    if report.reboot_required:
        console.print(Panel("Reboot required to apply all changes", style="bold yellow"))


def _render_rich_tiers(tiers: List[Any]) -> None:
    table = Table(title="Network tiers", box=box.SIMPLE_HEAD)
    for column in ("Tier", "Name", "rmem_max", "Backlog", "Congestion", "Rings rx/tx"):
        table.add_column(column)
    for tier in tiers:
        table.add_row(
            tier.key,
            tier.name,
            str(tier.rmem_max),
            str(tier.netdev_max_backlog),
            tier.congestion_control,
            f"{tier.ring_rx}/{tier.ring_tx}",
        )
    Console().print(table)


def _render_rich_status(status: Any) -> None:
    console = Console()
    data: Dict[str, Any] = asdict(status) if is_dataclass(status) else {}
    timestamp = data.pop("timestamp", None)
    title = type(status).__name__.replace("Status", " status").strip()
    if isinstance(timestamp, datetime):
        title = f"{title} - {timestamp:%Y-%m-%d %H:%M:%S}"
    console.print(Panel(title, style="bold cyan"))

    summary = Table(show_header=False, box=box.ROUNDED)
    nested = []
    for key, value in data.items():
        if isinstance(value, list) and value and isinstance(value[0], dict):
            nested.append((key, value))
        elif isinstance(value, dict):
            summary.add_row(key, ", ".join(f"{k}: {v}" for k, v in value.items()))
        else:
            summary.add_row(key, "n/a" if value is None else str(value))
    console.print(summary)

    for key, rows in nested:
        table = Table(title=key, box=box.SIMPLE_HEAD)
        for column in rows[0]:
            table.add_column(column)
        for row in rows:
            table.add_row(*(str(cell) for cell in row.values()))
        console.print(table)


if __name__ == "__main__":
    raise SystemExit(main())
