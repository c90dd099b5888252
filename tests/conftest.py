from pathlib import Path
from typing import Callable, Dict, List, Tuple, Union

import pytest

from pve_tune.errors import CommandError
from pve_tune.host import Host, LinkStats, MemoryInfo

GIB = 1024**3

Response = Union[str, Exception, Callable[[List[str]], str]]


class FakeHost(Host):
    """A Host rooted in a temporary directory with canned commands and psutil facts."""

    def __init__(self, root: Path, dry_run: bool = False) -> None:
        super().__init__(root=str(root), dry_run=dry_run)
        self.responses: Dict[str, Response] = {}
        self.sysctl: Dict[str, str] = {}
        self.commands: List[List[str]] = []
        self.tools = {"ethtool", "zfs", "systemctl"}
        self.links: Dict[str, LinkStats] = {}
        self.memory_info = MemoryInfo(total=64 * GIB, used=16 * GIB, available=48 * GIB)
        self.sensor_readings: List[Tuple[str, float]] = []
        self.frequencies: List[float] = []
        self.connections = 12
        self.root_user = True

    def put(self, path: str, text: str) -> None:
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")

    def ran(self, *prefix: str) -> bool:
        return any(command[: len(prefix)] == list(prefix) for command in self.commands)

    def which(self, tool: str) -> bool:
        return tool in self.tools

    def is_root(self) -> bool:
        return self.root_user

    def _execute(self, args):
        args = list(args)
        self.commands.append(args)
        if args[:2] == ["sysctl", "-n"]:
            if args[2] not in self.sysctl:
                raise CommandError(args, 255, f"sysctl: cannot stat /proc/sys/{args[2]}")
            return self.sysctl[args[2]] + "\n"
        if args[:2] == ["sysctl", "-w"]:
            key, value = args[2].split("=", 1)
            self.sysctl[key] = value
            return f"{key} = {value}\n"
        response = self.responses.get(" ".join(args), "")
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(args)
        return response

    def interface_stats(self):
        return dict(self.links)

    def memory(self):
        return self.memory_info

    def temperatures(self):
        return list(self.sensor_readings)

    def cpu_frequencies(self):
        return list(self.frequencies)

    def tcp_connection_count(self):
        return self.connections


@pytest.fixture
def host(tmp_path):
    return FakeHost(tmp_path)


@pytest.fixture
def dry_host(tmp_path):
    return FakeHost(tmp_path, dry_run=True)
