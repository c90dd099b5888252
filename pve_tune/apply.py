"""Idempotent check-then-set steps and the report they produce."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from .errors import PveTuneError
from .host import Host

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    ALREADY = "already"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    INFO = "info"


_LOG_LEVELS = {
    Outcome.ALREADY: logging.DEBUG,
    Outcome.INFO: logging.DEBUG,
    Outcome.CHANGED: logging.INFO,
    Outcome.SKIPPED: logging.INFO,
    Outcome.FAILED: logging.WARNING,
}


@dataclass
class StepResult:
    section: str
    name: str
    outcome: Outcome
    detail: str = ""


@dataclass
class Report:
    title: str
    results: List[StepResult] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    reboot_required: bool = False

    def record(self, section: str, name: str, outcome: Outcome, detail: str = "") -> StepResult:
        result = StepResult(section=section, name=name, outcome=outcome, detail=detail)
        self.results.append(result)
        logger.log(_LOG_LEVELS[outcome], "[%s] %s: %s %s", section, name, outcome.value, detail)
        return result

    def info(self, section: str, name: str, detail: str) -> StepResult:
        return self.record(section, name, Outcome.INFO, detail)

    def counts(self) -> Dict[str, int]:
        totals = {outcome.value: 0 for outcome in Outcome}
        for result in self.results:
            totals[result.outcome.value] += 1
        return totals

    @property
    def changed(self) -> List[StepResult]:
        return [r for r in self.results if r.outcome is Outcome.CHANGED]

    @property
    def failed(self) -> List[StepResult]:
        return [r for r in self.results if r.outcome is Outcome.FAILED]


def normalize(value: object) -> str:
    return " ".join(str(value).split())


def ensure(
    report: Report,
    section: str,
    name: str,
    current: Optional[str],
    desired: object,
    setter: Callable[[], object],
) -> StepResult:
    """Apply ``setter`` only when ``current`` differs from ``desired``.

    A failing setter is recorded and swallowed so the remaining steps still run.
    """
    wanted = normalize(desired)
    if current is not None and normalize(current) == wanted:
        return report.record(section, name, Outcome.ALREADY, wanted)
    try:
        setter()
    except (PveTuneError, OSError) as exc:
        return report.record(section, name, Outcome.FAILED, str(exc))
    before = normalize(current) if current is not None else "unset"
    return report.record(section, name, Outcome.CHANGED, f"{before} -> {wanted}")


def ensure_file(host: Host, report: Report, section: str, path: str, content: str) -> bool:
    """Write ``content`` to ``path`` unless the file already holds exactly that text."""
    if host.read_raw(path) == content:
        report.record(section, path, Outcome.ALREADY, "up to date")
        return False
    try:
        host.write(path, content)
    except OSError as exc:
        report.record(section, path, Outcome.FAILED, str(exc))
        return False
    report.record(section, path, Outcome.CHANGED, "written")
    return True


@contextmanager
def step(report: Report, section: str, name: str) -> Iterator[None]:
    try:
        yield
    except (PveTuneError, OSError) as exc:
        report.record(section, name, Outcome.FAILED, str(exc))


@dataclass
class Tally:
    """Counts for loops that touch many devices but report a single row."""

    changed: int = 0
    already: int = 0
    failed: int = 0

    def add(self, result: StepResult) -> None:
        if result.outcome is Outcome.CHANGED:
            self.changed += 1
        elif result.outcome is Outcome.ALREADY:
            self.already += 1
        elif result.outcome is Outcome.FAILED:
            self.failed += 1

    def record(self, report: Report, section: str, name: str) -> StepResult:
        detail = f"{self.changed} newly configured, {self.already} already configured"
        if self.failed:
            detail = f"{detail}, {self.failed} failed"
            return report.record(section, name, Outcome.FAILED, detail)
        if self.changed:
            return report.record(section, name, Outcome.CHANGED, detail)
        if self.already:
            return report.record(section, name, Outcome.ALREADY, detail)
        return report.record(section, name, Outcome.SKIPPED, "no devices found")
