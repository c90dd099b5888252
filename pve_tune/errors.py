"""Exceptions raised while tuning a Proxmox VE host."""

from __future__ import annotations

from typing import Sequence


class PveTuneError(Exception):
    """Base exception for all pve-tune errors"""


class PreconditionError(PveTuneError):
    """Raised when a run cannot start at all (not root, required tool missing)."""


class CommandError(PveTuneError):
    """Raised when an external command exits non-zero or cannot be started."""

    def __init__(self, args: Sequence[str], returncode: int, output: str = "") -> None:
        self.args_list = list(args)
        self.returncode = returncode
        self.output = output.strip()
        message = f"`{' '.join(self.args_list)}` exited with {returncode}"
        if self.output:
            message = f"{message}: {self.output.splitlines()[-1]}"
        super().__init__(message)


class TierError(PveTuneError, ValueError):
    """Raised when a network tier name is unknown."""


class ProfileError(PveTuneError, ValueError):
    """Raised when a power profile name is unknown."""
