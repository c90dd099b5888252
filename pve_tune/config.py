"""Runtime configuration from the environment and command line flags."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass

ROOT = os.getenv("PVE_TUNE_ROOT", "/")
LOG_LEVEL = os.getenv("PVE_TUNE_LOG_LEVEL", "INFO").upper()
DRY_RUN = os.getenv("PVE_TUNE_DRY_RUN", "false").lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    root: str = ROOT
    dry_run: bool = DRY_RUN
    log_level: str = LOG_LEVEL

    @property
    def is_live_root(self) -> bool:
        return os.path.abspath(self.root) == "/"

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Settings":
        """Overlay parsed CLI flags on top of the environment defaults."""
        return cls(
            root=getattr(args, "root", None) or ROOT,
            dry_run=bool(getattr(args, "dry_run", False)) or DRY_RUN,
            log_level=(getattr(args, "log_level", None) or LOG_LEVEL).upper(),
        )
