#!/usr/bin/env python3
"""Completion ledger for the provisioning stages.

A stage that finished once is never re-run automatically. Markers are only
removed by hand (``rm ~/.ae_install_done``) to force re-provisioning.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Set


@dataclass(frozen=True)
class Stage:
    name: str
    position: int
    marker: str


MOUNT = Stage(name="mount", position=0, marker="mount")
INSTALL = Stage(name="install", position=1, marker="install")
CONFIGURE = Stage(name="configure", position=2, marker="config")

STAGES = (MOUNT, INSTALL, CONFIGURE)


class LedgerWriteError(RuntimeError):
    pass


class StageTracker:
    def is_complete(self, stage: Stage) -> bool:
        raise NotImplementedError

    def mark_complete(self, stage: Stage) -> None:
        raise NotImplementedError


class FileStageTracker(StageTracker):
    """Sentinel files in $HOME, which survive reboots and tmpfs wipes."""

    def __init__(self, home: Path, template: str = ".ae_{marker}_done"):
        self.home = Path(home)
        self.template = template

    def marker_path(self, stage: Stage) -> Path:
        return self.home / self.template.format(marker=stage.marker)

    def is_complete(self, stage: Stage) -> bool:
        return self.marker_path(stage).exists()

    def mark_complete(self, stage: Stage) -> None:
        path = self.marker_path(stage)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
        except OSError as exc:
            raise LedgerWriteError(f"could not record completion of {stage.name} at {path}: {exc}") from exc


class MemoryStageTracker(StageTracker):
    def __init__(self, done: Iterable[str] = ()):
        self.done: Set[str] = set(done)

    def is_complete(self, stage: Stage) -> bool:
        return stage.name in self.done

    def mark_complete(self, stage: Stage) -> None:
        self.done.add(stage.name)
