#!/usr/bin/env python3
"""Compile, run and plot one benchmark through its delegate shell script."""

from __future__ import annotations

import glob
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from ufs_ae.automation.process_utils import FailurePolicy, StepFailed, StepRunner, sudo
from ufs_ae.automation.settings import AeConfig, ConfigError, UsageError, delegate_environ, load_yaml, render

MODES = ("cmpl", "run", "plot")

_MODE_HELP = {
    "cmpl": "Specify which benchmark to compile:",
    "run": "Specify which benchmark to run:",
    "plot": "Specify which benchmark to parse output and plot:",
}
_MODE_LABELS = {"cmpl": "Cmpl", "run": "Run", "plot": "Plot"}


@dataclass(frozen=True)
class BenchmarkCatalog:
    benchmarks: Dict[str, str]
    script_template: str = "{script_dir}/{mode}-{benchmark}.sh"
    kill_processes: List[str] = field(default_factory=list)
    stale_paths: List[str] = field(default_factory=list)
    release_ipc: bool = True

    @classmethod
    def load(cls, root: Optional[Path] = None) -> "BenchmarkCatalog":
        data = load_yaml("benchmarks", root)
        cleanup = data.get("cleanup") or {}
        return cls(
            benchmarks=dict(data.get("benchmarks") or {}),
            script_template=str(data.get("script_template", cls.script_template)),
            kill_processes=list(cleanup.get("processes") or []),
            stale_paths=list(cleanup.get("paths") or []),
            release_ipc=bool(cleanup.get("release_ipc", True)),
        )

    def usage(self, mode: str) -> str:
        width = max(len(name) for name in self.benchmarks) + 1
        lines = [
            f"Usage: ae {mode} [ {' | '.join(self.benchmarks)} ]",
            f"  {_MODE_HELP.get(mode, 'Specify which benchmark:')}",
        ]
        for name, description in self.benchmarks.items():
            lines.append(f"    {(name + ':').ljust(width)} {description}")
        return "\n".join(lines)


class BenchmarkDispatcher:
    def __init__(
        self,
        cfg: AeConfig,
        steps: StepRunner,
        catalog: Optional[BenchmarkCatalog] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.cfg = cfg
        self.steps = steps
        self.catalog = catalog or BenchmarkCatalog.load(cfg.config_root)
        self.environ = environ

    def dispatch(self, mode: str, args: Sequence[str]) -> int:
        if mode not in MODES:
            raise ValueError(f"unknown mode {mode}")
        benchmark = args[0] if args else ""
        if benchmark not in self.catalog.benchmarks:
            raise UsageError(self.catalog.usage(mode))
        rest = list(args[1:])
        if mode == "cmpl":
            return self.compile(benchmark, rest)
        if mode == "run":
            return self.run(benchmark, rest)
        return self.plot(benchmark, rest)

    def compile(self, benchmark: str, rest: Sequence[str]) -> int:
        print("Cmpl: Start...")
        return self._delegate("cmpl", benchmark, rest)

    def run(self, benchmark: str, rest: Sequence[str]) -> int:
        # each run script links its latest data under the top-level data dir
        self.steps.call(
            f"create {self.cfg.data_dir}",
            lambda: self.cfg.data_dir.mkdir(parents=True, exist_ok=True),
            policy=FailurePolicy.FATAL,
        )
        self.cleanup()
        return self._delegate("run", benchmark, rest)

    def plot(self, benchmark: str, rest: Sequence[str]) -> int:
        if not self.cfg.data_dir.is_dir():
            raise ConfigError(
                f"{self.cfg.data_dir.name} not found!\n"
                f"`ae plot` reads from {self.cfg.data_dir}, which is created by `ae run`",
                hint=f"Make sure run the experiment (`ae run {benchmark}`) before plotting",
            )
        return self._delegate("plot", benchmark, rest)

    def cleanup(self) -> None:
        """Remove whatever a previous run left behind.

        Nothing to kill or delete is the normal case, so every step is
        best-effort.
        """
        print(
            "Perform some pre-run cleaning: it may report some errors for "
            "files/processes not found, but it should be fine..."
        )
        lenient = FailurePolicy.LOGGED
        for name in self.catalog.kill_processes:
            self.steps.step(f"killall {name}", sudo(["killall", name]), policy=lenient)
        for pattern in self.catalog.stale_paths:
            matches = sorted(glob.glob(pattern))
            if matches:
                self.steps.step(f"remove {pattern}", sudo(["rm", "-rf", *matches]), policy=lenient)
        if self.catalog.release_ipc:
            self.steps.step("release System V IPC", sudo(["ipcrm", "--all"]), policy=lenient)

    def script_for(self, mode: str, benchmark: str) -> Path:
        values = dict(self.cfg.template_vars(), mode=mode, benchmark=benchmark)
        return Path(render(self.catalog.script_template, values))

    def _delegate(self, mode: str, benchmark: str, rest: Sequence[str]) -> int:
        label = _MODE_LABELS[mode]
        script = self.script_for(mode, benchmark)
        print(f"[dispatch] {mode} {benchmark} -> {script}")
        try:
            self.steps.step(
                f"{script.name}",
                ["bash", str(script), *rest],
                cwd=str(self.cfg.cwd),
                env=delegate_environ(self.cfg, self.environ),
                policy=FailurePolicy.FATAL,
            )
        except StepFailed:
            print(f"{label}: Fail!")
            raise
        print(f"{label}: DONE!")
        return 0
