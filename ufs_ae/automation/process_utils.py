#!/usr/bin/env python3
"""Helpers for running provisioning steps and benchmark delegates."""

from __future__ import annotations

import enum
import re
import shlex
import subprocess
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

T = TypeVar("T")

# exit statuses a shell would report for these launch failures
MISSING_EXECUTABLE = 127
NOT_EXECUTABLE = 126


class StepFailed(RuntimeError):
    pass


class FailurePolicy(enum.Enum):
    FATAL = "fatal"
    LOGGED = "logged-and-continue"


def sudo(argv: Sequence[str], keep_env: bool = False) -> List[str]:
    prefix = ["sudo", "-E"] if keep_env else ["sudo"]
    return prefix + [str(arg) for arg in argv]


def split_cmd(cmd: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(cmd, (list, tuple)):
        return [str(part) for part in cmd]
    return shlex.split(str(cmd))


_VAR_RE = re.compile(r"\$\{(\w+)\}|\$(\w+)")


def expand_with_env(template: str, env: Mapping[str, str]) -> str:
    """Expand ``$NAME`` and ``${NAME}`` the way a POSIX shell would.

    Unset names expand to the empty string.
    """

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1) or match.group(2)
        return env.get(name, "")

    return _VAR_RE.sub(_sub, template)


def log_progress(log_path: Optional[Path], message: str) -> None:
    """Append a progress line so long unattended runs can be followed."""
    if log_path is None:
        return
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as f:
            ts = datetime.now().isoformat(timespec="seconds")
            f.write(f"[{ts}] {message}\n")
    except OSError:
        # Best-effort only: a broken log must not break provisioning.
        pass


class CommandRunner:
    """Run one external command to completion and return its exit status."""

    def run(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
        quiet: bool = False,
    ) -> int:
        stdout = subprocess.DEVNULL if quiet else None
        try:
            cp = subprocess.run(
                list(argv),
                cwd=cwd,
                env=env,
                input=input_text,
                stdout=stdout,
                stderr=stdout,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            # missing executable or working directory
            return MISSING_EXECUTABLE
        except PermissionError:
            return NOT_EXECUTABLE
        return cp.returncode

    def capture(self, argv: Sequence[str]) -> Tuple[int, str]:
        """Like :meth:`run` but returns stdout instead of letting it through."""
        try:
            cp = subprocess.run(
                list(argv),
                stdout=subprocess.PIPE,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            return MISSING_EXECUTABLE, ""
        except PermissionError:
            return NOT_EXECUTABLE, ""
        return cp.returncode, cp.stdout


@dataclass(frozen=True)
class StepRunner:
    """Uniform wrapper deciding what a failed step means for the workflow.

    ``FATAL`` steps raise :class:`StepFailed`; ``LOGGED`` steps print a warning
    and let the caller continue with the next step.
    """

    runner: CommandRunner
    policy: FailurePolicy = FailurePolicy.FATAL
    tag: str = "ae"

    def relaxed(self) -> "StepRunner":
        return replace(self, policy=FailurePolicy.LOGGED)

    def step(
        self,
        name: str,
        argv: Sequence[str],
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
        quiet: bool = False,
        policy: Optional[FailurePolicy] = None,
    ) -> bool:
        rc = self.runner.run(argv, cwd=cwd, env=env, input_text=input_text, quiet=quiet)
        if rc == 0:
            return True
        self._failed(name, f"rc={rc}", policy or self.policy)
        return False

    def read(self, name: str, argv: Sequence[str], *, policy: Optional[FailurePolicy] = None) -> Optional[str]:
        """Run ``argv`` for its stdout; None when it failed under ``LOGGED``."""
        rc, out = self.runner.capture(argv)
        if rc == 0:
            return out
        self._failed(name, f"rc={rc}", policy or self.policy)
        return None

    def call(
        self,
        name: str,
        fn: Callable[[], T],
        *,
        policy: Optional[FailurePolicy] = None,
    ) -> Optional[T]:
        try:
            return fn()
        except (OSError, StepFailed) as exc:
            self._failed(name, f"{type(exc).__name__}: {exc}", policy or self.policy, cause=exc)
            return None

    def _failed(
        self,
        name: str,
        detail: str,
        policy: FailurePolicy,
        cause: Optional[BaseException] = None,
    ) -> None:
        if policy is FailurePolicy.FATAL:
            raise StepFailed(f"{name} failed ({detail})") from cause
        print(f"[{self.tag}] warning: {name} failed ({detail}); continuing")
