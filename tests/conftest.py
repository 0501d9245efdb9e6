"""Shared fixtures: a recording command runner and a config rooted in tmp_path.

Also puts the project root on sys.path so 'ufs_ae.*' imports work without an
install.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import pytest

_root = Path(__file__).resolve().parents[1]
if str(_root) not in sys.path:
    sys.path.insert(0, str(_root))

from ufs_ae.automation.process_utils import CommandRunner  # noqa: E402
from ufs_ae.automation.settings import AeConfig, load_config  # noqa: E402


@dataclass
class Call:
    argv: List[str]
    cwd: Optional[str]
    env: Optional[Dict[str, str]]
    input_text: Optional[str]

    @property
    def command(self) -> str:
        """First word after any sudo prefix."""
        words = list(self.argv)
        if words and words[0] == "sudo":
            words = words[1:]
            if words and words[0] == "-E":
                words = words[1:]
        return words[0] if words else ""


class RecordingRunner(CommandRunner):
    """Records every command instead of running it.

    ``failures`` maps a command word (``apt-get``, ``make``, ...) to the exit
    status it should report; everything else succeeds. ``outputs`` maps a
    command word to the stdout :meth:`capture` returns for it.
    """

    def __init__(self, failures: Optional[Dict[str, int]] = None, outputs: Optional[Dict[str, str]] = None):
        self.calls: List[Call] = []
        self.failures = dict(failures or {})
        self.outputs = dict(outputs or {})

    def run(self, argv, cwd=None, env=None, input_text=None, quiet=False) -> int:
        call = Call(list(argv), cwd, env, input_text)
        self.calls.append(call)
        return self.failures.get(call.command, 0)

    def capture(self, argv):
        rc = self.run(argv)
        return rc, self.outputs.get(self.calls[-1].command, "") if rc == 0 else ""

    def commands(self) -> List[str]:
        return [" ".join(call.argv) for call in self.calls]

    def words(self) -> List[str]:
        return [call.command for call in self.calls]


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def environ(tmp_path: Path) -> Dict[str, str]:
    home = tmp_path / "home"
    home.mkdir()
    return {"HOME": str(home), "USER": "alice", "PATH": os.environ.get("PATH", "")}


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    cwd = tmp_path / "cwd"
    cwd.mkdir()
    return cwd


@pytest.fixture
def cfg(environ: Dict[str, str], workdir: Path) -> AeConfig:
    return load_config(environ, cwd=workdir)
