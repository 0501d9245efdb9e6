#!/usr/bin/env python3
"""Line-oriented text stores with exact-line upsert.

Re-running provisioning must not duplicate lines in the environment profile,
``/etc/fstab``, ``limits.conf`` or ``sysctl.conf``. Every writer goes through
:func:`upsert_line`, which appends a line only when an identical line is not
already present. This is safe for sequential re-invocation, not for
concurrent writers.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

from ufs_ae.automation.process_utils import StepRunner, sudo


class LineStore:
    def lines(self) -> List[str]:
        raise NotImplementedError

    def append(self, line: str) -> None:
        raise NotImplementedError

    def touch(self) -> None:
        """Make sure the backing store exists, even when empty."""

    def __contains__(self, line: object) -> bool:
        return line in self.lines()


class MemoryLineStore(LineStore):
    def __init__(self, lines: Optional[Iterable[str]] = None):
        self._lines: List[str] = list(lines or [])

    def lines(self) -> List[str]:
        return list(self._lines)

    def append(self, line: str) -> None:
        self._lines.append(line)


class FileLineStore(LineStore):
    """A text file owned by the invoking user (e.g. ``~/.ae_env.sh``)."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def lines(self) -> List[str]:
        try:
            return self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

    def append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        prefix = "\n" if _lacks_trailing_newline(self.path) else ""
        with self.path.open("a", encoding="utf-8") as f:
            f.write(f"{prefix}{line}\n")

    def touch(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)


class PrivilegedLineStore(LineStore):
    """A system file only writable (and maybe only readable) through sudo."""

    def __init__(self, path: Path, steps: StepRunner):
        self.path = Path(path)
        self.steps = steps

    def lines(self) -> List[str]:
        return self._read().splitlines()

    def append(self, line: str) -> None:
        text = self._read()
        prefix = "\n" if text and not text.endswith("\n") else ""
        self.steps.step(
            f"append to {self.path}",
            sudo(["tee", "-a", str(self.path)]),
            input_text=f"{prefix}{line}\n",
        )

    def _read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except PermissionError:
            # e.g. a 0600 root-owned file
            text = self.steps.read(f"read {self.path}", sudo(["cat", str(self.path)]))
            if text is None:
                raise
            return text


def upsert_line(store: LineStore, line: str) -> bool:
    """Append ``line`` unless the store already holds exactly that line.

    Returns True when the line was appended.
    """
    if line in store.lines():
        return False
    store.append(line)
    return True


def _lacks_trailing_newline(path: Path) -> bool:
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        return False
    return bool(data) and not data.endswith(b"\n")
