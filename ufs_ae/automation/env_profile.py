#!/usr/bin/env python3
"""The shell profile (``~/.ae_env.sh``) holding exports and aliases.

Interactive shells source it; delegate scripts receive the same variables
through :func:`parse_exports`.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from ufs_ae.automation.line_store import LineStore, upsert_line
from ufs_ae.automation.process_utils import expand_with_env

_EXPORT_RE = re.compile(r"^\s*export\s+([A-Za-z_][A-Za-z0-9_]*)=(.*)$")


class EnvProfile:
    def __init__(self, store: LineStore):
        self.store = store

    def touch(self) -> None:
        self.store.touch()

    def add(self, line: str) -> bool:
        return upsert_line(self.store, line)

    def export(self, name: str, value: str) -> bool:
        return self.add(f"export {name}={value}")

    def alias(self, name: str, command: str) -> bool:
        return self.add(f"alias {name}='{command}'")

    def exports(self, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        return parse_exports(self.store.lines(), environ)


def source_line(profile_path: Path, home: Path) -> str:
    """The line a shell rc file needs in order to pick up the profile."""
    try:
        return f"source ~/{profile_path.relative_to(home)}"
    except ValueError:
        return f"source {profile_path}"


def parse_exports(lines: Iterable[str], environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Evaluate the ``export NAME=VALUE`` lines of a profile.

    Later lines win, and ``${NAME}`` references see both ``environ`` and the
    exports parsed so far. Single-quoted values are taken literally.
    """
    scope: Dict[str, str] = dict(environ or {})
    exported: Dict[str, str] = {}
    for line in lines:
        match = _EXPORT_RE.match(line)
        if not match:
            continue
        name, raw = match.group(1), match.group(2).strip()
        if len(raw) >= 2 and raw[0] == raw[-1] == "'":
            value = raw[1:-1]
        else:
            if len(raw) >= 2 and raw[0] == raw[-1] == '"':
                raw = raw[1:-1]
            value = expand_with_env(raw, scope)
        exported[name] = value
        scope[name] = value
    return exported
