#!/usr/bin/env python3
"""Configuration for one `ae` invocation.

Defaults come from ``ufs_ae/configs/*.yaml``; any ``AE_*`` variable exported
before the invocation overrides them. The result is an immutable
:class:`AeConfig` handed to every component.
"""

from __future__ import annotations

import os
import pwd
import re
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from ufs_ae.automation.env_profile import parse_exports
from ufs_ae.automation.line_store import FileLineStore

CONFIG_ROOT = Path(__file__).resolve().parents[1] / "configs"


class UsageError(Exception):
    """Invalid command-line token; the message is the help text to show."""


class ConfigError(Exception):
    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


def config_root(environ: Optional[Mapping[str, str]] = None) -> Path:
    environ = os.environ if environ is None else environ
    override = environ.get("AE_CONFIG_ROOT")
    return Path(override) if override else CONFIG_ROOT


def load_yaml(name: str, root: Optional[Path] = None) -> Dict:
    path = (root or CONFIG_ROOT) / f"{name}.yaml"
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")
    return data


_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def render(template: object, values: Mapping[str, object]) -> str:
    """Fill ``{name}`` placeholders; unknown names (e.g. shell ``${VAR}``) stay as-is."""

    def _sub(match: "re.Match[str]") -> str:
        key = match.group(1)
        return str(values[key]) if key in values else match.group(0)

    return _PLACEHOLDER_RE.sub(_sub, str(template))


@dataclass(frozen=True)
class AeConfig:
    repo_url: str
    branch: str
    bench_repo_url: str
    bench_branch: str
    filebench_branch: str
    ext4_wait_after_mount: int
    cmpl_threads: int
    home: Path
    user: str
    cwd: Path
    work_dir: Path
    repo_dir: Path
    bench_repo_dir: Path
    script_dir: Path
    data_dir: Path
    env_profile_path: Path
    progress_log: Path
    marker_template: str
    config_root: Path
    ssd_name: Optional[str] = None
    ssd_pcie_addr: Optional[str] = None
    pip_proxy: Optional[str] = None

    def with_ssd(self, ssd_name: str, ssd_pcie_addr: str) -> "AeConfig":
        return replace(self, ssd_name=ssd_name, ssd_pcie_addr=ssd_pcie_addr)

    def to_environ(self) -> Dict[str, str]:
        env = {
            "AE_REPO_URL": self.repo_url,
            "AE_BRANCH": self.branch,
            "AE_BENCH_REPO_URL": self.bench_repo_url,
            "AE_BENCH_BRANCH": self.bench_branch,
            "AE_UFS_FILEBENCH_BRANCH": self.filebench_branch,
            "AE_EXT4_WAIT_AFTER_MOUNT": str(self.ext4_wait_after_mount),
            "AE_WORK_DIR": str(self.work_dir),
            "AE_REPO_DIR": str(self.repo_dir),
            "AE_BENCH_REPO_DIR": str(self.bench_repo_dir),
            "AE_SCRIPT_DIR": str(self.script_dir),
            "AE_CMPL_THREADS": str(self.cmpl_threads),
            "AE_DATA_DIR": str(self.data_dir),
        }
        if self.ssd_name:
            env["AE_SSD_NAME"] = self.ssd_name
        if self.ssd_pcie_addr:
            env["AE_SSD_PICE_ADDR"] = self.ssd_pcie_addr
        return env

    def template_vars(self) -> Dict[str, str]:
        return {
            "home": str(self.home),
            "user": self.user,
            "work_dir": str(self.work_dir),
            "repo_dir": str(self.repo_dir),
            "bench_repo_dir": str(self.bench_repo_dir),
            "script_dir": str(self.script_dir),
            "data_dir": str(self.data_dir),
            "cmpl_threads": str(self.cmpl_threads),
            "python": sys.executable or "python3",
            "ssd_name": self.ssd_name or "",
            "ssd_pcie_addr": self.ssd_pcie_addr or "",
        }


def _int_setting(name: str, raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _current_user(environ: Mapping[str, str]) -> str:
    user = environ.get("USER")
    if user:
        return user
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return str(os.getuid())


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
    root: Optional[Path] = None,
) -> AeConfig:
    """Build the configuration without touching the filesystem."""
    environ = dict(os.environ if environ is None else environ)
    root = root or config_root(environ)
    defaults = load_yaml("defaults", root)
    env_defaults = defaults.get("env") or {}
    layout = defaults.get("layout") or {}
    state = defaults.get("state") or {}

    def _get(name: str) -> str:
        # an empty variable counts as unset
        value = environ.get(name)
        return value if value else str(env_defaults.get(name, ""))

    home = Path(environ.get("HOME") or Path.home())
    cwd = Path(cwd) if cwd else Path.cwd()
    work_dir = Path(environ.get("AE_WORK_DIR") or home / layout.get("work_dir", "ssd/workspace"))
    repo_dir = work_dir / layout.get("repo_name", "uFS")
    env_profile_path = home / state.get("env_profile", ".ae_env.sh")

    return AeConfig(
        repo_url=_get("AE_REPO_URL"),
        branch=_get("AE_BRANCH"),
        bench_repo_url=_get("AE_BENCH_REPO_URL"),
        bench_branch=_get("AE_BENCH_BRANCH"),
        filebench_branch=_get("AE_UFS_FILEBENCH_BRANCH"),
        ext4_wait_after_mount=_int_setting("AE_EXT4_WAIT_AFTER_MOUNT", _get("AE_EXT4_WAIT_AFTER_MOUNT")),
        cmpl_threads=_int_setting("AE_CMPL_THREADS", _get("AE_CMPL_THREADS")),
        home=home,
        user=_current_user(environ),
        cwd=cwd,
        work_dir=work_dir,
        repo_dir=repo_dir,
        bench_repo_dir=work_dir / layout.get("bench_repo_name", "uFS-bench"),
        script_dir=repo_dir / layout.get("script_subdir", "cfs_bench/exprs/artifact_eval"),
        data_dir=Path(environ.get("AE_DATA_DIR") or cwd / layout.get("data_dir_name", "AE_DATA")),
        env_profile_path=env_profile_path,
        progress_log=home / state.get("progress_log", ".ae_progress.log"),
        marker_template=str(state.get("marker_template", ".ae_{marker}_done")),
        config_root=root,
        # SSD values come from the invoking shell only, never from ~/.ae_env.sh
        ssd_name=environ.get("AE_SSD_NAME") or None,
        ssd_pcie_addr=environ.get("AE_SSD_PICE_ADDR") or None,
        pip_proxy=environ.get("PIP_PROXY") or None,
    )


def delegate_environ(cfg: AeConfig, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Environment for delegate scripts.

    Profile exports, overlaid by the ambient environment, overlaid by the
    ``AE_*`` variables of ``cfg``.
    """
    environ = dict(os.environ if environ is None else environ)
    merged = parse_exports(FileLineStore(cfg.env_profile_path).lines(), environ)
    merged.update(environ)
    merged.update(cfg.to_environ())
    return merged
