#!/usr/bin/env python3
"""Provision a machine for the uFS artifact evaluation.

`init` walks three stages (mount -> install -> configure). Each stage records a
completion marker, so a re-invocation after a failure or reboot resumes with the
first stage that has not finished. Kernel- and session-level changes only take
effect after a reboot; `init-after-reboot` applies the per-boot settings.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ufs_ae.automation.env_profile import EnvProfile, source_line
from ufs_ae.automation.line_store import FileLineStore, LineStore, PrivilegedLineStore, upsert_line
from ufs_ae.automation.machine_profiles import MachineProfile
from ufs_ae.automation.process_utils import FailurePolicy, StepRunner, expand_with_env, log_progress, split_cmd, sudo
from ufs_ae.automation.settings import AeConfig, delegate_environ, load_yaml, render
from ufs_ae.automation.stage_ledger import CONFIGURE, INSTALL, MOUNT, FileStageTracker, Stage, StageTracker

REBOOT_BANNER = "\n".join(
    [
        "====================================================================",
        "| Please reboot the machine for some configurations to take effect |",
        "====================================================================",
    ]
)

_STAGE_LABELS = {MOUNT.name: "Mount", INSTALL.name: "Install", CONFIGURE.name: "Config"}


def _read_int(path: Path) -> int:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return -1


def link_glob(directory: Path, pattern: str, name: str) -> Path:
    """Point ``directory/name`` at the single build dir matching ``pattern``."""
    link = directory / name
    if link.is_symlink() or link.exists():
        return link
    matches = sorted(p for p in directory.glob(pattern) if p.name != name)
    if not matches:
        raise FileNotFoundError(f"no {pattern} under {directory}")
    link.symlink_to(matches[0].name)
    return link


class Provisioner:
    def __init__(
        self,
        cfg: AeConfig,
        profile: MachineProfile,
        steps: StepRunner,
        tracker: Optional[StageTracker] = None,
        env_profile: Optional[EnvProfile] = None,
        system_store: Optional[Callable[[Path], LineStore]] = None,
        plan: Optional[Dict] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        self.cfg = cfg.with_ssd(profile.ssd_name, profile.ssd_pcie_addr)
        self.profile = profile
        self.strict_steps = steps
        # on best-effort profiles a failing sub-step never aborts `init`
        self.steps = steps.relaxed() if profile.best_effort else steps
        self.tracker = tracker or FileStageTracker(cfg.home, cfg.marker_template)
        self.env_profile = env_profile or EnvProfile(FileLineStore(cfg.env_profile_path))
        self.system_store = system_store or (lambda path: PrivilegedLineStore(path, self.steps))
        self.plan = plan if plan is not None else load_yaml("install", cfg.config_root)
        self.environ = environ
        self.values = self.cfg.template_vars()

    # -- top-level verbs -------------------------------------------------

    def init(self) -> None:
        print("=== Welcome to the artifact evaluation of uFS! ===")
        print("Init: start...")
        self._progress(f"init start profile={self.profile.name}")

        self.run_stage(MOUNT, self.mount)
        self.ensure_repositories()
        self.run_stage(INSTALL, self.install)
        self.run_stage(CONFIGURE, self.configure)

        self._progress("init done")
        print("Init: DONE!")
        print(REBOOT_BANNER)

    def init_after_reboot(self) -> None:
        after = self.plan.get("after_reboot") or {}
        steps = self.strict_steps
        self._progress(f"init-after-reboot start profile={self.profile.name}")

        smt = after.get("smt_control")
        if smt:
            steps.step("disable hyper-threading", sudo(["tee", smt]), input_text="off\n")
        # msr exposes the performance counters
        for module in after.get("kernel_modules") or []:
            steps.step(f"load kernel module {module}", sudo(["modprobe", module]))
        for setting in after.get("sysctl") or []:
            steps.step(f"sysctl {setting}", sudo(["sysctl", setting]))

        hugepages = after.get("hugepages")
        if hugepages:
            steps.step(
                "reserve hugepages",
                sudo(self._argv(hugepages), keep_env=True),
                env=delegate_environ(self.cfg, self.environ),
            )

        target = self.profile.cpu_max_freq_khz
        if target is None:
            print(f"[provision] CPU frequency scaling is left untouched on {self.profile.name}")
        else:
            self.pin_cpu_frequency(target, Path(after.get("cpu_root", "/sys/devices/system/cpu")))
        self._progress("init-after-reboot done")

    # -- stages ----------------------------------------------------------

    def run_stage(self, stage: Stage, action: Callable[[], None]) -> bool:
        """Run ``action`` unless the stage is inapplicable or already done."""
        label = _STAGE_LABELS.get(stage.name, stage.name.capitalize())
        if stage is MOUNT and not self.profile.needs_mount:
            print(f"[provision] {self.profile.name} needs no dedicated mount; skip...")
            return False
        if self.tracker.is_complete(stage):
            print(f"Detect {stage.name} has been done; skip...")
            self._progress(f"{stage.name} already done; skipped")
            return False

        print(f"{label}: start...")
        self._progress(f"{stage.name} start")
        action()
        self.tracker.mark_complete(stage)
        self._progress(f"{stage.name} done")
        print(f"{label}: DONE!")
        return True

    def mount(self) -> None:
        dev = str(self.profile.mount_device)
        work = str(self.cfg.work_dir)
        self.steps.call("create work dir", lambda: self.cfg.work_dir.mkdir(parents=True, exist_ok=True))
        self.steps.step(f"format {dev}", sudo(["mkfs", "-t", "ext4", dev]))
        self.steps.step("create mount point", sudo(["mkdir", "-p", work]))
        self.steps.step(f"mount {dev}", sudo(["mount", dev, work]))
        self.steps.step("chown work dir", sudo(["chown", "-R", self.cfg.user, work]))
        self.steps.step("chmod work dir", sudo(["chmod", "775", "-R", work]))
        self.add_system_line(self.plan.get("fstab_file", "/etc/fstab"), f"{dev} {work} ext4 defaults 0 0")

    def ensure_repositories(self) -> None:
        repos = [
            ("uFS", self.cfg.repo_url, self.cfg.repo_dir, self.cfg.branch),
            ("uFS benchmark", self.cfg.bench_repo_url, self.cfg.bench_repo_dir, self.cfg.bench_branch),
        ]
        missing = [repo for repo in repos if not repo[2].is_dir()]
        if missing:
            # git-lfs first, so large files are pulled by the clone itself
            self.steps.step("apt-get update", sudo(["apt-get", "update"]))
            self.steps.step("install git-lfs", sudo(["apt-get", "-y", "install", "git-lfs"]))
            self.steps.call("create work dir", lambda: self.cfg.work_dir.mkdir(parents=True, exist_ok=True))
        for label, url, path, _branch in missing:
            print(f"{label} repository is not detected, start downloading...")
            self.steps.step(f"clone {label}", ["git", "clone", url, str(path)], cwd=str(self.cfg.work_dir))
            print(f"Download {label} repository finish")
        for label, _url, path, branch in repos:
            self.steps.step(f"checkout {label} {branch}", ["git", "checkout", branch], cwd=str(path))

    def install(self) -> None:
        plan = self.plan
        self.steps.call("create environment profile", self.env_profile.touch)

        self.steps.step("apt-get update", sudo(["apt-get", "update"]))
        for group in plan.get("apt_groups") or []:
            self._install_group(group)

        proxy = split_cmd(self.cfg.pip_proxy) if self.cfg.pip_proxy else []
        for packages in plan.get("pip_packages") or []:
            self.steps.step(f"pip install {' '.join(packages)}", sudo(["pip3", *proxy, "install", *packages]))
        for source in plan.get("pip_from_git") or []:
            dest = str(self.cfg.work_dir / source["dir"])
            self.steps.step(f"clean {source['dir']}", sudo(["rm", "-rf", dest]))
            self.steps.step(f"clone {source['dir']}", ["git", "clone", source["url"], dest])
            self.steps.step(f"pip install {source['dir']}", sudo(["pip3", *proxy, "install", dest]))
            self.steps.step(f"clean {source['dir']}", sudo(["rm", "-rf", dest]))

        for group in plan.get("late_apt_groups") or []:
            self._install_group(group)

        for line in plan.get("env_profile") or []:
            rendered = render(line, self.values)
            self.steps.call("update environment profile", lambda: self.env_profile.add(rendered))

        sysctl_file = plan.get("sysctl_file", "/etc/sysctl.conf")
        for line in plan.get("sysctl_lines") or []:
            self.add_system_line(sysctl_file, render(line, self.values))

        # data dirs may reference profile exports such as ${KFS_DATA_DIR}
        scope = dict(os.environ if self.environ is None else self.environ)
        scope.update(self.env_profile.exports(scope))
        for directory in plan.get("data_dirs") or []:
            path = self.steps.call(f"resolve {directory}", lambda: self._expand_dir(directory, scope))
            if path:
                self.steps.step(f"create {path}", sudo(["mkdir", "-p", path]))

        hook = source_line(self.cfg.env_profile_path, self.cfg.home)
        for rc_name in plan.get("shell_rc_files") or []:
            rc_path = self.cfg.home / rc_name
            if rc_path.exists():
                self.steps.call(f"update {rc_path}", lambda: upsert_line(FileLineStore(rc_path), hook))

        self.steps.step("reload sysctl", sudo(["sysctl", "-p"]))
        self.build_dependencies()

    def configure(self) -> None:
        limits_file = self.plan.get("limits_file", "/etc/security/limits.conf")
        for line in self.plan.get("limits_lines") or []:
            self.add_system_line(limits_file, render(line, self.values))

    # -- helpers ---------------------------------------------------------

    def build_dependencies(self) -> List[str]:
        """Build third-party libraries; returns the names that had a failing step."""
        failed: List[str] = []
        for dep in self.plan.get("dependencies") or []:
            name = dep["name"]
            policy = self.steps.policy if dep.get("required") else FailurePolicy.LOGGED
            cwd = Path(render(dep["cwd"], self.values))
            print(f"[provision] building {name} in {cwd}")
            ok = True

            clone = dep.get("clone")
            if clone and not (cwd / clone["dir"]).is_dir():
                ok &= self.steps.step(
                    f"{name}: clone", ["git", "clone", clone["url"], clone["dir"]], cwd=str(cwd), policy=policy
                )
            for cmd in dep.get("run") or []:
                ok &= self.steps.step(f"{name}: {render(cmd, self.values)}", self._argv(cmd), cwd=str(cwd), policy=policy)

            link = dep.get("link")
            if link:
                made = self.steps.call(
                    f"{name}: link {link['name']}",
                    lambda: link_glob(cwd / link["dir"], link["pattern"], link["name"]),
                    policy=policy,
                )
                ok &= made is not None
            if not ok:
                failed.append(name)
        return failed

    def pin_cpu_frequency(self, target_khz: int, cpu_root: Path) -> Tuple[int, int]:
        """Cap every core at ``target_khz``; returns (pinned, total) cores.

        Some cpufreq drivers report an error for the write although the value
        sticks, so the read-back decides, not the exit status of the write.
        """
        nodes = sorted(cpu_root.glob("*/cpufreq"))
        for node in nodes:
            self.strict_steps.step(
                f"cap {node.parent.name} frequency",
                sudo(["tee", str(node / "scaling_max_freq")]),
                input_text=f"{target_khz}\n",
                quiet=True,
                policy=FailurePolicy.LOGGED,
            )
        pinned = sum(1 for node in nodes if _read_int(node / "scaling_max_freq") == target_khz)
        print(f"[provision] scaling_max_freq={target_khz} on {pinned}/{len(nodes)} cpus")
        return pinned, len(nodes)

    def add_system_line(self, path: str, line: str) -> None:
        store = self.system_store(Path(path))
        self.steps.call(f"update {path}", lambda: upsert_line(store, line))

    def _install_group(self, group: Dict) -> None:
        name = group["name"]
        if self.profile.skips(name):
            print(f"[provision] {name} is preinstalled on {self.profile.name} machines; skip...")
            return
        self.steps.step(f"install {name}", sudo(["apt-get", "-y", "install", *group["packages"]]))
        for cmd in group.get("after") or []:
            self.steps.step(f"{name}: post-install", sudo(self._argv(cmd)))

    def _expand_dir(self, template: str, scope: Dict[str, str]) -> str:
        path = expand_with_env(render(template, self.values), scope)
        if not path:
            raise FileNotFoundError(f"{template} expands to an empty path; not exported in {self.cfg.env_profile_path}")
        return path

    def _argv(self, cmd) -> List[str]:
        return [render(part, self.values) for part in split_cmd(cmd)]

    def _progress(self, message: str) -> None:
        log_progress(self.cfg.progress_log, f"[provision] {message}")
