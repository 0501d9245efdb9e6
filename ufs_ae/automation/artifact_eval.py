#!/usr/bin/env python3
"""Entry point for the uFS artifact evaluation (`ae`).

Typical usage:
  ae init cloudlab               # then reboot
  ae init-after-reboot cloudlab  # after every reboot
  ae cmpl microbench
  ae run microbench
  ae plot microbench

Do not run it as root; sudo is requested on demand for privileged steps.
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import Callable, Dict, List, Mapping, Optional

from ufs_ae.automation.bench_dispatch import BenchmarkDispatcher
from ufs_ae.automation.machine_profiles import load_profile_catalog, resolve_profile
from ufs_ae.automation.process_utils import CommandRunner, StepFailed, StepRunner
from ufs_ae.automation.provision import Provisioner
from ufs_ae.automation.settings import AeConfig, ConfigError, UsageError, load_config
from ufs_ae.automation.stage_ledger import LedgerWriteError

VERBS: Dict[str, str] = {
    "init": "initialize environment, install dependency (must reboot after init)",
    "init-after-reboot": "further initialize environment (must be done after every rebooting)",
    "cmpl": "compile codebase for a specific benchmark",
    "run": "run a specific benchmark",
    "plot": "make a plot from the collected data",
}


def usage() -> str:
    width = max(len(verb) for verb in VERBS) + 1
    lines = [f"Usage: ae [ {' | '.join(VERBS)} ] [...]", "  Specify which step to perform"]
    for verb, description in VERBS.items():
        lines.append(f"    {(verb + ':').ljust(width)} {description}")
    return "\n".join(lines)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str):
        raise UsageError(usage())


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    # -h/--help are not verbs; they get the usage text and exit 1 like any other
    parser = _ArgumentParser(prog="ae", usage=usage(), description="uFS artifact evaluation", add_help=False)
    parser.add_argument("verb", help="step to perform")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="forwarded to the step")
    args = parser.parse_args(argv)
    if args.verb not in VERBS:
        raise UsageError(usage())
    return args


def _warn_root() -> None:
    print("It is NOT recommended to run this script as root!")
    print("Permission will be asked on demand")
    print("Please be aware that if you run this script with sudo once, you may want to always run it with sudo")
    print("Otherwise there might be permission issues")


def _provision(
    verb: str,
    cfg: AeConfig,
    args: List[str],
    runner: CommandRunner,
    environ: Optional[Mapping[str, str]],
) -> int:
    profile = resolve_profile(
        args[0] if args else "",
        verb=verb,
        ssd_name=cfg.ssd_name,
        ssd_pcie_addr=cfg.ssd_pcie_addr,
        catalog=load_profile_catalog(cfg.config_root),
    )
    provisioner = Provisioner(
        cfg,
        profile,
        StepRunner(runner),
        environ=dict(environ) if environ is not None else None,
    )
    if verb == "init":
        provisioner.init()
    else:
        provisioner.init_after_reboot()
    return 0


def _dispatch(
    verb: str,
    cfg: AeConfig,
    args: List[str],
    runner: CommandRunner,
    environ: Optional[Mapping[str, str]],
) -> int:
    return BenchmarkDispatcher(cfg, StepRunner(runner), environ=environ).dispatch(verb, args)


_HANDLERS: Dict[str, Callable[..., int]] = {
    "init": _provision,
    "init-after-reboot": _provision,
    "cmpl": _dispatch,
    "run": _dispatch,
    "plot": _dispatch,
}


def main(
    argv: Optional[List[str]] = None,
    runner: Optional[CommandRunner] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    try:
        args = parse_args(argv)
        if os.geteuid() == 0:
            _warn_root()
        cfg = load_config(environ)
        return _HANDLERS[args.verb](args.verb, cfg, list(args.args), runner or CommandRunner(), environ)
    except UsageError as exc:
        print(exc, file=sys.stderr)
        return 1
    except ConfigError as exc:
        print(f"[ae] error: {exc}", file=sys.stderr)
        if exc.hint:
            print(f"[ae] hint: {exc.hint}", file=sys.stderr)
        return 1
    except LedgerWriteError as exc:
        print(f"[ae] error: {exc}", file=sys.stderr)
        print("[ae] hint: the stage is not recorded as done; fix the problem and re-run", file=sys.stderr)
        return 1
    except StepFailed as exc:
        print(f"[ae] error: {exc}", file=sys.stderr)
        print("[ae] hint: fix the failing step and re-run; finished init stages are skipped", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
