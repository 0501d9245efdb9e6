#!/usr/bin/env python3
"""Resolve a machine profile token into the SSD parameters of this host."""

from __future__ import annotations

import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from ufs_ae.automation.settings import ConfigError, UsageError, load_yaml


@dataclass(frozen=True)
class MachineProfile:
    name: str
    ssd_name: str
    ssd_pcie_addr: str
    mount_device: Optional[str] = None
    install_exceptions: FrozenSet[str] = frozenset()
    best_effort: bool = False
    cpu_max_freq_khz: Optional[int] = None

    @property
    def needs_mount(self) -> bool:
        return self.mount_device is not None

    def skips(self, group: str) -> bool:
        return group in self.install_exceptions


def load_profile_catalog(root: Optional[Path] = None) -> Dict[str, Dict]:
    profiles = load_yaml("profiles", root).get("profiles") or {}
    if not isinstance(profiles, dict) or not profiles:
        raise ConfigError("profiles.yaml defines no machine profiles")
    return profiles


def profile_usage(verb: str, catalog: Dict[str, Dict]) -> str:
    width = max(len(name) for name in catalog) + 1
    lines = [
        f"Usage: ae {verb} [ {' | '.join(catalog)} ]",
        "  Specify which machine this script is running on:",
    ]
    for name, entry in catalog.items():
        lines.append(f"    {(name + ':').ljust(width)} {entry.get('description', '')}")
    return "\n".join(lines)


def _short_hostname(hostname: Optional[str]) -> str:
    return (hostname or socket.gethostname()).split(".")[0]


def resolve_profile(
    token: str,
    *,
    verb: str = "init",
    ssd_name: Optional[str] = None,
    ssd_pcie_addr: Optional[str] = None,
    hostname: Optional[str] = None,
    dev_root: Path = Path("/dev"),
    catalog: Optional[Dict[str, Dict]] = None,
) -> MachineProfile:
    """Validate ``token`` and settle the SSD name and PCIe address.

    ``ssd_name``/``ssd_pcie_addr`` are the values supplied from outside
    (``AE_SSD_NAME``/``AE_SSD_PICE_ADDR``); they override profile defaults and
    are mandatory for profiles marked ``require_env``. Nothing is mutated.
    """
    catalog = catalog if catalog is not None else load_profile_catalog()
    if token not in catalog:
        raise UsageError(profile_usage(verb, catalog))
    entry = catalog[token] or {}

    if entry.get("require_env"):
        if not ssd_name:
            raise ConfigError(
                "Please provide SSD name through environment variable `AE_SSD_NAME` e.g. nvme0n1",
                hint=f"To find the name, try `lsblk`; `{token}` ignores SSD_NAME saved in ~/.ae_env.sh",
            )
        device = Path(dev_root) / ssd_name
        if not device.exists():
            raise ConfigError(
                f"Detect `AE_SSD_NAME`: {ssd_name}\nbut `{device}` not found",
                hint="To find the name, try `lsblk`",
            )
        if not ssd_pcie_addr:
            raise ConfigError(
                "Please provide PCIe address of the SSD through environment variable "
                "`AE_SSD_PICE_ADDR` e.g. 0000:3b:00.0",
                hint=(
                    "To find the address, try `cfs/lib/spdk/scripts/gen_nvme.sh`; "
                    f"`{token}` ignores SSD_PICE_ADDR saved in ~/.ae_env.sh"
                ),
            )
        name, addr = ssd_name, ssd_pcie_addr
    else:
        name = ssd_name or entry.get("ssd_name")
        addr = ssd_pcie_addr or entry.get("ssd_pcie_addr")
        by_host = entry.get("pcie_addr_by_hostname") or {}
        if not addr and by_host:
            host = _short_hostname(hostname)
            addr = by_host.get(host)
            if not addr:
                raise ConfigError(
                    f"Unknown {token} machine `{host}`. Please provide PCIe address through "
                    "environment variable `AE_SSD_PICE_ADDR` e.g. 0000:3b:00.0",
                    hint=f"known {token} machines: {', '.join(sorted(by_host))}",
                )
        if not name or not addr:
            raise ConfigError(
                f"profile {token} defines no SSD defaults",
                hint="export AE_SSD_NAME and AE_SSD_PICE_ADDR",
            )

    freq = entry.get("cpu_max_freq_khz")
    return MachineProfile(
        name=token,
        ssd_name=str(name),
        ssd_pcie_addr=str(addr),
        mount_device=entry.get("mount_device"),
        install_exceptions=frozenset(entry.get("install_exceptions") or ()),
        best_effort=bool(entry.get("best_effort", False)),
        cpu_max_freq_khz=int(freq) if freq is not None else None,
    )
