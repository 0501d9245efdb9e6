"""Tests for the environment profile and its export parser."""

from __future__ import annotations

from pathlib import Path

from ufs_ae.automation.env_profile import EnvProfile, parse_exports, source_line
from ufs_ae.automation.line_store import MemoryLineStore


def test_parse_exports_expands_earlier_exports_and_environ():
    lines = [
        "export EDITOR='/usr/bin/vim'",
        "alias cfgg='clang-format -i -style=Google'",
        'export KFS_MOUNT_PATH="/ssd-data"',
        'export KFS_DATA_DIR="${KFS_MOUNT_PATH}/bench"',
        'export CFS_ROOT_DIR="${HOME}/workspace/uFS"',
        'export SPDK_SRC_DIR="${CFS_ROOT_DIR}/cfs/lib/spdk"',
    ]
    exports = parse_exports(lines, {"HOME": "/home/alice"})

    assert exports == {
        "EDITOR": "/usr/bin/vim",
        "KFS_MOUNT_PATH": "/ssd-data",
        "KFS_DATA_DIR": "/ssd-data/bench",
        "CFS_ROOT_DIR": "/home/alice/workspace/uFS",
        "SPDK_SRC_DIR": "/home/alice/workspace/uFS/cfs/lib/spdk",
    }


def test_single_quotes_are_literal_and_later_lines_win():
    exports = parse_exports(["export A='${B}'", "export SSD_NAME=nvme0n1", "export SSD_NAME=nvme1n1"])
    assert exports["A"] == "${B}"
    assert exports["SSD_NAME"] == "nvme1n1"


def test_unset_reference_expands_empty():
    assert parse_exports(['export X="$NOPE/bin"'])["X"] == "/bin"


def test_profile_add_export_and_alias_are_idempotent():
    store = MemoryLineStore()
    profile = EnvProfile(store)

    assert profile.export("SSD_NAME", "nvme0n1")
    assert not profile.export("SSD_NAME", "nvme0n1")
    assert profile.alias("pyfmt", "autopep8 --in-place")
    assert not profile.add("alias pyfmt='autopep8 --in-place'")

    assert store.lines() == ["export SSD_NAME=nvme0n1", "alias pyfmt='autopep8 --in-place'"]
    assert profile.exports() == {"SSD_NAME": "nvme0n1"}


def test_source_line_uses_tilde_inside_home(tmp_path: Path):
    home = tmp_path / "home"
    assert source_line(home / ".ae_env.sh", home) == "source ~/.ae_env.sh"
    assert source_line(Path("/etc/ae_env.sh"), home) == "source /etc/ae_env.sh"
