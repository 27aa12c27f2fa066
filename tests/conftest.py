"""
Pytest configuration and shared fixtures for arch-bootstrap tests.

This module provides common fixtures and utilities used across all test modules.
"""

import json
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict
from unittest.mock import Mock

import pytest

from arch_bootstrap.config import settings
from arch_bootstrap.domain.models import (
    GIB,
    REMAINING,
    BootMode,
    DeviceInfo,
    InstallConfig,
    Role,
    SizeRequest,
)
from arch_bootstrap.pipeline.ledger import ProgressLedger
from arch_bootstrap.storage.plan import PlanBuilder


# ==============================================================================
# Device Fixtures
# ==============================================================================


def make_inspector(device_path: str = "/dev/sda", size_bytes: int = 100 * GIB) -> Mock:
    """Inspector stand-in that reports one healthy, unmounted disk."""
    inspector = Mock()
    inspector.inspect.return_value = DeviceInfo(
        path=device_path,
        size_bytes=size_bytes,
        is_block_device=True,
        is_mounted=False,
        existing_partition_table=None,
        model="QEMU HARDDISK",
    )
    return inspector


@pytest.fixture
def fake_inspector() -> Mock:
    return make_inspector()


@pytest.fixture
def mock_lsblk_disk() -> Dict[str, Any]:
    """lsblk JSON node for a 100 GiB disk with two partitions."""
    return {
        "name": "sda",
        "path": "/dev/sda",
        "type": "disk",
        "size": 100 * GIB,
        "ro": False,
        "pttype": "gpt",
        "mountpoint": None,
        "fstype": None,
        "model": "QEMU HARDDISK   ",
        "children": [
            {
                "name": "sda1",
                "path": "/dev/sda1",
                "type": "part",
                "size": 512 * 1024**2,
                "ro": False,
                "mountpoint": None,
                "fstype": "vfat",
            },
            {
                "name": "sda2",
                "path": "/dev/sda2",
                "type": "part",
                "size": 99 * GIB,
                "ro": False,
                "mountpoint": None,
                "fstype": "ext4",
            },
        ],
    }


@pytest.fixture
def mock_lsblk_output(mock_lsblk_disk) -> str:
    return json.dumps({"blockdevices": [mock_lsblk_disk]})


# ==============================================================================
# Plan Fixtures
# ==============================================================================


EXAMPLE_REQUESTS = [
    SizeRequest(Role.EFI, Decimal("0.5")),
    SizeRequest(Role.SWAP, Decimal("8")),
    SizeRequest(Role.ROOT, Decimal("50")),
    SizeRequest(Role.HOME, REMAINING),
]


@pytest.fixture
def uefi_plan(fake_inspector):
    """UEFI plan on a 100 GiB /dev/sda: EFI 0.5G, swap 8G, root 50G, home rest."""
    return PlanBuilder(fake_inspector).build("/dev/sda", BootMode.UEFI, EXAMPLE_REQUESTS)


@pytest.fixture
def bios_plan(fake_inspector):
    """BIOS plan on a 100 GiB /dev/sda: bios_grub 1M, swap 8G, root rest."""
    requests = [
        SizeRequest(Role.BIOS_BOOT, Decimal(1) / 1024),
        SizeRequest(Role.SWAP, Decimal("8")),
        SizeRequest(Role.ROOT, REMAINING),
    ]
    return PlanBuilder(fake_inspector).build("/dev/sda", BootMode.BIOS, requests)


# ==============================================================================
# Install Answer Fixtures
# ==============================================================================


@pytest.fixture
def install_config() -> InstallConfig:
    return InstallConfig(
        hostname="archbox",
        username="alice",
        timezone="Europe/London",
        keymap="us",
        locale="en_US.UTF-8",
        package_set=("base", "linux", "linux-firmware"),
        services=("NetworkManager",),
        enable_bluetooth=False,
        root_password="rootpass123",
        user_password="userpass123",
    )


@pytest.fixture
def zoneinfo_root(tmp_path) -> Path:
    """Minimal zoneinfo tree with UTC and Europe/London."""
    root = tmp_path / "zoneinfo"
    (root / "Europe").mkdir(parents=True)
    (root / "UTC").write_bytes(b"TZif")
    (root / "Europe" / "London").write_bytes(b"TZif")
    return root


# ==============================================================================
# Ledger Fixtures
# ==============================================================================


@pytest.fixture
def ledger_path(tmp_path) -> Path:
    return tmp_path / "state" / "ledger.jsonl"


@pytest.fixture
def ledger(ledger_path) -> ProgressLedger:
    return ProgressLedger(ledger_path)


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always succeeds.

    Returns:
        Mock object for subprocess.run.
    """
    mock_result = Mock()
    mock_result.returncode = 0
    mock_result.stdout = ""
    mock_result.stderr = ""
    return mocker.patch("subprocess.run", return_value=mock_result)


# ==============================================================================
# Settings Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def default_settings(tmp_path):
    """
    Auto-use fixture that loads built-in defaults before each test.

    This keeps a settings file on the developer's machine from leaking into
    test results.
    """
    settings.load_settings(tmp_path / "no-settings.json")
    yield
    settings.load_settings(tmp_path / "no-settings.json")
