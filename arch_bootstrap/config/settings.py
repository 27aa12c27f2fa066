"""Settings storage for installer configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from arch_bootstrap.logging import LoggerFactory


log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "ARCH_BOOTSTRAP_SETTINGS_PATH",
        Path.home() / ".config" / "arch-bootstrap" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_LEDGER_PATH = "/var/lib/arch-bootstrap/ledger.jsonl"
DEFAULT_MOUNT_ROOT = "/mnt"
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_PROBE_URL = "https://archlinux.org"
DEFAULT_WIPE_BYTES = 100 * 1024**2

DEFAULT_STAGE_TIMEOUTS: dict[str, float] = {
    "checks": 120,
    "wipe": 600,
    "partition": 300,
    "format": 1800,
    "mount": 120,
    "bootstrap": 3600,
    "configure": 1800,
    "unmount": 120,
}

DEFAULT_SETTINGS: dict[str, Any] = {
    "ledger_path": DEFAULT_LEDGER_PATH,
    "mount_root": DEFAULT_MOUNT_ROOT,
    "retry_attempts": DEFAULT_RETRY_ATTEMPTS,
    "retry_base_delay": 2.0,
    "retry_max_delay": 30.0,
    "stage_timeouts": dict(DEFAULT_STAGE_TIMEOUTS),
    "probe_url": DEFAULT_PROBE_URL,
    "probe_timeout": 5.0,
    "wipe_bytes": DEFAULT_WIPE_BYTES,
    "zoneinfo_root": "/usr/share/zoneinfo",
    "default_packages": [
        "base",
        "base-devel",
        "linux",
        "linux-firmware",
        "sudo",
        "networkmanager",
    ],
    "default_services": ["NetworkManager"],
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = json.loads(json.dumps(DEFAULT_SETTINGS))
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        log.warning(f"Ignoring unreadable settings file {path}: {error}")
        return
    if not isinstance(data, dict):
        log.warning(f"Ignoring settings file {path}: top level is not an object")
        return
    timeouts = data.pop("stage_timeouts", None)
    settings_store.values.update(data)
    if isinstance(timeouts, dict):
        settings_store.values["stage_timeouts"].update(timeouts)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    """Override a value for this process only (e.g. from a CLI flag)."""
    settings_store.values[key] = value


def get_stage_timeout(stage_name: str) -> float:
    timeouts = get_setting("stage_timeouts") or {}
    return float(timeouts.get(stage_name, DEFAULT_STAGE_TIMEOUTS.get(stage_name, 300)))


load_settings()
