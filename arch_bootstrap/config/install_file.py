"""JSON install answer files.

An install file pre-answers the prompts so an install can run unattended:

    {
        "device": "/dev/sda",
        "boot_mode": "uefi",
        "sizes": {"boot": "1", "swap": "8", "root": "40", "home": "remaining"},
        "hostname": "archlinux",
        "username": "user",
        "timezone": "Europe/London",
        "keymap": "us",
        "locale": "en_US.UTF-8",
        "package_set": ["base", "linux"],
        "enable_bluetooth": false
    }

Passwords are rejected here: they are only ever collected interactively.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from arch_bootstrap.storage.exceptions import ConfigError

ALLOWED_KEYS = {
    "device",
    "boot_mode",
    "sizes",
    "hostname",
    "username",
    "timezone",
    "keymap",
    "locale",
    "package_set",
    "services",
    "enable_bluetooth",
}
ALLOWED_SIZE_KEYS = {"boot", "swap", "root", "home"}
SECRET_KEYS = {"password", "root_password", "user_password"}


def load_install_file(path: Path | str) -> dict[str, Any]:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as error:
        raise ConfigError(f"Install file not found: {path}") from error
    except (OSError, json.JSONDecodeError) as error:
        raise ConfigError(f"Cannot read install file {path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError(f"Install file {path} must contain a JSON object")

    secrets = SECRET_KEYS & set(data)
    if secrets:
        raise ConfigError(
            f"Install file {path} must not contain passwords ({', '.join(sorted(secrets))})"
        )

    unknown = set(data) - ALLOWED_KEYS
    if unknown:
        raise ConfigError(
            f"Unknown keys in install file {path}: {', '.join(sorted(unknown))}"
        )

    sizes = data.get("sizes", {})
    if not isinstance(sizes, dict) or set(sizes) - ALLOWED_SIZE_KEYS:
        raise ConfigError(
            f"'sizes' must be an object with keys {', '.join(sorted(ALLOWED_SIZE_KEYS))}"
        )
    data["sizes"] = {key: str(value) for key, value in sizes.items()}
    return data
