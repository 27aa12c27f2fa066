"""Field validators for install answers.

Each validator is pure: it takes the raw value, returns the normalised value
and raises ConfigError with the offending field name when the value is not
acceptable. Prompt loops and config file loading both call these, so the
rules live in one place.

Example:
    from arch_bootstrap.config.validation import validate_hostname

    try:
        hostname = validate_hostname(raw)
    except ConfigError as error:
        print(error)
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterable, Optional

from arch_bootstrap.storage.exceptions import ConfigError

HOSTNAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]*$")
KEYMAP_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
LOCALE_PATTERN = re.compile(r"^[a-z]{2,3}(_[A-Z]{2})?(\.[A-Za-z0-9-]+)?(@[a-z]+)?$")
PACKAGE_PATTERN = re.compile(r"^[a-z0-9@._+-]+$")
DEVICE_PATTERN = re.compile(r"^/dev/[A-Za-z0-9_/-]+$")

MIN_PASSWORD_LENGTH = 8
RESERVED_USERNAMES = {"root", "bin", "daemon", "nobody", "http", "mail"}


def validate_hostname(value: str) -> str:
    hostname = (value or "").strip()
    if not hostname or not HOSTNAME_PATTERN.match(hostname):
        raise ConfigError(f"Invalid hostname format: {value!r}", field="hostname")
    if len(hostname) > 63 or hostname.startswith("-") or hostname.endswith("-"):
        raise ConfigError(f"Invalid hostname format: {value!r}", field="hostname")
    return hostname


def validate_username(value: str) -> str:
    username = (value or "").strip()
    if not username or not USERNAME_PATTERN.match(username) or len(username) > 32:
        raise ConfigError(f"Invalid username format: {value!r}", field="username")
    if username in RESERVED_USERNAMES:
        raise ConfigError(f"Username {username!r} is reserved", field="username")
    return username


def validate_timezone(value: str, zoneinfo_root: Path | str = "/usr/share/zoneinfo") -> str:
    """Timezone must name a file under the zoneinfo database."""
    zone = (value or "").strip()
    if not zone or zone.startswith("/") or ".." in zone.split("/"):
        raise ConfigError(f"Invalid timezone: {value!r}", field="timezone")
    if not (Path(zoneinfo_root) / zone).is_file():
        raise ConfigError(f"Unknown timezone: {zone}", field="timezone")
    return zone


def validate_keymap(value: str, known_keymaps: Optional[Iterable[str]] = None) -> str:
    keymap = (value or "").strip()
    if not keymap or not KEYMAP_PATTERN.match(keymap):
        raise ConfigError(f"Invalid keymap: {value!r}", field="keymap")
    if known_keymaps is not None and keymap not in set(known_keymaps):
        raise ConfigError(f"Unknown keymap: {keymap}", field="keymap")
    return keymap


def validate_locale(value: str) -> str:
    locale = (value or "").strip()
    if not locale or not LOCALE_PATTERN.match(locale):
        raise ConfigError(f"Invalid locale: {value!r}", field="locale")
    return locale


def validate_password(value: str, confirmation: str | None = None, field: str = "password") -> str:
    """Passwords need a minimum length and, when given, a matching confirmation.

    The value is never echoed back in the error message.
    """
    if value is None or len(value) < MIN_PASSWORD_LENGTH:
        raise ConfigError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field=field
        )
    if confirmation is not None and confirmation != value:
        raise ConfigError("Passwords don't match", field=field)
    return value


def validate_packages(value: Iterable[str] | str) -> tuple[str, ...]:
    if isinstance(value, str):
        items = [item.strip() for item in value.replace(",", " ").split()]
    else:
        items = [str(item).strip() for item in value]
    packages: list[str] = []
    for item in items:
        if not item:
            continue
        if not PACKAGE_PATTERN.match(item):
            raise ConfigError(f"Invalid package name: {item!r}", field="package_set")
        if item not in packages:
            packages.append(item)
    if not packages:
        raise ConfigError("Package set cannot be empty", field="package_set")
    return tuple(packages)


def validate_device_path(value: str) -> str:
    """Device must be a /dev path without shell metacharacters.

    Symlinks such as /dev/disk/by-id/... resolve to the kernel node, so
    partition names and the plan hash do not depend on the alias used.
    """
    device = (value or "").strip().rstrip("/")
    if not device:
        raise ConfigError("Device cannot be empty", field="device")
    if not DEVICE_PATTERN.match(device) or ".." in device:
        raise ConfigError(f"Invalid device path: {value!r}", field="device")
    resolved = os.path.realpath(device)
    if not DEVICE_PATTERN.match(resolved):
        raise ConfigError(f"Device {value!r} resolves outside /dev: {resolved}", field="device")
    return resolved
