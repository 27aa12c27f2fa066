"""Interactive collection of install answers.

Answers that were already given (flags or install file) are validated
without prompting; missing ones are asked for. A rejected answer is asked
again up to ``MAX_ATTEMPTS`` times before the ConfigError propagates.
Passwords are always read with getpass.
"""

from __future__ import annotations

import getpass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, TypeVar

from arch_bootstrap.config import validation
from arch_bootstrap.config.settings import get_setting
from arch_bootstrap.domain.models import InstallConfig
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.services.system import list_keymaps
from arch_bootstrap.storage.exceptions import ConfigError


log = LoggerFactory.for_system()

MAX_ATTEMPTS = 3

DEFAULT_ANSWERS = {
    "hostname": "archlinux",
    "username": "user",
    "timezone": "UTC",
    "keymap": "us",
    "locale": "en_US.UTF-8",
}

T = TypeVar("T")

InputFn = Callable[[str], str]


def ask(
    prompt: str,
    validate: Callable[[str], T],
    input_fn: InputFn = input,
    default: Optional[str] = None,
    attempts: int = MAX_ATTEMPTS,
    echo: Callable[[str], None] = print,
) -> T:
    """Prompt until ``validate`` accepts the answer.

    Raises:
        ConfigError: The last validation error once attempts run out
    """
    suffix = f" (default: {default})" if default else ""
    for attempt in range(1, attempts + 1):
        raw = input_fn(f"{prompt}{suffix}: ").strip()
        if not raw and default is not None:
            raw = default
        try:
            return validate(raw)
        except ConfigError as error:
            if attempt == attempts:
                raise
            echo(f"{error} ({attempts - attempt} attempts left)")
    raise AssertionError("unreachable")


def ask_password(
    label: str,
    field: str,
    getpass_fn: Callable[[str], str] = getpass.getpass,
    attempts: int = MAX_ATTEMPTS,
    echo: Callable[[str], None] = print,
) -> str:
    for attempt in range(1, attempts + 1):
        value = getpass_fn(f"Enter {label} password: ")
        confirmation = getpass_fn(f"Confirm {label} password: ")
        try:
            return validation.validate_password(value, confirmation, field=field)
        except ConfigError as error:
            if attempt == attempts:
                raise
            echo(f"{error} ({attempts - attempt} attempts left)")
    raise AssertionError("unreachable")


def _answer(
    answers: Mapping[str, Any],
    key: str,
    prompt: str,
    validate: Callable[[str], T],
    input_fn: InputFn,
    echo: Callable[[str], None],
) -> T:
    given = answers.get(key)
    if given is not None:
        return validate(given)
    return ask(prompt, validate, input_fn=input_fn, default=DEFAULT_ANSWERS.get(key), echo=echo)


def collect_install_config(
    answers: Mapping[str, Any],
    input_fn: InputFn = input,
    getpass_fn: Callable[[str], str] = getpass.getpass,
    echo: Callable[[str], None] = print,
    zoneinfo_root: Optional[str] = None,
    known_keymaps: Optional[Iterable[str]] = None,
) -> InstallConfig:
    """Build a validated InstallConfig, prompting for whatever is missing.

    Raises:
        ConfigError: If a given answer is invalid or prompting runs out of
            attempts
    """
    zoneinfo = Path(zoneinfo_root or get_setting("zoneinfo_root", "/usr/share/zoneinfo"))
    if known_keymaps is None:
        known_keymaps = list_keymaps()
    keymaps = frozenset(known_keymaps) if known_keymaps is not None else None

    hostname = _answer(answers, "hostname", "Enter hostname",
                       validation.validate_hostname, input_fn, echo)
    username = _answer(answers, "username", "Enter username",
                       validation.validate_username, input_fn, echo)
    timezone = _answer(answers, "timezone", "Enter timezone (e.g. Europe/London)",
                       lambda value: validation.validate_timezone(value, zoneinfo),
                       input_fn, echo)
    keymap = _answer(answers, "keymap", "Enter keymap",
                     lambda value: validation.validate_keymap(value, keymaps),
                     input_fn, echo)
    locale = _answer(answers, "locale", "Enter locale",
                     validation.validate_locale, input_fn, echo)

    package_set = validation.validate_packages(
        answers.get("package_set") or get_setting("default_packages")
    )
    services = tuple(answers.get("services") or get_setting("default_services") or ())

    root_password = ask_password("root", "root_password", getpass_fn, echo=echo)
    user_password = ask_password(username, "user_password", getpass_fn, echo=echo)

    config = InstallConfig(
        hostname=hostname,
        username=username,
        timezone=timezone,
        keymap=keymap,
        locale=locale,
        package_set=package_set,
        services=services,
        enable_bluetooth=bool(answers.get("enable_bluetooth", False)),
        root_password=root_password,
        user_password=user_password,
    )
    log.debug(f"Collected install answers: {config.to_public_dict()}")
    return config


def confirm_destruction(
    summary: str, input_fn: InputFn = input, echo: Callable[[str], None] = print
) -> bool:
    """Show what will be destroyed and require a literal "yes"."""
    echo(summary)
    return input_fn("Type 'yes' to erase the device and continue: ").strip().lower() == "yes"
