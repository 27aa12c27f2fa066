"""System configuration inside the installed root.

All configuration is rendered into one bash payload and piped to
``arch-chroot ROOT /bin/bash -s``. Every step in it either overwrites a file
or checks before appending, so the configure stage may run again against
the same root. Passwords travel only on stdin and are never logged.
"""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Optional

from arch_bootstrap.domain.models import BootMode, InstallConfig
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.commands import run_command
from arch_bootstrap.storage.exceptions import VerificationError


log = LoggerFactory.for_bootstrap()

EFI_DIRECTORY = "/boot/efi"
GRUB_CONFIG = "/boot/grub/grub.cfg"


def _locale_gen_line(locale: str) -> str:
    """en_US.UTF-8 -> "en_US.UTF-8 UTF-8"."""
    charset = "UTF-8"
    if "." in locale:
        charset = locale.split(".", 1)[1].split("@", 1)[0]
    return f"{locale} {charset}"


def services_for(config: InstallConfig) -> list[str]:
    services = list(config.services)
    if config.enable_bluetooth and "bluetooth" not in services:
        services.append("bluetooth")
    return services


def render_configure_payload(
    config: InstallConfig, boot_mode: BootMode, device_path: str
) -> str:
    q = shlex.quote
    hostname = config.hostname
    username = config.username
    locale_line = _locale_gen_line(config.locale)
    hosts = (
        "127.0.0.1 localhost\n"
        "::1       localhost\n"
        f"127.0.1.1 {hostname}.localdomain {hostname}\n"
    )

    if boot_mode == BootMode.UEFI:
        grub_install = (
            f"grub-install --target=x86_64-efi --efi-directory={EFI_DIRECTORY} "
            "--bootloader-id=GRUB"
        )
    else:
        grub_install = f"grub-install --target=i386-pc {q(device_path)}"

    lines = [
        "set -euo pipefail",
        "",
        "# time",
        f"ln -sf {q('/usr/share/zoneinfo/' + config.timezone)} /etc/localtime",
        "hwclock --systohc",
        "",
        "# locale and console",
        f"grep -qxF {q(locale_line)} /etc/locale.gen || echo {q(locale_line)} >> /etc/locale.gen",
        "locale-gen",
        f"echo {q('LANG=' + config.locale)} > /etc/locale.conf",
        f"echo {q('KEYMAP=' + config.keymap)} > /etc/vconsole.conf",
        "",
        "# network identity",
        f"echo {q(hostname)} > /etc/hostname",
        f"printf '%s' {q(hosts)} > /etc/hosts",
        "",
        "# users",
        f"id -u {q(username)} >/dev/null 2>&1 || useradd -m -G wheel -s /bin/bash {q(username)}",
        f"usermod -aG wheel {q(username)}",
        f"printf '%s\\n' {q('root:' + config.root_password)} | chpasswd",
        f"printf '%s\\n' {q(username + ':' + config.user_password)} | chpasswd",
        "mkdir -p /etc/sudoers.d",
        "echo '%wheel ALL=(ALL) ALL' > /etc/sudoers.d/wheel",
        "chmod 440 /etc/sudoers.d/wheel",
        "",
        "# bootloader",
        grub_install,
        f"grub-mkconfig -o {GRUB_CONFIG}",
        "",
        "# services",
        *(f"systemctl enable {q(service)}" for service in services_for(config)),
        "",
    ]
    return "\n".join(lines)


def run_configure(
    mount_root: str,
    config: InstallConfig,
    boot_mode: BootMode,
    device_path: str,
    timeout: Optional[float] = None,
) -> None:
    payload = render_configure_payload(config, boot_mode, device_path)
    log.info(
        f"Configuring {config.hostname} in {mount_root} "
        f"(timezone {config.timezone}, locale {config.locale})"
    )
    run_command(
        ["arch-chroot", mount_root, "/bin/bash", "-s"],
        input_text=payload,
        timeout=timeout,
    )


def verify_configured(mount_root: str, config: InstallConfig) -> None:
    """
    Raises:
        VerificationError: If hostname, fstab, user or grub.cfg is missing
    """
    root = Path(mount_root)

    def read(relative: str) -> str:
        try:
            return (root / relative).read_text(encoding="utf-8")
        except OSError as error:
            raise VerificationError(f"Cannot read {root / relative}: {error}") from error

    if read("etc/hostname").strip() != config.hostname:
        raise VerificationError(f"{root / 'etc/hostname'} does not name {config.hostname}")
    entries = [
        line for line in read("etc/fstab").splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]
    if not entries:
        raise VerificationError(f"{root / 'etc/fstab'} has no entries")
    users = {line.split(":", 1)[0] for line in read("etc/passwd").splitlines() if line}
    if config.username not in users:
        raise VerificationError(f"User {config.username} was not created")
    if not (root / GRUB_CONFIG.lstrip("/")).is_file():
        raise VerificationError(f"{GRUB_CONFIG} was not generated")
