import argparse
import json
import signal
import sys
from pathlib import Path

from arch_bootstrap.__version__ import __version__
from arch_bootstrap.app.prompts import ask, collect_install_config, confirm_destruction
from arch_bootstrap.config import settings
from arch_bootstrap.config.install_file import load_install_file
from arch_bootstrap.config.validation import validate_device_path
from arch_bootstrap.domain.models import BootMode
from arch_bootstrap.logging import LoggerFactory, setup_logging
from arch_bootstrap.pipeline.executor import StageExecutor
from arch_bootstrap.pipeline.ledger import ProgressLedger
from arch_bootstrap.services.system import detect_boot_mode
from arch_bootstrap.storage.exceptions import (
    EXIT_CANCELLED,
    EXIT_OK,
    EXIT_UNEXPECTED,
    ConfigError,
    InstallerError,
    StageFailure,
)
from arch_bootstrap.storage.devices import list_candidate_disks
from arch_bootstrap.storage.plan import PlanBuilder, default_requests
from arch_bootstrap.storage.sizing import format_mib, human_size, parse_size_spec


log = LoggerFactory.for_system()

SIZE_OPTIONS = ("boot", "swap", "root", "home")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="arch-bootstrap",
        description="Resumable Arch Linux disk provisioning and bootstrap",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (very verbose)")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--ledger", help="Progress ledger path")

    target = argparse.ArgumentParser(add_help=False)
    target.add_argument("--device", help="Target disk, e.g. /dev/sda")
    target.add_argument("--boot-mode", choices=["auto", "uefi", "bios"], default=None)
    target.add_argument("--boot-size", help="Boot partition size in GB")
    target.add_argument("--swap", help="Swap size in GB, or 'none'")
    target.add_argument("--root", help="Root size in GB, or 'remaining'")
    target.add_argument("--home", help="Home size in GB, 'remaining' or 'none'")
    target.add_argument("--config", help="JSON install file with pre-filled answers")

    subparsers = parser.add_subparsers(dest="command", required=True)
    plan = subparsers.add_parser("plan", parents=[target], help="Show the partition plan")
    plan.add_argument("--json", action="store_true", help="Print the plan as JSON")
    subparsers.add_parser("status", parents=[target], help="Show ledger progress for the plan")

    install = subparsers.add_parser("install", parents=[target], help="Run the install pipeline")
    install.add_argument("--hostname")
    install.add_argument("--username")
    install.add_argument("--timezone")
    install.add_argument("--keymap")
    install.add_argument("--locale")
    install.add_argument("--packages", help="Comma-separated package set")
    install.add_argument("--bluetooth", action="store_true", default=None,
                         help="Install and enable bluetooth")
    install.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    return parser


def gather_answers(args):
    """Install file answers overridden by command line flags."""
    answers = load_install_file(args.config) if args.config else {"sizes": {}}
    for key in ("hostname", "username", "timezone", "keymap", "locale"):
        value = getattr(args, key, None)
        if value is not None:
            answers[key] = value
    if getattr(args, "packages", None):
        answers["package_set"] = args.packages
    if getattr(args, "bluetooth", None):
        answers["enable_bluetooth"] = True
    if args.device:
        answers["device"] = args.device
    if args.boot_mode:
        answers["boot_mode"] = args.boot_mode
    sizes = answers.setdefault("sizes", {})
    for key in SIZE_OPTIONS:
        value = getattr(args, "boot_size" if key == "boot" else key)
        if value is not None:
            sizes[key] = value
    return answers


def resolve_boot_mode(value):
    if value in (None, "auto"):
        return detect_boot_mode()
    try:
        return BootMode(value)
    except ValueError as error:
        raise ConfigError(f"Invalid boot mode: {value!r}", field="boot_mode") from error


def _size(value, allow_none=False):
    if value is None:
        return None
    if str(value).strip().lower() in ("none", "no", "0"):
        if not allow_none:
            raise ConfigError(f"This partition cannot be omitted: {value!r}", field="size")
        return False
    return parse_size_spec(str(value))


def build_requests(sizes, boot_mode):
    kwargs = {}
    boot = _size(sizes.get("boot"))
    if boot is not None:
        kwargs["boot"] = boot
    root = _size(sizes.get("root"))
    if root is not None:
        kwargs["root"] = root
    for key in ("swap", "home"):
        value = _size(sizes.get(key), allow_none=True)
        if value is False:
            kwargs[key] = None
        elif value is not None:
            kwargs[key] = value
    return default_requests(boot_mode, **kwargs)


def show_candidate_disks(echo=print):
    disks = list_candidate_disks()
    if not disks:
        return
    echo("Available disks:")
    for disk in disks:
        echo(f"  {disk.format_label()}")


def build_plan(answers, input_fn=input, echo=print):
    device = answers.get("device")
    if device:
        device = validate_device_path(device)
    else:
        show_candidate_disks(echo)
        device = ask("Enter target disk (e.g. /dev/sda)", validate_device_path,
                     input_fn=input_fn, echo=echo)
    boot_mode = resolve_boot_mode(answers.get("boot_mode"))
    requests = build_requests(answers.get("sizes") or {}, boot_mode)
    return PlanBuilder().build(device, boot_mode, requests)


def describe_plan(plan):
    lines = [
        f"Plan {plan.short_hash} for {plan.device_path} "
        f"({human_size(plan.device_size_bytes)}, {plan.boot_mode.value.upper()}, {plan.table})",
    ]
    for spec in plan.partitions:
        flags = ",".join(sorted(flag.value for flag in spec.flags)) or "-"
        lines.append(
            f"  {spec.number}  {spec.role.label:<5} {spec.filesystem.value:<6} "
            f"{format_mib(spec.start_offset_bytes):>12} - {format_mib(spec.end_offset_bytes):<12} "
            f"{human_size(spec.size_bytes):>10}  flags={flags}"
        )
    return "\n".join(lines)


def print_progress(stage_name, status):
    print(f"[{stage_name}] {status}", flush=True)


def run_plan(args, answers, ledger):
    plan = build_plan(answers)
    if args.json:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(describe_plan(plan))
    return EXIT_OK


def run_status(args, answers, ledger):
    plan = build_plan(answers)
    executor = StageExecutor(plan, ledger)
    print(f"Plan {plan.short_hash} ({'confirmed' if executor.is_confirmed() else 'not confirmed'})")
    for stage_name, status in executor.status():
        print(f"  {stage_name:<10} {status.value}")
    return EXIT_OK


def run_install(args, answers, ledger):
    plan = build_plan(answers)
    print(describe_plan(plan))
    config = collect_install_config(answers)
    executor = StageExecutor(plan, ledger, config=config, on_progress=print_progress)

    def confirm(candidate):
        if args.yes:
            return True
        return confirm_destruction(
            f"ALL DATA ON {candidate.device_path} WILL BE DESTROYED."
        )

    executor.adopt_plan(confirm)
    executor.run()
    print(f"Installation complete. Ledger: {ledger.path}")
    return EXIT_OK


COMMANDS = {
    "plan": run_plan,
    "status": run_status,
    "install": run_install,
}


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def report_failure(error, ledger_path):
    stage = getattr(error, "stage_name", None)
    cause = getattr(error, "cause", error)
    if stage:
        print(f"Stage: {stage}", file=sys.stderr)
    print(f"Error: {cause}", file=sys.stderr)
    print(f"Ledger: {ledger_path}", file=sys.stderr)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    signal.signal(signal.SIGTERM, _raise_interrupt)

    if args.ledger:
        settings.set_setting("ledger_path", args.ledger)
    ledger_path = settings.get_setting("ledger_path")
    ledger = ProgressLedger(ledger_path)

    try:
        answers = gather_answers(args)
        return COMMANDS[args.command](args, answers, ledger)
    except KeyboardInterrupt:
        log.warning("Cancelled by user")
        print("Cancelled.", file=sys.stderr)
        print(f"Ledger: {ledger_path}", file=sys.stderr)
        return EXIT_CANCELLED
    except StageFailure as error:
        log.error(f"Stage {error.stage_name} failed: {error.cause}")
        report_failure(error, ledger_path)
        return error.exit_code
    except InstallerError as error:
        log.error(str(error))
        report_failure(error, ledger_path)
        return error.exit_code
    except Exception as error:
        log.exception(f"Unexpected error: {error}")
        report_failure(error, ledger_path)
        return EXIT_UNEXPECTED


if __name__ == "__main__":
    sys.exit(main())
