"""Partition size arithmetic.

Sizes are requested in binary gigabytes (GiB, matching parted's MiB/GiB
units) or as "remaining". All arithmetic is done in integer bytes: a GB
request is multiplied by 1024**3 exactly through Decimal, then rounded down
to a whole MiB so every boundary handed to parted is MiB-aligned.

Example:
    >>> compute_layout(100 * GIB, [
    ...     SizeRequest(Role.EFI, Decimal("0.5")),
    ...     SizeRequest(Role.ROOT, REMAINING),
    ... ])
    [(1048576, 537919488), (537919488, 107374182400)]
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Sequence

from arch_bootstrap.domain.models import GIB, MIB, REMAINING, SizeRequest, SizeSpec
from arch_bootstrap.storage.exceptions import ConfigError, InsufficientSpaceError

ALIGNMENT_BYTES = MIB
MIN_REMAINING_BYTES = 64 * MIB

_SIZE_PATTERN = re.compile(
    r"^(?P<number>\d+(?:\.\d+)?)\s*(?P<unit>g|gb|gib|m|mb|mib)?$", re.IGNORECASE
)


def parse_size_spec(text: str) -> SizeSpec:
    """Parse "8", "0.5G", "512M", "512MiB" or "remaining".

    Bare numbers are gigabytes. Megabyte suffixes are converted to an exact
    fractional gigabyte value.

    Raises:
        ConfigError: If the text is not a size
    """
    value = (text or "").strip()
    if value.lower() in ("remaining", "rest", "100%"):
        return REMAINING
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ConfigError(f"Invalid size: {text!r}", field="size")
    try:
        number = Decimal(match.group("number"))
    except InvalidOperation as error:
        raise ConfigError(f"Invalid size: {text!r}", field="size") from error
    unit = (match.group("unit") or "g").lower()
    if unit.startswith("m"):
        number = number / 1024
    if number <= 0:
        raise ConfigError(f"Size must be greater than zero: {text!r}", field="size")
    return number


def gigabytes_to_bytes(size_gb: Decimal) -> int:
    """Exact GiB → bytes conversion, rounded down to a whole MiB."""
    exact = Decimal(size_gb) * GIB
    whole_bytes = int(exact)
    return whole_bytes - (whole_bytes % MIB)


def compute_layout(
    device_size_bytes: int, requests: Sequence[SizeRequest]
) -> list[tuple[int, int]]:
    """Convert ordered size requests into contiguous byte ranges.

    Args:
        device_size_bytes: Size of the target device
        requests: Ordered size requests; at most one REMAINING, and only last

    Returns:
        One ``(start, end)`` pair per request, end-exclusive, starting at the
        1 MiB alignment reserve

    Raises:
        ConfigError: If the request list is empty, a size is not positive or
            REMAINING is misplaced
        InsufficientSpaceError: If the requests do not fit on the device
    """
    if not requests:
        raise ConfigError("At least one partition must be requested", field="size")

    remaining_positions = [i for i, request in enumerate(requests) if request.is_remaining]
    if len(remaining_positions) > 1:
        raise ConfigError(
            "Only one partition may use the remaining space", field="size"
        )
    if remaining_positions and remaining_positions[0] != len(requests) - 1:
        role = requests[remaining_positions[0]].role.value
        raise ConfigError(
            f"The remaining-space partition ({role}) must be the last one",
            field="size",
        )

    sizes: list[int | None] = []
    for request in requests:
        if request.is_remaining:
            sizes.append(None)
            continue
        size_bytes = gigabytes_to_bytes(request.size)
        if size_bytes <= 0:
            raise ConfigError(
                f"Size for {request.role.value} rounds to zero: {request.size}G",
                field="size",
            )
        sizes.append(size_bytes)

    explicit_total = sum(size for size in sizes if size is not None)
    required = ALIGNMENT_BYTES + explicit_total
    if remaining_positions:
        required += MIN_REMAINING_BYTES
    if required > device_size_bytes:
        raise InsufficientSpaceError(required, device_size_bytes)

    layout: list[tuple[int, int]] = []
    cursor = ALIGNMENT_BYTES
    for size in sizes:
        end = device_size_bytes if size is None else cursor + size
        layout.append((cursor, end))
        cursor = end
    return layout


def human_size(size_bytes: int | None) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KiB", "MiB", "GiB", "TiB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PiB"


def format_mib(offset_bytes: int) -> str:
    """Render an offset as MiB when aligned, else as bytes."""
    if offset_bytes % MIB == 0:
        return f"{offset_bytes // MIB}MiB"
    return f"{offset_bytes}B"
