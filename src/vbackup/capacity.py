"""
Destination capacity planning.

The availability gate (:func:`plan`) and the container sizing rule
(:func:`container_size_bytes`) are separate: a container is
sized for data plus overhead, while the free-space check may demand extra
proportional headroom on top of that.
"""

import math
from decimal import Decimal
from fractions import Fraction

from .models import CapacityPlan

MIB = 1024 * 1024

# Plain directory copies ask for 10% headroom over the source size
DIRECTORY_MARGIN = Fraction(1, 10)
# Containers get a fixed filesystem allowance instead of a proportional one
CONTAINER_OVERHEAD_BYTES = 128 * MIB
CONTAINER_MARGIN = Fraction(0)
ALLOCATION_UNIT = MIB


def as_ratio(value: Fraction | Decimal | int | float | str) -> Fraction:
    """
    Convert a margin to an exact fraction.

    Floats go through their shortest decimal representation so ``0.1`` means
    exactly one tenth.

    Raises
    ------
    ValueError
        If the value is negative or not a number
    """
    if isinstance(value, float):
        value = repr(value)
    try:
        ratio = Fraction(value)
    except (TypeError, ValueError, ZeroDivisionError) as e:
        raise ValueError(f"Invalid margin ratio: {value!r}") from e
    if ratio < 0:
        raise ValueError(f"Margin ratio must be non-negative, got {value}")
    return ratio


def _check_non_negative(name: str, value: int) -> None:
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")


def plan(
    source_size_bytes: int,
    available_bytes: int,
    overhead_bytes: int = 0,
    margin_ratio: Fraction | Decimal | int | float | str = 0,
) -> CapacityPlan:
    """
    Decide whether a copy of ``source_size_bytes`` fits.

    Parameters
    ----------
    source_size_bytes : int
        Bytes to be copied
    available_bytes : int
        Free bytes at the destination
    overhead_bytes : int, default=0
        Fixed allowance added before the margin
    margin_ratio : rational, default=0
        Proportional headroom, e.g. ``Fraction(1, 10)`` for 10%

    Returns
    -------
    CapacityPlan
        The computed requirement and verdict
    """
    _check_non_negative("Source size", source_size_bytes)
    _check_non_negative("Available space", available_bytes)
    _check_non_negative("Overhead", overhead_bytes)
    ratio = as_ratio(margin_ratio)

    base = source_size_bytes + overhead_bytes
    required = base + math.floor(base * ratio)

    return CapacityPlan(
        source_size_bytes=source_size_bytes,
        overhead_bytes=overhead_bytes,
        margin_ratio=ratio,
        required_bytes=required,
        available_bytes=available_bytes,
        sufficient=available_bytes >= required,
    )


def container_size_bytes(
    source_size_bytes: int,
    overhead_bytes: int = CONTAINER_OVERHEAD_BYTES,
    allocation_unit: int = ALLOCATION_UNIT,
) -> int:
    """Size of a container for the data plus overhead, rounded up to whole units."""
    _check_non_negative("Source size", source_size_bytes)
    _check_non_negative("Overhead", overhead_bytes)
    if allocation_unit <= 0:
        raise ValueError(f"Allocation unit must be positive, got {allocation_unit}")
    total = source_size_bytes + overhead_bytes
    return -(-total // allocation_unit) * allocation_unit


def format_size(size_bytes: int) -> str:
    """Human readable size for log messages."""
    if size_bytes < 1024:
        return f"{size_bytes}B"
    if size_bytes < MIB:
        return f"{size_bytes / 1024:.2f}KB"
    if size_bytes < 1024 * MIB:
        return f"{size_bytes / MIB:.2f}MB"
    return f"{size_bytes / (1024 * MIB):.2f}GB"
