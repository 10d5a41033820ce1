# Overview: Ticket numbering codec; maps zero-based ticket indices to display numbers and back.

"""
Numbering codec.

    display = prefix + pad(start + index * step, pad_width, pad_char) + suffix

parse_number() recovers the index from the longest run of digits in a
string, so a display number still resolves when it is embedded in a larger
identifier (e.g. "RIFA-0042-2025"). validate_config() rejects every
configuration for which that recovery would not be a bijection over
[0, total_tickets).
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from ..errors import NumberingConfigError


DIGIT_RUN = re.compile(r"\d+")
MIN_AUTO_PAD_WIDTH = 3


@dataclass(frozen=True)
class NumberingConfig:
    pad_width: int
    pad_char: str = "0"
    prefix: str = ""
    suffix: str = ""
    start: int = 1
    step: int = 1

    @classmethod
    def for_raffle(cls, raffle) -> "NumberingConfig":
        return cls(
            pad_width=raffle.number_pad_width,
            pad_char=raffle.number_pad_char or "0",
            prefix=raffle.number_prefix or "",
            suffix=raffle.number_suffix or "",
            start=raffle.number_start,
            step=raffle.number_step,
        )


def largest_display_value(total_tickets: int, start: int = 1, step: int = 1) -> int:
    return start + (total_tickets - 1) * step


def auto_pad_width(total_tickets: int, start: int = 1, step: int = 1) -> int:
    """Pad width used when the organizer leaves it on automatic."""
    return max(MIN_AUTO_PAD_WIDTH, len(str(largest_display_value(total_tickets, start, step))))


def validate_config(config: NumberingConfig, total_tickets: int) -> None:
    """
    Raise NumberingConfigError unless config is a bijection over total_tickets.
    """
    if total_tickets < 1:
        raise NumberingConfigError("total_tickets must be at least 1")
    if config.step <= 0:
        raise NumberingConfigError("step must be a positive integer")
    if config.start < 0:
        raise NumberingConfigError("start must not be negative")

    required = len(str(largest_display_value(total_tickets, config.start, config.step)))
    if config.pad_width < required:
        raise NumberingConfigError(
            f"pad_width {config.pad_width} cannot hold {total_tickets} tickets (needs {required} digits)"
        )

    if len(config.pad_char) != 1:
        raise NumberingConfigError("pad_char must be a single character")
    if config.pad_char.isdigit() and config.pad_char != "0":
        raise NumberingConfigError("pad_char may only be '0' or a non-digit character")

    # Digits touching the number would merge into its digit run
    if config.prefix and config.prefix[-1].isdigit():
        raise NumberingConfigError("prefix must not end with a digit")
    if config.suffix and config.suffix[0].isdigit():
        raise NumberingConfigError("suffix must not start with a digit")

    # Shortest digit run the number itself can produce
    shortest = config.pad_width if config.pad_char == "0" else len(str(config.start))
    for part in (config.prefix, config.suffix):
        for run in DIGIT_RUN.findall(part):
            if len(run) >= shortest:
                raise NumberingConfigError(
                    "prefix and suffix digit groups must be shorter than the ticket number"
                )


def format_number(index: int, config: NumberingConfig) -> str:
    if index < 0:
        raise ValueError("ticket index must not be negative")
    value = config.start + index * config.step
    return f"{config.prefix}{str(value).rjust(config.pad_width, config.pad_char)}{config.suffix}"


def parse_number(display: str, config: NumberingConfig, total_tickets: int | None = None) -> int | None:
    """
    Recover the ticket index from a display string.

    Returns None (not found) when the string holds no digits, the number does
    not sit on the start/step grid, or the index is outside total_tickets.
    """
    if not display:
        return None

    runs = DIGIT_RUN.findall(display)
    if not runs:
        return None
    # max() keeps the first of equally long runs
    value = int(max(runs, key=len))

    offset = value - config.start
    if offset < 0 or offset % config.step:
        return None
    index = offset // config.step

    if total_tickets is not None and index >= total_tickets:
        return None
    return index
