"""Terminal logging for Disperse.

Messages are written to stderr as aligned, colored columns: a short title
(usually the service or stage name), a value (usually a path or URL) and an
optional trailing message. Categories can be silenced through the ``logger``
section of the settings.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from enum import IntFlag
from typing import Any

import click

TITLE_WIDTH = 7
VALUE_WIDTH = 71


class LogType(IntFlag):
    """Categories of log output."""

    UNKNOWN = 0
    SYSTEM = 1
    PROCESS = 2
    COMPRESS = 4
    FILE = 8
    CLOUD = 16
    IMAGE = 32
    TIME_ELAPSED = 64
    FAIL = 128


def _category_name(log_type: LogType) -> str:
    return (log_type.name or "unknown").lower()


class Logger:
    """Formats and writes log lines.

    Attributes:
        enabled: Bit mask of the categories that are written.
    """

    def __init__(self, settings: Mapping[str, Any] | None = None):
        self.enabled = LogType(0)
        for member in LogType:
            self.enabled |= member
        if settings:
            for member in LogType:
                value = settings.get(_category_name(member))
                if value is False:
                    self.enabled &= ~member

    def is_enabled(self, log_type: LogType) -> bool:
        """Return True if lines of this category are written."""
        if log_type & LogType.FAIL:
            return True
        return bool(self.enabled & log_type) or log_type == LogType.UNKNOWN

    def format_message(
        self,
        log_type: LogType,
        title: str,
        value: str | list[str] | tuple[str, str],
        message: object = None,
        color: str = "green",
    ) -> None:
        """Write one log line.

        Args:
            log_type: Category of the message.
            title: Short label such as the service name.
            value: Main text, or a ``(text, hint)`` pair shown as ``text (hint)``.
            message: Optional trailing detail, e.g. an exception.
            color: Title color.
        """
        if not self.is_enabled(log_type):
            return
        if isinstance(value, (list, tuple)):
            text, hint = value[0], value[1] if len(value) > 1 else ""
            value = f"{text} ({hint})" if hint else text
        title = title.upper()[:TITLE_WIDTH].rjust(TITLE_WIDTH)
        line = click.style(title, fg=color, bold=True) + "  " + value.ljust(VALUE_WIDTH)
        if message is not None and message != "":
            line += click.style(" " + str(message), fg="white" if color == "green" else color)
        click.echo(line.rstrip(), err=True)

    def write_fail(self, value: str | list[str] | tuple[str, str], error: object = None) -> None:
        """Write a failure line. Failures are never silenced."""
        self.format_message(LogType.FAIL, "FAIL", value, error, color="red")

    def write_time_elapsed(self, title: str, value: str, started: float) -> None:
        """Write the time elapsed since ``started`` (a ``time.monotonic()`` value)."""
        elapsed = time.monotonic() - started
        self.format_message(
            LogType.TIME_ELAPSED, title, value, f"{elapsed:.3f}s", color="cyan"
        )
