from __future__ import annotations

import os
import time
import traceback
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Literal, NoReturn, overload

import click

Level = Literal["debug", "info", "warning", "error"]

levels = ["debug", "info", "warning", "error"]

_level_order = {level: i for i, level in enumerate(levels)}


@dataclass
class LogEvent:
    msg: str
    level: Level

    time: float = field(init=False)
    pid: int = field(init=False)
    role: str | None = field(init=False)

    def __post_init__(self):
        self.time = time.time()
        # The pid is captured here, as the same supervisor logs from both sides of a fork
        self.pid = os.getpid()
        self.role = LogContext.role


class LoggedError(Exception):
    event: LogEvent

    def __init__(self, event: LogEvent):
        self.event = event

    def __str__(self) -> str:
        return self.event.msg


def default_time_formatter(t: float) -> str:
    tm = time.localtime(t)
    return f"{tm.tm_hour:02d}:{tm.tm_min:02d}:{tm.tm_sec:02d}"


def default_formatter(event: LogEvent):
    time_str = LogContext.time_format(event.time)
    parts: list[str] = []
    if LogContext.app_name:
        parts.append(f"{click.style(LogContext.app_name, fg='blue')} ")
    if time_str:
        parts.append(f"{click.style(time_str, fg='green')} ")
    if event.role:
        parts.append(f"{click.style(f'{event.role}[{event.pid}]', fg='magenta')}: ")

    prefix = "".join(parts)

    formatted_lines: list[str] = []

    for line in event.msg.splitlines():
        if event.level == "debug":
            formatted_lines.append(prefix + click.style(f"DEBUG: {line}", fg="cyan"))
        elif event.level == "warning":
            formatted_lines.append(prefix + click.style(f"WARNING: {line}", fg="yellow"))
        elif event.level == "error":
            formatted_lines.append(prefix + click.style(f"ERROR: {line}", fg="red"))
        else:
            formatted_lines.append(prefix + line)
    return "\n".join(formatted_lines)


class LogContext:
    """Process wide settings to customize logging behavior.

    A forked worker inherits the settings of its master at the time of the fork.
    """

    app_name: str | None = None
    """The default formatter will prefix all log messages with this if set."""

    role: str | None = None
    """Role of the current process, displayed together with the pid.

    This is maintained by `Supervisor`, which sets it to ``"master"`` or ``"worker"``.
    """

    quiet: bool = False
    """Downgrade all info level messages to debug level messages."""

    level: Level = "info"
    """The minimum log level to display/log."""

    log_format: Callable[[LogEvent], str] = default_formatter
    """The formatter used to format log messages."""

    time_format: Callable[[float], str] = default_time_formatter
    """The formatter used by the default formatter to format the time of log messages.

    This is provided so it can be overridden with a fixed timestamp when running tests that check
    the log output.
    """


def log(*args: Any, level: Level = "info", cls: type[LogEvent] = LogEvent) -> LogEvent:
    """Produce log output.

    The message is written to all destinations registered with `start_logging`.

    :param args: The message to log, will be converted to strings and joined with spaces.
    :param level: The log level, one of "debug", "info", "warning" or "error". Defaults to "info".
        To log at a different level you can also use `log_debug`, `log_warning` or `log_error`. Note
        that `log_error` will, by default, also raise an exception.
    :param cls: Customize the event class used.
    :return: The logged event.
    """
    msg = " ".join(str(arg) for arg in args)

    if LogContext.quiet and level == "info":
        level = "debug"

    event = cls(msg=msg, level=level)

    for destination in list(_destinations):
        destination(event)

    return event


def log_debug(*args: Any, cls: type[LogEvent] = LogEvent) -> LogEvent:
    """Produce debug log output.

    This calls `log` with ``level="debug"``.
    """
    return log(*args, level="debug", cls=cls)


def log_warning(*args: Any, cls: type[LogEvent] = LogEvent) -> LogEvent:
    """Produce warning log output.

    This calls `log` with ``level="warning"``.
    """
    return log(*args, level="warning", cls=cls)


@overload
def log_error(
    *args: Any, cls: type[LogEvent] = LogEvent, raise_error: Literal[True] = True
) -> NoReturn: ...


@overload
def log_error(
    *args: Any, cls: type[LogEvent] = LogEvent, raise_error: Literal[False]
) -> LogEvent: ...


def log_error(*args: Any, cls: type[LogEvent] = LogEvent, raise_error: bool = True) -> LogEvent:
    """Produce error log output and optionally raise a `LoggedError`.

    This calls `log` with ``level="error"`` to produce the log output.

    :param raise_error: Whether to raise a `LoggedError` exception. Defaults to ``True``.
    """
    event = log(*args, level="error", cls=cls)

    if raise_error:
        raise LoggedError(event)

    return event


@overload
def log_exception(exception: BaseException, raise_error: Literal[True] = True) -> NoReturn: ...


@overload
def log_exception(exception: BaseException, raise_error: Literal[False]) -> LoggedError: ...


def log_exception(exception: BaseException, raise_error: bool = True) -> LoggedError:
    """Produce error log output for an exception and optionally raise a `LoggedError`.

    When raising a `LoggedError`, it will have the passed exception as cause, unless it already is
    a `LoggedError` in which case it will be re-raised directly.

    :param raise_error: Whether to raise a `LoggedError` exception. Defaults to ``True``.
    :return: The `LoggedError` exception that would be raised if ``raise_error`` were ``True``.
    """
    if isinstance(exception, LoggedError):
        if raise_error:
            raise exception
        return exception

    current_msg = str(exception)

    if type(exception).__module__ == "builtins":
        short_trace = traceback.format_tb(exception.__traceback__, limit=-1)
        short_trace = "".join(short_trace)
        current_msg = f"{type(exception).__name__}: {current_msg}\n{short_trace}"

    err = LoggedError(log_error(current_msg.rstrip("\n"), raise_error=False))
    err.__cause__ = exception

    if raise_error:
        raise err
    return err


_destinations: list[Callable[[LogEvent], None]] = []

_no_color = bool(os.getenv("NO_COLOR", ""))


def start_logging(
    file: IO[Any] | None = None,
    err: bool = False,
    color: bool | None = None,
) -> None:
    """Start writing log messages to a file.

    Can be called multiple times to log to multiple destinations.

    It is possible to stop logging to a destination by closing the file object passed to this
    function.

    :param file: The file to log to. Defaults to `sys.stdout` or `sys.stderr` depending on ``err``.
    :param err: Whether to log to `sys.stderr` instead of `sys.stdout`. Defaults to ``False``.
    :param color: Whether to use colors. Defaults to ``True`` for terminals and ``False`` otherwise.
        When the ``NO_COLOR`` environment variable is set, this will be ignored and no colors will
        be used.
    """
    if _no_color:
        color = False

    def log_handler(event: LogEvent):
        if file and file.closed:
            _destinations.remove(log_handler)
            return
        if _level_order[event.level] < _level_order[LogContext.level]:
            return
        formatted = LogContext.log_format(event)
        click.echo(formatted, file=file, err=err, color=color)

    _destinations.append(log_handler)


def stop_logging() -> None:
    """Remove all destinations registered with `start_logging`."""
    _destinations.clear()
