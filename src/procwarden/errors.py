from __future__ import annotations

import os
from typing import NoReturn

from .logging import log_exception

FATAL_EXIT_STATUS = os.EX_SOFTWARE
"""Exit status used when a fatal error terminates the process."""


class SupervisorError(Exception):
    """Base class for all errors raised by `procwarden`."""

    pass


class ConfigError(SupervisorError, ValueError):
    """An invalid configuration value was supplied."""

    pass


class IdentityError(SupervisorError, LookupError):
    """A requested user or group identity is not usable."""

    pass


class UnknownIdentityError(IdentityError):
    """A user or group name was not found in the system identity database."""

    kind: str
    name: str

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} {name!r} not found")


class NotOwnedError(SupervisorError):
    """Raised when trying to signal a process that is not one of our workers."""

    pid: int

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"process {pid} is not a worker of this supervisor")


class FatalError(SupervisorError):
    """Base class for errors after which the process cannot safely continue.

    These are not propagated to the caller, instead they are logged and the process exits with
    `FATAL_EXIT_STATUS`.
    """

    pass


class ForkError(FatalError):
    pass


class PrivilegeError(FatalError):
    pass


class SessionError(FatalError):
    pass


class UnhandledSignalError(FatalError):
    signum: int

    def __init__(self, signum: int, name: str):
        self.signum = signum
        super().__init__(f"unhandled signal {name}")


def fatal(error: FatalError) -> NoReturn:
    """Log a fatal error and terminate the process.

    This raises `SystemExit` with `FATAL_EXIT_STATUS`, chained from ``error``, so that ``finally``
    blocks and exit handlers still run in a master. In a worker the exit is turned into an
    immediate exit by `Supervisor.fork`.
    """
    log_exception(error, raise_error=False)
    raise SystemExit(FATAL_EXIT_STATUS) from error
