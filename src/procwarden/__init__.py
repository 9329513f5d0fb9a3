from . import logging
from .admission import AdmissionGate
from .children import ChildSet
from .errors import (
    FATAL_EXIT_STATUS,
    ConfigError,
    FatalError,
    ForkError,
    IdentityError,
    NotOwnedError,
    PrivilegeError,
    SessionError,
    SupervisorError,
    UnhandledSignalError,
    UnknownIdentityError,
)
from .identity import Identity, resolve_group, resolve_user
from .privileges import drop_privileges
from .signals import CriticalSection, SignalDispatcher, active_dispatcher, signal_name
from .supervisor import Role, Supervisor

log = logging.log
log_debug = logging.log_debug
log_warning = logging.log_warning
log_error = logging.log_error
log_exception = logging.log_exception
LogContext = logging.LogContext

__all__ = [
    "Supervisor",
    "Role",
    "SignalDispatcher",
    "CriticalSection",
    "active_dispatcher",
    "signal_name",
    "ChildSet",
    "AdmissionGate",
    "Identity",
    "resolve_user",
    "resolve_group",
    "drop_privileges",
    "SupervisorError",
    "ConfigError",
    "IdentityError",
    "UnknownIdentityError",
    "NotOwnedError",
    "FatalError",
    "ForkError",
    "PrivilegeError",
    "SessionError",
    "UnhandledSignalError",
    "FATAL_EXIT_STATUS",
    "log",
    "log_debug",
    "log_warning",
    "log_error",
    "log_exception",
    "LogContext",
]
