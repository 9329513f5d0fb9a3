from __future__ import annotations

import os
import resource
import signal
import sys
from typing import Any, Callable, Generic, Literal, NoReturn, TypeVar, overload

from typing_extensions import ParamSpec

from . import privileges
from .admission import AdmissionGate
from .children import ChildSet
from .errors import (
    ConfigError,
    ForkError,
    IdentityError,
    NotOwnedError,
    PrivilegeError,
    SessionError,
    fatal,
)
from .identity import Identity, resolve_group, resolve_user
from .logging import LogContext, log_debug, log_exception, log_warning
from .signals import CriticalSection, SignalDispatcher, signal_name

Args = ParamSpec("Args")
E = TypeVar("E", bound=Exception)

Role = Literal["master", "worker"]


class Supervisor(Generic[Args]):
    """Forks and supervises a bounded number of worker processes.

    The work done by each worker is defined either by passing an ``on_worker`` callable to the
    constructor or by overriding the `on_worker` method in a subclass.

    A supervisor starts out as the master. Calling `fork` starts a new worker, which runs
    `on_worker` and exits, while the call returns the pid of the worker in the master. As the
    worker is a copy of the master's process, it sees the same `Supervisor` instance, now with
    its `role` set to ``"worker"`` and an empty set of children.

    Constructing a supervisor installs its `SignalDispatcher`, replacing the signal handlers of
    any previously constructed supervisor in the same process.
    """

    __role: Role
    __pid: int
    __children: ChildSet
    __killed: set[int]
    __saved_mask: set[int]
    __gate: AdmissionGate
    __max_workers: int
    __cpu_limit: int
    __cwd: os.PathLike[Any] | str
    __user: Identity | None
    __group: Identity | None

    def __init__(
        self,
        on_worker: Callable[Args, Any] | None = None,
        *,
        install_signals: bool = True,
    ):
        """
        :param on_worker: The function run by every worker, called with the arguments passed to
            `fork`.
        :param install_signals: Whether to install the signal handlers. Without them, terminated
            workers are only reaped by explicit `dispatch` calls.
        """
        if on_worker is not None:
            self.on_worker = on_worker  # type: ignore

        self.__role = "master"
        self.__pid = os.getpid()
        self.__children = ChildSet()
        self.__killed = set()
        self.__saved_mask = set()
        self.__max_workers = 0
        self.__gate = AdmissionGate(0)
        self.__cpu_limit = 0
        self.__cwd = "/"
        self.__user = None
        self.__group = None

        self.__critical = CriticalSection()
        self.dispatcher = SignalDispatcher(self._reap_after_signal, self.__critical)

        LogContext.role = self.__role

        if install_signals:
            self.dispatcher.install()

    def on_worker(self, *args: Args.args, **kwargs: Args.kwargs) -> Any:
        """Called in a newly forked worker with the arguments passed to `fork`.

        The worker process exits when this returns. Override this or pass ``on_worker`` to the
        constructor.
        """
        raise NotImplementedError(f"{type(self).__name__}.on_worker is not defined")

    @property
    def role(self) -> Role:
        return self.__role

    @property
    def is_master(self) -> bool:
        return self.__role == "master"

    @property
    def is_worker(self) -> bool:
        return self.__role == "worker"

    @property
    def pid(self) -> int:
        """The pid of the current process, updated after forking."""
        return self.__pid

    @property
    def children(self) -> tuple[int, ...]:
        """The pids of all workers that were forked and not reaped yet, oldest first."""
        return self.__children.snapshot()

    @property
    def procs(self) -> int:
        """The number of workers that were forked and not reaped yet."""
        return len(self.__children)

    @property
    def max_workers(self) -> int:
        return self.__max_workers

    @property
    def cpu_limit(self) -> int:
        return self.__cpu_limit

    @property
    def cwd(self) -> os.PathLike[Any] | str:
        return self.__cwd

    @property
    def user(self) -> Identity | None:
        return self.__user

    @property
    def group(self) -> Identity | None:
        return self.__group

    def __repr__(self):  # pragma: no cover (debug only)
        return f"<{type(self).__name__} {self.__role}[{self.__pid}] children={list(self.__children)}>"

    # Configuration

    @overload
    def set_identity(
        self,
        user: str | int | None = None,
        group: str | int | None = None,
        *,
        raise_error: Literal[True] = True,
    ) -> None: ...

    @overload
    def set_identity(
        self,
        user: str | int | None = None,
        group: str | int | None = None,
        *,
        raise_error: Literal[False],
    ) -> IdentityError | None: ...

    def set_identity(
        self,
        user: str | int | None = None,
        group: str | int | None = None,
        *,
        raise_error: bool = True,
    ) -> IdentityError | None:
        """Set the user and group that `sanitize` switches to.

        The names are resolved immediately. Passing `None` leaves the respective identity
        unchanged.

        :param raise_error: When ``False``, an unknown identity is returned instead of raised.
        :raises UnknownIdentityError: if a name cannot be resolved
        """
        try:
            uid = None if user is None else resolve_user(user)
            gid = None if group is None else resolve_group(group)
        except IdentityError as exc:
            return _result(exc, raise_error)

        if uid is not None:
            self.__user = Identity(str(user), uid)
        if gid is not None:
            self.__group = Identity(str(group), gid)
        return None

    @overload
    def set_worker_cap(self, count: int, *, raise_error: Literal[True] = True) -> None: ...

    @overload
    def set_worker_cap(self, count: int, *, raise_error: Literal[False]) -> ConfigError | None: ...

    def set_worker_cap(self, count: int, *, raise_error: bool = True) -> ConfigError | None:
        """Set the maximal number of concurrently running workers, 0 meaning unlimited.

        Workers that are already running count towards the new limit.

        :param raise_error: When ``False``, an invalid value is returned instead of raised.
        :raises ConfigError: if ``count`` is not a non-negative integer
        """
        error = _check_count("worker cap", count)
        if error is not None:
            return _result(error, raise_error)

        with self.__critical:
            self.__gate.close()
            self.__gate = AdmissionGate(count)
            self.__gate.charge(len(self.__children))
            self.__max_workers = count
        return None

    @overload
    def set_cpu_limit(self, seconds: int, *, raise_error: Literal[True] = True) -> None: ...

    @overload
    def set_cpu_limit(self, seconds: int, *, raise_error: Literal[False]) -> ConfigError | None: ...

    def set_cpu_limit(self, seconds: int, *, raise_error: bool = True) -> ConfigError | None:
        """Set the CPU time limit in seconds for each worker, 0 meaning unlimited.

        This limits consumed CPU time, not wall clock time, and is enforced by the operating
        system. It only applies to workers forked afterwards.

        :param raise_error: When ``False``, an invalid value is returned instead of raised.
        :raises ConfigError: if ``seconds`` is not a non-negative integer
        """
        error = _check_count("CPU limit", seconds)
        if error is not None:
            return _result(error, raise_error)
        self.__cpu_limit = seconds
        return None

    def set_cwd(self, path: os.PathLike[Any] | str) -> None:
        """Set the working directory that `sanitize` changes to. Defaults to ``/``."""
        self.__cwd = path

    # Process control

    def fork(self, *args: Args.args, **kwargs: Args.kwargs) -> int:
        """Start a new worker running `on_worker` with the given arguments.

        When the number of running workers reached `max_workers`, this blocks until a worker was
        reaped.

        This returns the worker's pid in the master only, the worker itself exits after
        `on_worker` is done, so any code following the call is never executed by the worker.
        """
        pid = self._spawn()
        if pid:
            return pid
        self._run_worker(args, kwargs)

    def daemonize(self) -> None:
        """Move the current process into the background.

        This forks, the original process exits with status 0, letting whoever started it continue,
        while the forked process returns from this call as the new master, without any children.
        """
        pid = self._spawn()
        if pid:
            log_debug(f"continuing in background as process {pid}")
            _flush_stdio()
            os._exit(0)

        self._restore_signals()
        self.__role = "master"
        LogContext.role = self.__role

    def drop_privileges(self) -> None:
        """Switch to the group and user set with `set_identity`.

        Failing to do so is fatal.
        """
        try:
            privileges.drop_privileges(
                uid=None if self.__user is None else self.__user.id,
                gid=None if self.__group is None else self.__group.id,
            )
        except PrivilegeError as exc:
            fatal(exc)

    def sanitize(self) -> None:
        """Detach the current process from its session and environment.

        This drops privileges (see `drop_privileges`), makes the process a session leader,
        redirects the standard streams to ``/dev/null``, changes to the configured working
        directory (if possible) and clears the file creation mask.

        Call this after `daemonize` or in a worker, as a process group leader cannot start a new
        session.
        """
        self.drop_privileges()

        try:
            os.setsid()
        except OSError as exc:
            fatal(SessionError(f"failed to become session leader: {exc}"))
        log_debug("became session leader")

        _detach_stdio()

        try:
            os.chdir(self.__cwd)
        except OSError as exc:
            log_warning(f"could not change directory to {str(self.__cwd)!r}: {exc}")

        os.umask(0)

    def kill(self, pid: int, sig: int = signal.SIGTERM) -> None:
        """Send a signal to one of our workers.

        A worker that is sent SIGKILL stops being tracked immediately.

        :raises NotOwnedError: if ``pid`` is not a running worker of this supervisor
        """
        # Reaping is postponed while inside, so pid cannot be reused by an unrelated process
        with self.__critical:
            if pid not in self.__children:
                raise NotOwnedError(pid)
            os.kill(pid, sig)
            log_debug(f"sent {signal_name(sig)} to worker {pid}")
            if sig == signal.SIGKILL and self._forget(pid):
                # Still collected by `dispatch`, without being counted as running
                self.__killed.add(pid)

    def dispatch(self, blocking: bool = False) -> int:
        """Reap terminated workers.

        :param blocking: If ``False``, reap all workers that already terminated. If ``True``, wait
            until a worker terminates and reap only that one.
        :return: The number of reaped processes. This is 0 when no worker terminated yet in
            non-blocking mode, and whenever no workers are left.
        """
        return self._reap(blocking, verbose=True)

    # Internals

    def _spawn(self) -> int:
        """Fork, returning 0 in the new process.

        SIGTERM stays blocked in the new process until `_restore_signals` is called, so the
        exception raised for it cannot surface in the caller's code.
        """
        self.__gate.acquire()
        saved_mask = signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGTERM})
        pid = -1
        try:
            with self.__critical:
                try:
                    pid = os.fork()
                except OSError as exc:
                    self.__gate.release()
                    fatal(ForkError(f"failed to fork: {exc}"))

                if pid:
                    self.__children.add(pid)
                    log_debug(f"forked worker {pid}")
                else:
                    self.__saved_mask = saved_mask
                    self._become_worker()
        finally:
            if pid != 0:
                signal.pthread_sigmask(signal.SIG_SETMASK, saved_mask)
        return pid

    def _restore_signals(self) -> None:
        signal.pthread_sigmask(signal.SIG_SETMASK, self.__saved_mask)

    def _become_worker(self) -> None:
        self.__role = "worker"
        self.__pid = os.getpid()
        self.__children = ChildSet()
        self.__killed = set()
        self.__critical.discard_deferred()
        self.__gate.reopen()
        LogContext.role = self.__role

    def _run_worker(self, args: Any, kwargs: Any) -> NoReturn:
        status = 1
        try:
            try:
                self._restore_signals()
                if self.__cpu_limit:
                    _set_cpu_limit(self.__cpu_limit)
                self.on_worker(*args, **kwargs)
                status = 0
            except SystemExit as exc:
                status = _exit_status(exc.code)
            except BaseException as exc:
                log_exception(exc, raise_error=False)
            signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGTERM})
            _flush_stdio()
        finally:
            # Never return into the caller's code or run its exit handlers
            os._exit(status)

    def _reap_after_signal(self) -> None:
        self._reap(False, verbose=False)

    def _reap(self, blocking: bool, verbose: bool) -> int:
        # Only our own workers are waited for, other children of this process are left to whoever
        # started them
        reaped = 0
        with self.__critical:
            while True:
                for pid in (*self.__children.snapshot(), *self.__killed):
                    try:
                        done, status = os.waitpid(pid, os.WNOHANG)
                    except ChildProcessError:
                        # Already collected elsewhere, so the exit status is unknown
                        self.__killed.discard(pid)
                        if self._forget(pid) and verbose:
                            log_debug(f"worker {pid} was reaped elsewhere")
                        continue
                    if not done:
                        continue
                    reaped += 1
                    self.__killed.discard(pid)
                    self._forget(pid)
                    if verbose:
                        log_debug(f"reaped process {pid} ({_describe_status(status)})")
                    if blocking:
                        return reaped
                if not blocking or not (self.__children or self.__killed):
                    return reaped
                # SIGCHLD is blocked inside the critical section, so an exit since the loop above
                # is still pending here
                signal.sigwaitinfo({signal.SIGCHLD})

    def _forget(self, pid: int) -> bool:
        if self.__children.discard(pid):
            self.__gate.release()
            return True
        return False


def _check_count(what: str, value: Any) -> ConfigError | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return ConfigError(f"{what} must be an integer, got {value!r}")
    if value < 0:
        return ConfigError(f"{what} must not be negative, got {value}")
    return None


def _result(error: E, raise_error: bool) -> E:
    if raise_error:
        raise error
    return error


def _set_cpu_limit(seconds: int) -> None:
    _soft, hard = resource.getrlimit(resource.RLIMIT_CPU)
    if hard != resource.RLIM_INFINITY:
        seconds = min(seconds, hard)
    resource.setrlimit(resource.RLIMIT_CPU, (seconds, seconds))


def _describe_status(status: int) -> str:
    if os.WIFSIGNALED(status):
        return f"killed by {signal_name(os.WTERMSIG(status))}"
    return f"exit status {os.WEXITSTATUS(status)}"


def _exit_status(code: Any) -> int:
    if code is None:
        return 0
    if isinstance(code, int):
        return code
    # Same convention as the interpreter uses for `sys.exit("message")`
    print(code, file=sys.stderr)
    return 1


def _flush_stdio() -> None:
    for stream in (sys.stdout, sys.stderr):
        if stream is not None and not stream.closed:
            stream.flush()


def _detach_stdio() -> None:
    _flush_stdio()
    null_fd = os.open(os.devnull, os.O_RDWR)
    try:
        for fd in (0, 1, 2):
            os.dup2(null_fd, fd)
    finally:
        if null_fd > 2:
            os.close(null_fd)
