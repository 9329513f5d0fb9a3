from __future__ import annotations

import signal
from types import FrameType, MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from .errors import UnhandledSignalError, fatal

__all__ = ["SignalDispatcher", "CriticalSection", "signal_name", "active_dispatcher"]


def signal_name(signum: int) -> str:
    """Return the name of a signal, e.g. ``"SIGCHLD"``, for use in messages."""
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class CriticalSection:
    """A reentrant section during which child state changes are not handled.

    While inside, the signals are blocked using `signal.pthread_sigmask`. Python runs signal
    handlers at some later point after the OS delivered the signal, so a handler for a signal that
    arrived just before entering can still run within the section. Such handlers have to use
    `run_or_defer`, which postpones their work until the outermost section is left.
    """

    signals: frozenset[int]
    depth: int

    def __init__(self, signals: Iterable[int] = (signal.SIGCHLD,)):
        self.signals = frozenset(signals)
        self.depth = 0
        self._deferred: list[Callable[[], Any]] = []
        self._saved_mask: set[int] | None = None

    def __enter__(self) -> None:
        if self.depth == 0:
            self._saved_mask = signal.pthread_sigmask(signal.SIG_BLOCK, self.signals)
        self.depth += 1

    def __exit__(self, *exc_info: Any) -> None:
        self.depth -= 1
        if self.depth:
            return
        assert self._saved_mask is not None
        signal.pthread_sigmask(signal.SIG_SETMASK, self._saved_mask)
        self._saved_mask = None
        while self._deferred:
            self._deferred.pop(0)()

    def run_or_defer(self, callback: Callable[[], Any]) -> None:
        """Call ``callback`` now, or when leaving the section if currently inside."""
        if self.depth:
            if callback not in self._deferred:
                self._deferred.append(callback)
        else:
            callback()

    def discard_deferred(self) -> None:
        """Drop all postponed work.

        Used in a freshly forked worker, which inherits a copy of its master's pending work.
        """
        self._deferred.clear()


_active_dispatcher: SignalDispatcher | None = None


def active_dispatcher() -> SignalDispatcher | None:
    """Return the dispatcher currently installed for this process, if any."""
    return _active_dispatcher


class SignalDispatcher:
    """Maps the signals a supervisor reacts to onto their actions.

    Signal dispositions are process wide, so there is at most one installed dispatcher per process.
    Installing a dispatcher replaces the table of the previously installed one as a whole.

    ==========  =============================================
    SIGHUP      ignored
    SIGTSTP     ignored
    SIGTERM     exit immediately, without waiting for workers
    SIGCHLD     reap terminated workers
    ==========  =============================================

    Any other signal routed to the dispatcher is a fatal `UnhandledSignalError`.
    """

    table: Mapping[int, Callable[[int], None]]

    def __init__(self, on_child: Callable[[], Any], critical: CriticalSection):
        """
        :param on_child: Called to reap terminated children after SIGCHLD.
        :param critical: Critical section that postpones ``on_child`` while the child set is being
            modified.
        """
        self._on_child = on_child
        self._critical = critical
        self.table = MappingProxyType(
            {
                signal.SIGHUP: self._ignore,
                signal.SIGTSTP: self._ignore,
                signal.SIGTERM: self._terminate,
                signal.SIGCHLD: self._child_state_changed,
            }
        )

    @property
    def installed(self) -> bool:
        return _active_dispatcher is self

    def install(self) -> None:
        global _active_dispatcher
        previous = _active_dispatcher
        if previous is not None and previous is not self:
            for signum in previous.table:
                if signum not in self.table:
                    signal.signal(signum, signal.SIG_DFL)
        for signum in self.table:
            signal.signal(signum, self)
        _active_dispatcher = self

    def uninstall(self) -> None:
        """Restore the default dispositions if this dispatcher is installed."""
        global _active_dispatcher
        if _active_dispatcher is not self:
            return
        for signum in self.table:
            signal.signal(signum, signal.SIG_DFL)
        _active_dispatcher = None

    def __call__(self, signum: int, frame: FrameType | None = None) -> None:
        try:
            action = self.table[signum]
        except KeyError:
            fatal(UnhandledSignalError(signum, signal_name(signum)))
        action(signum)

    # Handlers must not log, they can interrupt a write to the same stream

    def _ignore(self, signum: int) -> None:
        pass

    def _terminate(self, signum: int) -> None:
        raise SystemExit(0)

    def _child_state_changed(self, signum: int) -> None:
        self._critical.run_or_defer(self._on_child)
