from __future__ import annotations

import io
import signal

import procwarden as pw
import pytest
from procwarden.signals import CriticalSection, SignalDispatcher, active_dispatcher, signal_name


def blocked_signals() -> set[int]:
    return set(signal.pthread_sigmask(signal.SIG_BLOCK, []))


def test_signal_name():
    assert signal_name(signal.SIGCHLD) == "SIGCHLD"
    assert signal_name(signal.SIGTERM) == "SIGTERM"
    assert signal_name(9999) == "signal 9999"


def test_critical_section_blocks_sigchld():
    critical = CriticalSection()
    assert signal.SIGCHLD not in blocked_signals()
    with critical:
        assert signal.SIGCHLD in blocked_signals()
        with critical:
            assert critical.depth == 2
        assert signal.SIGCHLD in blocked_signals()
    assert critical.depth == 0
    assert signal.SIGCHLD not in blocked_signals()


def test_run_or_defer():
    critical = CriticalSection()
    calls: list[str] = []

    def reap():
        calls.append("reap")

    critical.run_or_defer(reap)
    assert calls == ["reap"]

    with critical:
        with critical:
            critical.run_or_defer(reap)
            critical.run_or_defer(reap)
        assert calls == ["reap"]
    assert calls == ["reap", "reap"]


def test_discard_deferred():
    critical = CriticalSection()
    calls: list[str] = []

    with critical:
        critical.run_or_defer(lambda: calls.append("reap"))
        critical.discard_deferred()
    assert calls == []


def test_deferred_runs_when_leaving_with_exception():
    critical = CriticalSection()
    calls: list[str] = []

    with pytest.raises(KeyError):
        with critical:
            critical.run_or_defer(lambda: calls.append("reap"))
            raise KeyError("x")
    assert calls == ["reap"]
    assert signal.SIGCHLD not in blocked_signals()


def test_dispatch_table():
    critical = CriticalSection()
    reaps: list[None] = []
    dispatcher = SignalDispatcher(lambda: reaps.append(None), critical)

    assert set(dispatcher.table) == {
        signal.SIGHUP,
        signal.SIGTSTP,
        signal.SIGTERM,
        signal.SIGCHLD,
    }
    with pytest.raises(TypeError):
        dispatcher.table[signal.SIGUSR1] = dispatcher.table[signal.SIGHUP]  # type: ignore

    dispatcher(signal.SIGHUP)
    dispatcher(signal.SIGTSTP)
    assert reaps == []

    dispatcher(signal.SIGCHLD)
    assert len(reaps) == 1

    with critical:
        dispatcher(signal.SIGCHLD)
        assert len(reaps) == 1
    assert len(reaps) == 2

    with pytest.raises(SystemExit) as exc_info:
        dispatcher(signal.SIGTERM)
    assert exc_info.value.code == 0


def test_handlers_do_not_log():
    output = io.StringIO()
    dispatcher = SignalDispatcher(lambda: None, CriticalSection())

    pw.LogContext.level = "debug"
    pw.logging.start_logging(file=output)
    try:
        dispatcher(signal.SIGHUP)
        dispatcher(signal.SIGTSTP)
        dispatcher(signal.SIGCHLD)
        with pytest.raises(SystemExit):
            dispatcher(signal.SIGTERM)
    finally:
        pw.logging.stop_logging()
        pw.LogContext.level = "info"

    assert output.getvalue() == ""


def test_unhandled_signal_is_fatal():
    dispatcher = SignalDispatcher(lambda: None, CriticalSection())

    with pytest.raises(SystemExit) as exc_info:
        dispatcher(signal.SIGUSR1)

    assert exc_info.value.code == pw.FATAL_EXIT_STATUS
    cause = exc_info.value.__cause__
    assert isinstance(cause, pw.UnhandledSignalError)
    assert cause.signum == signal.SIGUSR1
    assert "SIGUSR1" in str(cause)


def test_install_replaces_previous_dispatcher():
    first = pw.Supervisor()
    second = pw.Supervisor()
    try:
        assert not first.dispatcher.installed
        assert second.dispatcher.installed
        assert active_dispatcher() is second.dispatcher
        for signum in second.dispatcher.table:
            assert signal.getsignal(signum) is second.dispatcher

        # uninstalling a replaced dispatcher leaves the active one alone
        first.dispatcher.uninstall()
        assert active_dispatcher() is second.dispatcher
    finally:
        second.dispatcher.uninstall()

    assert active_dispatcher() is None
    for signum in second.dispatcher.table:
        assert signal.getsignal(signum) == signal.SIG_DFL
