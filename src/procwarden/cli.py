from __future__ import annotations

import itertools
import os

import click

from .errors import SupervisorError
from .logging import LogContext, log, log_error, start_logging
from .supervisor import Supervisor

COMMAND_NOT_FOUND_STATUS = 127


def exec_command(command: tuple[str, ...]) -> None:
    try:
        os.execvp(command[0], command)
    except OSError as exc:
        log_error(f"could not execute {command[0]!r}: {exc}", raise_error=False)
        raise SystemExit(COMMAND_NOT_FOUND_STATUS)


@click.command(context_settings={"ignore_unknown_options": True})
@click.option(
    "-j",
    "--workers",
    type=click.IntRange(min=0),
    default=0,
    envvar="PROCWARDEN_WORKERS",
    show_default=True,
    help="Maximal number of concurrently running workers, 0 for no limit.",
)
@click.option(
    "-n",
    "--count",
    type=click.IntRange(min=0),
    default=1,
    envvar="PROCWARDEN_COUNT",
    show_default=True,
    help="Total number of workers to start, 0 to keep starting new ones forever.",
)
@click.option(
    "--cpu-limit",
    type=click.IntRange(min=0),
    default=0,
    envvar="PROCWARDEN_CPU_LIMIT",
    help="CPU time limit per worker in seconds, 0 for no limit.",
)
@click.option("--user", envvar="PROCWARDEN_USER", help="Run as this user.")
@click.option("--group", envvar="PROCWARDEN_GROUP", help="Run as this group.")
@click.option(
    "--cwd",
    default="/",
    envvar="PROCWARDEN_CWD",
    show_default=True,
    help="Working directory when daemonized.",
)
@click.option("--daemonize", is_flag=True, help="Detach from the terminal and run in background.")
@click.option("-q", "--quiet", is_flag=True, help="Only log warnings and errors.")
@click.option("--debug", is_flag=True, help="Log debug messages.")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def main(
    workers: int,
    count: int,
    cpu_limit: int,
    user: str | None,
    group: str | None,
    cwd: str,
    daemonize: bool,
    quiet: bool,
    debug: bool,
    command: tuple[str, ...],
) -> None:
    """Run COMMAND in a pool of supervised worker processes."""
    LogContext.app_name = "procwarden"
    LogContext.quiet = quiet
    if debug:
        LogContext.level = "debug"
    start_logging(err=True)

    supervisor: Supervisor[[tuple[str, ...]]] = Supervisor(exec_command)

    try:
        supervisor.set_worker_cap(workers)
        supervisor.set_cpu_limit(cpu_limit)
        supervisor.set_identity(user=user, group=group)
    except SupervisorError as exc:
        raise click.UsageError(str(exc)) from exc
    supervisor.set_cwd(cwd)

    if daemonize:
        supervisor.daemonize()
        supervisor.sanitize()
    elif user is not None or group is not None:
        supervisor.drop_privileges()

    log(f"starting {count or 'unlimited'} workers running {' '.join(command)}")

    started = itertools.count() if count == 0 else range(count)
    for _ in started:
        supervisor.fork(command)

    while supervisor.procs:
        supervisor.dispatch(blocking=True)

    log("all workers finished")
