#!/usr/bin/env python3
"""Pomodoro Jam - CLI entry point."""

import asyncio
import contextlib
import getpass
import io
import logging
import os
import signal
import sys
from pathlib import Path

import click
import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__
from .client import JamConnectionError, build_relay_url
from .config import JamConfig, load_config
from .manager import JamManager
from .protocol import ConnectionState, ControlAction, JamParticipant
from .session_code import normalize_session_code
from .timer import PomodoroTimer

CONTROL_KEYS: dict[str, ControlAction] = {
    "s": ControlAction.START,
    "p": ControlAction.PAUSE,
    "r": ControlAction.RESET,
    "n": ControlAction.SKIP,
}


def _init_sentry() -> bool:
    """Initialize Sentry for error tracking."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"pomodoro-jam@{__version__}",
        traces_sample_rate=1.0 if environment == "development" else 0.2,
        integrations=[
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        server_name="pomodoro-jam",
        ignore_errors=[
            "ConnectionRefusedError",
            "ConnectionResetError",
            "TimeoutError",
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )

    sentry_sdk.set_tag("service", "pomodoro-jam")
    return True


def _configure_logging(log_level: str) -> None:
    """Configure structlog, writing to stderr so the timer display stays clean."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


_sentry_enabled = _init_sentry()


def _build_config(
    config_file: Path | None,
    server: str | None,
    name: str | None,
) -> JamConfig:
    config = load_config(config_file)

    # Override with CLI arguments if explicitly provided
    if server:
        config = config.model_copy(update={"server": server})
    if name:
        config = config.model_copy(update={"participant_name": name})
    if not config.participant_name:
        config = config.model_copy(update={"participant_name": _default_name()})

    return config


def _default_name() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return "anonymous"


def _status_line(timer: PomodoroTimer, manager: JamManager) -> str:
    role = "host" if manager.is_host else "participant"
    running = "running" if timer.running else "paused"
    people = len(manager.participants)
    return (
        f"[{timer.phase}] {timer.format_remaining()} {running}"
        f" | {role} | {people} in session | {manager.connection_state.value}"
    )


def _render(timer: PomodoroTimer, manager: JamManager) -> None:
    click.echo(f"\r{_status_line(timer, manager)}\033[K", nl=False)


def _controls_hint(is_host: bool) -> str:
    if is_host:
        return "[s]tart [p]ause [r]eset [n]ext [w]ho [1-9] transfer host [q]uit"
    return "[w]ho [q]uit"


def _describe_participants(participants: list[JamParticipant]) -> str:
    lines = []
    for index, participant in enumerate(participants, start=1):
        suffix = " (host)" if participant.is_host else ""
        lines.append(f"  {index}. {participant.name or participant.id}{suffix}")
    return "\n".join(lines) if lines else "  (nobody else yet)"


async def _handle_command(
    line: str,
    manager: JamManager,
    timer: PomodoroTimer,
    shutdown_event: asyncio.Event,
) -> None:
    """Apply one line of keyboard input."""
    key = line.strip().lower()
    if not key:
        return

    if key == "q":
        shutdown_event.set()
        return

    if key == "w":
        click.echo("\nOther participants:")
        click.echo(_describe_participants(manager.other_participants))
        return

    if key in CONTROL_KEYS:
        if not manager.is_host:
            click.echo("\nOnly the host can control the timer.")
            return
        action = CONTROL_KEYS[key]
        getattr(timer, action.value)()
        await manager.send_control(action)
        _render(timer, manager)
        return

    if key.isdigit() and key != "0":
        if not manager.is_host:
            click.echo("\nOnly the host can transfer the host role.")
            return
        others = manager.other_participants
        index = int(key) - 1
        if index >= len(others):
            click.echo(f"\nNo participant #{key}.")
            return
        target = others[index]
        click.echo(f"\nHanding host role to {target.name or target.id}...")
        await manager.transfer_host(target.id)
        return

    click.echo(f"\nUnknown command: {key}. {_controls_hint(manager.is_host)}")


async def _run_session(
    manager: JamManager,
    timer: PomodoroTimer,
    shutdown_event: asyncio.Event,
) -> None:
    """Connect and drive the timer until shutdown."""
    try:
        await manager.connect()
    except JamConnectionError as e:
        click.echo(click.style("Error: ", fg="red", bold=True) + str(e), err=True)
        return

    loop = asyncio.get_running_loop()
    commands: asyncio.Queue[str] = asyncio.Queue()
    stdin_fd: int | None = None

    def on_stdin() -> None:
        line = sys.stdin.readline()
        if line == "" and stdin_fd is not None:
            # EOF: keep running without keyboard input
            loop.remove_reader(stdin_fd)
            return
        commands.put_nowait(line)

    with contextlib.suppress(NotImplementedError, ValueError, OSError, io.UnsupportedOperation):
        fd = sys.stdin.fileno()
        loop.add_reader(fd, on_stdin)
        stdin_fd = fd

    click.echo(_controls_hint(manager.is_host))
    last_tick = loop.time()

    try:
        while not shutdown_event.is_set():
            try:
                line = await asyncio.wait_for(commands.get(), timeout=0.25)
                await _handle_command(line, manager, timer, shutdown_event)
            except TimeoutError:
                pass

            elapsed = int(loop.time() - last_tick)
            if elapsed >= 1:
                last_tick += elapsed
                if not timer.jam_mode:
                    timer.tick(elapsed)
                    _render(timer, manager)
    finally:
        if stdin_fd is not None:
            loop.remove_reader(stdin_fd)


def _run(manager: JamManager, timer: PomodoroTimer) -> None:
    """Run a session on a fresh event loop with graceful signal handling."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        click.echo("\nLeaving session...")
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(_run_session(manager, timer, shutdown_event))
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(manager.disconnect())
        if _sentry_enabled:
            sentry_sdk.flush(timeout=2.0)
        loop.close()

    click.echo("\nSession ended.")


def _make_manager(
    timer: PomodoroTimer,
    config: JamConfig,
    is_host: bool,
    session_code: str | None = None,
) -> JamManager:
    def on_state_change() -> None:
        _render(timer, manager)

    def on_connection_change(state: ConnectionState) -> None:
        if state == ConnectionState.ERROR:
            click.echo("\nLost the relay connection. Restart to try again.", err=True)
        _render(timer, manager)

    def on_host_change(is_host: bool) -> None:
        message = "You are now the host." if is_host else "You are no longer the host."
        click.echo(f"\n{message} {_controls_hint(is_host)}")

    def on_participants_change(participants: list[JamParticipant]) -> None:
        _render(timer, manager)

    manager = JamManager(
        timer=timer,
        is_host=is_host,
        participant_name=config.participant_name or "",
        session_code=session_code,
        config=config,
        on_state_change=on_state_change,
        on_participants_change=on_participants_change,
        on_connection_change=on_connection_change,
        on_host_change=on_host_change,
    )
    return manager


server_option = click.option(
    "--server",
    envvar="JAM_SERVER",
    default=None,
    help="Relay server address (overrides config file)",
)
name_option = click.option(
    "--name",
    envvar="JAM_PARTICIPANT_NAME",
    default=None,
    help="Display name shown to others (defaults to your user name)",
)
config_option = click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file",
)


@click.group()
@click.version_option(version=__version__, prog_name="pomodoro-jam")
def cli() -> None:
    """Pomodoro Jam - Shared pomodoro timer sessions.

    One host runs the timer; everyone who joins with the session code
    sees the same countdown.
    """
    pass


@cli.command()
@server_option
@name_option
@config_option
def host(server: str | None, name: str | None, config_file: Path | None) -> None:
    """Start a new session as host."""
    config = _build_config(config_file, server, name)
    _configure_logging(config.log_level)

    timer = PomodoroTimer()
    manager = _make_manager(timer, config, is_host=True)

    click.echo(
        click.style("Pomodoro Jam ", fg="cyan", bold=True)
        + click.style(f"v{__version__}", fg="cyan")
    )
    click.echo(f"  Session code: {click.style(manager.session_code, bold=True)}")
    click.echo(f"  Name: {config.participant_name}")
    click.echo(f"  Relay: {config.resolved_server()}")
    click.echo()

    _run(manager, timer)


@cli.command()
@click.argument("code")
@server_option
@name_option
@config_option
def join(code: str, server: str | None, name: str | None, config_file: Path | None) -> None:
    """Join a session using its CODE."""
    session_code = normalize_session_code(code)
    if not session_code:
        click.echo(click.style("Error: ", fg="red", bold=True) + "Session code is required.", err=True)
        sys.exit(1)

    config = _build_config(config_file, server, name)
    _configure_logging(config.log_level)

    timer = PomodoroTimer()
    manager = _make_manager(timer, config, is_host=False, session_code=session_code)

    click.echo(
        click.style("Pomodoro Jam ", fg="cyan", bold=True)
        + click.style(f"v{__version__}", fg="cyan")
    )
    click.echo(f"  Joining: {click.style(session_code, bold=True)}")
    click.echo(f"  Name: {config.participant_name}")
    click.echo(f"  Relay: {config.resolved_server()}")
    click.echo()

    _run(manager, timer)


@cli.command()
@server_option
@config_option
def check(server: str | None, config_file: Path | None) -> None:
    """Show the effective relay settings."""
    config = _build_config(config_file, server, None)

    click.echo(click.style("Jam Settings", fg="cyan", bold=True))
    click.echo()

    try:
        url = build_relay_url(
            config.resolved_server(), "CODE", "participant", config.participant_name or "", False
        )
    except ValueError as e:
        click.echo(click.style("  Relay: ", bold=True) + click.style("INVALID", fg="red") + f" ({e})")
        sys.exit(1)

    click.echo(click.style("  Relay: ", bold=True) + config.resolved_server())
    click.echo(click.style("  Room URL: ", bold=True) + url)
    click.echo(f"  State sync interval: {config.state_sync_interval_ms} ms")
    click.echo(
        f"  Reconnect: {config.max_reconnect_attempts} attempts, "
        f"base delay {config.reconnect_delay_base_ms} ms"
    )


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
