import asyncio

import click
from click_option_group import optgroup
from rich.console import Console
from rich.table import Table

from chamberbench.server.bg_killer import kill_bench_servers, list_running_servers
from chamberbench.util import (
    DATA_DIR,
    DEFAULT_HOST_ADDR,
    DEFAULT_LOGLEVEL,
    DEFAULT_PORT,
    SETTINGS_DIR,
)
from chamberbench.util.check_hw import get_hw_ports


def print_tree(cmd, prefix="", parent_ctx=None):
    """Print command tree starting from given command."""
    ctx = click.Context(cmd, info_name=cmd.name, parent=parent_ctx)

    # Only print root name if no parent
    if not parent_ctx:
        click.echo(cmd.name)

    for sub in sorted(cmd.list_commands(ctx)):
        sub_cmd = cmd.get_command(ctx, sub)
        click.echo(f"{prefix}└── {sub}")
        if isinstance(sub_cmd, click.Group):
            print_tree(sub_cmd, prefix + "    ", ctx)


def tree_option(f):
    """Add --tree option to command."""

    def callback(ctx, param, value):
        if not value or ctx.resilient_parsing:
            return
        print_tree(ctx.command)
        ctx.exit()

    return click.option(
        "--tree",
        is_flag=True,
        help="Show command tree from this point",
        expose_value=False,
        is_eager=True,
        callback=callback,
    )(f)


def logging_options(f):
    """Shared logging option group."""
    options = [
        optgroup.group("Logging"),
        optgroup.option(
            "--log-to-file/--no-log-to-file",
            "-ltf/",
            default=True,
            help="Enable/disable logging to file (default: enabled)",
        ),
        optgroup.option(
            "--log-to-stdout/--no-log-to-stdout",
            "-lts/",
            default=True,
            help="Enable/disable console logging (default: enabled)",
        ),
        optgroup.option(
            "--log-path",
            "-lp",
            default="",
            help="Custom path for log file (default: ~/.chamberbench/server.log)",
        ),
        optgroup.option(
            "--clear-prev-log/--no-clear-prev-log",
            "-c/",
            default=True,
            help="Clear previous log file on startup (default: enabled)",
        ),
        optgroup.option(
            "--log-level",
            "-ll",
            default=DEFAULT_LOGLEVEL,
            help="Logging level (DEBUG, INFO, WARNING, ERROR) (default: INFO)",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def settings_options(f):
    f = click.option(
        "--data-dir",
        "-d",
        default=DATA_DIR,
        help="Parent directory of the per-run report folders (default: ./Data)",
    )(f)
    f = click.option(
        "--settings-dir",
        "-s",
        default=SETTINGS_DIR,
        help="Directory holding the JSON settings files",
    )(f)
    return f


def _bench(settings_dir: str, mock: bool):
    from chamberbench.system import DRY_RUN_PROFILE, Bench, load_port_mapping

    if mock:
        return Bench.mock(chamber_profile=DRY_RUN_PROFILE, chamber_loop=True)
    return Bench.from_port_mapping(load_port_mapping(settings_dir))


def _status_table(title: str, status: dict) -> Table:
    table = Table(title=title)
    table.add_column("Device")
    table.add_column("Status")
    table.add_column("Message")
    for name, st in status.items():
        ok = "[green]+[/green]" if st["status"] else "[red]-[/red]"
        table.add_row(name, ok, str(st["message"]))
    return table


@click.group()
@tree_option
def cli():
    """chamberbench - environmental chamber test bench control.

    - Temperature-cycle and timed test runs over relay-switched devices

    - A control server with a notification stream for front ends

    - Instrument diagnostics
    """
    pass


@cli.command()
@click.option(
    "--host-address",
    "-ha",
    default=DEFAULT_HOST_ADDR,
    help="Network address to bind server to (default: localhost)",
)
@click.option(
    "--msg-port",
    "-mp",
    default=DEFAULT_PORT,
    type=int,
    help=f"Port for command/response messages (default: {DEFAULT_PORT})",
)
@click.option(
    "--notif-port",
    "-np",
    default=lambda: DEFAULT_PORT + 1,
    type=int,
    help=f"Port for server notifications (default: {DEFAULT_PORT + 1})",
)
@settings_options
@click.option("--mock", is_flag=True, default=False, help="Use mock instruments")
@logging_options
def server(**kwargs):
    """Start the bench control server.

    The server opens the instruments, then waits for power on/off requests
    and broadcasts run progress to every connected client.
    """
    from chamberbench.server.server import start_server

    kwargs["host"] = kwargs.pop("host_address")
    kwargs["data_root"] = kwargs.pop("data_dir")
    asyncio.run(start_server(**kwargs))


@cli.command()
@settings_options
@click.option("--timed/--cycle", "-t/", default=False, help="Timed mode run")
@click.option("--mock", is_flag=True, default=False, help="Use mock instruments")
@click.option(
    "--seconds-per-minute",
    type=float,
    default=60.0,
    help="Compress settings minutes for dry runs (default: 60)",
)
@click.option("--log-level", "-ll", default=DEFAULT_LOGLEVEL, help="Logging level")
def run(
    settings_dir: str,
    data_dir: str,
    timed: bool,
    mock: bool,
    seconds_per_minute: float,
    log_level: str,
):
    """Run a test in this process, printing the notification stream."""
    from chamberbench.meas import RunControl, TestCycle, TimedCycle
    from chamberbench.system import BroadcastHub, load_test_configuration
    from chamberbench.types import BenchTimings, ConfigurationError
    from chamberbench.util import start_client_log

    start_client_log(log_to_stdout=False, log_level=log_level)
    try:
        config = load_test_configuration(settings_dir)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    async def main():
        bench = _bench(settings_dir, mock)
        bench.open()
        hub = BroadcastHub()
        sub = hub.subscribe()
        rc = RunControl()
        rc.power_on()
        run_cls = TimedCycle if timed else TestCycle
        test = run_cls(
            bench,
            config,
            rc,
            hub,
            timings=BenchTimings(seconds_per_minute=seconds_per_minute),
            data_root=data_dir,
        )

        async def printer():
            while True:
                click.echo((await sub.get()).to_text())

        task = asyncio.create_task(printer())
        try:
            return await test.run()
        finally:
            await asyncio.sleep(0)
            for notif in sub.drain():
                click.echo(notif.to_text())
            task.cancel()
            bench.close()

    try:
        result = asyncio.run(main())
    except KeyboardInterrupt:
        click.echo("Interrupted")
        return
    click.echo(f"\nRun {result.status} {result.reason}".rstrip())
    for path in result.reports:
        click.echo(f"  {path}")


@cli.command()
def ports():
    """List all available serial ports."""
    found = get_hw_ports()

    click.echo("\nAvailable serial ports:")
    click.echo("-----------------------")

    if not found:
        click.echo("No serial ports found")
        click.echo("")
        return

    for port, info in found.items():
        click.echo(f"\nPort: {port}")
        if len(info) >= 2:
            description, hwid = info[:2]
            click.echo(f"Description: {description}")
            click.echo(f"Hardware ID: {hwid}")

    click.echo("")


@cli.command()
@click.option("--settings-dir", "-s", default=SETTINGS_DIR, help="Settings directory")
@click.option("--mock", is_flag=True, default=False, help="Use mock instruments")
def check(settings_dir: str, mock: bool):
    """Probe each instrument once (relay, source *IDN?, load CH1, chamber)."""
    bench = _bench(settings_dir, mock)
    console = Console(color_system="standard")
    console.print(_status_table("Open", bench.open()))
    try:
        console.print(_status_table("Check", asyncio.run(bench.check())))
    finally:
        bench.close()


@cli.command()
@click.option("--settings-dir", "-s", default=SETTINGS_DIR, help="Settings directory")
@click.option("--mock", is_flag=True, default=False, help="Use mock instruments")
def chamber(settings_dir: str, mock: bool):
    """Read the chamber temperature once."""
    bench = _bench(settings_dir, mock)
    bench.open()
    try:
        reading = asyncio.run(bench.chamber.read_temperature())
    finally:
        bench.close()
    if reading.success:
        click.echo(f"Chamber: {reading.temperature:.2f} C")
    else:
        click.echo(f"Chamber read {reading.status}: {reading.error}", err=True)


@cli.command(name="all-off")
@click.option("--settings-dir", "-s", default=SETTINGS_DIR, help="Settings directory")
@click.option("--mock", is_flag=True, default=False, help="Use mock instruments")
def all_off(settings_dir: str, mock: bool):
    """Switch every relay off (safety reset, takes ~16 s)."""
    bench = _bench(settings_dir, mock)
    bench.open()
    try:
        result = asyncio.run(bench.relays.all_off())
    finally:
        bench.close()
    if result.success:
        click.echo("All relays off")
    else:
        click.echo(f"All-off failed: {result.error}", err=True)


@cli.command()
def list():
    """List all running bench servers."""
    servers = list_running_servers()

    click.echo("\nRunning chamberbench servers:")
    click.echo("-----------------------------")

    if not servers:
        click.echo("No servers found")
        click.echo("")
        return

    for srv in servers:
        status = "(RUNNING)" if srv.get("running", False) else "(NOT RUNNING)"
        click.echo(f"\nPID: {srv['pid']} {status}")
        click.echo(f"Started: {srv['timestamp']}")
        click.echo(f"Host: {srv['host']}")
        click.echo(f"Ports: msg={srv['ports']['msg']}, notif={srv['ports']['notif']}")
    click.echo("")


@cli.command()
def kill():
    """Kill all running bench servers."""
    killed = kill_bench_servers()
    if killed:
        click.echo(f"Killed {killed} chamberbench server(s)")
    else:
        click.echo("No running chamberbench servers found")
    click.echo("")


# ============================================================================
# client requests to a running server
# ============================================================================


def connection_options(f):
    f = click.option(
        "--notif-port", "-np", default=lambda: DEFAULT_PORT + 1, type=int
    )(f)
    f = click.option("--msg-port", "-mp", default=DEFAULT_PORT, type=int)(f)
    f = click.option("--host-address", "-ha", default=DEFAULT_HOST_ADDR)(f)
    return f


def _request(host_address: str, msg_port: int, notif_port: int, func, *args, **kwargs):
    from chamberbench.server import client
    from chamberbench.types import CommsError

    try:
        conn = client.open_connection(host_address, msg_port, notif_port)
    except CommsError:
        raise click.ClickException(f"No server on {host_address}:{msg_port}")
    try:
        return func(conn, *args, **kwargs)
    except CommsError as e:
        raise click.ClickException(str(e))
    finally:
        client.close_connection(conn)


@cli.command()
@connection_options
@click.option("--timed/--cycle", "-t/", default=False, help="Timed mode run")
def on(host_address: str, msg_port: int, notif_port: int, timed: bool):
    """Power switch ON: start a run on the server."""
    from chamberbench.server.client import power_on

    click.echo(_request(host_address, msg_port, notif_port, power_on, timed=timed))


@cli.command()
@connection_options
def off(host_address: str, msg_port: int, notif_port: int):
    """Power switch OFF: stop the running test."""
    from chamberbench.server.client import power_off

    click.echo(_request(host_address, msg_port, notif_port, power_off))


@cli.command()
@connection_options
def status(host_address: str, msg_port: int, notif_port: int):
    """Show the server's run status."""
    from chamberbench.server.client import get_status

    st = _request(host_address, msg_port, notif_port, get_status)
    console = Console(color_system="standard")
    table = Table(show_header=False, box=None)
    table.add_column("Key")
    table.add_column("Value")
    for section in ("control", "run", "lastResult"):
        table.add_row(f"[bold]{section}[/bold]", "")
        for key, value in st.get(section, {}).items():
            table.add_row(f"  {key}", str(value))
    table.add_row("[bold]testRunning[/bold]", str(st.get("testRunning")))
    console.print(table)
    if st.get("devices"):
        console.print(_status_table("Devices", st["devices"]))


@cli.command()
@connection_options
def shutdown(host_address: str, msg_port: int, notif_port: int):
    """Stop any run and shut the server down."""
    from chamberbench.server.client import shutdown_server

    click.echo(_request(host_address, msg_port, notif_port, shutdown_server))
