#!/usr/bin/env python3
"""
validatorctl

Operator-facing supervisor for a single validator node. It recreates the
genesis, launches the validator as a detached background process, checks
that its RPC comes up, and offers the usual lifecycle commands. Every
command can be run again safely.
"""

import os
import time
import typer
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from typing_extensions import Annotated

from core.config import DEFAULT_CONFIG_NAME, ConfigManager, NodeConfig
from core.errors import SupervisorError
from core.procs import ProcessInspector
from core.runner import CommandRunner
from node.key_store import KeyMaterialStore
from services.health_checker import HealthChecker, HealthStatus
from services.process_supervisor import ProcessSupervisor, tail_lines
from services.rpc_client import RpcClient

cli = typer.Typer(
    name="validatorctl",
    help="Supervise a local validator: start, stop, restart, status, logs, attach, test.",
    add_completion=False,
)

FOLLOW_INTERVAL = 0.5


@dataclass
class Options:
    workdir: Path
    config_path: Optional[Path]
    overrides: Dict[str, Any] = field(default_factory=dict)
    clients: List[RpcClient] = field(default_factory=list)

    def close(self):
        while self.clients:
            self.clients.pop().close()


# --- Component Factory ---

def initialize_components(options: Options) -> Tuple[NodeConfig, CommandRunner, ProcessSupervisor, HealthChecker]:
    """Resolves the configuration and wires up the supervisor for one invocation."""
    workdir = options.workdir.resolve()
    config_path = options.config_path or workdir / DEFAULT_CONFIG_NAME

    manager = ConfigManager(config_path)
    manager.apply_overrides(**options.overrides)
    config = manager.resolve(workdir)

    runner = CommandRunner()
    rpc = RpcClient(config)
    options.clients.append(rpc)
    health = HealthChecker(rpc)
    supervisor = ProcessSupervisor(config, runner, ProcessInspector(), health)
    return config, runner, supervisor, health


def _fatal(error: SupervisorError):
    typer.secho(f"Error: {error}", fg=typer.colors.RED, bold=True, err=True)
    raise typer.Exit(code=1)


def _follow(path: Path, keep_going: Callable[[], bool]):
    """
    Prints lines appended to path until keep_going() is False or Ctrl-C.
    Starts over from the top when logrotate's copytruncate empties the file.
    """
    try:
        with open(path, "r", errors="replace") as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if line:
                    typer.echo(line, nl=False)
                    continue
                if f.tell() > os.fstat(f.fileno()).st_size:
                    f.seek(0)
                    continue
                if not keep_going():
                    return
                time.sleep(FOLLOW_INTERVAL)
    except FileNotFoundError:
        typer.secho(f"Log file not found: {path}", fg=typer.colors.RED)
    except KeyboardInterrupt:
        typer.echo()


# --- Operations ---

def run_start(options: Options, restart: bool = False):
    try:
        config, runner, supervisor, _ = initialize_components(options)
        # Keys are checked before anything is cleaned, wiped or spawned.
        keys = KeyMaterialStore(runner, config.keygen_bin).resolve(config.keys_dir)
        if restart:
            handle, status = supervisor.restart(keys)
        else:
            handle, status = supervisor.start(keys)
    except SupervisorError as e:
        _fatal(e)

    typer.secho(f"Validator PID: {handle.pid}", fg=typer.colors.GREEN)
    typer.secho(f"RPC endpoint:  {config.rpc_url} ({status.value})", fg=typer.colors.GREEN)
    typer.secho(f"Logs:          {handle.log_path}", fg=typer.colors.GREEN)


# --- CLI Commands ---

@cli.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    workdir: Annotated[Path, typer.Option(envvar="VALIDATOR_WORKDIR", help="Directory holding ledger/, keys/ and fixtures/.")] = Path("."),
    config: Annotated[Optional[Path], typer.Option("--config", envvar="VALIDATOR_CONFIG", help="YAML config file (default: <workdir>/validator.yml).")] = None,
    ledger: Annotated[Optional[Path], typer.Option(envvar="VALIDATOR_LEDGER_DIR", help="Ledger directory.")] = None,
    keys: Annotated[Optional[Path], typer.Option(envvar="VALIDATOR_KEYS_DIR", help="Key-pair directory.")] = None,
    bin_dir: Annotated[Optional[Path], typer.Option(envvar="VALIDATOR_BIN_DIR", help="Directory containing the validator binaries.")] = None,
    rpc_bind_address: Annotated[Optional[str], typer.Option(envvar="VALIDATOR_RPC_BIND_ADDRESS")] = None,
    rpc_port: Annotated[Optional[int], typer.Option(envvar="VALIDATOR_RPC_PORT")] = None,
    limit_ledger_size: Annotated[Optional[int], typer.Option(envvar="VALIDATOR_LIMIT_LEDGER_SIZE")] = None,
    stake_lamports: Annotated[Optional[int], typer.Option(envvar="VALIDATOR_STAKE_LAMPORTS", help="Initial validator stake.")] = None,
    faucet_lamports: Annotated[Optional[int], typer.Option(envvar="VALIDATOR_FAUCET_LAMPORTS")] = None,
):
    """Runs `start` when no command is given."""
    ctx.obj = Options(
        workdir=workdir,
        config_path=config,
        overrides={
            "ledger_dir": ledger,
            "keys_dir": keys,
            "bin_dir": bin_dir,
            "rpc_bind_address": rpc_bind_address,
            "rpc_port": rpc_port,
            "limit_ledger_size": limit_ledger_size,
            "stake_lamports": stake_lamports,
            "faucet_lamports": faucet_lamports,
        },
    )
    ctx.call_on_close(ctx.obj.close)
    if ctx.invoked_subcommand is None:
        run_start(ctx.obj)


@cli.command()
def start(ctx: typer.Context):
    """Cleans up, recreates genesis and launches the validator."""
    run_start(ctx.obj)


@cli.command()
def restart(ctx: typer.Context):
    """Stops the validator, then starts it again from a fresh genesis."""
    run_start(ctx.obj, restart=True)


@cli.command()
def stop(ctx: typer.Context):
    """Stops the validator if it is running."""
    try:
        _, _, supervisor, _ = initialize_components(ctx.obj)
        stopped = supervisor.stop()
    except SupervisorError as e:
        _fatal(e)
    if stopped:
        typer.secho("Validator stopped.", fg=typer.colors.GREEN)
    else:
        typer.secho("Validator not running.", fg=typer.colors.YELLOW)


@cli.command()
def status(ctx: typer.Context):
    """Reports process liveness and RPC health as the OS sees them right now."""
    try:
        config, _, supervisor, health = initialize_components(ctx.obj)
        handle = supervisor.probe()
    except SupervisorError as e:
        _fatal(e)

    if handle.live:
        typer.secho(f"Validator is running (PID: {handle.pid})", fg=typer.colors.GREEN)
        typer.secho(f"  Logs: {handle.log_path}", dim=True)
        if health.check() is HealthStatus.RESPONDING:
            typer.secho(f"RPC is responding at {config.rpc_url}", fg=typer.colors.GREEN)
        else:
            typer.secho(f"RPC not responding at {config.rpc_url}", fg=typer.colors.YELLOW)
    elif handle.stale:
        typer.secho(f"Validator not running (stale PID {handle.pid})", fg=typer.colors.RED)
    else:
        typer.secho("Validator not running", fg=typer.colors.RED)


@cli.command()
def logs(
    ctx: typer.Context,
    lines: Annotated[int, typer.Option("--lines", "-n", help="Number of lines to show.")] = 50,
    follow: Annotated[bool, typer.Option("--follow", "-f", help="Keep printing new lines.")] = False,
):
    """Shows the validator log."""
    try:
        config, _, _, _ = initialize_components(ctx.obj)
    except SupervisorError as e:
        _fatal(e)

    log_file = config.log_file
    if not log_file.exists():
        typer.secho(f"Log file not found: {log_file}", fg=typer.colors.RED)
        return
    for line in tail_lines(log_file, lines):
        typer.echo(line)
    if follow:
        _follow(log_file, lambda: True)


@cli.command()
def attach(ctx: typer.Context):
    """Follows the running validator's output. Ctrl-C detaches; the validator keeps running."""
    try:
        _, _, supervisor, _ = initialize_components(ctx.obj)
        handle = supervisor.probe()
    except SupervisorError as e:
        _fatal(e)

    if not handle.live:
        typer.secho("Validator not running; nothing to attach to.", fg=typer.colors.YELLOW)
        return

    typer.secho(
        f"Attached to session '{handle.session_name}' (PID {handle.pid}). Press Ctrl-C to detach.",
        fg=typer.colors.CYAN,
    )
    for line in tail_lines(handle.log_path, 20):
        typer.echo(line)
    _follow(handle.log_path, lambda: supervisor.inspector.is_alive(handle.pid))
    typer.secho("Detached.", dim=True)


@cli.command()
def test(ctx: typer.Context):
    """Runs the getHealth, getSlot and getVersion probes against the RPC endpoint."""
    try:
        config, _, _, health = initialize_components(ctx.obj)
    except SupervisorError as e:
        _fatal(e)

    typer.secho(f"Testing RPC at {config.rpc_url}", fg=typer.colors.CYAN)
    for result in health.run_probes():
        if result.ok:
            typer.secho(f"  [PASS] {result.method}: {result.value}", fg=typer.colors.GREEN)
        else:
            typer.secho(f"  [FAIL] {result.method}: {result.error}", fg=typer.colors.RED)


if __name__ == "__main__":
    cli()
