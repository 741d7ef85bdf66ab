import enum
import os
import subprocess
import typer
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from core.config import NodeConfig
from core.errors import ContentionError, GenesisError, LaunchError, SupervisorError
from core.procs import SESSION_ENV, ProcessInspector
from core.runner import CommandRunner
from node.genesis import GenesisBootstrapper, GenesisSpec
from node.key_store import KeySet
from services.health_checker import HealthChecker, HealthStatus, RetryPolicy

LOGROTATE_TEMPLATE = """{ledger_dir}/solana-validator-*.log {{
    daily
    rotate {keep}
    compress
    missingok
    notifempty
    copytruncate
}}
"""


class SupervisorState(enum.Enum):
    STOPPED = "stopped"
    CLEANING = "cleaning"
    GENESIS_PENDING = "genesis pending"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessHandle:
    session_name: str
    pid: Optional[int]
    log_path: Path
    live: bool = False

    @property
    def stale(self) -> bool:
        return self.pid is not None and not self.live


def read_pid_file(path: Path) -> Optional[int]:
    try:
        text = path.read_text().strip()
    except FileNotFoundError:
        return None
    try:
        pid = int(text.splitlines()[0]) if text else None
    except ValueError:
        return None
    return pid if pid and pid > 0 else None


def write_pid_file(path: Path, pid: int):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(f"{pid}\n")
    tmp.replace(path)


def tail_lines(path: Path, count: int) -> List[str]:
    if count <= 0 or not path.exists():
        return []
    with open(path, "r", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=count)]


class ProcessSupervisor:
    """
    Owns the validator's lifecycle for one ledger directory.

    Nothing is carried between invocations: the PID file is read back and
    checked against the OS every time, and the state starts at STOPPED.
    """

    def __init__(
        self,
        config: NodeConfig,
        runner: CommandRunner,
        inspector: ProcessInspector,
        health: HealthChecker,
        bootstrapper: Optional[GenesisBootstrapper] = None,
    ):
        self.config = config
        self.runner = runner
        self.inspector = inspector
        self.health = health
        self.bootstrapper = bootstrapper or GenesisBootstrapper(runner, config.genesis_bin)
        self.state = SupervisorState.STOPPED

    def _transition(self, state: SupervisorState):
        typer.secho(f"  [SUPERVISOR] {self.state.value} -> {state.value}", dim=True)
        self.state = state

    def _fail(self, error: SupervisorError):
        self._transition(SupervisorState.FAILED)
        typer.secho(f"[SUPERVISOR] {error}", fg=typer.colors.RED, bold=True)

    def probe(self) -> ProcessHandle:
        """Reads the PID file and asks the OS whether that process is our validator."""
        pid = read_pid_file(self.config.pid_file)
        live = (
            pid is not None
            and self.inspector.is_alive(pid)
            and self.inspector.runs_binary(pid, self.config.validator_bin)
        )
        self.state = SupervisorState.RUNNING if live else SupervisorState.STOPPED
        return ProcessHandle(self.config.session_name, pid, self.config.log_file, live)

    def _remove_pid_file(self):
        self.config.pid_file.unlink(missing_ok=True)

    # --- Cleaning ---

    def cleanup(self):
        """
        Clears everything that could collide with a fresh start: the recorded
        validator, any leftover session processes and whoever holds the RPC
        port. Nothing to clean is fine.
        """
        self._transition(SupervisorState.CLEANING)
        timeout = self.config.stop_timeout
        try:
            handle = self.probe()
            self.state = SupervisorState.CLEANING
            if handle.live:
                typer.secho(f"  [SUPERVISOR] Terminating running validator (PID {handle.pid})...", fg=typer.colors.YELLOW)
                self.inspector.terminate(handle.pid, timeout, resource=f"validator PID {handle.pid}")
            self._remove_pid_file()

            for pid in self.inspector.session_members(self.config.session_name):
                typer.secho(
                    f"  [SUPERVISOR] Destroying stale session '{self.config.session_name}' member (PID {pid})...",
                    fg=typer.colors.YELLOW,
                )
                self.inspector.terminate(pid, timeout, resource=f"session '{self.config.session_name}'")

            port = self.config.rpc_port
            for pid in self.inspector.port_holders(port):
                if pid is None:
                    raise ContentionError(f"port {port}", "the listening process is not visible to this user")
                typer.secho(f"  [SUPERVISOR] Reclaiming port {port} from PID {pid}...", fg=typer.colors.YELLOW)
                self.inspector.terminate(pid, timeout, resource=f"port {port}")
        except ContentionError as e:
            self._fail(e)
            raise

    # --- Starting ---

    def launch_args(self) -> List[str]:
        c = self.config
        args = [
            str(c.validator_bin),
            "--ledger", str(c.ledger_dir),
            "--identity", str(c.key_path("identity")),
            "--vote-account", str(c.key_path("vote")),
            "--no-port-check",
            "--no-wait-for-vote-to-start-leader",
            "--limit-ledger-size", str(c.limit_ledger_size),
            "--full-rpc-api",
            "--enable-rpc-transaction-history",
        ]
        for index in c.account_indexes:
            args += ["--account-index", index]
        args += [
            "--rpc-bind-address", c.rpc_bind_address,
            "--rpc-port", str(c.rpc_port),
            "--snapshot-interval-slots", str(c.snapshot_interval_slots),
            "--use-snapshot-archives-at-startup", "always",
            "--log", "-",
        ]
        return args + list(c.extra_args)

    def launch(self) -> ProcessHandle:
        """Spawns the validator detached, records its PID and checks it survived the first moments."""
        self._transition(SupervisorState.STARTING)
        log_file = self.config.log_file
        typer.secho(f"[SUPERVISOR] Launching validator from {self.config.ledger_dir}...", fg=typer.colors.CYAN)

        try:
            proc = self.runner.spawn(
                self.launch_args(),
                log_file,
                env={SESSION_ENV: self.config.session_name},
                cwd=self.config.workdir,
            )
        except OSError as e:
            error = LaunchError(f"Cannot execute {self.config.validator_bin}: {e}")
            self._fail(error)
            raise error from e

        write_pid_file(self.config.pid_file, proc.pid)

        try:
            code = proc.wait(timeout=self.config.launch_grace)
        except subprocess.TimeoutExpired:
            code = None
        if code is not None:
            self._remove_pid_file()
            tail = "\n".join(tail_lines(log_file, 10))
            error = LaunchError(f"Validator exited immediately with code {code}.\n{tail}".rstrip())
            self._fail(error)
            raise error

        typer.secho(f"[SUPERVISOR] Validator launched; PID={proc.pid}", fg=typer.colors.GREEN)
        typer.secho(f"  [SUPERVISOR] Logs -> {log_file}", dim=True)
        return ProcessHandle(self.config.session_name, proc.pid, log_file, live=True)

    def install_logrotate(self) -> bool:
        """Writes the logrotate stanza once, and only when running as root."""
        path = self.config.logrotate_path
        if os.geteuid() != 0 or path.exists():
            return False
        stanza = LOGROTATE_TEMPLATE.format(ledger_dir=self.config.ledger_dir, keep=self.config.logrotate_keep)
        try:
            path.write_text(stanza)
        except OSError as e:
            typer.secho(f"  [SUPERVISOR] Could not install logrotate config at {path}: {e}", fg=typer.colors.YELLOW)
            return False
        typer.secho(f"  [SUPERVISOR] logrotate installed at {path}", fg=typer.colors.GREEN)
        return True

    def start(self, keys: KeySet) -> Tuple[ProcessHandle, HealthStatus]:
        """Cleaning -> GenesisPending -> Starting -> (Running). Health never fails a start."""
        self.cleanup()

        self._transition(SupervisorState.GENESIS_PENDING)
        try:
            self.bootstrapper.create(self.config, GenesisSpec.build(self.config, keys))
        except GenesisError as e:
            self._fail(e)
            raise

        handle = self.launch()
        self.install_logrotate()

        status = self.health.poll(RetryPolicy.from_config(self.config))
        if status is HealthStatus.RESPONDING:
            self._transition(SupervisorState.RUNNING)
        else:
            typer.secho(
                "[SUPERVISOR] Validator launched but RPC is not responding yet; it may still be starting up.",
                fg=typer.colors.YELLOW,
            )
        return handle, status

    # --- Stopping ---

    def stop(self) -> bool:
        """Terminates the recorded validator if it is alive. Returns False if nothing was running."""
        handle = self.probe()
        stopped = False
        if handle.live:
            typer.secho(f"[SUPERVISOR] Stopping validator (PID {handle.pid})...", fg=typer.colors.RED)
            stopped = self.inspector.terminate(
                handle.pid, self.config.stop_timeout, resource=f"validator PID {handle.pid}"
            )
        elif handle.stale:
            typer.secho(f"  [SUPERVISOR] Removing stale PID file (PID {handle.pid} is gone).", dim=True)

        self._remove_pid_file()
        self._transition(SupervisorState.STOPPED)
        return stopped

    def restart(self, keys: KeySet) -> Tuple[ProcessHandle, HealthStatus]:
        self.stop()
        return self.start(keys)
