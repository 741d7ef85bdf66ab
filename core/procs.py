import os
from pathlib import Path
from typing import List, Optional

import psutil
import typer

from core.errors import ContentionError

# Every process launched by the supervisor carries this variable. Children
# inherit it, so the whole session can be found without matching command lines.
SESSION_ENV = "VALIDATOR_SESSION"


class ProcessInspector:
    """Answers liveness questions about OS processes and signals them, via psutil."""

    def is_alive(self, pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # It exists, we just may not look at it.
            return True

    def runs_binary(self, pid: int, binary: Path) -> bool:
        """
        True if pid is executing `binary`, either directly or as the script
        handed to an interpreter. When the OS refuses to tell us, the
        recorded PID is trusted.
        """
        try:
            proc = psutil.Process(pid)
            exe = proc.exe()
            cmdline = proc.cmdline()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

        target = os.path.realpath(binary)
        if exe and os.path.realpath(exe) == target:
            return True
        return any(os.path.realpath(arg) == target for arg in cmdline[:2] if arg)

    def session_members(self, session_name: str) -> List[int]:
        """PIDs of every process tagged with the given session name."""
        me = os.getpid()
        members = []
        for proc in psutil.process_iter(["pid"]):
            if proc.pid == me:
                continue
            try:
                env = proc.environ()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if env.get(SESSION_ENV) == session_name:
                members.append(proc.pid)
        return members

    def port_holders(self, port: int) -> List[Optional[int]]:
        """
        PIDs listening on `port`. A None entry means a listener exists but
        the OS would not say who owns it.
        """
        try:
            conns = psutil.net_connections(kind="inet")
        except psutil.AccessDenied as e:
            raise ContentionError(f"port {port}", f"cannot list sockets ({e})")

        holders = []
        for conn in conns:
            if not conn.laddr or conn.laddr.port != port:
                continue
            if conn.status != psutil.CONN_LISTEN:
                continue
            if conn.pid not in holders:
                holders.append(conn.pid)
        return holders

    def terminate(self, pid: int, timeout: float, resource: str = "process") -> bool:
        """
        SIGTERM, then SIGKILL if pid is still around after `timeout`.
        Returns False if there was nothing to terminate.
        """
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            _, alive = psutil.wait_procs([proc], timeout=timeout)
            if alive:
                typer.secho(f"  [PROCS] PID {pid} ignored SIGTERM. Forcing kill.", fg=typer.colors.YELLOW)
                proc.kill()
                psutil.wait_procs([proc], timeout=timeout)
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as e:
            raise ContentionError(resource, f"permission denied ({e})", pid=pid)
        return True
