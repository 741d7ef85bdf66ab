import os
import subprocess
from pathlib import Path
from typing import Mapping, NamedTuple, Optional, Sequence


class CommandResult(NamedTuple):
    args: Sequence[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """
    Runs the external tools (keygen, genesis, validator) from explicit
    argument lists. Nothing goes through a shell.

    Tests swap this out for a fake that records the calls.
    """

    def _environ(self, env: Optional[Mapping[str, str]]) -> dict:
        merged = dict(os.environ)
        if env:
            merged.update(env)
        return merged

    def run(
        self,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Runs a command to completion and captures its output."""
        args = [str(a) for a in args]
        try:
            completed = subprocess.run(
                args,
                env=self._environ(env),
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(args, 127, "", str(e))
        except subprocess.TimeoutExpired:
            return CommandResult(args, -1, "", f"timed out after {timeout}s")
        return CommandResult(args, completed.returncode, completed.stdout, completed.stderr)

    def spawn(
        self,
        args: Sequence[str],
        log_path: Path,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> subprocess.Popen:
        """
        Starts a detached background process in a new OS session.
        stdout and stderr are appended to log_path. The child keeps
        running after this process exits.
        """
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as log:
            return subprocess.Popen(
                [str(a) for a in args],
                env=self._environ(env),
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
