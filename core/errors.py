from pathlib import Path
from typing import Optional, Sequence


class SupervisorError(Exception):
    """Base class for every error the supervisor reports to the operator."""


class ConfigurationError(SupervisorError):
    """Setup is wrong. Raised before anything on disk or in the OS is touched."""


class ConfigFileError(ConfigurationError):
    pass


class BinaryNotFound(ConfigurationError):
    def __init__(self, name: str, searched: Sequence[Path]):
        self.name = name
        self.searched = list(searched)
        dirs = ", ".join(str(p) for p in self.searched) or "(none)"
        super().__init__(f"Executable '{name}' not found. Searched: {dirs}")


class MissingKeyError(ConfigurationError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__(
            f"Missing key-pair file: {path}. Generate the validator keys before starting."
        )


class KeygenError(ConfigurationError):
    pass


class ContentionError(SupervisorError):
    """A contended resource (port, session, stale process) could not be reclaimed."""

    def __init__(self, resource: str, reason: str, pid: Optional[int] = None):
        self.resource = resource
        self.pid = pid
        holder = f" (held by PID {pid})" if pid is not None else ""
        super().__init__(f"Cannot reclaim {resource}{holder}: {reason}")


class GenesisError(SupervisorError):
    pass


class LaunchError(SupervisorError):
    pass


class RpcError(SupervisorError):
    pass
