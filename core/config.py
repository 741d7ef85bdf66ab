import copy
import os
import shutil
import yaml
import typer
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

from core.errors import BinaryNotFound, ConfigFileError, ConfigurationError

DEFAULT_CONFIG_NAME = "validator.yml"

PID_FILE_NAME = "production-validator.pid"

# Role -> file name under the keys directory.
KEY_FILES = {
    "identity": "identity-keypair.json",
    "vote": "vote-account-keypair.json",
    "stake": "stake-account-keypair.json",
    "faucet": "faucet-keypair.json",
}

DEFAULT_CONFIG = {
    "paths": {
        "ledger_dir": "ledger",
        "keys_dir": "keys",
        "fixtures_dir": "fixtures",
        "bin_dir": None,
    },
    "binaries": {
        "validator": "solana-validator",
        "keygen": "solana-keygen",
        "genesis": "solana-genesis",
    },
    "rpc": {
        "bind_address": "0.0.0.0",
        "probe_address": None,
        "port": 8899,
        "timeout_seconds": 5.0,
    },
    "genesis": {
        "bootstrap_validator_lamports": 500000000000000000,
        "stake_lamports": 500000000000000000,
        "faucet_lamports": 10000000,
        "hashes_per_tick": 100,
        "cluster_type": "development",
        "inflation": "pico",
    },
    "validator": {
        "limit_ledger_size": 10000000000,
        "snapshot_interval_slots": 100,
        "account_indexes": ["program-id", "spl-token-owner", "spl-token-mint"],
        "extra_args": [],
        "session_name": "solana-validator",
    },
    "health": {
        "max_attempts": 30,
        "interval_seconds": 2.0,
    },
    "supervisor": {
        "stop_timeout_seconds": 10.0,
        "launch_grace_seconds": 1.0,
        "logrotate_path": "/etc/logrotate.d/solana-validator",
        "logrotate_keep": 1,
    },
}

# Operator override name -> location in the config tree.
OVERRIDE_KEYS = {
    "ledger_dir": ("paths", "ledger_dir"),
    "keys_dir": ("paths", "keys_dir"),
    "fixtures_dir": ("paths", "fixtures_dir"),
    "bin_dir": ("paths", "bin_dir"),
    "rpc_bind_address": ("rpc", "bind_address"),
    "rpc_port": ("rpc", "port"),
    "limit_ledger_size": ("validator", "limit_ledger_size"),
    "stake_lamports": ("genesis", "stake_lamports"),
    "faucet_lamports": ("genesis", "faucet_lamports"),
}

WILDCARD_ADDRESSES = ("0.0.0.0", "::", "")


@dataclass(frozen=True)
class NodeConfig:
    """Everything one run of the supervisor needs. Resolved once, never mutated."""

    workdir: Path
    ledger_dir: Path
    keys_dir: Path
    fixtures_dir: Path
    bin_dir: Path
    validator_bin: Path
    keygen_bin: Path
    genesis_bin: Path
    rpc_bind_address: str
    rpc_probe_address: str
    rpc_port: int
    rpc_timeout: float
    bootstrap_validator_lamports: int
    stake_lamports: int
    faucet_lamports: int
    hashes_per_tick: int
    cluster_type: str
    inflation: str
    limit_ledger_size: int
    snapshot_interval_slots: int
    account_indexes: Tuple[str, ...]
    extra_args: Tuple[str, ...]
    session_name: str
    health_max_attempts: int
    health_interval: float
    stop_timeout: float
    launch_grace: float
    logrotate_path: Path
    logrotate_keep: int

    def key_path(self, role: str) -> Path:
        return self.keys_dir / KEY_FILES[role]

    @property
    def pid_file(self) -> Path:
        return self.ledger_dir / PID_FILE_NAME

    @property
    def log_file(self) -> Path:
        identity = Path(KEY_FILES["identity"]).stem
        return self.ledger_dir / f"solana-validator-{identity}.log"

    @property
    def rpc_url(self) -> str:
        return f"http://{self.rpc_probe_address}:{self.rpc_port}/"


class ConfigManager:
    """Handles loading of the supervisor configuration from validator.yml."""

    def __init__(self, config_path: Path):
        self.config_path = config_path
        self.config = self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """Loads configuration from YAML file."""
        defaults = copy.deepcopy(DEFAULT_CONFIG)
        if not self.config_path.exists():
            return defaults
        try:
            with open(self.config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigFileError(f"Cannot parse {self.config_path}: {e}") from e
        if not isinstance(config_data, dict):
            raise ConfigFileError(f"{self.config_path} must contain a mapping at the top level.")
        # Recursively merge defaults
        return self._merge_defaults(defaults, config_data)

    def _merge_defaults(self, default: Dict, user: Dict) -> Dict:
        """Recursively merges user config into defaults."""
        for key, value in default.items():
            if key not in user:
                user[key] = value
            elif isinstance(value, dict) and isinstance(user.get(key), dict):
                user[key] = self._merge_defaults(value, user.get(key, {}))
        return user

    def get(self, *keys: str, default: Any = None) -> Any:
        """Gets a nested configuration value."""
        val = self.config
        for key in keys:
            if isinstance(val, dict):
                val = val.get(key)
            else:
                return default
        return val if val is not None else default

    def apply_overrides(self, **overrides: Any):
        """Applies operator overrides (CLI options / environment). None means 'not given'."""
        for name, value in overrides.items():
            if value is None:
                continue
            if name not in OVERRIDE_KEYS:
                raise ConfigFileError(f"Unknown override: {name}")
            section, key = OVERRIDE_KEYS[name]
            self.config.setdefault(section, {})[key] = value

    # --- Binary discovery ---

    def candidate_dirs(self, workdir: Path) -> List[Path]:
        """Directories searched for the validator binary, in priority order."""
        candidates = []
        configured = self.get("paths", "bin_dir")
        if configured:
            candidates.append(self._resolve(workdir, configured))
        candidates += [
            workdir / "target" / "release",
            workdir.parent / "target" / "release",
            Path("/usr/local/bin"),
            Path.home() / ".local" / "share" / "solana" / "install" / "active_release" / "bin",
        ]
        candidates += [Path(p) for p in os.environ.get("PATH", "").split(os.pathsep) if p]

        unique = []
        for c in candidates:
            if c not in unique:
                unique.append(c)
        return unique

    def find_binaries(self, workdir: Path) -> Tuple[Path, Path, Path, Path]:
        """Returns (bin_dir, validator, keygen, genesis). Raises BinaryNotFound."""
        validator_name = self.get("binaries", "validator")
        searched = self.candidate_dirs(workdir)

        bin_dir = next((d for d in searched if _is_executable(d / validator_name)), None)
        if bin_dir is None:
            raise BinaryNotFound(validator_name, searched)
        typer.secho(f"  [CONFIG] Using binaries from {bin_dir}", dim=True)

        tools = []
        for role in ("keygen", "genesis"):
            name = self.get("binaries", role)
            if _is_executable(bin_dir / name):
                tools.append(bin_dir / name)
                continue
            found = shutil.which(name)
            if not found:
                raise BinaryNotFound(name, [bin_dir] + searched)
            tools.append(Path(found))
        return bin_dir, bin_dir / validator_name, tools[0], tools[1]

    def _resolve(self, workdir: Path, value: Any) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else workdir / path

    def _check_ledger_location(self, ledger_dir: Path, protected: Dict[str, Path]):
        """Genesis wipes the ledger directory, so nothing the supervisor reads may live in it."""
        ledger = ledger_dir.resolve()
        for label, path in protected.items():
            target = path.resolve()
            if target == ledger or ledger in target.parents:
                raise ConfigurationError(
                    f"Ledger directory {ledger_dir} would be wiped by genesis but holds the {label} ({path})."
                )

    def resolve(self, workdir: Path) -> NodeConfig:
        """Builds the immutable NodeConfig for this run."""
        workdir = workdir.resolve()
        bin_dir, validator_bin, keygen_bin, genesis_bin = self.find_binaries(workdir)

        bind_address = str(self.get("rpc", "bind_address"))
        probe_address = self.get("rpc", "probe_address")
        if not probe_address:
            probe_address = "127.0.0.1" if bind_address in WILDCARD_ADDRESSES else bind_address

        ledger_dir = self._resolve(workdir, self.get("paths", "ledger_dir"))
        keys_dir = self._resolve(workdir, self.get("paths", "keys_dir"))
        fixtures_dir = self._resolve(workdir, self.get("paths", "fixtures_dir"))
        self._check_ledger_location(ledger_dir, {
            "working directory": workdir,
            "keys directory": keys_dir,
            "fixtures directory": fixtures_dir,
            "binary directory": bin_dir,
            "validator binary": validator_bin,
            "config file": self.config_path,
        })

        return NodeConfig(
            workdir=workdir,
            ledger_dir=ledger_dir,
            keys_dir=keys_dir,
            fixtures_dir=fixtures_dir,
            bin_dir=bin_dir,
            validator_bin=validator_bin,
            keygen_bin=keygen_bin,
            genesis_bin=genesis_bin,
            rpc_bind_address=bind_address,
            rpc_probe_address=str(probe_address),
            rpc_port=int(self.get("rpc", "port")),
            rpc_timeout=float(self.get("rpc", "timeout_seconds")),
            bootstrap_validator_lamports=int(self.get("genesis", "bootstrap_validator_lamports")),
            stake_lamports=int(self.get("genesis", "stake_lamports")),
            faucet_lamports=int(self.get("genesis", "faucet_lamports")),
            hashes_per_tick=int(self.get("genesis", "hashes_per_tick")),
            cluster_type=str(self.get("genesis", "cluster_type")),
            inflation=str(self.get("genesis", "inflation")),
            limit_ledger_size=int(self.get("validator", "limit_ledger_size")),
            snapshot_interval_slots=int(self.get("validator", "snapshot_interval_slots")),
            account_indexes=tuple(self.get("validator", "account_indexes", default=[])),
            extra_args=tuple(str(a) for a in self.get("validator", "extra_args", default=[])),
            session_name=str(self.get("validator", "session_name")),
            health_max_attempts=int(self.get("health", "max_attempts")),
            health_interval=float(self.get("health", "interval_seconds")),
            stop_timeout=float(self.get("supervisor", "stop_timeout_seconds")),
            launch_grace=float(self.get("supervisor", "launch_grace_seconds")),
            logrotate_path=Path(self.get("supervisor", "logrotate_path")),
            logrotate_keep=int(self.get("supervisor", "logrotate_keep")),
        )


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)
