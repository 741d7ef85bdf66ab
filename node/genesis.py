import shutil
import typer
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from core.config import NodeConfig
from core.errors import GenesisError
from core.runner import CommandRunner
from node.key_store import KeySet

BPF_LOADER = "BPFLoader2111111111111111111111111111111111"


@dataclass(frozen=True)
class GenesisSpec:
    """Parameters for one genesis construction. Built fresh every time."""

    identity_pubkey: str
    vote_pubkey: str
    stake_pubkey: str
    faucet_pubkey: str
    bootstrap_validator_lamports: int
    stake_lamports: int
    faucet_lamports: int
    hashes_per_tick: int
    cluster_type: str
    inflation: str
    programs: Tuple[Tuple[str, Path], ...] = ()
    primordial_accounts: Tuple[Path, ...] = ()

    @classmethod
    def build(cls, config: NodeConfig, keys: KeySet) -> "GenesisSpec":
        programs, accounts = scan_fixtures(config.fixtures_dir)
        return cls(
            identity_pubkey=keys.identity.pubkey,
            vote_pubkey=keys.vote.pubkey,
            stake_pubkey=keys.stake.pubkey,
            faucet_pubkey=keys.faucet.pubkey,
            bootstrap_validator_lamports=config.bootstrap_validator_lamports,
            stake_lamports=config.stake_lamports,
            faucet_lamports=config.faucet_lamports,
            hashes_per_tick=config.hashes_per_tick,
            cluster_type=config.cluster_type,
            inflation=config.inflation,
            programs=programs,
            primordial_accounts=accounts,
        )

    def to_args(self, ledger_dir: Path) -> List[str]:
        args = [
            "--ledger", str(ledger_dir),
            "--inflation", self.inflation,
            "--bootstrap-validator", self.identity_pubkey, self.vote_pubkey, self.stake_pubkey,
            "--bootstrap-validator-lamports", str(self.bootstrap_validator_lamports),
            "--bootstrap-validator-stake-lamports", str(self.stake_lamports),
            "--faucet-pubkey", self.faucet_pubkey,
            "--faucet-lamports", str(self.faucet_lamports),
            "--hashes-per-tick", str(self.hashes_per_tick),
            "--cluster-type", self.cluster_type,
        ]
        for address, program in self.programs:
            args += ["--bpf-program", address, BPF_LOADER, str(program)]
        for accounts_file in self.primordial_accounts:
            args += ["--primordial-accounts-file", str(accounts_file)]
        return args


def scan_fixtures(fixtures_dir: Path) -> Tuple[Tuple[Tuple[str, Path], ...], Tuple[Path, ...]]:
    """
    Programs are `<ADDRESS>.so` files; primordial account lists are YAML
    files. Both are optional and sorted so the argument list is stable.
    """
    if not fixtures_dir.is_dir():
        return (), ()
    programs = tuple((p.stem, p) for p in sorted(fixtures_dir.glob("*.so")))
    accounts = tuple(sorted(list(fixtures_dir.glob("*.yml")) + list(fixtures_dir.glob("*.yaml"))))
    return programs, accounts


class GenesisBootstrapper:
    """Wipes the ledger directory and writes a brand-new genesis into it."""

    def __init__(self, runner: CommandRunner, genesis_bin: Path):
        self.runner = runner
        self.genesis_bin = genesis_bin

    def clear_ledger(self, ledger_dir: Path):
        """Destructively removes everything under the ledger directory."""
        ledger_dir.mkdir(parents=True, exist_ok=True)
        removed = 0
        for entry in ledger_dir.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed += 1
        typer.secho(f"  [GENESIS] Cleared {removed} entries from {ledger_dir}.", dim=True)

    def create(self, config: NodeConfig, spec: GenesisSpec):
        typer.secho("[GENESIS] Creating genesis...", fg=typer.colors.CYAN)
        try:
            self.clear_ledger(config.ledger_dir)
        except OSError as e:
            raise GenesisError(f"Cannot clear ledger directory {config.ledger_dir}: {e}") from e

        if spec.programs:
            typer.secho(f"  [GENESIS] Including {len(spec.programs)} fixture program(s).", dim=True)

        result = self.runner.run([self.genesis_bin] + spec.to_args(config.ledger_dir))
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            raise GenesisError(f"Genesis construction failed: {detail}")

        typer.secho(
            f"[GENESIS] Genesis created (stake: {spec.stake_lamports} lamports, cluster: {spec.cluster_type}).",
            fg=typer.colors.GREEN,
        )
