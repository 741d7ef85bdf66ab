import typer
from pathlib import Path
from typing import Dict, NamedTuple

from core.config import KEY_FILES
from core.errors import KeygenError, MissingKeyError
from core.runner import CommandRunner


class KeyPair(NamedTuple):
    role: str
    path: Path
    pubkey: str


class KeySet(NamedTuple):
    identity: KeyPair
    vote: KeyPair
    stake: KeyPair
    faucet: KeyPair


class KeyMaterialStore:
    """
    Locates the four validator key-pair files and reads back their public
    keys through the external keygen tool. Keys are generated elsewhere;
    a missing file is a setup mistake, never retried.
    """

    def __init__(self, runner: CommandRunner, keygen_bin: Path):
        self.runner = runner
        self.keygen_bin = keygen_bin
        self._pubkeys: Dict[Path, str] = {}

    def resolve(self, keys_dir: Path) -> KeySet:
        # Check every file before calling keygen even once.
        paths = {role: keys_dir / name for role, name in KEY_FILES.items()}
        for path in paths.values():
            if not path.is_file():
                raise MissingKeyError(path)

        pairs = {role: KeyPair(role, path, self.pubkey(path)) for role, path in paths.items()}
        for pair in pairs.values():
            typer.secho(f"  [KEYS] {pair.role:<8} {pair.pubkey}", dim=True)
        return KeySet(**pairs)

    def pubkey(self, path: Path) -> str:
        """Public key of one key-pair file, cached for the store's lifetime."""
        if path in self._pubkeys:
            return self._pubkeys[path]

        result = self.runner.run([self.keygen_bin, "pubkey", path])
        pubkey = result.stdout.strip()
        if not result.ok or not pubkey:
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            raise KeygenError(f"Cannot read public key from {path}: {detail}")

        self._pubkeys[path] = pubkey
        return pubkey
